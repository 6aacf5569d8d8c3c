"""
Ensemble Governor - portfolio and collaboration governance for trading agents.

The engine decides which strategies run together and which agents get a say:
- Decorrelated, risk-parity, regime-routed portfolios
- Collaboration-aware authority for agent votes
- Automatic fallback to plain voting when weighting hurts
- A staged deployment ladder from shadow to live

It assumes most edges are noise until the ledger proves otherwise.
"""

__version__ = "0.1.0"
__author__ = "Ensemble Governor Team"
