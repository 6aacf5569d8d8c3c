"""
Portfolio construction module.

Handles:
- Strategy return streams built from the trade ledger
- Correlation-based decorrelation of candidates
- Inverse-volatility (risk-parity) weighting
- Regime-aware weight routing and curve synthesis
"""

from src.portfolio.constructor import PortfolioConstructor, PortfolioMember, PortfolioResult
from src.portfolio.correlation_matrix import CorrelationEntry, CorrelationMatrix
from src.portfolio.decorrelation import DecorrelationFilter, DecorrelationResult, Rejection
from src.portfolio.risk_parity import RiskParityWeight, RiskParityWeighter
from src.portfolio.streams import StrategyStream, build_streams_from_trades, derive_affinity
from src.portfolio.synthesizer import Synthesizer

__all__ = [
    "PortfolioConstructor",
    "PortfolioMember",
    "PortfolioResult",
    "CorrelationEntry",
    "CorrelationMatrix",
    "DecorrelationFilter",
    "DecorrelationResult",
    "Rejection",
    "RiskParityWeight",
    "RiskParityWeighter",
    "StrategyStream",
    "build_streams_from_trades",
    "derive_affinity",
    "Synthesizer",
]
