"""
Market regime module.

Routes portfolio weight toward strategies suited to the current regime
(trend, range, shock), and classifies the regime from price bars when the
caller has no external classifier.
"""

from src.regime.detector import RegimeDetector, RegimeReading
from src.regime.router import (
    Regime,
    RegimeAffinity,
    RegimeRouter,
    regime_from_label,
)

__all__ = [
    "RegimeDetector",
    "RegimeReading",
    "Regime",
    "RegimeAffinity",
    "RegimeRouter",
    "regime_from_label",
]
