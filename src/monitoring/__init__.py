"""
Monitoring module.

Handles:
- Equity-curve metrics (return, drawdown, Sharpe, volatility)
"""

from src.monitoring.metrics import (
    CurveMetrics,
    annualized_volatility,
    calculate_curve_metrics,
    max_drawdown,
    normalize_curve,
    period_returns,
    sharpe_ratio,
)

__all__ = [
    "CurveMetrics",
    "annualized_volatility",
    "calculate_curve_metrics",
    "max_drawdown",
    "normalize_curve",
    "period_returns",
    "sharpe_ratio",
]
