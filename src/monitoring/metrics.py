"""
Equity-curve metrics.

Shared math for strategy streams, risk parity and the synthesized portfolio:
- Curve normalization and period returns
- Annualized volatility and Sharpe
- Peak-to-trough drawdown

Every function returns a finite number on degenerate input (empty curves,
zero starting equity, zero variance).
"""

from dataclasses import dataclass
from typing import Sequence

import numpy as np

DEFAULT_PERIODS_PER_YEAR = 48 * 252  # M30 bars, 252 trading days


@dataclass(frozen=True)
class CurveMetrics:
    """Summary metrics for an equity curve."""
    total_return: float  # percent
    max_drawdown: float  # fraction of peak
    sharpe: float        # annualized
    volatility: float    # annualized

    def to_dict(self) -> dict:
        return {
            "total_return": self.total_return,
            "max_drawdown": self.max_drawdown,
            "sharpe": self.sharpe,
            "volatility": self.volatility,
        }


EMPTY_METRICS = CurveMetrics(total_return=0.0, max_drawdown=0.0, sharpe=0.0, volatility=0.0)


def normalize_curve(curve: Sequence[float]) -> list[float]:
    """Rescale a curve so it starts at 1.0. A zero start maps to a flat curve."""
    if len(curve) == 0:
        return []
    start = curve[0]
    if start == 0:
        return [1.0] * len(curve)
    return [float(v) / start for v in curve]


def period_returns(curve: Sequence[float]) -> list[float]:
    """Fractional change per step; a zero previous value yields 0."""
    returns = []
    for prev, cur in zip(curve[:-1], curve[1:]):
        returns.append((cur - prev) / prev if prev != 0 else 0.0)
    return returns


def annualized_volatility(
    returns: Sequence[float],
    periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
) -> float:
    """Sample std (ddof=1) scaled to a year. Fewer than 2 returns -> 0."""
    if len(returns) < 2:
        return 0.0
    std = float(np.std(np.asarray(returns, dtype=float), ddof=1))
    if not np.isfinite(std):
        return 0.0
    return std * float(np.sqrt(periods_per_year))


def sharpe_ratio(
    returns: Sequence[float],
    periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
) -> float:
    """Annualized Sharpe with zero risk-free rate."""
    if len(returns) < 2:
        return 0.0
    arr = np.asarray(returns, dtype=float)
    std = float(np.std(arr, ddof=1))
    if std == 0 or not np.isfinite(std):
        return 0.0
    sharpe = float(np.mean(arr)) / std * float(np.sqrt(periods_per_year))
    return sharpe if np.isfinite(sharpe) else 0.0


def max_drawdown(curve: Sequence[float]) -> float:
    """Largest peak-to-trough decline as a fraction of the peak."""
    if len(curve) == 0:
        return 0.0
    peak = curve[0]
    worst = 0.0
    for value in curve:
        if value > peak:
            peak = value
        if peak > 0:
            drawdown = (peak - value) / peak
            if drawdown > worst:
                worst = drawdown
    return float(worst)


def calculate_curve_metrics(
    curve: Sequence[float],
    periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
) -> CurveMetrics:
    """
    Calculate rounded portfolio metrics for a curve.

    Rounding keeps published output stable across platforms:
    return 2dp, drawdown 4dp, Sharpe 2dp, volatility 4dp.
    """
    if len(curve) < 2 or curve[0] == 0:
        return EMPTY_METRICS

    total_return = (curve[-1] - curve[0]) / curve[0] * 100
    returns = period_returns(curve)

    return CurveMetrics(
        total_return=round(total_return, 2),
        max_drawdown=round(max_drawdown(curve), 4),
        sharpe=round(sharpe_ratio(returns, periods_per_year), 2),
        volatility=round(annualized_volatility(returns, periods_per_year), 4),
    )
