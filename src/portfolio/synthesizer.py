"""
Portfolio curve synthesis.

Combines member equity curves into one weighted portfolio curve expressed on
a nominal base (1000 by default).
"""

from typing import Mapping, Sequence
import structlog

from src.monitoring.metrics import (
    DEFAULT_PERIODS_PER_YEAR,
    EMPTY_METRICS,
    CurveMetrics,
    calculate_curve_metrics,
    normalize_curve,
)
from src.portfolio.streams import StrategyStream

logger = structlog.get_logger(__name__)


class Synthesizer:
    """Weighted blend of normalized member curves."""

    def __init__(
        self,
        nominal_base: float = 1000.0,
        periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
    ):
        self.nominal_base = nominal_base
        self.periods_per_year = periods_per_year

    def synthesize(
        self,
        streams: Sequence[StrategyStream],
        weights: Mapping[str, float],
    ) -> list[float]:
        """
        Build the portfolio curve.

        Curves are truncated to the shortest member. A shortest length below 2
        yields an empty curve. Values are rounded to cents.
        """
        if not streams:
            return []

        length = min(len(s.equity_curve) for s in streams)
        if length < 2:
            logger.debug("synthesis_skipped_short_curves", length=length)
            return []

        curve = [0.0] * length
        for stream in streams:
            weight = weights.get(stream.id, 0.0)
            if weight == 0:
                continue
            normalized = normalize_curve(stream.equity_curve[:length])
            for i, value in enumerate(normalized):
                curve[i] += weight * value

        return [round(v * self.nominal_base, 2) for v in curve]

    def metrics(self, curve: Sequence[float]) -> CurveMetrics:
        if len(curve) < 2:
            return EMPTY_METRICS
        return calculate_curve_metrics(curve, self.periods_per_year)
