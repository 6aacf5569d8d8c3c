"""
Risk-parity (inverse-volatility) weighting.

weight_i = (1 / vol_i) / sum_j(1 / vol_j)

Each member then contributes a similar amount of risk.
"""

import math
from dataclasses import dataclass
from typing import Sequence
import structlog

from src.monitoring.metrics import DEFAULT_PERIODS_PER_YEAR, annualized_volatility
from src.portfolio.streams import StrategyStream
from src.regime.router import check_weights_sum

logger = structlog.get_logger(__name__)

FALLBACK_VOLATILITY = 1.0


@dataclass(frozen=True)
class RiskParityWeight:
    weight: float
    volatility: float
    used_fallback: bool = False


class RiskParityWeighter:
    """Inverse-volatility weights over the accepted subset."""

    def __init__(
        self,
        volatility_floor: float = 0.001,
        periods_per_year: int = DEFAULT_PERIODS_PER_YEAR,
        tolerance: float = 1e-9,
    ):
        if volatility_floor <= 0:
            raise ValueError("volatility_floor must be positive")
        self.volatility_floor = volatility_floor
        self.periods_per_year = periods_per_year
        self.tolerance = tolerance

    def volatility(self, returns: Sequence[float]) -> tuple[float, bool]:
        """
        Annualized volatility, floored.

        Returns:
            (volatility, used_fallback). Fewer than two returns or a
            non-finite estimate take the fallback volatility of 1.0.
        """
        if len(returns) < 2:
            return FALLBACK_VOLATILITY, True

        vol = annualized_volatility(returns, self.periods_per_year)
        if not math.isfinite(vol):
            return FALLBACK_VOLATILITY, True

        return max(vol, self.volatility_floor), False

    def weight(self, streams: Sequence[StrategyStream]) -> dict[str, RiskParityWeight]:
        """
        Compute weights for the given streams.

        Returns:
            stream id -> RiskParityWeight, in input order, weights summing to 1.
            Empty input returns an empty dict.
        """
        if not streams:
            return {}

        vols = {}
        fallbacks = {}
        for stream in streams:
            vol, used_fallback = self.volatility(stream.returns)
            vols[stream.id] = vol
            fallbacks[stream.id] = used_fallback
            if used_fallback:
                logger.debug(
                    "volatility_fallback_used",
                    strategy=stream.id,
                    observations=len(stream.returns),
                )

        sum_inv = math.fsum(1.0 / v for v in vols.values())

        weights = {
            sid: RiskParityWeight(
                weight=(1.0 / vol) / sum_inv,
                volatility=vol,
                used_fallback=fallbacks[sid],
            )
            for sid, vol in vols.items()
        }

        check_weights_sum(
            {sid: w.weight for sid, w in weights.items()},
            self.tolerance,
            stage="risk_parity",
        )
        return weights
