"""
Regime routing.

Blends risk-parity weights with regime-affinity weights for the current
regime. Shock regimes concentrate harder into regime-fit strategies because
cross-strategy correlation spikes in shocks and diversification weakens.
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Mapping, Optional
import structlog

from src.exceptions import InvariantViolation

logger = structlog.get_logger(__name__)


class Regime(Enum):
    """Coarse market-condition label."""
    TREND = "trend"
    RANGE = "range"
    SHOCK = "shock"


LABEL_TO_REGIME = {
    "trend": Regime.TREND,
    "trending": Regime.TREND,
    "expansion": Regime.TREND,
    "ignition": Regime.TREND,
    "range": Regime.RANGE,
    "ranging": Regime.RANGE,
    "compression": Regime.RANGE,
    "shock": Regime.SHOCK,
    "crisis": Regime.SHOCK,
    "exhaustion": Regime.SHOCK,
}


def regime_from_label(label: Optional[str]) -> Optional[Regime]:
    """Map a ledger or classifier label onto a routing regime."""
    if not label:
        return None
    return LABEL_TO_REGIME.get(label.lower().strip())


@dataclass(frozen=True)
class RegimeAffinity:
    """Unnormalized per-regime suitability scores. Negative scores count as 0."""
    trend: float = 1.0
    range: float = 1.0
    shock: float = 1.0

    def __post_init__(self):
        for name in ("trend", "range", "shock"):
            value = float(getattr(self, name))
            if not math.isfinite(value) or value < 0:
                value = 0.0
            object.__setattr__(self, name, value)

    def score(self, regime: Regime) -> float:
        return getattr(self, regime.value)

    @property
    def total(self) -> float:
        return self.trend + self.range + self.shock

    def share(self, regime: Regime) -> float:
        """Fraction of this strategy's affinity that belongs to the regime."""
        total = self.total or 1.0
        return self.score(regime) / total

    def to_dict(self) -> dict:
        return {"trend": self.trend, "range": self.range, "shock": self.shock}


DEFAULT_AFFINITY = RegimeAffinity()


def check_weights_sum(weights: Mapping[str, float], tolerance: float, stage: str) -> None:
    """Raise InvariantViolation unless non-empty weights sum to 1 within tolerance."""
    if not weights:
        return
    total = math.fsum(weights.values())
    if not math.isfinite(total) or abs(total - 1.0) > tolerance:
        logger.error("weight_sum_invariant_violated", stage=stage, total=total)
        raise InvariantViolation(f"{stage} weights sum to {total!r}, expected 1")
    if any(not math.isfinite(w) or w < 0 for w in weights.values()):
        logger.error("weight_value_invariant_violated", stage=stage)
        raise InvariantViolation(f"{stage} produced a negative or non-finite weight")


class RegimeRouter:
    """
    Regime-aware weight blending.

    final_i = c * (affinity_i / sum(affinity)) + (1 - c) * base_i,
    with c = shock_concentration in shock and default_concentration otherwise.
    """

    def __init__(
        self,
        shock_concentration: float = 0.80,
        default_concentration: float = 0.60,
        tolerance: float = 1e-9,
    ):
        for name, value in (("shock_concentration", shock_concentration),
                            ("default_concentration", default_concentration)):
            if not 0.0 <= value <= 1.0:
                raise ValueError(f"{name} must be within [0, 1], got {value}")
        self.shock_concentration = shock_concentration
        self.default_concentration = default_concentration
        self.tolerance = tolerance

    def concentration(self, regime: Regime) -> float:
        if regime == Regime.SHOCK:
            return self.shock_concentration
        return self.default_concentration

    def route(
        self,
        base_weights: Mapping[str, float],
        affinities: Mapping[str, RegimeAffinity],
        regime: Regime,
    ) -> dict[str, float]:
        """
        Blend base weights with regime affinity.

        Args:
            base_weights: strategy id -> risk-parity weight (sums to 1)
            affinities: strategy id -> RegimeAffinity; missing ids use (1, 1, 1)
            regime: Current regime

        Returns:
            strategy id -> final weight, in base_weights order, summing to 1
        """
        if not base_weights:
            return {}

        concentration = self.concentration(regime)

        affinity = {
            sid: affinities.get(sid, DEFAULT_AFFINITY).share(regime)
            for sid in base_weights
        }
        total_affinity = math.fsum(affinity.values()) or 1.0

        blended = {
            sid: concentration * (affinity[sid] / total_affinity)
            + (1 - concentration) * base_weights[sid]
            for sid in base_weights
        }

        total = math.fsum(blended.values())
        if total > 0:
            routed = {sid: w / total for sid, w in blended.items()}
        else:
            logger.warning("regime_routing_zero_weight_equal_fallback", count=len(blended))
            routed = {sid: 1.0 / len(blended) for sid in blended}

        check_weights_sum(routed, self.tolerance, stage="regime_routing")

        logger.debug(
            "regime_routing_applied",
            regime=regime.value,
            concentration=concentration,
            strategies=len(routed),
        )
        return routed
