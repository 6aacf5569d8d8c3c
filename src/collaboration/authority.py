"""
Authority adjustment.

Each agent's vote is scaled by an authority multiplier:

    authority = base (solo edge vs. fleet) x relational (pair labels)

clamped to [AUTHORITY_MIN, AUTHORITY_MAX] on every computation.
"""

import math
from dataclasses import dataclass
from typing import Optional, Sequence
import structlog

from src.collaboration.safety import CollaborationSafetyState
from src.collaboration.stats import CollaborationLabel, CollaborationSnapshot
from src.config import CollaborationConfig
from src.exceptions import InvariantViolation

logger = structlog.get_logger(__name__)

# Hard bounds. Not configuration.
AUTHORITY_MIN = 0.1
AUTHORITY_MAX = 2.0
NEUTRAL_AUTHORITY = 1.0

SYNERGY_BOOST_MIN = 0.15
SYNERGY_BOOST_MAX = 0.30
CONFLICT_REDUCE_MIN = 0.30
CONFLICT_REDUCE_MAX = 0.60
VETO_TARGET_MULTIPLIER = 0.5
VETO_HOLDER_MULTIPLIER = 1.1


@dataclass(frozen=True)
class AuthorityAdjustment:
    """Authority for one agent in one decision context."""
    agent_id: str
    base_authority: float
    collaboration_multiplier: float
    final_authority: float
    reasons: tuple[str, ...] = ()

    @property
    def reason(self) -> str:
        return "; ".join(self.reasons) if self.reasons else "No active pair relationships"

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            "base_authority": self.base_authority,
            "collaboration_multiplier": self.collaboration_multiplier,
            "final_authority": self.final_authority,
            "reason": self.reason,
        }


def clamp_authority(value: float) -> float:
    """Clamp a finite authority into bounds. Non-finite input is a fault."""
    if not math.isfinite(value):
        logger.error("authority_non_finite", value=value)
        raise InvariantViolation(f"Authority is not finite: {value!r}")
    return max(AUTHORITY_MIN, min(AUTHORITY_MAX, value))


def verify_authority(agent_id: str, value: float) -> None:
    if not math.isfinite(value) or not AUTHORITY_MIN <= value <= AUTHORITY_MAX:
        logger.error("authority_invariant_violated", agent_id=agent_id, value=value)
        raise InvariantViolation(
            f"Authority for {agent_id} is {value!r}, outside "
            f"[{AUTHORITY_MIN}, {AUTHORITY_MAX}]"
        )


class AuthorityAdjuster:
    """Computes AuthorityAdjustment values from a collaboration snapshot."""

    def __init__(self, config: Optional[CollaborationConfig] = None):
        """
        Initialize adjuster.

        Args:
            config: Collaboration parameters (defaults when omitted)
        """
        self.config = config or CollaborationConfig()

    def _fleet_baseline(self, snapshot: CollaborationSnapshot) -> Optional[tuple[float, float]]:
        """Mean (Sharpe, expectancy) over agents with enough solo trades."""
        qualified = [
            s for s in snapshot.solo_stats.values()
            if s.trades >= self.config.min_solo_trades
        ]
        if not qualified:
            return None
        sharpe = math.fsum(s.sharpe for s in qualified) / len(qualified)
        expectancy = math.fsum(s.expectancy for s in qualified) / len(qualified)
        return sharpe, expectancy

    def base_authority(
        self,
        agent_id: str,
        snapshot: CollaborationSnapshot,
        fleet: Optional[tuple[float, float]] = None,
    ) -> tuple[float, Optional[str]]:
        """
        Base multiplier from solo edge vs. the fleet.

        Agents below the solo-trade floor stay at 1.0.
        """
        solo = snapshot.solo_stats.get(agent_id)
        if solo is None or solo.trades < self.config.min_solo_trades:
            return NEUTRAL_AUTHORITY, None

        fleet = fleet if fleet is not None else self._fleet_baseline(snapshot)
        if fleet is None:
            return NEUTRAL_AUTHORITY, None

        fleet_sharpe, fleet_expectancy = fleet
        sharpe_edge = solo.sharpe - fleet_sharpe
        expectancy_edge = (solo.expectancy - fleet_expectancy) / max(abs(fleet_expectancy), 1.0)
        edge = (sharpe_edge + expectancy_edge) / 2

        base = NEUTRAL_AUTHORITY + self.config.max_base_shift * math.tanh(edge)
        return base, f"Solo edge {edge:+.2f} vs fleet: base {base:.2f}"

    def _relational(
        self,
        agent_id: str,
        participants: set,
        snapshot: CollaborationSnapshot,
        safety: CollaborationSafetyState,
    ) -> tuple[float, list[str]]:
        multiplier = 1.0
        reasons = []

        for pair in snapshot.pair_stats:
            if not pair.involves(agent_id):
                continue
            if pair.agent_a not in participants or pair.agent_b not in participants:
                continue

            partner = pair.partner_of(agent_id)
            if safety.is_frozen(pair.agent_a, pair.agent_b):
                reasons.append(f"Pair {pair.agent_a}<->{pair.agent_b} frozen")
                continue

            own = snapshot.solo_expectancy(agent_id)
            other = snapshot.solo_expectancy(partner)

            if pair.label == CollaborationLabel.SYNERGY:
                boost = SYNERGY_BOOST_MIN + (pair.paired_sharpe / 3) * (SYNERGY_BOOST_MAX - SYNERGY_BOOST_MIN)
                boost = min(max(boost, SYNERGY_BOOST_MIN), SYNERGY_BOOST_MAX)
                multiplier *= 1 + boost
                reasons.append(f"Synergy with {partner}: +{round(boost * 100)}%")

            elif pair.label == CollaborationLabel.CONFLICT:
                # only the weaker agent of a conflicting pair loses authority
                if own < other:
                    reduction = CONFLICT_REDUCE_MIN + pair.conflict_frequency * (
                        CONFLICT_REDUCE_MAX - CONFLICT_REDUCE_MIN
                    )
                    reduction = min(reduction, CONFLICT_REDUCE_MAX)
                    multiplier *= 1 - reduction
                    reasons.append(f"Conflict with {partner}: -{round(reduction * 100)}%")

            elif pair.label == CollaborationLabel.PREDICTIVE_VETO:
                if own < other:
                    multiplier *= VETO_TARGET_MULTIPLIER
                    reasons.append(f"Predictive veto by {partner}: authority halved")
                else:
                    multiplier *= VETO_HOLDER_MULTIPLIER
                    reasons.append(f"Veto authority over {partner}: +10%")

        return multiplier, reasons

    def compute(
        self,
        snapshot: CollaborationSnapshot,
        participating_agents: Sequence[str],
        safety: Optional[CollaborationSafetyState] = None,
    ) -> dict[str, AuthorityAdjustment]:
        """
        Authority for each participating agent.

        Returns:
            agent id -> AuthorityAdjustment, in participating order. All
            neutral (1.0) when weighting is off for any reason.
        """
        safety = safety or CollaborationSafetyState()

        neutral_reason = safety.neutral_reason()
        if neutral_reason is None and snapshot.independent_due_to_missing_context:
            neutral_reason = "Insufficient environment context: independent routing"

        if neutral_reason is not None:
            return {
                agent_id: AuthorityAdjustment(
                    agent_id=agent_id,
                    base_authority=NEUTRAL_AUTHORITY,
                    collaboration_multiplier=1.0,
                    final_authority=NEUTRAL_AUTHORITY,
                    reasons=(neutral_reason,),
                )
                for agent_id in participating_agents
            }

        participants = set(participating_agents)
        fleet = self._fleet_baseline(snapshot)
        adjustments = {}

        for agent_id in participating_agents:
            base, base_reason = self.base_authority(agent_id, snapshot, fleet)
            multiplier, reasons = self._relational(agent_id, participants, snapshot, safety)
            if base_reason:
                reasons.insert(0, base_reason)

            final = clamp_authority(base * multiplier)
            verify_authority(agent_id, final)

            adjustments[agent_id] = AuthorityAdjustment(
                agent_id=agent_id,
                base_authority=base,
                collaboration_multiplier=multiplier,
                final_authority=final,
                reasons=tuple(reasons),
            )

        logger.debug(
            "authority_computed",
            agents=len(adjustments),
            adjusted=sum(1 for a in adjustments.values() if a.final_authority != NEUTRAL_AUTHORITY),
        )
        return adjustments
