"""
Collaboration voting.

Every decision is voted twice:
- baseline: confidence summed per side
- weighted: confidence x authority summed per side

The higher side total wins; equal totals mean no trade (flat). The weighted
outcome is only used while collaboration weighting is active. Otherwise the
baseline is final and the log says why.
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Mapping, Optional, Sequence
import structlog

from src.collaboration.authority import NEUTRAL_AUTHORITY, AuthorityAdjustment
from src.collaboration.safety import CollaborationSafetyState
from src.collaboration.stats import CollaborationSnapshot
from src.ledger.environment import normalize_direction

if TYPE_CHECKING:
    from src.deployment.ladder import DeploymentLadder

logger = structlog.get_logger(__name__)


class VoteSide(Enum):
    LONG = "long"
    SHORT = "short"
    FLAT = "flat"

    @classmethod
    def parse(cls, side: str) -> "VoteSide":
        direction = normalize_direction(side)
        if direction == "LONG":
            return cls.LONG
        if direction == "SHORT":
            return cls.SHORT
        if direction == "NEUTRAL":
            return cls.FLAT
        raise ValueError(f"Unknown vote side: {side!r}")

    @property
    def sign(self) -> int:
        return {VoteSide.LONG: 1, VoteSide.SHORT: -1, VoteSide.FLAT: 0}[self]


@dataclass(frozen=True)
class AgentVote:
    """One agent's opinion on a decision."""
    agent_id: str
    side: VoteSide
    confidence: float

    @classmethod
    def create(cls, agent_id: str, side: str, confidence: float) -> "AgentVote":
        return cls(agent_id=agent_id, side=VoteSide.parse(side), confidence=float(confidence))


@dataclass(frozen=True)
class VotingResult:
    decision: VoteSide
    long_total: float
    short_total: float

    def to_dict(self) -> dict:
        return {
            "decision": self.decision.value,
            "long_total": self.long_total,
            "short_total": self.short_total,
        }


@dataclass
class CollaborationDecisionLog:
    """Explainability record for one voted decision."""
    participating_agents: list[str]
    baseline_voting_result: VotingResult
    weighted_voting_result: VotingResult
    outcome_changed: bool
    final_decision: VoteSide
    final_decision_reason: str
    weighting_applied: bool
    top_collaboration_factors: list[dict] = field(default_factory=list)
    excluded_agents: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "participating_agents": list(self.participating_agents),
            "excluded_agents": list(self.excluded_agents),
            "baseline_voting_result": self.baseline_voting_result.to_dict(),
            "weighted_voting_result": self.weighted_voting_result.to_dict(),
            "outcome_changed": self.outcome_changed,
            "final_decision": self.final_decision.value,
            "final_decision_reason": self.final_decision_reason,
            "weighting_applied": self.weighting_applied,
            "top_collaboration_factors": list(self.top_collaboration_factors),
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))


def tally(votes: Sequence[AgentVote], authority: Optional[Mapping[str, float]] = None) -> VotingResult:
    """Sum (optionally authority-weighted) confidence per side."""
    long_total = 0.0
    short_total = 0.0

    for vote in votes:
        weight = vote.confidence
        if authority is not None:
            weight *= authority.get(vote.agent_id, NEUTRAL_AUTHORITY)
        if vote.side == VoteSide.LONG:
            long_total += weight
        elif vote.side == VoteSide.SHORT:
            short_total += weight

    if long_total > short_total:
        decision = VoteSide.LONG
    elif short_total > long_total:
        decision = VoteSide.SHORT
    else:
        decision = VoteSide.FLAT

    return VotingResult(decision=decision, long_total=long_total, short_total=short_total)


class CollaborationVoter:
    """
    Runs baseline and authority-weighted votes for a decision.

    When a deployment ladder is supplied, agents that cannot execute are
    removed before voting and listed in the log.
    """

    def __init__(
        self,
        ladder: Optional["DeploymentLadder"] = None,
        max_factors: int = 3,
    ):
        self.ladder = ladder
        self.max_factors = max_factors

    def _gate(self, votes: Sequence[AgentVote]) -> tuple[list[AgentVote], list[dict]]:
        if self.ladder is None:
            return list(votes), []

        eligible = []
        excluded = []
        for vote in votes:
            permission = self.ladder.execution_permission(vote.agent_id)
            if permission.can_execute:
                eligible.append(vote)
            else:
                excluded.append({"agent_id": vote.agent_id, "reason": permission.reason})
        return eligible, excluded

    def eligible_agents(self, votes: Sequence[AgentVote]) -> list[str]:
        """Agents whose votes survive the deployment gate, in vote order."""
        eligible, _ = self._gate(votes)
        return [v.agent_id for v in eligible]

    def _top_factors(self, adjustments: Mapping[str, AuthorityAdjustment]) -> list[dict]:
        moved = [a for a in adjustments.values() if a.final_authority != NEUTRAL_AUTHORITY]
        moved.sort(key=lambda a: (-abs(a.final_authority - NEUTRAL_AUTHORITY), a.agent_id))
        return [
            {"agent_id": a.agent_id, "authority": a.final_authority, "reason": a.reason}
            for a in moved[:self.max_factors]
        ]

    def decide(
        self,
        votes: Sequence[AgentVote],
        adjustments: Mapping[str, AuthorityAdjustment],
        safety: Optional[CollaborationSafetyState] = None,
        snapshot: Optional[CollaborationSnapshot] = None,
    ) -> CollaborationDecisionLog:
        """
        Vote on one decision.

        Args:
            votes: Agent votes (side + confidence)
            adjustments: agent id -> AuthorityAdjustment
            safety: Current safety state (weighting gates)
            snapshot: Collaboration snapshot; missing context forces independence

        Returns:
            CollaborationDecisionLog with both outcomes and the final decision
        """
        safety = safety or CollaborationSafetyState()
        eligible, excluded = self._gate(votes)

        authority = {
            agent_id: adjustments[agent_id].final_authority
            for agent_id in (v.agent_id for v in eligible)
            if agent_id in adjustments
        }
        baseline = tally(eligible)
        weighted = tally(eligible, authority)
        outcome_changed = baseline.decision != weighted.decision

        neutral_reason = safety.neutral_reason()
        if neutral_reason is None and snapshot is not None and snapshot.independent_due_to_missing_context:
            neutral_reason = "Insufficient environment context: independent routing"

        if neutral_reason is not None:
            final = baseline.decision
            reason = f"{neutral_reason}; baseline decision {final.value} used"
            weighting_applied = False
        else:
            final = weighted.decision
            weighting_applied = True
            if outcome_changed:
                reason = (
                    f"Authority weighting changed decision from "
                    f"{baseline.decision.value} to {weighted.decision.value}"
                )
            else:
                reason = f"Weighted and baseline votes agree on {final.value}"

        log = CollaborationDecisionLog(
            participating_agents=[v.agent_id for v in eligible],
            baseline_voting_result=baseline,
            weighted_voting_result=weighted,
            outcome_changed=outcome_changed,
            final_decision=final,
            final_decision_reason=reason,
            weighting_applied=weighting_applied,
            top_collaboration_factors=self._top_factors(
                {k: v for k, v in adjustments.items() if k in authority}
            ),
            excluded_agents=excluded,
        )

        logger.info(
            "collaboration_vote",
            participants=len(eligible),
            excluded=len(excluded),
            baseline=baseline.decision.value,
            weighted=weighted.decision.value,
            final=final.value,
            weighting_applied=weighting_applied,
        )
        return log
