"""
Agent collaboration module.

Handles:
- Solo and pair statistics from the trade ledger
- Pair classification and drift detection
- Authority adjustment and weighted voting
- Safety state and automatic fallback to baseline voting
"""

from src.collaboration.stats import (
    AgentPairStats,
    AgentSoloStats,
    CollaborationLabel,
    CollaborationSnapshot,
    DriftEvent,
    StatsAggregate,
    StatsKey,
    analyze_collaboration,
    classify_pair,
    detect_drift,
)
from src.collaboration.safety import CollaborationSafetyState
from src.collaboration.authority import (
    AUTHORITY_MAX,
    AUTHORITY_MIN,
    AuthorityAdjuster,
    AuthorityAdjustment,
)
from src.collaboration.voting import (
    AgentVote,
    CollaborationDecisionLog,
    CollaborationVoter,
    VoteSide,
    VotingResult,
)
from src.collaboration.fallback import (
    DecisionOutcome,
    FallbackEvaluation,
    FallbackGuardian,
    FallbackState,
)

__all__ = [
    "AgentPairStats",
    "AgentSoloStats",
    "CollaborationLabel",
    "CollaborationSnapshot",
    "DriftEvent",
    "StatsAggregate",
    "StatsKey",
    "analyze_collaboration",
    "classify_pair",
    "detect_drift",
    "CollaborationSafetyState",
    "AUTHORITY_MAX",
    "AUTHORITY_MIN",
    "AuthorityAdjuster",
    "AuthorityAdjustment",
    "AgentVote",
    "CollaborationDecisionLog",
    "CollaborationVoter",
    "VoteSide",
    "VotingResult",
    "DecisionOutcome",
    "FallbackEvaluation",
    "FallbackGuardian",
    "FallbackState",
]
