"""
Collaboration statistics.

Builds solo and pair performance aggregates from the trade ledger and
classifies every agent pair:
- PREDICTIVE-VETO: the pair's disagreements reliably flag bad trades
- SYNERGY / CONFLICT / NEUTRAL: paired expectancy vs. average solo expectancy
- INSUFFICIENT_DATA: fewer paired opportunities than the sample floor

Paired opportunity = two or more agents trading the same instrument inside
the same pairing window (5 minutes by default).
"""

from collections import defaultdict
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Iterator, NamedTuple, Optional, Sequence
import structlog

import numpy as np

from src.config import CollaborationConfig
from src.ledger.environment import EnvironmentKey, normalize_direction, normalize_instrument
from src.ledger.trades import (
    LearnMode,
    TradeRecord,
    filter_by_learn_mode,
    has_environment_context,
)

logger = structlog.get_logger(__name__)

PROFIT_FACTOR_CAP = 99.0


class CollaborationLabel(Enum):
    """Relationship between two agents."""
    SYNERGY = "SYNERGY"
    NEUTRAL = "NEUTRAL"
    CONFLICT = "CONFLICT"
    PREDICTIVE_VETO = "PREDICTIVE-VETO"
    INSUFFICIENT_DATA = "INSUFFICIENT_DATA"


# Higher = healthier. INSUFFICIENT_DATA is unranked.
LABEL_RANK = {
    CollaborationLabel.CONFLICT: 0,
    CollaborationLabel.NEUTRAL: 1,
    CollaborationLabel.PREDICTIVE_VETO: 2,
    CollaborationLabel.SYNERGY: 3,
}


def pair_key(agent_a: str, agent_b: str) -> tuple[str, str]:
    """Canonical (sorted) key for an unordered agent pair."""
    return tuple(sorted((agent_a, agent_b)))


class StatsKey(NamedTuple):
    """
    Durable aggregate key.

    agents is a sorted tuple of one (solo) or two (pair) agent ids;
    environment None means the all-environment aggregate.
    """
    agents: tuple[str, ...]
    environment: Optional[EnvironmentKey]
    learn_mode: LearnMode

    @classmethod
    def solo(cls, agent_id: str, learn_mode: LearnMode,
             environment: Optional[EnvironmentKey] = None) -> "StatsKey":
        return cls((agent_id,), environment, learn_mode)

    @classmethod
    def pair(cls, agent_a: str, agent_b: str, learn_mode: LearnMode,
             environment: Optional[EnvironmentKey] = None) -> "StatsKey":
        return cls(pair_key(agent_a, agent_b), environment, learn_mode)

    def render(self) -> str:
        env = self.environment.render() if self.environment else "*"
        return f"{'::'.join(self.agents)}@{env}#{self.learn_mode.value}"


@dataclass(frozen=True)
class StatsAggregate:
    """Trade count, expectancy (pips), win rate (fraction) and Sharpe."""
    trades: int = 0
    expectancy: float = 0.0
    win_rate: float = 0.0
    sharpe: float = 0.0

    @classmethod
    def from_pnls(cls, pnls: Sequence[float]) -> "StatsAggregate":
        if not pnls:
            return cls()
        arr = np.asarray(pnls, dtype=float)
        mean = float(arr.mean())
        # population std; a flat series divides by 1
        std = float(arr.std()) or 1.0
        return cls(
            trades=len(pnls),
            expectancy=mean,
            win_rate=float((arr > 0).sum()) / len(pnls),
            sharpe=mean / std,
        )

    def to_dict(self) -> dict:
        return {
            "trades": self.trades,
            "expectancy": self.expectancy,
            "win_rate": self.win_rate,
            "sharpe": self.sharpe,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "StatsAggregate":
        return cls(
            trades=int(d.get("trades", 0)),
            expectancy=float(d.get("expectancy", 0.0)),
            win_rate=float(d.get("win_rate", 0.0)),
            sharpe=float(d.get("sharpe", 0.0)),
        )


@dataclass
class AgentSoloStats:
    """One agent's own performance."""
    agent_id: str
    overall: StatsAggregate = field(default_factory=StatsAggregate)
    environments: dict[EnvironmentKey, StatsAggregate] = field(default_factory=dict)

    @property
    def trades(self) -> int:
        return self.overall.trades

    @property
    def expectancy(self) -> float:
        return self.overall.expectancy

    @property
    def sharpe(self) -> float:
        return self.overall.sharpe

    def to_dict(self) -> dict:
        return {
            "agent_id": self.agent_id,
            **self.overall.to_dict(),
            "environments": {
                k.render(): v.to_dict() for k, v in sorted(self.environments.items())
            },
        }


@dataclass
class AgentPairStats:
    """Performance of two agents when they trade the same opportunity."""
    agent_a: str
    agent_b: str
    paired_trades: int
    paired_expectancy: float
    paired_win_rate: float
    paired_sharpe: float
    conflict_frequency: float
    veto_precision: float
    false_veto_rate: float
    co_approval_profit_factor: float
    label: CollaborationLabel = CollaborationLabel.INSUFFICIENT_DATA
    environments: dict[EnvironmentKey, StatsAggregate] = field(default_factory=dict)

    @property
    def key(self) -> tuple[str, str]:
        return pair_key(self.agent_a, self.agent_b)

    def involves(self, agent_id: str) -> bool:
        return agent_id in (self.agent_a, self.agent_b)

    def partner_of(self, agent_id: str) -> str:
        return self.agent_b if agent_id == self.agent_a else self.agent_a

    @property
    def aggregate(self) -> StatsAggregate:
        return StatsAggregate(
            trades=self.paired_trades,
            expectancy=self.paired_expectancy,
            win_rate=self.paired_win_rate,
            sharpe=self.paired_sharpe,
        )

    def to_dict(self) -> dict:
        return {
            "agent_a": self.agent_a,
            "agent_b": self.agent_b,
            "paired_trades": self.paired_trades,
            "paired_expectancy": self.paired_expectancy,
            "paired_win_rate": self.paired_win_rate,
            "paired_sharpe": self.paired_sharpe,
            "conflict_frequency": self.conflict_frequency,
            "veto_precision": self.veto_precision,
            "false_veto_rate": self.false_veto_rate,
            "co_approval_profit_factor": self.co_approval_profit_factor,
            "label": self.label.value,
            "environments": {
                k.render(): v.to_dict() for k, v in sorted(self.environments.items())
            },
        }


@dataclass(frozen=True)
class DriftEvent:
    """A pair whose label changed between two snapshots."""
    agents: tuple[str, str]
    previous_label: CollaborationLabel
    current_label: CollaborationLabel
    degradation: bool
    reason: str

    def to_dict(self) -> dict:
        return {
            "agents": list(self.agents),
            "previous_label": self.previous_label.value,
            "current_label": self.current_label.value,
            "degradation": self.degradation,
            "reason": self.reason,
        }


@dataclass
class CollaborationSnapshot:
    """
    Solo and pair statistics for one learn mode.

    independent_due_to_missing_context is set when too little of the ledger
    carries environment labels; pair stats are then empty and the voter runs
    independently.
    """
    learn_mode: LearnMode
    solo_stats: dict[str, AgentSoloStats] = field(default_factory=dict)
    pair_stats: list[AgentPairStats] = field(default_factory=list)
    drift_events: list[DriftEvent] = field(default_factory=list)
    independent_due_to_missing_context: bool = False

    def pair(self, agent_a: str, agent_b: str) -> Optional[AgentPairStats]:
        key = pair_key(agent_a, agent_b)
        for stats in self.pair_stats:
            if stats.key == key:
                return stats
        return None

    def solo_expectancy(self, agent_id: str) -> float:
        stats = self.solo_stats.get(agent_id)
        return stats.expectancy if stats else 0.0

    def aggregates(self) -> Iterator[tuple[StatsKey, StatsAggregate]]:
        """Every durable aggregate in this snapshot, keyed for a StatsRepository."""
        for agent_id, solo in self.solo_stats.items():
            yield StatsKey.solo(agent_id, self.learn_mode), solo.overall
            for env, agg in solo.environments.items():
                yield StatsKey.solo(agent_id, self.learn_mode, env), agg
        for pair in self.pair_stats:
            yield StatsKey.pair(pair.agent_a, pair.agent_b, self.learn_mode), pair.aggregate
            for env, agg in pair.environments.items():
                yield StatsKey.pair(pair.agent_a, pair.agent_b, self.learn_mode, env), agg

    def to_dict(self) -> dict:
        return {
            "learn_mode": self.learn_mode.value,
            "solo_stats": {k: v.to_dict() for k, v in sorted(self.solo_stats.items())},
            "pair_stats": [p.to_dict() for p in self.pair_stats],
            "drift_events": [e.to_dict() for e in self.drift_events],
            "independent_due_to_missing_context": self.independent_due_to_missing_context,
        }


def _group_pnls(trades: Iterable[TradeRecord]) -> dict[EnvironmentKey, list[float]]:
    grouped: dict[EnvironmentKey, list[float]] = defaultdict(list)
    for trade in trades:
        grouped[trade.environment_key.without_agent()].append(trade.pnl_pips)
    return grouped


def compute_solo_stats(
    trades: Iterable[TradeRecord],
    agent_ids: Iterable[str] = (),
) -> dict[str, AgentSoloStats]:
    """
    Solo stats for every agent in the ledger (plus any extra agent_ids).

    Only closed trades with both prices count. Agents with no such trades
    get zeroed stats.
    """
    by_agent: dict[str, list[TradeRecord]] = defaultdict(list)
    for trade in trades:
        if trade.is_closed:
            by_agent[trade.agent_id].append(trade)

    stats = {}
    for agent_id in sorted(set(by_agent) | set(agent_ids)):
        agent_trades = by_agent.get(agent_id, [])
        stats[agent_id] = AgentSoloStats(
            agent_id=agent_id,
            overall=StatsAggregate.from_pnls([t.pnl_pips for t in agent_trades]),
            environments={
                env: StatsAggregate.from_pnls(pnls)
                for env, pnls in _group_pnls(agent_trades).items()
            },
        )
    return stats


def find_paired_trades(
    trades: Iterable[TradeRecord],
    window_minutes: int = 5,
) -> dict[tuple[str, str], list[list[TradeRecord]]]:
    """
    Group co-occurring trades.

    Returns:
        pair key -> one trade group per shared (instrument, window) bucket,
        each group holding both agents' trades from that bucket
    """
    window_seconds = window_minutes * 60
    buckets: dict[tuple[str, int], list[TradeRecord]] = defaultdict(list)

    for trade in trades:
        if not trade.is_closed:
            continue
        bucket = int(trade.created_at.timestamp() // window_seconds)
        buckets[(normalize_instrument(trade.pair), bucket)].append(trade)

    pairs: dict[tuple[str, str], list[list[TradeRecord]]] = defaultdict(list)
    for bucket_key in sorted(buckets):
        group = buckets[bucket_key]
        agent_ids = sorted({t.agent_id for t in group})
        if len(agent_ids) < 2:
            continue
        for i, agent_a in enumerate(agent_ids):
            for agent_b in agent_ids[i + 1:]:
                pairs[(agent_a, agent_b)].append(
                    [t for t in group if t.agent_id in (agent_a, agent_b)]
                )
    return pairs


def classify_pair(
    paired_trades: int,
    veto_precision: float,
    false_veto_rate: float,
    paired_expectancy: float,
    avg_solo_expectancy: float,
    config: Optional[CollaborationConfig] = None,
) -> CollaborationLabel:
    """
    Classify a pair with fixed thresholds.

    Below the paired-trade floor the pair is INSUFFICIENT_DATA no matter how
    good the raw rates look.
    """
    config = config or CollaborationConfig()

    if paired_trades < config.min_paired_trades:
        return CollaborationLabel.INSUFFICIENT_DATA

    if (veto_precision >= config.veto_precision_threshold
            and false_veto_rate <= config.false_veto_max):
        return CollaborationLabel.PREDICTIVE_VETO

    if avg_solo_expectancy <= 0:
        if paired_expectancy > 0:
            return CollaborationLabel.SYNERGY
        return CollaborationLabel.CONFLICT

    ratio = paired_expectancy / avg_solo_expectancy
    if ratio >= config.synergy_threshold:
        return CollaborationLabel.SYNERGY
    if ratio < config.conflict_threshold:
        return CollaborationLabel.CONFLICT
    return CollaborationLabel.NEUTRAL


def _is_conflict(a_trades: list[TradeRecord], b_trades: list[TradeRecord]) -> bool:
    a_dirs = {normalize_direction(t.direction) for t in a_trades}
    b_dirs = {normalize_direction(t.direction) for t in b_trades}
    return ("LONG" in a_dirs and "SHORT" in b_dirs) or ("SHORT" in a_dirs and "LONG" in b_dirs)


def build_pair_stats(
    trades: Sequence[TradeRecord],
    solo_stats: dict[str, AgentSoloStats],
    config: Optional[CollaborationConfig] = None,
) -> list[AgentPairStats]:
    """Pair performance matrix, most paired opportunities first."""
    config = config or CollaborationConfig()
    results = []

    for (agent_a, agent_b), groups in sorted(
        find_paired_trades(trades, config.pairing_window_minutes).items()
    ):
        pnls: list[float] = []
        env_pnls: dict[EnvironmentKey, list[float]] = defaultdict(list)
        conflicts = 0
        precise_vetoes = 0
        false_vetoes = 0

        for group in groups:
            a_trades = [t for t in group if t.agent_id == agent_a]
            b_trades = [t for t in group if t.agent_id == agent_b]

            if _is_conflict(a_trades, b_trades):
                conflicts += 1
                if sum(t.pnl_pips for t in group) > 0:
                    precise_vetoes += 1
                else:
                    false_vetoes += 1

            for trade in group:
                pnl = trade.pnl_pips
                pnls.append(pnl)
                env_pnls[trade.environment_key.without_agent()].append(pnl)

        gross_win = sum(p for p in pnls if p > 0)
        gross_loss = sum(-p for p in pnls if p <= 0)
        if gross_loss > 0:
            profit_factor = gross_win / gross_loss
        else:
            profit_factor = PROFIT_FACTOR_CAP if gross_win > 0 else 0.0

        paired = StatsAggregate.from_pnls(pnls)
        veto_precision = precise_vetoes / conflicts if conflicts else 0.0
        false_veto_rate = false_vetoes / conflicts if conflicts else 0.0
        avg_solo = (
            (solo_stats[agent_a].expectancy if agent_a in solo_stats else 0.0)
            + (solo_stats[agent_b].expectancy if agent_b in solo_stats else 0.0)
        ) / 2

        stats = AgentPairStats(
            agent_a=agent_a,
            agent_b=agent_b,
            paired_trades=len(groups),
            paired_expectancy=paired.expectancy,
            paired_win_rate=paired.win_rate,
            paired_sharpe=paired.sharpe,
            conflict_frequency=conflicts / len(groups),
            veto_precision=veto_precision,
            false_veto_rate=false_veto_rate,
            co_approval_profit_factor=profit_factor,
            environments={env: StatsAggregate.from_pnls(p) for env, p in env_pnls.items()},
        )
        stats.label = classify_pair(
            paired_trades=stats.paired_trades,
            veto_precision=veto_precision,
            false_veto_rate=false_veto_rate,
            paired_expectancy=stats.paired_expectancy,
            avg_solo_expectancy=avg_solo,
            config=config,
        )
        results.append(stats)

    # stable: equal counts stay in pair-key order
    results.sort(key=lambda s: -s.paired_trades)
    return results


def detect_drift(
    current: Sequence[AgentPairStats],
    previous: Optional[CollaborationSnapshot],
) -> list[DriftEvent]:
    """
    Label changes against an explicitly supplied previous snapshot.

    Changes into INSUFFICIENT_DATA are not drift; the pair simply has too
    little recent evidence.
    """
    if previous is None:
        return []

    previous_by_key = {p.key: p for p in previous.pair_stats}
    events = []

    for stats in current:
        prev = previous_by_key.get(stats.key)
        if prev is None or prev.label == stats.label:
            continue
        if stats.label == CollaborationLabel.INSUFFICIENT_DATA:
            continue

        prev_rank = LABEL_RANK.get(prev.label)
        degradation = prev_rank is not None and LABEL_RANK[stats.label] < prev_rank
        verb = "degraded" if degradation else "improved"

        events.append(DriftEvent(
            agents=stats.key,
            previous_label=prev.label,
            current_label=stats.label,
            degradation=degradation,
            reason=(
                f"Collaboration {verb}: {prev.label.value} -> {stats.label.value}, "
                f"expectancy {prev.paired_expectancy:.2f}p -> {stats.paired_expectancy:.2f}p"
            ),
        ))

    if events:
        logger.info(
            "collaboration_drift_detected",
            events=len(events),
            degradations=sum(1 for e in events if e.degradation),
        )
    return events


def analyze_collaboration(
    trades: Sequence[TradeRecord],
    learn_mode: LearnMode = LearnMode.LIVE_PRACTICE,
    previous: Optional[CollaborationSnapshot] = None,
    config: Optional[CollaborationConfig] = None,
) -> CollaborationSnapshot:
    """
    Full collaboration analysis: solo stats, pair matrix, drift.

    Context sufficiency is judged on the unfiltered ledger.
    """
    config = config or CollaborationConfig()

    filtered = filter_by_learn_mode(trades, learn_mode)
    context_ok = has_environment_context(list(trades), config.min_context_fraction)

    solo = compute_solo_stats(filtered)
    pairs = build_pair_stats(filtered, solo, config) if context_ok else []
    drift = detect_drift(pairs, previous) if context_ok else []

    if not context_ok:
        logger.warning(
            "collaboration_missing_environment_context",
            trades=len(trades),
            learn_mode=learn_mode.value,
        )

    snapshot = CollaborationSnapshot(
        learn_mode=learn_mode,
        solo_stats=solo,
        pair_stats=pairs,
        drift_events=drift,
        independent_due_to_missing_context=not context_ok,
    )

    logger.info(
        "collaboration_analyzed",
        learn_mode=learn_mode.value,
        trades=len(filtered),
        agents=len(solo),
        pairs=len(pairs),
        drift_events=len(drift),
    )
    return snapshot
