"""
Ensemble Governor application.

One governance cycle:
- Fetch the full trade ledger (paged, before any computation)
- Build strategy streams and a regime-routed, decorrelated portfolio
- Analyze agent collaboration for the learn mode
- Refresh deployment evidence and walk the deployment ladder
- Publish portfolio, collaboration and deployment snapshots together

Between cycles the governor votes on decisions with the latest
collaboration snapshot and feeds resolved outcomes to the fallback guardian.

Usage:
    python -m src.main --trades data/trades.jsonl --regime shock --learn-mode all
    python -m src.main --trades data/trades.jsonl --bars data/eurusd_h1.csv
"""

import json
import logging
import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional, Sequence, Union
import structlog

import pandas as pd

from src.collaboration import (
    AgentVote,
    AuthorityAdjuster,
    CollaborationDecisionLog,
    CollaborationSnapshot,
    CollaborationVoter,
    DecisionOutcome,
    FallbackEvaluation,
    FallbackGuardian,
    analyze_collaboration,
)
from src.collaboration.safety import CollaborationSafetyState
from src.config import EngineConfig, load_config
from src.deployment import DeploymentLadder, DeploymentSnapshot, build_deployment_metrics
from src.ledger import (
    LearnMode,
    PagedTradeFetcher,
    TradeRecord,
    filter_by_learn_mode,
    has_environment_context,
    list_page_function,
)
from src.ledger.fetcher import PageFunction
from src.portfolio import PortfolioConstructor, PortfolioResult, build_streams_from_trades
from src.regime import Regime, RegimeDetector
from src.storage import DuckDBStore, RedisStateStore
from src.storage.repository import (
    CycleCommit,
    CycleCommitter,
    DeploymentRepository,
    InMemoryDeploymentRepository,
    InMemorySafetyStateRepository,
    InMemorySnapshotStore,
    InMemoryStatsRepository,
    PortfolioSnapshotStore,
    PublishedSnapshot,
    RepositoryCycleCommitter,
    SafetyStateRepository,
    StatsRepository,
)

logger = structlog.get_logger(__name__)


def canonical_json(payload) -> str:
    return json.dumps(payload, sort_keys=True, separators=(",", ":"))


@dataclass
class CycleResult:
    """Everything one governance cycle produced."""
    portfolio: PortfolioResult
    collaboration: CollaborationSnapshot
    deployment: list[DeploymentSnapshot] = field(default_factory=list)
    trades: int = 0

    def to_snapshot(self) -> PublishedSnapshot:
        return PublishedSnapshot(
            portfolio_json=self.portfolio.to_json(),
            collaboration_json=canonical_json(self.collaboration.to_dict()),
            deployment_json=canonical_json([s.to_dict() for s in self.deployment]),
        )


class EnsembleGovernor:
    """
    Coordinates portfolio construction, collaboration and deployment.

    All shared state lives in the repositories handed in; the governor
    itself only remembers the last published collaboration snapshot, which
    is the drift baseline for the next cycle and the voting context.
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        stats_repository: Optional[StatsRepository] = None,
        deployment_repository: Optional[DeploymentRepository] = None,
        safety_repository: Optional[SafetyStateRepository] = None,
        snapshot_store: Optional[PortfolioSnapshotStore] = None,
        decision_store=None,
        cycle_committer: Optional[CycleCommitter] = None,
    ):
        """
        Initialize the governor.

        Args:
            config: Engine configuration (defaults when omitted)
            stats_repository: Solo/pair aggregates
            deployment_repository: Deployment records
            safety_repository: Collaboration safety state
            snapshot_store: Where completed cycles are published
            decision_store: Optional sink with insert_decision_log(log)
            cycle_committer: Writes each cycle all-or-nothing (defaults to
                compensating writes over the repositories above)
        """
        self.config = config or EngineConfig()

        self.stats = stats_repository or InMemoryStatsRepository()
        self.snapshots = snapshot_store or InMemorySnapshotStore()
        self.decision_store = decision_store

        self.fetcher = PagedTradeFetcher(
            page_size=self.config.fetch.page_size,
            timeout_seconds=self.config.fetch.timeout_seconds,
        )
        self.constructor = PortfolioConstructor(self.config.portfolio)
        self.adjuster = AuthorityAdjuster(self.config.collaboration)
        self.ladder = DeploymentLadder(
            repository=deployment_repository or InMemoryDeploymentRepository(),
            config=self.config.deployment,
        )
        self.voter = CollaborationVoter(ladder=self.ladder)
        self.committer = cycle_committer or RepositoryCycleCommitter(
            self.stats, self.ladder.repository, self.snapshots,
        )
        self.guardian = FallbackGuardian(
            repository=safety_repository or InMemorySafetyStateRepository(CollaborationSafetyState()),
            threshold=self.config.fallback.degradation_threshold,
        )

        self.collaboration: Optional[CollaborationSnapshot] = None

        logger.info(
            "ensemble_governor_initialized",
            max_correlation=self.config.portfolio.max_correlation,
            fallback_threshold=self.config.fallback.degradation_threshold,
        )

    @classmethod
    def from_stores(
        cls,
        config: EngineConfig,
        duckdb_store: DuckDBStore,
        safety_repository: Optional[SafetyStateRepository] = None,
    ) -> "EnsembleGovernor":
        """Governor backed by DuckDB (and optionally Redis for the safety state)."""
        return cls(
            config=config,
            stats_repository=duckdb_store.stats_repository(),
            deployment_repository=duckdb_store.deployment_repository(),
            safety_repository=safety_repository,
            snapshot_store=duckdb_store.snapshot_store(),
            decision_store=duckdb_store,
            cycle_committer=duckdb_store.cycle_committer(),
        )

    @property
    def safety(self) -> SafetyStateRepository:
        return self.guardian.repository

    def compute(
        self,
        trades: Sequence[TradeRecord],
        regime: Union[Regime, str],
        learn_mode: LearnMode = LearnMode.LIVE_PRACTICE,
    ) -> tuple[PortfolioResult, CollaborationSnapshot]:
        """Pure part of a cycle: nothing is written."""
        portfolio_config = self.config.portfolio

        streams = build_streams_from_trades(
            trades,
            starting_equity=portfolio_config.starting_equity,
            pip_value=portfolio_config.pip_value,
            periods_per_year=portfolio_config.periods_per_year,
        )
        portfolio = self.constructor.construct(streams, regime)

        collaboration = analyze_collaboration(
            trades,
            learn_mode=learn_mode,
            previous=self.collaboration,
            config=self.config.collaboration,
        )
        return portfolio, collaboration

    def run_cycle(
        self,
        fetch_page: PageFunction,
        regime: Union[Regime, str],
        learn_mode: LearnMode = LearnMode.LIVE_PRACTICE,
    ) -> CycleResult:
        """
        Run one governance cycle and publish it.

        Fetch errors and timeouts propagate before anything is computed.
        Deployment changes are staged on a copy of the ladder and committed
        together with the stats and the snapshot; any failure, including
        during the commit, leaves all three as they were.
        """
        trades = self.fetcher.fetch_all(fetch_page)
        portfolio, collaboration = self.compute(trades, regime, learn_mode)

        evidence = build_deployment_metrics(
            filter_trades_for_deployment(trades, learn_mode),
            drift_events=collaboration.drift_events,
            starting_equity=self.config.portfolio.starting_equity,
        )

        ladder = self.ladder.staged()
        base_records = {r.agent_id: r for r in ladder.all()}
        for agent_id, metrics in evidence.items():
            ladder.set_metrics(agent_id, metrics)
            ladder.evaluate(agent_id)

        result = CycleResult(
            portfolio=portfolio,
            collaboration=collaboration,
            deployment=ladder.snapshot(),
            trades=len(trades),
        )

        self.committer.commit(CycleCommit(
            records=[r for r in ladder.all() if r != base_records.get(r.agent_id)],
            stats=list(collaboration.aggregates()),
            snapshot=result.to_snapshot(),
            base_records=base_records,
        ))
        self.collaboration = collaboration

        logger.info(
            "governance_cycle_complete",
            regime=portfolio.regime.value,
            learn_mode=learn_mode.value,
            trades=len(trades),
            accepted=portfolio.accepted_count,
            rejected=portfolio.rejected_count,
            agents=len(result.deployment),
        )
        return result

    def decide(self, votes: Sequence[AgentVote]) -> CollaborationDecisionLog:
        """
        Vote on one decision with the latest collaboration snapshot.

        Agents the deployment ladder blocks are dropped before authority is
        computed, so they never move the authority of agents that do vote.
        """
        snapshot = self.collaboration or CollaborationSnapshot(learn_mode=LearnMode.LIVE_PRACTICE)
        safety = self.safety.get()

        adjustments = self.adjuster.compute(
            snapshot,
            self.voter.eligible_agents(votes),
            safety,
        )
        log = self.voter.decide(votes, adjustments, safety=safety, snapshot=snapshot)

        if self.decision_store is not None:
            self.decision_store.insert_decision_log(log)
        return log

    def record_outcomes(self, outcomes: Sequence[DecisionOutcome]) -> FallbackEvaluation:
        """Feed resolved decisions to the fallback guardian."""
        return self.guardian.evaluate_outcomes(outcomes)


def filter_trades_for_deployment(
    trades: Sequence[TradeRecord],
    learn_mode: LearnMode,
) -> list[TradeRecord]:
    """
    Deployment evidence counts the same trades as collaboration stats.

    Untagged trades still count when the ledger lacks context altogether.
    """
    if not has_environment_context(list(trades)):
        return list(trades)
    return filter_by_learn_mode(trades, learn_mode)


def setup_logging(level: str = "INFO") -> None:
    """Configure structlog JSON logging."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer(),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def read_trades_jsonl(path: str) -> list[dict]:
    """One ledger row per line; blank lines are skipped."""
    rows = []
    with open(path) as f:
        for line in f:
            line = line.strip()
            if line:
                rows.append(json.loads(line))
    return rows


def detect_regime_from_bars(path: str, detector: Optional[RegimeDetector] = None) -> Regime:
    """
    Classify the routing regime from an OHLC CSV.

    The file needs high, low and close columns; a timestamp column is
    optional. Thin files classify as range.
    """
    bars = pd.read_csv(path)
    reading = (detector or RegimeDetector()).detect_regime(bars, symbol=Path(path).stem)
    logger.info(
        "regime_detected_from_bars",
        path=path,
        regime=reading.regime.value,
        adx=reading.adx,
        vol_ratio=reading.vol_ratio,
        sufficient_data=reading.sufficient_data,
    )
    return reading.regime


def main():
    """Entry point: one governance cycle over a JSONL ledger."""
    import argparse
    from dotenv import load_dotenv

    parser = argparse.ArgumentParser(description="Ensemble Governor")
    parser.add_argument("--trades", required=True, help="JSONL trade ledger")
    parser.add_argument("--regime", default="range", help="trend, range, shock or a ledger regime label")
    parser.add_argument("--bars", help="OHLC CSV; the regime detected from it overrides --regime")
    parser.add_argument(
        "--learn-mode",
        default=LearnMode.LIVE_PRACTICE.value,
        choices=[m.value for m in LearnMode],
    )
    parser.add_argument("--config", default="config/settings.yaml")
    parser.add_argument("--persist", action="store_true", help="Store state in DuckDB")
    parser.add_argument("--redis", action="store_true", help="Keep the safety state in Redis")

    args = parser.parse_args()

    load_dotenv()
    config = load_config(args.config)
    setup_logging(config.log_level)

    if not Path(args.trades).exists():
        logger.error("trades_file_not_found", path=args.trades)
        sys.exit(1)

    regime = args.regime
    if args.bars:
        if not Path(args.bars).exists():
            logger.error("bars_file_not_found", path=args.bars)
            sys.exit(1)
        regime = detect_regime_from_bars(args.bars)

    if args.persist:
        store = DuckDBStore(config.storage.duckdb_path)
        safety = None
        if args.redis:
            safety = RedisStateStore(
                host=config.storage.redis_host,
                port=config.storage.redis_port,
                db=config.storage.redis_db,
                password=os.environ.get("REDIS_PASSWORD"),
            )
        governor = EnsembleGovernor.from_stores(config, store, safety_repository=safety)
    else:
        governor = EnsembleGovernor(config=config)

    try:
        result = governor.run_cycle(
            list_page_function(read_trades_jsonl(args.trades)),
            regime=regime,
            learn_mode=LearnMode(args.learn_mode),
        )
    except Exception as e:
        logger.exception("governance_cycle_failed", error=str(e))
        sys.exit(1)

    print(json.dumps(
        {
            "portfolio": result.portfolio.to_dict(),
            "deployment": [s.to_dict() for s in result.deployment],
        },
        indent=2,
        sort_keys=True,
    ))


if __name__ == "__main__":
    main()
