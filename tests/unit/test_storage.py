"""
Tests for storage backends.

DuckDB runs against a file in a temporary directory; Redis uses a
dict-backed mock client.
"""

import json
import pytest
from unittest.mock import Mock, patch

from src.collaboration import CollaborationSafetyState, StatsAggregate, StatsKey
from src.deployment import DeploymentLadder, DeploymentRecord, DeploymentState
from src.ledger import EnvironmentKey, LearnMode, PagedTradeFetcher
from src.storage import (
    CycleCommit,
    DuckDBStore,
    InMemoryDeploymentRepository,
    InMemorySnapshotStore,
    InMemoryStatsRepository,
    PortfolioSnapshotStore,
    PublishedSnapshot,
    RedisStateStore,
    RepositoryCycleCommitter,
)


@pytest.fixture
def store(temp_dir):
    duckdb_store = DuckDBStore(str(temp_dir / "governor.duckdb"))
    yield duckdb_store
    duckdb_store.close()


class TestDuckDBLedger:
    """Tests for the trade ledger table."""

    def test_pages_in_ledger_order(self, store, make_trade):
        """Test paging returns rows in insertion order."""
        trades = [make_trade(agent_id=f"agent_{i}", minutes=i) for i in range(25)]
        store.insert_trades(trades)

        first = store.fetch_trades_page(0, 10)
        last = store.fetch_trades_page(20, 10)

        assert store.count_trades() == 25
        assert [r["agent_id"] for r in first] == [f"agent_{i}" for i in range(10)]
        assert len(last) == 5

    def test_fetcher_reads_the_whole_ledger(self, store, make_trade):
        """Test the paged fetcher against DuckDB."""
        store.insert_trades([make_trade(pips=5, minutes=i) for i in range(23)])

        trades = PagedTradeFetcher(page_size=10).fetch_all(store.fetch_trades_page)

        assert len(trades) == 23
        assert trades[0].pnl_pips == pytest.approx(5.0)
        assert trades[0].confidence is None

    def test_insert_nothing(self, store):
        assert store.insert_trades([]) == 0


class TestDuckDBStatsRepository:
    """Tests for solo/pair aggregates."""

    def test_update_and_get(self, store):
        """Test read-modify-write of one aggregate."""
        repo = store.stats_repository()
        key = StatsKey.pair("beta", "alpha", LearnMode.LIVE_PRACTICE)

        repo.update(key, lambda current: StatsAggregate(trades=3, expectancy=2.5, win_rate=0.66, sharpe=1.1))
        updated = repo.update(key, lambda current: StatsAggregate(
            trades=current.trades + 1,
            expectancy=current.expectancy,
            win_rate=current.win_rate,
            sharpe=current.sharpe,
        ))

        assert updated.trades == 4
        assert repo.get(key).trades == 4
        assert repo.get(StatsKey.solo("alpha", LearnMode.LIVE_PRACTICE)) is None

    def test_replace_all_round_trips_keys(self, store):
        """Test environment-scoped and fleet-wide keys survive storage."""
        repo = store.stats_repository()
        env = EnvironmentKey.build("london", "trending", "EUR_USD", "long")
        items = [
            (StatsKey.solo("alpha", LearnMode.ALL), StatsAggregate(trades=10, expectancy=1.0)),
            (StatsKey.pair("alpha", "beta", LearnMode.BACKTEST, env), StatsAggregate(trades=4)),
        ]

        repo.replace_all(items)

        assert repo.all() == dict(items)

    def test_replace_all_drops_old_rows(self, store):
        repo = store.stats_repository()
        repo.replace_all([(StatsKey.solo("old", LearnMode.ALL), StatsAggregate(trades=1))])

        repo.replace_all([(StatsKey.solo("new", LearnMode.ALL), StatsAggregate(trades=2))])

        assert list(repo.all()) == [StatsKey.solo("new", LearnMode.ALL)]

    def test_failed_transform_rolls_back(self, store):
        """Test an exception leaves the stored value untouched."""
        repo = store.stats_repository()
        key = StatsKey.solo("alpha", LearnMode.ALL)
        repo.update(key, lambda current: StatsAggregate(trades=1))

        def explode(current):
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError):
            repo.update(key, explode)

        assert repo.get(key).trades == 1

    def test_matches_in_memory_behaviour(self, store):
        """Test both repositories agree on replace_all."""
        items = [(StatsKey.solo("alpha", LearnMode.ALL), StatsAggregate(trades=7, expectancy=0.5))]
        memory = InMemoryStatsRepository()

        memory.replace_all(items)
        store.stats_repository().replace_all(items)

        assert memory.all() == store.stats_repository().all()


class TestDuckDBDeploymentRepository:
    """Tests for persisted deployment records."""

    def test_ladder_on_duckdb(self, store):
        """Test records and history survive a fresh repository view."""
        ladder = DeploymentLadder(repository=store.deployment_repository())
        ladder.initialize_tiers(tier_a=["alpha"], tier_d=["delta"])
        ladder.update_metrics("alpha", shadow_trades=42)

        reloaded = DeploymentLadder(repository=store.deployment_repository())
        alpha = reloaded.get("alpha")

        assert alpha.state == DeploymentState.REDUCED_LIVE
        assert alpha.metrics.shadow_trades == 42
        assert [t.to_state for t in alpha.history] == [
            DeploymentState.SHADOW,
            DeploymentState.REDUCED_LIVE,
        ]
        assert [r.agent_id for r in reloaded.all()] == ["alpha", "delta"]

    def test_transitions_table_is_append_only(self, store):
        """Test each transition is one row in order."""
        ladder = DeploymentLadder(repository=store.deployment_repository())
        ladder.disable("alpha", "incident")
        ladder.reenable("alpha", operator="ops")

        transitions = store.get_transitions("alpha")

        assert list(transitions["seq"]) == [0, 1, 2]
        assert list(transitions["to_state"]) == ["shadow", "disabled", "shadow"]

    def test_transition_times_are_stored(self, store):
        """Test the transition timestamp column survives a read back."""
        ladder = DeploymentLadder(
            repository=store.deployment_repository(),
            clock=lambda: "2024-03-04T12:00:00+00:00",
        )
        ladder.disable("alpha", "incident")

        transitions = store.get_transitions("alpha")
        record = store.deployment_repository().get("alpha")

        assert "transitioned_at" in transitions.columns
        assert list(transitions["transitioned_at"]) == ["2024-03-04T12:00:00+00:00"] * 2
        assert [t.at for t in record.history] == ["2024-03-04T12:00:00+00:00"] * 2
        assert record.history[-1].reason == "incident"


class TestDuckDBSnapshotsAndLogs:

    def test_latest_snapshot(self, store):
        """Test the newest publish wins."""
        snapshots = store.snapshot_store()
        assert snapshots.latest() is None

        snapshots.publish(PublishedSnapshot("{\"a\":1}", "{}", "[]"))
        snapshots.publish(PublishedSnapshot("{\"a\":2}", "{}", "[]"))

        assert snapshots.latest().portfolio_json == "{\"a\":2}"

    def test_decision_logs(self, store):
        """Test logs are stored with their payload."""
        log = Mock()
        log.to_dict.return_value = {
            "final_decision": "LONG",
            "outcome_changed": True,
            "weighting_applied": True,
            "participating_agents": ["alpha", "beta"],
        }

        log_id = store.insert_decision_log(log, logged_at="2024-03-04T12:00:00+00:00")
        logs = store.get_decision_logs()

        assert log_id == 1
        assert len(logs) == 1
        assert logs.iloc[0]["final_decision"] == "LONG"
        assert json.loads(logs.iloc[0]["payload"])["participating_agents"] == ["alpha", "beta"]


AT = "2024-03-04T12:00:00+00:00"


def cycle_commit(base_records=(), records=(), stats=()):
    return CycleCommit(
        records=list(records),
        stats=list(stats),
        snapshot=PublishedSnapshot("{\"cycle\":2}", "{}", "[]"),
        base_records={r.agent_id: r for r in base_records},
    )


class TestCycleCommit:
    """Tests for writing a cycle's records, stats and snapshot together."""

    def test_in_memory_failure_restores_everything(self):
        """Test a failing publish puts stats and records back."""
        stats = InMemoryStatsRepository()
        deployment = InMemoryDeploymentRepository()
        snapshots = Mock(spec=PortfolioSnapshotStore)
        snapshots.publish.side_effect = RuntimeError("disk full")

        alpha = DeploymentRecord.new("alpha", AT)
        deployment.update("alpha", lambda _: alpha)
        stats.replace_all([(StatsKey.solo("alpha", LearnMode.ALL), StatsAggregate(trades=1))])
        stats_before = stats.all()

        cycle = cycle_commit(
            base_records=[alpha],
            records=[
                alpha.with_metrics(alpha.metrics.with_updates(shadow_trades=5)),
                DeploymentRecord.new("beta", AT),
            ],
            stats=[(StatsKey.solo("beta", LearnMode.ALL), StatsAggregate(trades=9))],
        )

        with pytest.raises(RuntimeError):
            RepositoryCycleCommitter(stats, deployment, snapshots).commit(cycle)

        assert deployment.all() == [alpha]
        assert stats.all() == stats_before

    def test_record_changed_mid_cycle_is_kept(self):
        """Test an operator disable is not overwritten by the cycle."""
        deployment = InMemoryDeploymentRepository()
        snapshots = InMemorySnapshotStore()
        base = DeploymentRecord.new("alpha", AT)
        disabled = base.transition(DeploymentState.DISABLED, "incident", AT)
        deployment.update("alpha", lambda _: disabled)

        cycle = cycle_commit(
            base_records=[base],
            records=[base.with_metrics(base.metrics.with_updates(shadow_trades=5))],
        )
        RepositoryCycleCommitter(InMemoryStatsRepository(), deployment, snapshots).commit(cycle)

        assert deployment.get("alpha") == disabled
        assert snapshots.latest() == cycle.snapshot

    def test_duckdb_commit_writes_everything(self, store):
        record = DeploymentRecord.new("alpha", AT)
        key = StatsKey.solo("alpha", LearnMode.ALL)

        store.cycle_committer().commit(cycle_commit(
            records=[record],
            stats=[(key, StatsAggregate(trades=3))],
        ))

        assert store.deployment_repository().get("alpha") == record
        assert store.stats_repository().get(key).trades == 3
        assert store.snapshot_store().latest().portfolio_json == "{\"cycle\":2}"

    def test_duckdb_failure_writes_nothing(self, store):
        """Test a failing snapshot insert rolls back records and stats."""
        committer = store.cycle_committer()
        cycle = cycle_commit(
            records=[DeploymentRecord.new("alpha", AT)],
            stats=[(StatsKey.solo("alpha", LearnMode.ALL), StatsAggregate(trades=3))],
        )

        with patch.object(committer.snapshots, "_insert", side_effect=RuntimeError("disk full")):
            with pytest.raises(RuntimeError):
                committer.commit(cycle)

        assert store.deployment_repository().all() == []
        assert store.stats_repository().all() == {}
        assert store.get_transitions("alpha").empty
        assert store.snapshot_store().latest() is None

    def test_remove_drops_record_and_history(self, store):
        memory = InMemoryDeploymentRepository([DeploymentRecord.new("alpha", AT)])
        duckdb = store.deployment_repository()
        duckdb.update("alpha", lambda _: DeploymentRecord.new("alpha", AT))

        memory.remove("alpha")
        duckdb.remove("alpha")

        assert memory.get("alpha") is None
        assert duckdb.get("alpha") is None
        assert store.get_transitions("alpha").empty


class TestRedisStateStore:
    """Tests for the Redis-backed safety state."""

    def test_defaults_when_empty(self, mock_redis_client):
        """Test an empty key yields the default state."""
        store = RedisStateStore(client=mock_redis_client)

        assert store.get() == CollaborationSafetyState()

    def test_update_persists(self, mock_redis_client):
        """Test transforms are written under the state key."""
        store = RedisStateStore(client=mock_redis_client)

        state = store.update(lambda s: s.freeze_pair("beta", "alpha").with_independent_mode(True))

        assert store.get() == state
        assert store.get().is_frozen("alpha", "beta")
        assert store.get().weighting_active is False
        assert RedisStateStore.SAFETY_KEY in mock_redis_client.data
        mock_redis_client.lock.assert_called_with(RedisStateStore.SAFETY_LOCK, timeout=10.0)

    def test_unchanged_state_is_not_written(self, mock_redis_client):
        store = RedisStateStore(client=mock_redis_client)

        store.update(lambda s: s)

        mock_redis_client.set.assert_not_called()

    def test_reset(self, mock_redis_client):
        """Test reset returns to defaults."""
        store = RedisStateStore(client=mock_redis_client)
        store.update(lambda s: s.with_weighting(False))

        store.reset()

        assert store.get().weighting_enabled is True
