"""
DuckDB storage for governance state and the trade ledger.

DuckDB is used for:
- The trade ledger (paged reads for the fetcher)
- Solo/pair aggregates keyed by StatsKey
- Deployment records with an append-only transition table
- Collaboration decision logs
- Published cycle snapshots

Every read-modify-write runs under a process lock inside a DuckDB
transaction; a failure rolls back and leaves the stored state untouched.
"""

import json
import threading
from contextlib import contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Iterable, Optional
import structlog

import duckdb
import pandas as pd

from src.collaboration.stats import StatsAggregate, StatsKey
from src.deployment.records import DeploymentMetrics, DeploymentRecord, DeploymentState, Transition
from src.ledger.environment import EnvironmentKey
from src.ledger.trades import LearnMode, TradeRecord
from src.storage.repository import (
    CycleCommitter,
    DeploymentRepository,
    PortfolioSnapshotStore,
    PublishedSnapshot,
    StatsRepository,
    reconcile_record,
)

logger = structlog.get_logger(__name__)

ALL_ENVIRONMENTS = "*"


class DuckDBStore:
    """
    DuckDB store for governance state.

    Design principles:
    - Ledger rows are append-only and read in fixed-size pages
    - Transition history is append-only
    - Multi-row writes are transactional
    """

    def __init__(self, db_path: str, read_only: bool = False):
        """
        Initialize DuckDB store.

        Args:
            db_path: Path to DuckDB file (":memory:" for an in-process database)
            read_only: Open in read-only mode
        """
        self.db_path = db_path
        self.read_only = read_only
        self._lock = threading.RLock()

        if db_path != ":memory:":
            Path(db_path).parent.mkdir(parents=True, exist_ok=True)

        self.conn = duckdb.connect(str(db_path), read_only=read_only)

        if not read_only:
            self._init_schema()

        logger.info(
            "duckdb_store_initialized",
            path=str(db_path),
            read_only=read_only,
        )

    def _init_schema(self) -> None:
        """Initialize database schema."""

        # Trade ledger
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS trades (
                ledger_seq BIGINT PRIMARY KEY,
                agent_id VARCHAR NOT NULL,
                pair VARCHAR NOT NULL,
                direction VARCHAR NOT NULL,
                entry_price DOUBLE,
                exit_price DOUBLE,
                session_label VARCHAR,
                regime_label VARCHAR,
                environment VARCHAR,
                created_at VARCHAR NOT NULL,
                status VARCHAR NOT NULL,
                confidence DOUBLE
            )
        """)

        # Solo / pair aggregates
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS stats (
                agents VARCHAR NOT NULL,
                environment VARCHAR NOT NULL,
                learn_mode VARCHAR NOT NULL,

                trades INTEGER NOT NULL,
                expectancy DOUBLE NOT NULL,
                win_rate DOUBLE NOT NULL,
                sharpe DOUBLE NOT NULL,

                PRIMARY KEY (agents, environment, learn_mode)
            )
        """)

        # Current deployment state per agent
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS deployment_records (
                agent_id VARCHAR PRIMARY KEY,
                state VARCHAR NOT NULL,
                metrics JSON NOT NULL
            )
        """)

        # Append-only transition history
        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS deployment_transitions (
                agent_id VARCHAR NOT NULL,
                seq INTEGER NOT NULL,
                from_state VARCHAR,
                to_state VARCHAR NOT NULL,
                reason VARCHAR,
                transitioned_at VARCHAR NOT NULL,

                PRIMARY KEY (agent_id, seq)
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS decision_logs (
                log_id BIGINT PRIMARY KEY,
                logged_at VARCHAR NOT NULL,
                final_decision VARCHAR NOT NULL,
                outcome_changed BOOLEAN NOT NULL,
                weighting_applied BOOLEAN NOT NULL,
                payload JSON NOT NULL
            )
        """)

        self.conn.execute("""
            CREATE TABLE IF NOT EXISTS portfolio_snapshots (
                snapshot_id BIGINT PRIMARY KEY,
                published_at VARCHAR NOT NULL,
                portfolio_json VARCHAR NOT NULL,
                collaboration_json VARCHAR NOT NULL,
                deployment_json VARCHAR NOT NULL
            )
        """)

        self.conn.commit()
        logger.info("duckdb_schema_initialized")

    @contextmanager
    def transaction(self):
        """Serialize and wrap a unit of work in a DuckDB transaction."""
        with self._lock:
            self.conn.begin()
            try:
                yield self.conn
            except Exception:
                self.conn.rollback()
                logger.warning("duckdb_transaction_rolled_back")
                raise
            self.conn.commit()

    def _next_id(self, table: str, column: str) -> int:
        row = self.conn.execute(f"SELECT COALESCE(MAX({column}), 0) FROM {table}").fetchone()
        return int(row[0]) + 1

    # =========================================================================
    # Trade Ledger
    # =========================================================================

    def insert_trades(self, trades: Iterable[TradeRecord]) -> int:
        """Append trades to the ledger in the given order."""
        rows = [t.to_dict() for t in trades]
        if not rows:
            return 0

        with self.transaction() as conn:
            start = self._next_id("trades", "ledger_seq")
            conn.executemany("""
                INSERT INTO trades
                (ledger_seq, agent_id, pair, direction, entry_price, exit_price,
                 session_label, regime_label, environment, created_at, status, confidence)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """, [
                [
                    start + i,
                    r["agent_id"],
                    r["pair"],
                    r["direction"],
                    r["entry_price"],
                    r["exit_price"],
                    r["session_label"],
                    r["regime_label"],
                    r["environment"],
                    r["created_at"],
                    r["status"],
                    r["confidence"],
                ]
                for i, r in enumerate(rows)
            ])

        logger.debug("trades_inserted", count=len(rows))
        return len(rows)

    def fetch_trades_page(self, offset: int, limit: int) -> list[dict]:
        """One ledger page in ledger order."""
        with self._lock:
            df = self.conn.execute("""
                SELECT agent_id, pair, direction, entry_price, exit_price,
                       session_label, regime_label, environment, created_at,
                       status, confidence
                FROM trades
                ORDER BY ledger_seq
                LIMIT ? OFFSET ?
            """, [limit, offset]).fetchdf()

        # NaN -> None so optional fields round-trip
        df = df.astype(object).where(pd.notna(df), None)
        return df.to_dict(orient="records")

    def count_trades(self) -> int:
        with self._lock:
            return int(self.conn.execute("SELECT COUNT(*) FROM trades").fetchone()[0])

    # =========================================================================
    # Decision Logs
    # =========================================================================

    def insert_decision_log(self, log: Any, logged_at: Optional[str] = None) -> int:
        """Store a CollaborationDecisionLog."""
        payload = log.to_dict()
        with self.transaction() as conn:
            log_id = self._next_id("decision_logs", "log_id")
            conn.execute("""
                INSERT INTO decision_logs
                (log_id, logged_at, final_decision, outcome_changed, weighting_applied, payload)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                log_id,
                logged_at or datetime.now(timezone.utc).isoformat(),
                payload["final_decision"],
                payload["outcome_changed"],
                payload["weighting_applied"],
                json.dumps(payload, sort_keys=True),
            ])
        return log_id

    def get_decision_logs(self, limit: int = 100) -> pd.DataFrame:
        with self._lock:
            return self.conn.execute("""
                SELECT *
                FROM decision_logs
                ORDER BY log_id DESC
                LIMIT ?
            """, [limit]).fetchdf()

    def get_transitions(self, agent_id: str) -> pd.DataFrame:
        with self._lock:
            return self.conn.execute("""
                SELECT *
                FROM deployment_transitions
                WHERE agent_id = ?
                ORDER BY seq
            """, [agent_id]).fetchdf()

    # =========================================================================
    # Repository views
    # =========================================================================

    def stats_repository(self) -> "DuckDBStatsRepository":
        return DuckDBStatsRepository(self)

    def deployment_repository(self) -> "DuckDBDeploymentRepository":
        return DuckDBDeploymentRepository(self)

    def snapshot_store(self) -> "DuckDBSnapshotStore":
        return DuckDBSnapshotStore(self)

    def cycle_committer(self) -> "DuckDBCycleCommitter":
        return DuckDBCycleCommitter(self)

    def execute(self, query: str, params: list = None) -> Any:
        """Execute a raw query (for ad-hoc analysis)."""
        with self._lock:
            if params:
                return self.conn.execute(query, params)
            return self.conn.execute(query)

    def close(self) -> None:
        """Close the database connection."""
        self.conn.close()
        logger.info("duckdb_store_closed", path=str(self.db_path))


def _stats_key_columns(key: StatsKey) -> list:
    environment = key.environment.render() if key.environment else ALL_ENVIRONMENTS
    return ["::".join(key.agents), environment, key.learn_mode.value]


def _stats_key_from_row(agents: str, environment: str, learn_mode: str) -> StatsKey:
    env = None if environment == ALL_ENVIRONMENTS else EnvironmentKey.parse(environment)
    return StatsKey(tuple(agents.split("::")), env, LearnMode(learn_mode))


class DuckDBStatsRepository(StatsRepository):

    def __init__(self, store: DuckDBStore):
        self.store = store

    def _read(self, conn, key: StatsKey) -> Optional[StatsAggregate]:
        row = conn.execute("""
            SELECT trades, expectancy, win_rate, sharpe
            FROM stats
            WHERE agents = ? AND environment = ? AND learn_mode = ?
        """, _stats_key_columns(key)).fetchone()
        if row is None:
            return None
        return StatsAggregate(trades=row[0], expectancy=row[1], win_rate=row[2], sharpe=row[3])

    def _write(self, conn, key: StatsKey, value: StatsAggregate) -> None:
        conn.execute("""
            INSERT OR REPLACE INTO stats
            (agents, environment, learn_mode, trades, expectancy, win_rate, sharpe)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        """, _stats_key_columns(key) + [value.trades, value.expectancy, value.win_rate, value.sharpe])

    def get(self, key):
        with self.store._lock:
            return self._read(self.store.conn, key)

    def update(self, key, transform):
        with self.store.transaction() as conn:
            value = transform(self._read(conn, key))
            self._write(conn, key, value)
        return value

    def _replace_all(self, conn, items: list) -> None:
        conn.execute("DELETE FROM stats")
        for key, value in items:
            self._write(conn, key, value)

    def replace_all(self, items):
        items = list(items)
        with self.store.transaction() as conn:
            self._replace_all(conn, items)
        logger.debug("stats_replaced", count=len(items))

    def all(self):
        with self.store._lock:
            df = self.store.conn.execute("SELECT * FROM stats").fetchdf()
        return {
            _stats_key_from_row(r.agents, r.environment, r.learn_mode): StatsAggregate(
                trades=int(r.trades),
                expectancy=float(r.expectancy),
                win_rate=float(r.win_rate),
                sharpe=float(r.sharpe),
            )
            for r in df.itertuples(index=False)
        }


class DuckDBDeploymentRepository(DeploymentRepository):

    def __init__(self, store: DuckDBStore):
        self.store = store

    def _read(self, conn, agent_id: str) -> Optional[DeploymentRecord]:
        row = conn.execute(
            "SELECT state, metrics FROM deployment_records WHERE agent_id = ?",
            [agent_id],
        ).fetchone()
        if row is None:
            return None

        transitions = conn.execute("""
            SELECT from_state, to_state, reason, transitioned_at
            FROM deployment_transitions
            WHERE agent_id = ?
            ORDER BY seq
        """, [agent_id]).fetchall()

        return DeploymentRecord(
            agent_id=agent_id,
            state=DeploymentState(row[0]),
            metrics=DeploymentMetrics.from_dict(json.loads(row[1])),
            history=tuple(
                Transition(
                    from_state=DeploymentState(t[0]) if t[0] else None,
                    to_state=DeploymentState(t[1]),
                    reason=t[2] or "",
                    at=t[3],
                )
                for t in transitions
            ),
        )

    def _write(self, conn, record: DeploymentRecord, stored: int) -> None:
        """Upsert the record and append history past the first stored rows."""
        conn.execute("""
            INSERT OR REPLACE INTO deployment_records (agent_id, state, metrics)
            VALUES (?, ?, ?)
        """, [record.agent_id, record.state.value, json.dumps(record.metrics.to_dict())])

        # history only grows; persist the new tail
        for seq, t in enumerate(record.history[stored:], start=stored):
            conn.execute("""
                INSERT INTO deployment_transitions
                (agent_id, seq, from_state, to_state, reason, transitioned_at)
                VALUES (?, ?, ?, ?, ?, ?)
            """, [
                record.agent_id,
                seq,
                t.from_state.value if t.from_state else None,
                t.to_state.value,
                t.reason,
                t.at,
            ])

    def update(self, agent_id, transform):
        with self.store.transaction() as conn:
            current = self._read(conn, agent_id)
            record = transform(current)
            self._write(conn, record, len(current.history) if current else 0)
        return record

    def remove(self, agent_id):
        with self.store.transaction() as conn:
            conn.execute("DELETE FROM deployment_transitions WHERE agent_id = ?", [agent_id])
            conn.execute("DELETE FROM deployment_records WHERE agent_id = ?", [agent_id])

    def get(self, agent_id):
        with self.store._lock:
            return self._read(self.store.conn, agent_id)

    def all(self):
        with self.store._lock:
            ids = [r[0] for r in self.store.conn.execute(
                "SELECT agent_id FROM deployment_records ORDER BY agent_id"
            ).fetchall()]
            return [self._read(self.store.conn, agent_id) for agent_id in ids]


class DuckDBSnapshotStore(PortfolioSnapshotStore):

    def __init__(self, store: DuckDBStore, clock: Callable[[], str] = None):
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc).isoformat())

    def _insert(self, conn, snapshot: PublishedSnapshot) -> int:
        snapshot_id = self.store._next_id("portfolio_snapshots", "snapshot_id")
        conn.execute("""
            INSERT INTO portfolio_snapshots
            (snapshot_id, published_at, portfolio_json, collaboration_json, deployment_json)
            VALUES (?, ?, ?, ?, ?)
        """, [
            snapshot_id,
            self._clock(),
            snapshot.portfolio_json,
            snapshot.collaboration_json,
            snapshot.deployment_json,
        ])
        return snapshot_id

    def publish(self, snapshot):
        with self.store.transaction() as conn:
            snapshot_id = self._insert(conn, snapshot)
        logger.info("portfolio_snapshot_published", snapshot_id=snapshot_id)

    def latest(self):
        with self.store._lock:
            row = self.store.conn.execute("""
                SELECT portfolio_json, collaboration_json, deployment_json
                FROM portfolio_snapshots
                ORDER BY snapshot_id DESC
                LIMIT 1
            """).fetchone()
        if row is None:
            return None
        return PublishedSnapshot(
            portfolio_json=row[0],
            collaboration_json=row[1],
            deployment_json=row[2],
        )


class DuckDBCycleCommitter(CycleCommitter):
    """Records, stats and the snapshot of a cycle in one DuckDB transaction."""

    def __init__(self, store: DuckDBStore):
        self.store = store
        self.stats = DuckDBStatsRepository(store)
        self.deployment = DuckDBDeploymentRepository(store)
        self.snapshots = DuckDBSnapshotStore(store)

    def commit(self, cycle):
        with self.store.transaction() as conn:
            for staged in cycle.records:
                current = self.deployment._read(conn, staged.agent_id)
                record = reconcile_record(current, staged, cycle.base_records.get(staged.agent_id))
                if record is not current:
                    self.deployment._write(conn, record, len(current.history) if current else 0)

            self.stats._replace_all(conn, list(cycle.stats))
            snapshot_id = self.snapshots._insert(conn, cycle.snapshot)

        logger.info(
            "governance_cycle_committed",
            snapshot_id=snapshot_id,
            records=len(cycle.records),
            stats=len(cycle.stats),
        )
