"""
Storage layer with separated concerns.

- Repository interfaces with thread-safe in-memory implementations
- DuckDB: Trade ledger, aggregates, deployment records, snapshots
- Redis: Shared safety state

Algorithms talk to the repository interfaces only.
"""

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
from src.storage.duckdb_store import DuckDBCycleCommitter, DuckDBStore
from src.storage.redis_state import RedisStateStore

__all__ = [
    "CycleCommit",
    "CycleCommitter",
    "DeploymentRepository",
    "InMemoryDeploymentRepository",
    "InMemorySafetyStateRepository",
    "InMemorySnapshotStore",
    "InMemoryStatsRepository",
    "PortfolioSnapshotStore",
    "PublishedSnapshot",
    "RepositoryCycleCommitter",
    "SafetyStateRepository",
    "StatsRepository",
    "DuckDBCycleCommitter",
    "DuckDBStore",
    "RedisStateStore",
]
