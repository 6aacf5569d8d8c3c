"""
Repository interfaces for durable governance state.

Every read-modify-write goes through update(key, transform): the transform
receives the current value (or None) and returns the new one, and the
repository stores it atomically. Algorithms never see the storage technology.

In-memory implementations guard each update with a re-entrant lock.

A governance cycle writes deployment records, stats and its snapshot through
a CycleCommitter, so either all three land or none do.
"""

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Callable, Iterable, Mapping, Optional
import structlog

if TYPE_CHECKING:
    from src.collaboration.safety import CollaborationSafetyState
    from src.collaboration.stats import StatsAggregate, StatsKey
    from src.deployment.records import DeploymentRecord

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class PublishedSnapshot:
    """The outputs of one completed governance cycle, as canonical JSON."""
    portfolio_json: str
    collaboration_json: str
    deployment_json: str


@dataclass(frozen=True)
class CycleCommit:
    """
    Everything one governance cycle writes.

    base_records holds the deployment records the cycle started from; a
    stored record that no longer matches its base was changed by someone
    else mid-cycle and is kept.
    """
    records: list["DeploymentRecord"]
    stats: list[tuple["StatsKey", "StatsAggregate"]]
    snapshot: PublishedSnapshot
    base_records: Mapping[str, "DeploymentRecord"] = field(default_factory=dict)


def reconcile_record(
    current: Optional["DeploymentRecord"],
    staged: "DeploymentRecord",
    base: Optional["DeploymentRecord"],
) -> "DeploymentRecord":
    """The staged record, unless the stored one moved since the cycle read it."""
    if current != base:
        logger.warning(
            "deployment_record_changed_during_cycle",
            agent_id=staged.agent_id,
            stored_state=current.state.value if current else None,
            cycle_state=staged.state.value,
        )
        return current
    return staged


class StatsRepository(ABC):
    """Solo and pair aggregates keyed by StatsKey."""

    @abstractmethod
    def get(self, key: "StatsKey") -> Optional["StatsAggregate"]:
        ...

    @abstractmethod
    def update(
        self,
        key: "StatsKey",
        transform: Callable[[Optional["StatsAggregate"]], "StatsAggregate"],
    ) -> "StatsAggregate":
        ...

    @abstractmethod
    def replace_all(self, items: Iterable[tuple["StatsKey", "StatsAggregate"]]) -> None:
        """Atomically replace the stored aggregates with items."""

    @abstractmethod
    def all(self) -> dict["StatsKey", "StatsAggregate"]:
        ...


class DeploymentRepository(ABC):
    """Deployment records keyed by agent id."""

    @abstractmethod
    def get(self, agent_id: str) -> Optional["DeploymentRecord"]:
        ...

    @abstractmethod
    def update(
        self,
        agent_id: str,
        transform: Callable[[Optional["DeploymentRecord"]], "DeploymentRecord"],
    ) -> "DeploymentRecord":
        ...

    @abstractmethod
    def all(self) -> list["DeploymentRecord"]:
        ...

    @abstractmethod
    def remove(self, agent_id: str) -> None:
        """Drop a record and its history."""


class SafetyStateRepository(ABC):
    """The single collaboration safety state."""

    @abstractmethod
    def get(self) -> "CollaborationSafetyState":
        ...

    @abstractmethod
    def update(
        self,
        transform: Callable[["CollaborationSafetyState"], "CollaborationSafetyState"],
    ) -> "CollaborationSafetyState":
        ...


class PortfolioSnapshotStore(ABC):
    """Last published cycle output. Publishing is all-or-nothing."""

    @abstractmethod
    def publish(self, snapshot: PublishedSnapshot) -> None:
        ...

    @abstractmethod
    def latest(self) -> Optional[PublishedSnapshot]:
        ...


class CycleCommitter(ABC):
    """Writes a CycleCommit all-or-nothing."""

    @abstractmethod
    def commit(self, cycle: CycleCommit) -> None:
        ...


class InMemoryStatsRepository(StatsRepository):

    def __init__(self):
        self._items: dict = {}
        self._lock = threading.RLock()

    def get(self, key):
        with self._lock:
            return self._items.get(key)

    def update(self, key, transform):
        with self._lock:
            value = transform(self._items.get(key))
            self._items[key] = value
            return value

    def replace_all(self, items):
        staged = dict(items)
        with self._lock:
            self._items = staged

    def all(self):
        with self._lock:
            return dict(self._items)


class InMemoryDeploymentRepository(DeploymentRepository):

    def __init__(self, records: Iterable["DeploymentRecord"] = ()):
        self._records: dict = {r.agent_id: r for r in records}
        self._lock = threading.RLock()

    def get(self, agent_id):
        with self._lock:
            return self._records.get(agent_id)

    def update(self, agent_id, transform):
        with self._lock:
            record = transform(self._records.get(agent_id))
            self._records[agent_id] = record
            return record

    def all(self):
        with self._lock:
            return [self._records[k] for k in sorted(self._records)]

    def remove(self, agent_id):
        with self._lock:
            self._records.pop(agent_id, None)


class InMemorySafetyStateRepository(SafetyStateRepository):

    def __init__(self, initial: "CollaborationSafetyState"):
        self._state = initial
        self._lock = threading.RLock()

    def get(self):
        with self._lock:
            return self._state

    def update(self, transform):
        with self._lock:
            self._state = transform(self._state)
            return self._state


class InMemorySnapshotStore(PortfolioSnapshotStore):

    def __init__(self):
        self._latest: Optional[PublishedSnapshot] = None
        self._lock = threading.RLock()

    def publish(self, snapshot):
        with self._lock:
            self._latest = snapshot

    def latest(self):
        with self._lock:
            return self._latest


class RepositoryCycleCommitter(CycleCommitter):
    """
    Commits a cycle through plain repositories.

    Writes records, then stats, then the snapshot. If any step raises, the
    stats and records captured beforehand are put back and the error
    propagates. Suited to repositories that can overwrite history, such as
    the in-memory ones.
    """

    def __init__(
        self,
        stats: StatsRepository,
        deployment: DeploymentRepository,
        snapshots: PortfolioSnapshotStore,
    ):
        self.stats = stats
        self.deployment = deployment
        self.snapshots = snapshots
        self._lock = threading.RLock()

    def commit(self, cycle):
        with self._lock:
            previous_stats = self.stats.all()
            previous_records = {
                r.agent_id: self.deployment.get(r.agent_id) for r in cycle.records
            }

            try:
                for record in cycle.records:
                    base = cycle.base_records.get(record.agent_id)
                    self.deployment.update(
                        record.agent_id,
                        lambda current, record=record, base=base: reconcile_record(current, record, base),
                    )
                self.stats.replace_all(cycle.stats)
                self.snapshots.publish(cycle.snapshot)
            except Exception:
                self.stats.replace_all(previous_stats.items())
                for agent_id, previous in previous_records.items():
                    if previous is None:
                        self.deployment.remove(agent_id)
                    else:
                        self.deployment.update(agent_id, lambda _, previous=previous: previous)
                logger.warning("cycle_commit_rolled_back", records=len(cycle.records))
                raise
