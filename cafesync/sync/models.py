"""
Sync engine models: directions, worker states and reports.
"""

from typing import Optional, Dict, Any, List
from datetime import datetime
from enum import Enum
from pydantic import BaseModel, Field


class Side(str, Enum):
    """Which database a write or event belongs to."""
    LOCAL = "local"
    REMOTE = "remote"

    @property
    def opposite(self) -> "Side":
        return Side.REMOTE if self is Side.LOCAL else Side.LOCAL


class SyncDirection(str, Enum):
    """Direction of replication."""
    LOCAL_TO_REMOTE = "local_to_remote"
    REMOTE_TO_LOCAL = "remote_to_local"
    BOTH = "both"

    @property
    def source(self) -> Side:
        if self is SyncDirection.BOTH:
            raise ValueError("BOTH has no single source side")
        return Side.LOCAL if self is SyncDirection.LOCAL_TO_REMOTE else Side.REMOTE

    @property
    def target(self) -> Side:
        return self.source.opposite

    def expand(self) -> List["SyncDirection"]:
        """Concrete directions covered by this value."""
        if self is SyncDirection.BOTH:
            return [SyncDirection.LOCAL_TO_REMOTE, SyncDirection.REMOTE_TO_LOCAL]
        return [self]


class WorkerState(str, Enum):
    """Sync worker lifecycle."""
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    BACKOFF = "backoff"
    FAILED = "failed"
    DISABLED = "disabled"


class ApplyOutcome(str, Enum):
    """What applying one change event did to the target."""
    INSERTED = "inserted"
    UPSERTED = "upserted"
    DELETED = "deleted"
    NOOP = "noop"
    LOOPBACK = "loopback"
    SKIPPED = "skipped"
    FAILED = "failed"


class WorkerHealth(BaseModel):
    """Point-in-time health of one sync worker."""
    direction: SyncDirection
    state: WorkerState
    healthy: bool
    events_applied: int = 0
    events_skipped: int = 0
    events_failed: int = 0
    restarts: int = 0
    last_event_at: Optional[datetime] = None
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None


class CoordinatorState(str, Enum):
    """Aggregate state of the bidirectional coordinator."""
    STOPPED = "stopped"
    DISABLED = "disabled"
    RUNNING = "running"
    PARTIAL = "partial"
    FAILED = "failed"


class CollectionReport(BaseModel):
    """Reconciliation counts for one collection in one direction."""
    collection: str
    direction: SyncDirection
    processed: int = 0
    inserted: int = 0
    skipped: int = 0
    errors: int = 0
    error_messages: List[str] = Field(default_factory=list)


class ReconciliationReport(BaseModel):
    """Aggregate result of a reconciliation run."""
    direction: SyncDirection
    processed: int = 0
    inserted: int = 0
    skipped: int = 0
    errors: int = 0
    collections: List[CollectionReport] = Field(default_factory=list)
    started_at: datetime = Field(default_factory=datetime.utcnow)
    finished_at: Optional[datetime] = None
    duration_seconds: float = 0.0
    already_running: bool = False

    def add(self, report: CollectionReport) -> None:
        """Fold a collection report into the totals."""
        self.collections.append(report)
        self.processed += report.processed
        self.inserted += report.inserted
        self.skipped += report.skipped
        self.errors += report.errors

    def summary(self) -> Dict[str, Any]:
        return {
            "direction": self.direction.value,
            "processed": self.processed,
            "inserted": self.inserted,
            "skipped": self.skipped,
            "errors": self.errors,
        }
