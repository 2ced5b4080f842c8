"""
One-direction sync worker.

A worker owns one change feed on its source database and applies every
insert/update/replace/delete to the same collection on the target database.
It runs on its own daemon thread and:

1. Loads the last resume token from the checkpoint store (if any)
2. Opens the change feed, resuming from the token
3. Drops events that are echoes of writes made by the opposite worker
4. Applies the remaining events in stream order
5. Saves a checkpoint every ``checkpoint_interval`` events and on stop
6. Reopens the feed with exponential backoff when the stream breaks
"""

import logging
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Optional

from bson.errors import InvalidDocument
from prometheus_client import Counter, Gauge, Histogram
from pymongo.database import Database
from pymongo.errors import AutoReconnect, DuplicateKeyError, OperationFailure, PyMongoError
from sqlalchemy.exc import SQLAlchemyError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from cafesync.connectors.cdc import (
    ChangeEvent,
    ChangeFeed,
    ChangeFeedError,
    CheckpointError,
    CheckpointStore,
    StreamInvalidated,
)
from cafesync.connectors.cdc.change_feed import SYNC_OPERATIONS
from cafesync.mongodb.connection import is_retryable_error
from cafesync.utils.logging import CorrelationContext

from .errors import WorkerStartError
from .models import ApplyOutcome, SyncDirection, WorkerHealth, WorkerState
from .origin_tracker import OriginTracker

logger = logging.getLogger(__name__)

# ChangeStreamHistoryLost: the resume point fell off the oplog
HISTORY_LOST_CODES = {286}

# Failures that stay with the event being applied; malformed or oversized
# documents raise InvalidDocument before reaching the server
WRITE_ERRORS = (PyMongoError, InvalidDocument)

events_total = Counter(
    'cafesync_events_total',
    'Change events handled by sync workers',
    ['direction', 'collection', 'operation', 'outcome']
)

apply_seconds = Histogram(
    'cafesync_apply_seconds',
    'Time to apply one change event to the target',
    ['direction']
)

worker_restarts_total = Counter(
    'cafesync_worker_restarts_total',
    'Change stream reopen attempts',
    ['direction']
)

worker_running = Gauge(
    'cafesync_worker_running',
    'Whether the sync worker stream is open (1) or not (0)',
    ['direction']
)


@dataclass
class WorkerConfig:
    """Runtime knobs of a sync worker."""
    batch_size: int = 100
    max_await_time_ms: int = 1000
    max_retries: int = 10
    retry_backoff_base: float = 2.0  # delay = base ** attempt
    max_retry_delay: float = 60.0
    apply_retries: int = 3
    checkpoint_interval: int = 50
    start_timeout: float = 15.0
    stop_timeout: float = 10.0

    def __post_init__(self):
        """Validate configuration values."""
        if self.batch_size <= 0:
            raise ValueError("batch_size must be positive")
        if self.max_await_time_ms <= 0:
            raise ValueError("max_await_time_ms must be positive")
        if self.max_retries < 0:
            raise ValueError("max_retries must be non-negative")
        if self.retry_backoff_base <= 0:
            raise ValueError("retry_backoff_base must be positive")
        if self.max_retry_delay <= 0:
            raise ValueError("max_retry_delay must be positive")
        if self.apply_retries < 1:
            raise ValueError("apply_retries must be at least 1")
        if self.checkpoint_interval < 1:
            raise ValueError("checkpoint_interval must be at least 1")

    @classmethod
    def from_settings(cls, sync_settings) -> "WorkerConfig":
        return cls(
            batch_size=sync_settings.batch_size,
            max_await_time_ms=sync_settings.max_await_time_ms,
            max_retries=sync_settings.max_retries,
            retry_backoff_base=sync_settings.retry_interval,
            max_retry_delay=sync_settings.max_retry_delay,
            apply_retries=sync_settings.apply_retries,
            checkpoint_interval=sync_settings.checkpoint_interval,
        )


def _unwrap(error: Exception) -> Exception:
    """Driver error behind a ChangeFeedError, when there is one."""
    if isinstance(error, ChangeFeedError) and isinstance(error.__cause__, PyMongoError):
        return error.__cause__
    return error


def _is_history_lost(error: Exception) -> bool:
    error = _unwrap(error)
    if isinstance(error, OperationFailure) and error.code in HISTORY_LOST_CODES:
        return True
    return "ChangeStreamHistoryLost" in str(error)


class SyncWorker:
    """
    Replicates changes from a source database to a target database.

    Thread Safety: start/stop/health may be called from any thread. Events
    are consumed and applied on the worker's own thread only.

    Example:
        >>> worker = SyncWorker("local_to_remote", local_db, remote_db,
        ...                     ["bills", "orders"], OriginTracker())
        >>> worker.start()
        >>> worker.health()
        >>> worker.stop()
    """

    def __init__(
        self,
        direction: SyncDirection,
        source_db: Database,
        target_db: Database,
        collections: Iterable[str],
        origin_tracker: OriginTracker,
        config: Optional[WorkerConfig] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        feed_factory: Callable[..., ChangeFeed] = ChangeFeed,
    ):
        """
        Initialize sync worker.

        Args:
            direction: local_to_remote or remote_to_local
            source_db: Database whose change stream is consumed
            target_db: Database the changes are applied to
            collections: Collection scope
            origin_tracker: Tracker shared with the opposite worker
            config: Worker configuration
            checkpoint_store: Resume token store (None disables checkpoints)
            feed_factory: Builds the change feed (ChangeFeed signature)
        """
        self.direction = SyncDirection(direction)
        if self.direction is SyncDirection.BOTH:
            raise ValueError("A worker replicates in exactly one direction")

        self.source_side = self.direction.source
        self.target_side = self.direction.target
        self.source_db = source_db
        self.target_db = target_db
        self.collections = list(collections)
        self.origin_tracker = origin_tracker
        self.config = config or WorkerConfig()
        self.checkpoint_store = checkpoint_store
        self.feed_factory = feed_factory

        self._state = WorkerState.STOPPED
        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._ready = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._feed: Optional[ChangeFeed] = None
        self._resume_token: Optional[Dict[str, Any]] = None
        self._polled = False
        self._since_checkpoint = 0

        self.events_applied = 0
        self.events_skipped = 0
        self.events_failed = 0
        self.restarts = 0
        self.last_event_at: Optional[datetime] = None
        self.last_error: Optional[str] = None
        self.started_at: Optional[datetime] = None

        self._retrying = Retrying(
            stop=stop_after_attempt(self.config.apply_retries),
            wait=wait_exponential(multiplier=0.2, max=2),
            retry=retry_if_exception_type(AutoReconnect),
            reraise=True
        )

    @property
    def name(self) -> str:
        return self.direction.value

    @property
    def state(self) -> WorkerState:
        return self._state

    def _set_state(self, state: WorkerState) -> None:
        if state is not self._state:
            logger.info(
                f"Sync worker {self.name}: {self._state.value} -> {state.value}",
                extra={"direction": self.name, "state": state.value}
            )
        self._state = state
        worker_running.labels(direction=self.name).set(1 if state is WorkerState.RUNNING else 0)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        """
        Open the change feed and start applying events in the background.

        Returns once the feed is open. Calling start on a running worker
        logs a warning and does nothing.

        Raises:
            WorkerStartError: If the change feed cannot be opened
        """
        with self._lock:
            previous = self._thread
            if previous is not None and previous.is_alive():
                if not self._stop_event.is_set():
                    logger.warning(
                        f"Sync worker {self.name} is already running",
                        extra={"direction": self.name}
                    )
                    return
                # A stopped thread still finishing its last event owns the feed
                previous.join(self.config.stop_timeout)
                if previous.is_alive():
                    raise WorkerStartError(
                        f"Sync worker {self.name} is still stopping; previous stream has not exited"
                    )

            self._stop_event.clear()
            self._ready.clear()
            self.last_error = None
            self._set_state(WorkerState.STARTING)
            self._thread = threading.Thread(
                target=self._run,
                name=f"sync-{self.name}",
                daemon=True
            )
            self._thread.start()

        if not self._ready.wait(self.config.start_timeout):
            logger.warning(
                f"Sync worker {self.name} still starting after {self.config.start_timeout}s",
                extra={"direction": self.name}
            )
            return

        if self._state is WorkerState.FAILED:
            raise WorkerStartError(f"Sync worker {self.name} failed to start: {self.last_error}")

    def stop(self) -> None:
        """Stop the worker after the in-flight event. Safe to call repeatedly."""
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(self.config.stop_timeout)
            if thread.is_alive():
                logger.warning(
                    f"Sync worker {self.name} did not stop within {self.config.stop_timeout}s",
                    extra={"direction": self.name}
                )
        with self._lock:
            if self._thread is thread and (thread is None or not thread.is_alive()):
                self._thread = None
        self._set_state(WorkerState.STOPPED)

    def is_healthy(self) -> bool:
        thread = self._thread
        return self._state is WorkerState.RUNNING and thread is not None and thread.is_alive()

    def health(self) -> WorkerHealth:
        return WorkerHealth(
            direction=self.direction,
            state=self._state,
            healthy=self.is_healthy(),
            events_applied=self.events_applied,
            events_skipped=self.events_skipped,
            events_failed=self.events_failed,
            restarts=self.restarts,
            last_event_at=self.last_event_at,
            last_error=self.last_error,
            started_at=self.started_at,
        )

    # ------------------------------------------------------------------
    # Stream supervision (worker thread)
    # ------------------------------------------------------------------

    def _run(self) -> None:
        with CorrelationContext(f"{self.name}-{uuid.uuid4().hex[:12]}"):
            try:
                self._supervise()
            except Exception as e:
                logger.exception(
                    f"Unexpected error in sync worker {self.name}: {e}",
                    extra={"direction": self.name}
                )
                self._mark_failed(e)
            finally:
                self._close_feed()
                self._save_checkpoint()
                if self._state is not WorkerState.FAILED:
                    self._set_state(WorkerState.STOPPED)
                worker_running.labels(direction=self.name).set(0)
                self._ready.set()

    def _supervise(self) -> None:
        self._resume_token = self._load_checkpoint()

        try:
            self._open_feed()
        except (ChangeFeedError, PyMongoError) as e:
            if not (_is_history_lost(e) and self._resume_token is not None):
                self._mark_failed(e)
                return
            # Stored token is older than the oplog; start from now
            self._reset_resume_token(e)
            try:
                self._open_feed()
            except (ChangeFeedError, PyMongoError) as retry_error:
                self._mark_failed(retry_error)
                return

        self.started_at = datetime.utcnow()
        self._set_state(WorkerState.RUNNING)
        self._ready.set()

        attempt = 0
        while not self._stop_event.is_set():
            try:
                if self._feed is None:
                    self._open_feed()
                    self._set_state(WorkerState.RUNNING)
                self._consume()
                return

            except StreamInvalidated as e:
                logger.warning(
                    f"Change stream invalidated for {self.name}, restarting from now",
                    extra={"direction": self.name}
                )
                self._close_feed()
                self._reset_resume_token(e)
                error: Exception = e

            except (ChangeFeedError, PyMongoError) as e:
                self._close_feed()
                if _is_history_lost(e):
                    self._reset_resume_token(e)
                elif isinstance(_unwrap(e), PyMongoError) and not is_retryable_error(_unwrap(e)):
                    logger.error(
                        f"Non-retryable error in sync worker {self.name}: {e}",
                        extra={"direction": self.name, "error": str(e)}
                    )
                    self._mark_failed(e)
                    return
                error = e

            # A feed that served at least one poll resets the retry budget
            attempt = 1 if self._polled else attempt + 1
            self._polled = False
            if attempt > self.config.max_retries:
                logger.error(
                    f"Max retries exceeded for sync worker {self.name}",
                    extra={"direction": self.name, "attempt": attempt, "error": str(error)}
                )
                self._mark_failed(error)
                return

            self.restarts += 1
            worker_restarts_total.labels(direction=self.name).inc()
            if not self._backoff(error, attempt):
                return

    def _backoff(self, error: Exception, attempt: int) -> bool:
        """Wait before reopening. Returns False if stop was requested meanwhile."""
        delay = min(
            self.config.retry_backoff_base ** attempt,
            self.config.max_retry_delay
        )
        self.last_error = str(error)
        self._set_state(WorkerState.BACKOFF)

        logger.warning(
            f"Stream error, reopening in {delay}s (attempt {attempt}/{self.config.max_retries})",
            extra={
                "direction": self.name,
                "attempt": attempt,
                "max_retries": self.config.max_retries,
                "delay_seconds": delay,
                "error": str(error),
                "error_type": type(error).__name__
            }
        )
        return not self._stop_event.wait(delay)

    def _consume(self) -> None:
        """Apply events until stop is requested; stream errors propagate."""
        while not self._stop_event.is_set():
            event = self._feed.try_next()
            self._polled = True
            if event is None:
                continue

            self.apply(event)

            if event.resume_token:
                self._resume_token = event.resume_token
                self._since_checkpoint += 1
                if self._since_checkpoint >= self.config.checkpoint_interval:
                    self._save_checkpoint()

    def _open_feed(self) -> None:
        feed = self.feed_factory(
            self.source_db,
            self.collections,
            resume_after=self._resume_token,
            batch_size=self.config.batch_size,
            max_await_time_ms=self.config.max_await_time_ms,
        )
        feed.open()
        self._feed = feed

    def _close_feed(self) -> None:
        feed, self._feed = self._feed, None
        if feed is not None:
            feed.close()

    def _mark_failed(self, error: Exception) -> None:
        self.last_error = str(error)
        self._set_state(WorkerState.FAILED)
        self._ready.set()

    # ------------------------------------------------------------------
    # Checkpoints
    # ------------------------------------------------------------------

    @property
    def _checkpoint_scope(self) -> str:
        return self.source_db.name

    def _load_checkpoint(self) -> Optional[Dict[str, Any]]:
        if self.checkpoint_store is None:
            return None
        try:
            token = self.checkpoint_store.load_checkpoint(self.name, self._checkpoint_scope)
        except (CheckpointError, SQLAlchemyError) as e:
            logger.warning(
                f"Failed to load checkpoint, starting from latest: {e}",
                extra={"direction": self.name}
            )
            return None
        if token:
            logger.info(
                f"Resuming {self.name} from checkpoint",
                extra={"direction": self.name, "scope": self._checkpoint_scope}
            )
        return token

    def _save_checkpoint(self) -> None:
        if self.checkpoint_store is None or not self._resume_token or not self._since_checkpoint:
            return
        try:
            self.checkpoint_store.save_checkpoint(
                self.name,
                self._checkpoint_scope,
                self._resume_token,
                last_event_time=self.last_event_at,
                records_processed=self.events_applied + self.events_skipped + self.events_failed,
            )
            self._since_checkpoint = 0
        except (CheckpointError, SQLAlchemyError) as e:
            logger.warning(
                f"Failed to save checkpoint: {e}",
                extra={"direction": self.name}
            )

    def _reset_resume_token(self, reason: Exception) -> None:
        self._resume_token = None
        self._since_checkpoint = 0
        if self.checkpoint_store is None:
            return
        try:
            self.checkpoint_store.delete_checkpoint(self.name, self._checkpoint_scope)
        except CheckpointError as e:
            logger.warning(
                f"Failed to delete checkpoint after {type(reason).__name__}: {e}",
                extra={"direction": self.name}
            )

    # ------------------------------------------------------------------
    # Apply
    # ------------------------------------------------------------------

    def apply(self, event: ChangeEvent) -> ApplyOutcome:
        """
        Apply one change event to the target database.

        Never raises for write failures: they are logged and counted so the
        stream keeps going.

        Args:
            event: Event observed on the source database

        Returns:
            What happened on the target
        """
        operation = event.operation_type
        collection = event.collection
        document_id = event.document_id
        self.last_event_at = datetime.utcnow()

        if operation not in SYNC_OPERATIONS or document_id is None:
            return self._record(event, ApplyOutcome.SKIPPED)

        echo_image = None if operation == "delete" else event.full_document
        if self.origin_tracker.consume(self.source_side, collection, document_id, echo_image):
            logger.debug(
                f"Skipping echo of sync write {collection}/{document_id}",
                extra={"direction": self.name, "collection": collection, "document_id": str(document_id)}
            )
            return self._record(event, ApplyOutcome.LOOPBACK)

        if operation != "delete" and event.full_document is None:
            logger.warning(
                f"Skipping {operation} on {collection}/{document_id}: no full document",
                extra={
                    "direction": self.name,
                    "collection": collection,
                    "operation": operation,
                    "document_id": str(document_id)
                }
            )
            return self._record(event, ApplyOutcome.SKIPPED)

        started = time.monotonic()
        try:
            outcome = self._write(event)
        except WRITE_ERRORS as e:
            logger.error(
                f"Failed to apply {operation} on {collection}/{document_id}: {e}",
                extra={
                    "direction": self.name,
                    "collection": collection,
                    "operation": operation,
                    "document_id": str(document_id),
                    "error_type": type(e).__name__
                }
            )
            outcome = ApplyOutcome.FAILED
        finally:
            apply_seconds.labels(direction=self.name).observe(time.monotonic() - started)

        return self._record(event, outcome)

    def _write(self, event: ChangeEvent) -> ApplyOutcome:
        collection = event.collection
        document_id = event.document_id
        target = self.target_db[collection]

        if event.operation_type == "delete":
            self.origin_tracker.mark(self.target_side, collection, document_id, None)
            try:
                result = self._retrying(target.delete_one, {"_id": document_id})
            except WRITE_ERRORS:
                self.origin_tracker.withdraw(self.target_side, collection, document_id, None)
                raise
            if result.deleted_count == 0:
                self.origin_tracker.withdraw(self.target_side, collection, document_id, None)
                return ApplyOutcome.NOOP
            return ApplyOutcome.DELETED

        document = event.full_document
        self.origin_tracker.mark(self.target_side, collection, document_id, document)

        if event.operation_type == "insert":
            try:
                self._retrying(target.insert_one, document)
            except DuplicateKeyError:
                self.origin_tracker.withdraw(self.target_side, collection, document_id, document)
                logger.debug(
                    f"{collection}/{document_id} already on target",
                    extra={"direction": self.name, "collection": collection, "document_id": str(document_id)}
                )
                return ApplyOutcome.NOOP
            except WRITE_ERRORS:
                self.origin_tracker.withdraw(self.target_side, collection, document_id, document)
                raise
            return ApplyOutcome.INSERTED

        try:
            result = self._retrying(target.replace_one, {"_id": document_id}, document, upsert=True)
        except WRITE_ERRORS:
            self.origin_tracker.withdraw(self.target_side, collection, document_id, document)
            raise
        if result.upserted_id is None and result.modified_count == 0:
            self.origin_tracker.withdraw(self.target_side, collection, document_id, document)
            return ApplyOutcome.NOOP
        return ApplyOutcome.UPSERTED

    def _record(self, event: ChangeEvent, outcome: ApplyOutcome) -> ApplyOutcome:
        if outcome is ApplyOutcome.FAILED:
            self.events_failed += 1
        elif outcome in (ApplyOutcome.LOOPBACK, ApplyOutcome.SKIPPED):
            self.events_skipped += 1
        else:
            self.events_applied += 1

        events_total.labels(
            direction=self.name,
            collection=event.collection or "unknown",
            operation=event.operation_type,
            outcome=outcome.value
        ).inc()
        return outcome
