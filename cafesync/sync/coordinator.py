"""
Bidirectional sync coordinator.

Owns the local->remote and remote->local workers, the origin tracker they
share, and the reconciliation schedule. The hosting process only needs
``start``, ``stop``, ``is_healthy`` and ``get_status``.
"""

import logging
import threading
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, List, Optional

from pymongo import MongoClient
from pymongo.database import Database
from pymongo.errors import PyMongoError

from cafesync.connectors.cdc import ChangeFeed, CheckpointError, CheckpointStore
from cafesync.mongodb.connection import (
    LOCAL,
    REMOTE,
    classify_connection_error,
    client_from_settings,
    ping,
    redact_uri,
    resolve_database_name,
)

from .errors import SyncConfigurationError, SyncConnectionError, WorkerStartError
from .models import CoordinatorState, ReconciliationReport, SyncDirection, WorkerHealth, WorkerState
from .origin_tracker import OriginTracker
from .reconciliation import ReconciliationJob
from .worker import SyncWorker, WorkerConfig

logger = logging.getLogger(__name__)

# Worker states that still count as "up" for the coordinator
_LIVE_STATES = (WorkerState.STARTING, WorkerState.RUNNING, WorkerState.BACKOFF)


class SyncCoordinator:
    """
    Runs local->remote and (optionally) remote->local sync over one collection scope.

    Thread Safety: YES

    Example:
        >>> coordinator = SyncCoordinator.from_settings(get_settings())
        >>> coordinator.start()
        >>> coordinator.get_status()["state"]
        'running'
        >>> coordinator.stop()
    """

    def __init__(
        self,
        local_db: Optional[Database],
        remote_db: Optional[Database],
        collections: Iterable[str],
        bidirectional: bool = False,
        enabled: bool = True,
        worker_config: Optional[WorkerConfig] = None,
        checkpoint_store: Optional[CheckpointStore] = None,
        origin_tracker: Optional[OriginTracker] = None,
        reconcile_on_start: bool = False,
        reconcile_interval: float = 0,
        feed_factory: Callable[..., ChangeFeed] = ChangeFeed,
        owned_clients: Iterable[MongoClient] = (),
        owns_checkpoint_store: bool = False,
    ):
        """
        Initialize coordinator.

        Args:
            local_db: Local replica-set database
            remote_db: Cloud database
            collections: Collection scope shared by both directions
            bidirectional: Run the remote->local worker too
            enabled: False builds an inert coordinator reporting "disabled"
            worker_config: Settings passed to both workers
            checkpoint_store: Resume token store (None disables checkpoints)
            origin_tracker: Tracker shared by the workers and reconciliation
            reconcile_on_start: Reconcile once in the background after start
            reconcile_interval: Seconds between background reconciliations (0 disables)
            feed_factory: Change feed constructor for the workers
            owned_clients: Clients closed by ``stop``
            owns_checkpoint_store: Close the checkpoint store on ``stop``
        """
        self.collections = list(collections)
        self.bidirectional = bidirectional
        self.enabled = enabled
        self.worker_config = worker_config or WorkerConfig()
        self.checkpoint_store = checkpoint_store
        self.origin_tracker = origin_tracker or OriginTracker()
        self.reconcile_on_start = reconcile_on_start
        self.reconcile_interval = reconcile_interval
        self._owned_clients: List[MongoClient] = list(owned_clients)
        self._owns_checkpoint_store = owns_checkpoint_store

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._reconcile_thread: Optional[threading.Thread] = None
        self._started = False
        self.start_errors: Dict[str, str] = {}
        self.last_reconciliation: Optional[ReconciliationReport] = None
        self.last_reconciliation_error: Optional[str] = None

        self.workers: Dict[SyncDirection, SyncWorker] = {}
        self.reconciliation: Optional[ReconciliationJob] = None

        if not enabled:
            return
        if local_db is None or remote_db is None:
            raise SyncConfigurationError(
                "Both local and remote databases are required",
                remediation="Set MONGO_LOCAL_URI and MONGO_REMOTE_URI"
            )

        for direction, source, target in (
            (SyncDirection.LOCAL_TO_REMOTE, local_db, remote_db),
            (SyncDirection.REMOTE_TO_LOCAL, remote_db, local_db),
        ):
            self.workers[direction] = SyncWorker(
                direction,
                source,
                target,
                self.collections,
                self.origin_tracker,
                config=self.worker_config,
                checkpoint_store=checkpoint_store,
                feed_factory=feed_factory,
            )

        self.reconciliation = ReconciliationJob(
            local_db,
            remote_db,
            self.collections,
            origin_tracker=self.origin_tracker,
            batch_size=self.worker_config.batch_size,
        )

    @classmethod
    def from_settings(
        cls,
        settings=None,
        extra_collections: Iterable[str] = (),
        feed_factory: Callable[..., ChangeFeed] = ChangeFeed,
    ) -> "SyncCoordinator":
        """
        Build a coordinator (and the clients it owns) from application settings.

        Raises:
            SyncConfigurationError: Invalid settings or failed preflight
            SyncConnectionError: A database did not answer a ping
        """
        # Deferred so the sync package does not require the settings module
        from config.settings import get_settings
        from cafesync.diagnostics.preflight import check_replica_set

        settings = settings or get_settings()
        sync = settings.sync
        mongo = settings.mongo
        collections = list(sync.scope) + [c for c in extra_collections if c not in sync.scope]

        if not sync.enabled:
            logger.info("Sync is disabled (SYNC_ENABLED=false)")
            return cls(None, None, collections, enabled=False)

        validation = settings.validate_sync()
        for warning in validation["warnings"]:
            logger.warning(warning)
        if validation["errors"]:
            raise SyncConfigurationError(
                "Invalid sync configuration: " + "; ".join(validation["errors"]),
                remediation="Fix the listed settings in the environment or .env file"
            )

        if sync.preflight_on_start:
            result = check_replica_set(
                mongo.local_uri,
                mongo.local_database,
                timeout=mongo.server_selection_timeout,
            )
            if not result.ok:
                raise SyncConfigurationError(
                    f"Local MongoDB preflight failed: {result.status.value}",
                    remediation=result.remediation
                )

        clients: List[MongoClient] = []
        checkpoint_store = None
        try:
            local_client = client_from_settings(mongo, LOCAL)
            clients.append(local_client)
            remote_client = client_from_settings(mongo, REMOTE)
            clients.append(remote_client)

            local_db = local_client[resolve_database_name(mongo.local_uri, mongo.local_database, mongo.default_database)]
            remote_db = remote_client[resolve_database_name(mongo.remote_uri, mongo.remote_database, mongo.default_database)]

            for side, database, uri in ((LOCAL, local_db, mongo.local_uri), (REMOTE, remote_db, mongo.remote_uri)):
                try:
                    ping(database)
                except PyMongoError as e:
                    category, hint = classify_connection_error(e, side)
                    logger.error(
                        f"Cannot reach {side} MongoDB ({category}): {hint}",
                        extra={"side": side, "category": category, "uri": redact_uri(uri)}
                    )
                    raise SyncConnectionError(side, category, hint, e) from e

            if sync.checkpoint_enabled:
                checkpoint_store = CheckpointStore(sync.checkpoint_url)

        except Exception:
            for client in clients:
                client.close()
            raise

        return cls(
            local_db,
            remote_db,
            collections,
            bidirectional=sync.bidirectional_enabled,
            worker_config=WorkerConfig.from_settings(sync),
            checkpoint_store=checkpoint_store,
            origin_tracker=OriginTracker(ttl_seconds=sync.origin_ttl_seconds),
            reconcile_on_start=sync.reconcile_on_start,
            reconcile_interval=sync.reconcile_interval_seconds,
            feed_factory=feed_factory,
            owned_clients=clients,
            owns_checkpoint_store=True,
        )

    def _enabled_directions(self) -> List[SyncDirection]:
        if self.bidirectional:
            return [SyncDirection.LOCAL_TO_REMOTE, SyncDirection.REMOTE_TO_LOCAL]
        return [SyncDirection.LOCAL_TO_REMOTE]

    @property
    def state(self) -> CoordinatorState:
        if not self.enabled:
            return CoordinatorState.DISABLED
        if not self._started:
            return CoordinatorState.STOPPED
        enabled = self._enabled_directions()
        live = [d for d in enabled if self.workers[d].state in _LIVE_STATES]
        if len(live) == len(enabled):
            return CoordinatorState.RUNNING
        if live:
            return CoordinatorState.PARTIAL
        return CoordinatorState.FAILED

    def start(self) -> CoordinatorState:
        """
        Start the enabled workers and the reconciliation schedule.

        Returns:
            RUNNING, PARTIAL (some direction failed to start), FAILED or DISABLED

        Raises:
            SyncConfigurationError: If there is nothing to sync
        """
        if not self.enabled:
            logger.info("Sync coordinator disabled, not starting")
            return CoordinatorState.DISABLED

        if not self.collections:
            raise SyncConfigurationError(
                "No collections to sync",
                remediation="Set SYNC_COLLECTIONS (and check SYNC_EXCLUDED_COLLECTIONS)"
            )

        with self._lock:
            if self._started:
                logger.warning("Sync coordinator already started")
                return self.state

            self._stop_event.clear()
            self.start_errors = {}
            self._started = True

            for direction in self._enabled_directions():
                try:
                    self.workers[direction].start()
                except WorkerStartError as e:
                    self.start_errors[direction.value] = str(e)
                    logger.error(
                        f"Sync worker {direction.value} failed to start: {e}",
                        extra={"direction": direction.value}
                    )

            if not self.bidirectional:
                logger.info("Bidirectional sync disabled; remote_to_local is not running")

            state = self.state
            if state is CoordinatorState.PARTIAL:
                logger.error(
                    "Sync started partially; one direction is not running",
                    extra={"start_errors": self.start_errors}
                )
            elif state is CoordinatorState.FAILED:
                logger.error(
                    "Sync failed to start in every direction",
                    extra={"start_errors": self.start_errors}
                )
            else:
                logger.info(
                    "Sync coordinator started",
                    extra={"directions": [d.value for d in self._enabled_directions()], "collections": self.collections}
                )

            if state is not CoordinatorState.FAILED and (self.reconcile_on_start or self.reconcile_interval > 0):
                self._reconcile_thread = threading.Thread(
                    target=self._reconcile_loop,
                    name="sync-reconcile",
                    daemon=True
                )
                self._reconcile_thread.start()

            return state

    def stop(self) -> None:
        """Stop workers and background reconciliation, close owned clients. Idempotent."""
        with self._lock:
            self._stop_event.set()

            for worker in self.workers.values():
                worker.stop()

            thread, self._reconcile_thread = self._reconcile_thread, None
            if thread is not None:
                thread.join(self.worker_config.stop_timeout)
                if thread.is_alive():
                    logger.warning("Reconciliation thread still running at shutdown")

            if self.checkpoint_store is not None and self._owns_checkpoint_store:
                self.checkpoint_store.close()
                self._owns_checkpoint_store = False

            clients, self._owned_clients = self._owned_clients, []
            for client in clients:
                client.close()

            if self._started:
                logger.info("Sync coordinator stopped")
            self._started = False

    def is_healthy(self) -> bool:
        """True when every enabled direction is running."""
        if not self.enabled or not self._started:
            return False
        return all(self.workers[d].is_healthy() for d in self._enabled_directions())

    def _direction_status(self, direction: SyncDirection) -> Dict[str, Any]:
        if not self.enabled or direction not in self._enabled_directions():
            health = WorkerHealth(direction=direction, state=WorkerState.DISABLED, healthy=False)
        else:
            health = self.workers[direction].health()
        return health.model_dump(mode="json")

    def get_status(self) -> Dict[str, Any]:
        """Aggregate status of both directions."""
        return {
            "state": self.state.value,
            "healthy": self.is_healthy(),
            "bidirectional": self.bidirectional,
            "collections": self.collections,
            SyncDirection.LOCAL_TO_REMOTE.value: self._direction_status(SyncDirection.LOCAL_TO_REMOTE),
            SyncDirection.REMOTE_TO_LOCAL.value: self._direction_status(SyncDirection.REMOTE_TO_LOCAL),
            "start_errors": dict(self.start_errors),
            "origin_tracker": {"pending": len(self.origin_tracker), **self.origin_tracker.stats},
            "last_reconciliation": self.last_reconciliation.summary() if self.last_reconciliation else None,
            "reconciliation_running": self.reconciliation.is_running if self.reconciliation else False,
            "reconciliation_error": self.last_reconciliation_error,
            "checkpoints": self._checkpoint_status(),
        }

    def _checkpoint_status(self) -> Optional[List[Dict[str, Any]]]:
        if self.checkpoint_store is None:
            return None
        try:
            checkpoints = self.checkpoint_store.get_all_checkpoints()
        except CheckpointError as e:
            logger.warning(f"Could not read checkpoints for status: {e}")
            return [{"error": str(e)}]
        return [
            {key: value.isoformat() if isinstance(value, datetime) else value for key, value in checkpoint.items()}
            for checkpoint in checkpoints
        ]

    def reconcile(self, direction: Optional[SyncDirection] = None) -> ReconciliationReport:
        """Run reconciliation now (both directions when bidirectional, else local->remote)."""
        if self.reconciliation is None:
            raise SyncConfigurationError("Sync is disabled", remediation="Set SYNC_ENABLED=true")
        if direction is None:
            direction = SyncDirection.BOTH if self.bidirectional else SyncDirection.LOCAL_TO_REMOTE
        report = self.reconciliation.run(direction)
        if not report.already_running:
            self.last_reconciliation = report
        return report

    def _reconcile_loop(self) -> None:
        if self.reconcile_on_start:
            self._scheduled_reconcile()
        if self.reconcile_interval <= 0:
            return
        while not self._stop_event.wait(self.reconcile_interval):
            self._scheduled_reconcile()

    def _scheduled_reconcile(self) -> None:
        """One background run; a failure is reported and the schedule goes on."""
        try:
            self.reconcile()
        except Exception as e:
            self.last_reconciliation_error = f"{type(e).__name__}: {e}"
            logger.exception(
                f"Scheduled reconciliation failed: {e}",
                extra={"error_type": type(e).__name__}
            )
        else:
            self.last_reconciliation_error = None
