"""
Bulk reconciliation: copy documents that exist on one side and are missing
on the other.

Only missing ``_id`` values are inserted; documents already on the target are
never overwritten, so re-running the job is harmless.
"""

import logging
import threading
import time
import uuid
from datetime import datetime
from typing import Any, Iterable, List, Optional

from bson.errors import InvalidDocument
from prometheus_client import Counter
from pymongo.database import Database
from pymongo.errors import BulkWriteError, PyMongoError

from cafesync.utils.logging import CorrelationContext

from .models import CollectionReport, ReconciliationReport, Side, SyncDirection
from .origin_tracker import OriginTracker, id_key

logger = logging.getLogger(__name__)

DUPLICATE_KEY_CODE = 11000

reconcile_documents_total = Counter(
    'cafesync_reconcile_documents_total',
    'Documents examined by reconciliation',
    ['direction', 'collection', 'result']
)


class ReconciliationJob:
    """
    One-shot copy of missing documents between the local and remote databases.

    Thread Safety: YES (concurrent ``run`` calls return an ``already_running`` report)

    Example:
        >>> job = ReconciliationJob(local_db, remote_db, ["bills"])
        >>> report = job.run(SyncDirection.REMOTE_TO_LOCAL)
        >>> report.inserted
    """

    def __init__(
        self,
        local_db: Database,
        remote_db: Database,
        collections: Iterable[str],
        origin_tracker: Optional[OriginTracker] = None,
        batch_size: int = 100,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be positive")
        self.local_db = local_db
        self.remote_db = remote_db
        self.collections = list(collections)
        self.origin_tracker = origin_tracker
        self.batch_size = batch_size
        self._lock = threading.Lock()

    @property
    def is_running(self) -> bool:
        return self._lock.locked()

    def _database(self, side: Side) -> Database:
        return self.local_db if side is Side.LOCAL else self.remote_db

    def run(self, direction: SyncDirection = SyncDirection.BOTH) -> ReconciliationReport:
        """
        Reconcile every collection in scope.

        Args:
            direction: local_to_remote, remote_to_local or both

        Returns:
            Aggregate report with per-collection counts
        """
        direction = SyncDirection(direction)
        report = ReconciliationReport(direction=direction)

        if not self._lock.acquire(blocking=False):
            logger.warning("Reconciliation already running, skipping this run")
            report.already_running = True
            report.finished_at = datetime.utcnow()
            return report

        started = time.monotonic()
        try:
            with CorrelationContext(f"reconcile-{uuid.uuid4().hex[:12]}"):
                logger.info(
                    f"Starting reconciliation ({direction.value})",
                    extra={"direction": direction.value, "collections": self.collections}
                )
                for concrete in direction.expand():
                    for collection in self.collections:
                        report.add(self.reconcile_collection(concrete, collection))

                report.finished_at = datetime.utcnow()
                report.duration_seconds = round(time.monotonic() - started, 3)
                logger.info(
                    f"Reconciliation finished: {report.inserted} inserted, "
                    f"{report.skipped} skipped, {report.errors} errors",
                    extra={**report.summary(), "duration_seconds": report.duration_seconds}
                )
        finally:
            self._lock.release()

        return report

    def reconcile_collection(self, direction: SyncDirection, collection: str) -> CollectionReport:
        """Copy documents of one collection missing on the target side."""
        report = CollectionReport(collection=collection, direction=direction)
        source = self._database(direction.source)[collection]
        target = self._database(direction.target)[collection]

        try:
            batch: List[Any] = []
            for document in source.find({}, {"_id": 1}):
                batch.append(document["_id"])
                if len(batch) >= self.batch_size:
                    self._reconcile_batch(source, target, batch, direction, report)
                    batch = []
            if batch:
                self._reconcile_batch(source, target, batch, direction, report)

        except (PyMongoError, InvalidDocument) as e:
            report.errors += 1
            report.error_messages.append(str(e))
            reconcile_documents_total.labels(
                direction=direction.value, collection=collection, result="error"
            ).inc()
            logger.error(
                f"Reconciliation of {collection} failed: {e}",
                extra={"direction": direction.value, "collection": collection, "error_type": type(e).__name__}
            )

        if report.inserted or report.errors:
            logger.info(
                f"Reconciled {collection}: {report.inserted} inserted, {report.errors} errors",
                extra=report.model_dump(exclude={"error_messages"}, mode="json")
            )
        return report

    def _reconcile_batch(self, source, target, ids: List[Any], direction: SyncDirection,
                         report: CollectionReport) -> None:
        report.processed += len(ids)
        existing = {id_key(doc["_id"]) for doc in target.find({"_id": {"$in": ids}}, {"_id": 1})}
        missing = [doc_id for doc_id in ids if id_key(doc_id) not in existing]
        self._count(direction, report.collection, "existing", len(ids) - len(missing))
        report.skipped += len(ids) - len(missing)
        if not missing:
            return

        documents = list(source.find({"_id": {"$in": missing}}))
        vanished = len(missing) - len(documents)
        if vanished:
            # Deleted on the source since the id scan
            report.skipped += vanished
            self._count(direction, report.collection, "vanished", vanished)
        if not documents:
            return

        for document in documents:
            self._mark(direction.target, report.collection, document)

        try:
            result = target.insert_many(documents, ordered=False)
            inserted = len(result.inserted_ids)
            report.inserted += inserted
            self._count(direction, report.collection, "inserted", inserted)

        except BulkWriteError as e:
            write_errors = e.details.get("writeErrors", [])
            inserted = e.details.get("nInserted", len(documents) - len(write_errors))
            report.inserted += inserted
            self._count(direction, report.collection, "inserted", inserted)

            for write_error in write_errors:
                document = documents[write_error["index"]]
                self._withdraw(direction.target, report.collection, document)
                if write_error.get("code") == DUPLICATE_KEY_CODE:
                    report.skipped += 1
                    self._count(direction, report.collection, "duplicate", 1)
                else:
                    report.errors += 1
                    report.error_messages.append(
                        f"{document.get('_id')}: {write_error.get('errmsg', 'insert failed')}"
                    )
                    self._count(direction, report.collection, "error", 1)
                    logger.error(
                        f"Failed to insert {report.collection}/{document.get('_id')}: {write_error.get('errmsg')}",
                        extra={
                            "direction": direction.value,
                            "collection": report.collection,
                            "document_id": str(document.get("_id"))
                        }
                    )

        except (PyMongoError, InvalidDocument):
            for document in documents:
                self._withdraw(direction.target, report.collection, document)
            raise

    def _mark(self, side: Side, collection: str, document) -> None:
        if self.origin_tracker is not None:
            self.origin_tracker.mark(side, collection, document["_id"], document)

    def _withdraw(self, side: Side, collection: str, document) -> None:
        if self.origin_tracker is not None:
            self.origin_tracker.withdraw(side, collection, document["_id"], document)

    @staticmethod
    def _count(direction: SyncDirection, collection: str, result: str, amount: int) -> None:
        if amount:
            reconcile_documents_total.labels(
                direction=direction.value, collection=collection, result=result
            ).inc(amount)
