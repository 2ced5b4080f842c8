"""
MongoDB change feed reader for the sync workers.

Opens a database-level change stream restricted to a set of collections and
yields ChangeEvent objects in source commit order. The feed always requests
full-document lookup so update events carry the complete post-image.
"""

from dataclasses import dataclass
from typing import Any, Dict, Iterable, Iterator, List, Optional
import logging

from bson import Timestamp
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

SYNC_OPERATIONS = ("insert", "update", "replace", "delete")
TERMINAL_OPERATIONS = ("invalidate",)


class CDCError(Exception):
    """Base exception for change data capture errors."""
    pass


class ChangeFeedError(CDCError):
    """Change stream could not be opened or broke mid-stream."""
    pass


class StreamInvalidated(ChangeFeedError):
    """Server invalidated the stream (database dropped or renamed)."""
    pass


class CheckpointError(CDCError):
    """Error saving/loading checkpoint."""
    pass


@dataclass
class ChangeEvent:
    """One insert/update/replace/delete observed on a source database."""
    operation_type: str
    collection: str
    document_key: Dict[str, Any]
    full_document: Optional[Dict[str, Any]] = None
    resume_token: Optional[Dict[str, Any]] = None
    cluster_time: Optional[Timestamp] = None

    @property
    def document_id(self) -> Any:
        """The ``_id`` of the affected document."""
        return self.document_key.get("_id") if self.document_key else None

    @classmethod
    def from_change(cls, change: Dict[str, Any]) -> "ChangeEvent":
        """Build an event from a raw change stream document."""
        ns = change.get("ns") or {}
        return cls(
            operation_type=change.get("operationType", "unknown"),
            collection=ns.get("coll", ""),
            document_key=change.get("documentKey") or {},
            full_document=change.get("fullDocument"),
            resume_token=change.get("_id"),
            cluster_time=change.get("clusterTime"),
        )


def build_pipeline(collections: Iterable[str]) -> List[Dict[str, Any]]:
    """Match stage restricting the stream to the collection scope."""
    return [
        {
            "$match": {
                "$or": [
                    {
                        "ns.coll": {"$in": list(collections)},
                        "operationType": {"$in": list(SYNC_OPERATIONS)},
                    },
                    {"operationType": {"$in": list(TERMINAL_OPERATIONS)}},
                ]
            }
        }
    ]


class ChangeFeed:
    """
    Change stream wrapper scoped to a set of collections.

    Thread Safety: NOT thread-safe. One feed per consumer thread.

    Example:
        >>> feed = ChangeFeed(db, ["bills", "orders"]).open()
        >>> event = feed.try_next()
        >>> feed.close()
    """

    def __init__(
        self,
        database: Database,
        collections: Iterable[str],
        resume_after: Optional[Dict[str, Any]] = None,
        batch_size: int = 100,
        max_await_time_ms: int = 1000,
    ):
        """
        Initialize change feed.

        Args:
            database: PyMongo database to watch
            collections: Collection names included in the feed
            resume_after: Resume token to continue a previous stream
            batch_size: Cursor batch size
            max_await_time_ms: How long a poll waits for new events
        """
        self.database = database
        self.collections = list(collections)
        self.resume_after = resume_after
        self.batch_size = batch_size
        self.max_await_time_ms = max_await_time_ms
        self._stream = None

    @property
    def is_open(self) -> bool:
        return self._stream is not None and self._stream.alive

    @property
    def resume_token(self) -> Optional[Dict[str, Any]]:
        """Token of the last event returned (or the post-batch token)."""
        if self._stream is None:
            return self.resume_after
        return self._stream.resume_token or self.resume_after

    def open(self) -> "ChangeFeed":
        """
        Open the change stream.

        Raises:
            ChangeFeedError: If the server refuses the stream
        """
        if self._stream is not None:
            return self

        options: Dict[str, Any] = {
            "full_document": "updateLookup",
            "batch_size": self.batch_size,
            "max_await_time_ms": self.max_await_time_ms,
        }
        if self.resume_after:
            options["resume_after"] = self.resume_after

        logger.info(
            f"Opening change feed on {self.database.name}",
            extra={
                "database": self.database.name,
                "collections": self.collections,
                "has_resume_token": self.resume_after is not None,
            }
        )

        try:
            self._stream = self.database.watch(pipeline=build_pipeline(self.collections), **options)
        except PyMongoError as e:
            raise ChangeFeedError(f"Failed to open change stream on {self.database.name}: {e}") from e
        return self

    def try_next(self) -> Optional[ChangeEvent]:
        """
        Wait up to ``max_await_time_ms`` for the next event.

        Returns:
            The next ChangeEvent, or None if nothing arrived

        Raises:
            StreamInvalidated: On an invalidate event
            ChangeFeedError: If the feed is not open
            PyMongoError: Network or server errors, left to the owner to handle
        """
        if self._stream is None:
            raise ChangeFeedError("Change feed is not open")

        change = self._stream.try_next()
        if change is None:
            if not self._stream.alive:
                raise ChangeFeedError("Change stream closed by the server")
            return None

        event = ChangeEvent.from_change(change)
        if event.operation_type in TERMINAL_OPERATIONS:
            raise StreamInvalidated(f"Change stream on {self.database.name} was invalidated")
        return event

    def events(self) -> Iterator[ChangeEvent]:
        """Iterate events until the feed is closed."""
        while self._stream is not None:
            event = self.try_next()
            if event is not None:
                yield event

    def close(self) -> None:
        """Close the underlying stream. Safe to call more than once."""
        stream, self._stream = self._stream, None
        if stream is None:
            return
        # Keep the last token so a reopened feed can resume
        self.resume_after = stream.resume_token or self.resume_after
        try:
            stream.close()
        except PyMongoError as e:
            logger.warning(f"Error closing change stream: {e}", extra={"database": self.database.name})

    def __enter__(self) -> "ChangeFeed":
        return self.open()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
