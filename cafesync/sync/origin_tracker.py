"""
Origin tracking for bidirectional sync.

A worker that writes a document to one side records an expected echo for
that side. When the worker watching that side sees the matching change event
it consumes the mark and drops the event, so a write never bounces back.
"""

import hashlib
import logging
import threading
import time
from collections import defaultdict, deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, Optional, Tuple

from bson import json_util
from bson.json_util import CANONICAL_JSON_OPTIONS

from .models import Side

logger = logging.getLogger(__name__)

TrackingKey = Tuple[str, str, str]


def fingerprint(document: Optional[Dict[str, Any]]) -> Optional[str]:
    """Stable content hash of a document, independent of key order."""
    if document is None:
        return None
    canonical = json_util.dumps(document, sort_keys=True, json_options=CANONICAL_JSON_OPTIONS)
    return hashlib.sha1(canonical.encode("utf-8")).hexdigest()


def id_key(document_id: Any) -> str:
    """Hashable canonical form of an ``_id``; compound ids are documents."""
    return json_util.dumps(document_id, json_options=CANONICAL_JSON_OPTIONS)


@dataclass
class OriginMark:
    """One expected echo of a sync write."""
    fingerprint: Optional[str]
    marked_at: float


class OriginTracker:
    """
    In-process registry of writes performed by sync workers.

    Marks are keyed by (side, collection, document id) and carry a content
    fingerprint, or None for deletes. A mark matches an event only when the
    fingerprints agree, so a genuine later change to the same document still
    propagates. Marks older than ``ttl_seconds`` are discarded.

    Thread Safety: YES (both worker threads share one tracker)
    """

    def __init__(self, ttl_seconds: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._marks: Dict[TrackingKey, Deque[OriginMark]] = defaultdict(deque)
        self._lock = threading.Lock()
        self.stats = {"marked": 0, "consumed": 0, "withdrawn": 0, "expired": 0}

    def mark(self, side: Side, collection: str, document_id: Any,
             document: Optional[Dict[str, Any]] = None) -> None:
        """Record that a sync worker is about to write ``document`` on ``side``."""
        if document_id is None:
            logger.warning("Cannot mark a write without a document id", extra={"collection": collection})
            return
        key = (Side(side).value, collection, id_key(document_id))
        with self._lock:
            self._purge_locked()
            self._marks[key].append(OriginMark(fingerprint(document), self._clock()))
            self.stats["marked"] += 1

    def withdraw(self, side: Side, collection: str, document_id: Any,
                 document: Optional[Dict[str, Any]] = None) -> bool:
        """Remove a mark for a write that produced no change event."""
        return self._take(side, collection, document_id, document, "withdrawn")

    def consume(self, side: Side, collection: str, document_id: Any,
                document: Optional[Dict[str, Any]] = None) -> bool:
        """
        Check an incoming event against pending marks.

        Args:
            side: Side the event was observed on
            collection: Collection of the event
            document_id: Document ``_id``
            document: Full document of the event, None for deletes

        Returns:
            True if the event is the echo of a sync write and must be skipped
        """
        return self._take(side, collection, document_id, document, "consumed")

    def _take(self, side, collection, document_id, document, stat: str) -> bool:
        if document_id is None:
            return False
        key = (Side(side).value, collection, id_key(document_id))
        expected = fingerprint(document)
        with self._lock:
            self._purge_locked()
            marks = self._marks.get(key)
            if not marks:
                return False
            for mark in marks:
                if mark.fingerprint == expected:
                    marks.remove(mark)
                    if not marks:
                        del self._marks[key]
                    self.stats[stat] += 1
                    return True
            return False

    def purge_expired(self) -> int:
        """Drop marks older than the freshness window; returns how many."""
        with self._lock:
            return self._purge_locked()

    def _purge_locked(self) -> int:
        cutoff = self._clock() - self.ttl_seconds
        removed = 0
        for key in list(self._marks):
            marks = self._marks[key]
            while marks and marks[0].marked_at < cutoff:
                marks.popleft()
                removed += 1
            if not marks:
                del self._marks[key]
        self.stats["expired"] += removed
        return removed

    def clear(self) -> None:
        with self._lock:
            self._marks.clear()

    def __len__(self) -> int:
        with self._lock:
            return sum(len(marks) for marks in self._marks.values())
