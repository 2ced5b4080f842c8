"""Shared fixtures for sync unit tests."""

import time
from collections import deque
from typing import Any, Dict, List, Optional

import mongomock
import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from cafesync.connectors.cdc import ChangeEvent, ChangeFeedError


class FakeFeed:
    """Scripted stand-in for ChangeFeed: items are ChangeEvents or exceptions to raise."""

    def __init__(self, database, collections, items=(), open_error=None, resume_after=None):
        self.database = database
        self.collections = list(collections)
        self.items = deque(items)
        self.open_error = open_error
        self.resume_after = resume_after
        self.opened = False
        self.closed = False

    def open(self):
        if self.open_error is not None:
            raise self.open_error
        self.opened = True
        return self

    def try_next(self) -> Optional[ChangeEvent]:
        if self.items:
            item = self.items.popleft()
            if isinstance(item, Exception):
                raise item
            return item
        time.sleep(0.01)
        return None

    @property
    def resume_token(self):
        return self.resume_after

    def close(self):
        self.closed = True


class FeedScript:
    """
    Feed factory handing out one script per opened feed.

    Each script is a list of items for FakeFeed, or an exception raised by open().
    Once scripts run out, feeds are empty and idle.
    """

    def __init__(self, *scripts, per_database: Optional[Dict[str, List[Any]]] = None):
        self.scripts = deque(scripts)
        self.per_database = {name: deque(s) for name, s in (per_database or {}).items()}
        self.created: List[FakeFeed] = []

    def __call__(self, database, collections, resume_after=None, batch_size=100, max_await_time_ms=1000):
        queue = self.per_database.get(database.name, self.scripts)
        script = queue.popleft() if queue else []
        if isinstance(script, Exception):
            feed = FakeFeed(database, collections, open_error=script, resume_after=resume_after)
        else:
            feed = FakeFeed(database, collections, items=script, resume_after=resume_after)
        self.created.append(feed)
        return feed


def feed_error(message: str, cause: Optional[Exception] = None) -> ChangeFeedError:
    """ChangeFeedError as raised by ChangeFeed.open, chained to a driver error."""
    error = ChangeFeedError(message)
    error.__cause__ = cause
    return error


def wait_for(predicate, timeout: float = 3.0, interval: float = 0.01) -> bool:
    """Poll until predicate() is truthy."""
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return bool(predicate())


def make_event(operation: str, document_id: Any, document: Optional[Dict[str, Any]] = None,
               collection: str = "bills", token: Optional[str] = None) -> ChangeEvent:
    return ChangeEvent(
        operation_type=operation,
        collection=collection,
        document_key={"_id": document_id},
        full_document=document,
        resume_token={"_data": token or f"{operation}-{document_id}"},
    )


@pytest.fixture
def mongo_client():
    """In-memory MongoDB client."""
    client = mongomock.MongoClient()
    yield client
    client.close()


@pytest.fixture
def local_db(mongo_client):
    return mongo_client["cafe_local"]


@pytest.fixture
def remote_db(mongo_client):
    return mongo_client["cafe_remote"]
