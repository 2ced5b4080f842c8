"""Unit tests for the change feed reader."""

import pytest
from unittest.mock import Mock, MagicMock
from pymongo.errors import OperationFailure

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from cafesync.connectors.cdc import (
    ChangeEvent, ChangeFeed, ChangeFeedError, StreamInvalidated, build_pipeline
)


def raw_change(operation, doc_id=1, coll="bills", full=None, token="abc"):
    change = {
        "_id": {"_data": token},
        "operationType": operation,
        "ns": {"db": "cafe", "coll": coll},
        "documentKey": {"_id": doc_id},
    }
    if full is not None:
        change["fullDocument"] = full
    return change


class TestChangeEvent:
    """Test ChangeEvent."""

    def test_from_change(self):
        event = ChangeEvent.from_change(raw_change("insert", 7, full={"_id": 7, "tableNumber": "T1"}))

        assert event.operation_type == "insert"
        assert event.collection == "bills"
        assert event.document_id == 7
        assert event.full_document == {"_id": 7, "tableNumber": "T1"}
        assert event.resume_token == {"_data": "abc"}

    def test_delete_has_no_full_document(self):
        event = ChangeEvent.from_change(raw_change("delete", 3))
        assert event.full_document is None
        assert event.document_id == 3

    def test_missing_document_key(self):
        event = ChangeEvent.from_change({"operationType": "invalidate", "_id": {"_data": "x"}})
        assert event.document_id is None
        assert event.collection == ""


class TestBuildPipeline:
    """Test the $match stage."""

    def test_scope_and_operations(self):
        pipeline = build_pipeline(["bills", "orders"])
        match = pipeline[0]["$match"]["$or"]

        assert match[0]["ns.coll"] == {"$in": ["bills", "orders"]}
        assert set(match[0]["operationType"]["$in"]) == {"insert", "update", "replace", "delete"}
        assert match[1] == {"operationType": {"$in": ["invalidate"]}}


class TestChangeFeed:
    """Test ChangeFeed."""

    @pytest.fixture
    def stream(self):
        stream = MagicMock()
        stream.alive = True
        stream.resume_token = {"_data": "latest"}
        return stream

    @pytest.fixture
    def database(self, stream):
        database = Mock()
        database.name = "cafe"
        database.watch.return_value = stream
        return database

    def test_open_requests_full_document(self, database):
        feed = ChangeFeed(database, ["bills"], batch_size=10, max_await_time_ms=500).open()

        _, kwargs = database.watch.call_args
        assert kwargs["full_document"] == "updateLookup"
        assert kwargs["batch_size"] == 10
        assert kwargs["max_await_time_ms"] == 500
        assert "resume_after" not in kwargs
        assert kwargs["pipeline"] == build_pipeline(["bills"])
        assert feed.is_open

    def test_open_with_resume_token(self, database):
        ChangeFeed(database, ["bills"], resume_after={"_data": "t1"}).open()

        _, kwargs = database.watch.call_args
        assert kwargs["resume_after"] == {"_data": "t1"}

    def test_open_is_idempotent(self, database):
        feed = ChangeFeed(database, ["bills"]).open()
        feed.open()
        assert database.watch.call_count == 1

    def test_open_failure_wraps_driver_error(self, database):
        cause = OperationFailure("not a replica set", code=40573)
        database.watch.side_effect = cause

        with pytest.raises(ChangeFeedError) as exc_info:
            ChangeFeed(database, ["bills"]).open()
        assert exc_info.value.__cause__ is cause

    def test_try_next_returns_event(self, database, stream):
        stream.try_next.return_value = raw_change("update", 5, full={"_id": 5})
        feed = ChangeFeed(database, ["bills"]).open()

        event = feed.try_next()
        assert event.operation_type == "update"
        assert event.full_document == {"_id": 5}

    def test_try_next_idle(self, database, stream):
        stream.try_next.return_value = None
        feed = ChangeFeed(database, ["bills"]).open()
        assert feed.try_next() is None

    def test_try_next_dead_stream(self, database, stream):
        stream.try_next.return_value = None
        stream.alive = False
        feed = ChangeFeed(database, ["bills"]).open()

        with pytest.raises(ChangeFeedError, match="closed by the server"):
            feed.try_next()

    def test_invalidate_raises(self, database, stream):
        stream.try_next.return_value = {"_id": {"_data": "inv"}, "operationType": "invalidate"}
        feed = ChangeFeed(database, ["bills"]).open()

        with pytest.raises(StreamInvalidated):
            feed.try_next()

    def test_try_next_requires_open(self, database):
        with pytest.raises(ChangeFeedError, match="not open"):
            ChangeFeed(database, ["bills"]).try_next()

    def test_driver_errors_propagate(self, database, stream):
        stream.try_next.side_effect = OperationFailure("boom", code=1)
        feed = ChangeFeed(database, ["bills"]).open()

        with pytest.raises(OperationFailure):
            feed.try_next()

    def test_events_iterator(self, database, stream):
        feed = ChangeFeed(database, ["bills"]).open()
        stream.try_next.side_effect = [
            raw_change("insert", 1, full={"_id": 1}),
            None,
            raw_change("delete", 1),
        ]

        events = feed.events()
        assert next(events).operation_type == "insert"
        assert next(events).operation_type == "delete"

    def test_close_keeps_resume_token(self, database, stream):
        feed = ChangeFeed(database, ["bills"]).open()
        feed.close()
        feed.close()

        stream.close.assert_called_once()
        assert feed.resume_token == {"_data": "latest"}
        assert not feed.is_open

    def test_context_manager(self, database, stream):
        with ChangeFeed(database, ["bills"]) as feed:
            assert feed.is_open
        stream.close.assert_called_once()
