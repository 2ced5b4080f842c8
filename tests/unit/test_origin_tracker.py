"""Unit tests for the origin tracker."""

import threading

import pytest
from bson import ObjectId

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from cafesync.sync.models import Side
from cafesync.sync.origin_tracker import OriginTracker, fingerprint


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class TestFingerprint:
    """Test document fingerprints."""

    def test_key_order_does_not_matter(self):
        assert fingerprint({"a": 1, "b": {"x": 1, "y": 2}}) == fingerprint({"b": {"y": 2, "x": 1}, "a": 1})

    def test_content_change_changes_fingerprint(self):
        assert fingerprint({"_id": 1, "total": 10}) != fingerprint({"_id": 1, "total": 11})

    def test_none_for_deletes(self):
        assert fingerprint(None) is None

    def test_bson_types(self):
        oid = ObjectId()
        assert fingerprint({"_id": oid}) == fingerprint({"_id": ObjectId(str(oid))})


class TestOriginTracker:
    """Test OriginTracker."""

    @pytest.fixture
    def clock(self):
        return FakeClock()

    @pytest.fixture
    def tracker(self, clock):
        return OriginTracker(ttl_seconds=60, clock=clock)

    def test_consume_matching_mark(self, tracker):
        doc = {"_id": 1, "tableNumber": "T1"}
        tracker.mark(Side.REMOTE, "bills", 1, doc)

        assert tracker.consume(Side.REMOTE, "bills", 1, dict(doc)) is True
        # A mark is consumed only once
        assert tracker.consume(Side.REMOTE, "bills", 1, doc) is False
        assert len(tracker) == 0

    def test_other_side_does_not_match(self, tracker):
        doc = {"_id": 1}
        tracker.mark(Side.REMOTE, "bills", 1, doc)

        assert tracker.consume(Side.LOCAL, "bills", 1, doc) is False
        assert tracker.consume(Side.REMOTE, "orders", 1, doc) is False
        assert len(tracker) == 1

    def test_changed_content_is_not_an_echo(self, tracker):
        tracker.mark(Side.LOCAL, "bills", 1, {"_id": 1, "status": "open"})

        assert tracker.consume(Side.LOCAL, "bills", 1, {"_id": 1, "status": "paid"}) is False

    def test_delete_marks(self, tracker):
        tracker.mark(Side.LOCAL, "bills", 1, None)

        assert tracker.consume(Side.LOCAL, "bills", 1, {"_id": 1}) is False
        assert tracker.consume(Side.LOCAL, "bills", 1, None) is True

    def test_object_id_keys(self, tracker):
        oid = ObjectId()
        tracker.mark(Side.LOCAL, "orders", oid, {"_id": oid})

        assert tracker.consume(Side.LOCAL, "orders", ObjectId(str(oid)), {"_id": oid}) is True

    def test_accepts_string_sides(self, tracker):
        tracker.mark("remote", "bills", 1, None)
        assert tracker.consume(Side.REMOTE, "bills", 1, None) is True

    def test_withdraw(self, tracker):
        doc = {"_id": 1}
        tracker.mark(Side.REMOTE, "bills", 1, doc)

        assert tracker.withdraw(Side.REMOTE, "bills", 1, doc) is True
        assert tracker.consume(Side.REMOTE, "bills", 1, doc) is False
        assert tracker.stats["withdrawn"] == 1

    def test_repeated_writes_stack(self, tracker):
        first = {"_id": 1, "v": 1}
        second = {"_id": 1, "v": 2}
        tracker.mark(Side.REMOTE, "bills", 1, first)
        tracker.mark(Side.REMOTE, "bills", 1, second)

        assert tracker.consume(Side.REMOTE, "bills", 1, second) is True
        assert tracker.consume(Side.REMOTE, "bills", 1, first) is True
        assert len(tracker) == 0

    def test_marks_expire(self, tracker, clock):
        tracker.mark(Side.REMOTE, "bills", 1, None)
        clock.now += 61

        assert tracker.consume(Side.REMOTE, "bills", 1, None) is False
        assert tracker.stats["expired"] == 1

    def test_purge_expired(self, tracker, clock):
        tracker.mark(Side.REMOTE, "bills", 1, None)
        clock.now += 30
        tracker.mark(Side.REMOTE, "bills", 2, None)
        clock.now += 31

        assert tracker.purge_expired() == 1
        assert len(tracker) == 1

    def test_missing_id_is_ignored(self, tracker):
        tracker.mark(Side.REMOTE, "bills", None, {"x": 1})
        assert len(tracker) == 0
        assert tracker.consume(Side.REMOTE, "bills", None, {"x": 1}) is False

    def test_clear(self, tracker):
        tracker.mark(Side.REMOTE, "bills", 1, None)
        tracker.clear()
        assert len(tracker) == 0

    def test_concurrent_marks(self):
        tracker = OriginTracker()

        def mark_range(start):
            for i in range(start, start + 200):
                tracker.mark(Side.LOCAL, "orders", i, {"_id": i})

        threads = [threading.Thread(target=mark_range, args=(n * 200,)) for n in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(tracker) == 800
        assert tracker.stats["marked"] == 800
