"""Unit tests for the round-trip check."""

from unittest.mock import MagicMock

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from cafesync.diagnostics import ROUNDTRIP_COLLECTION, run_roundtrip


class TestRunRoundtrip:
    """Test run_roundtrip."""

    def test_marker_replicated(self, local_db):
        target_db = MagicMock()
        target_db[ROUNDTRIP_COLLECTION].find_one.side_effect = [None, None, {"_id": "marker"}]

        result = run_roundtrip(local_db, target_db, timeout=3.0, poll_interval=0.01)

        assert result.ok is True
        assert result.error is None
        assert result.latency_seconds is not None
        assert result.direction == "local_to_remote"
        target_db[ROUNDTRIP_COLLECTION].delete_one.assert_called_once()
        assert local_db[ROUNDTRIP_COLLECTION].count_documents({}) == 0

    def test_markers_cleaned_up(self, local_db, remote_db):
        remote_db[ROUNDTRIP_COLLECTION].insert_one({"_id": "unrelated"})

        run_roundtrip(local_db, remote_db, timeout=0.05, poll_interval=0.01)

        assert local_db[ROUNDTRIP_COLLECTION].count_documents({}) == 0
        assert remote_db[ROUNDTRIP_COLLECTION].count_documents({}) == 1

    def test_timeout(self, local_db, remote_db):
        result = run_roundtrip(local_db, remote_db, direction="remote_to_local", timeout=0.05, poll_interval=0.01)

        assert result.ok is False
        assert "not replicated" in result.error
        assert result.latency_seconds is None
