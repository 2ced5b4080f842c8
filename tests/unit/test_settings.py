"""Unit tests for sync settings."""

import pytest

import sys
import os
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '../../'))

from config.settings import (
    DEFAULT_SYNC_COLLECTIONS, MongoSettings, Settings, SyncSettings, reload_settings
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    """Isolate from the developer's environment and .env file."""
    for key in list(os.environ):
        if key.startswith(("MONGO_", "SYNC_", "LOG_")):
            monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)


def enabled_settings(**sync):
    sync.setdefault("enabled", True)
    return Settings(
        mongo=MongoSettings(remote_uri="mongodb://atlas.example.net/cafe"),
        sync=SyncSettings(**sync),
    )


class TestSyncSettings:
    """Test SyncSettings parsing."""

    def test_defaults(self):
        sync = SyncSettings()
        assert sync.enabled is False
        assert sync.bidirectional_enabled is False
        assert sync.collections == DEFAULT_SYNC_COLLECTIONS
        assert sync.origin_ttl_seconds == 60.0
        assert sync.checkpoint_url.startswith("sqlite:///")

    def test_collections_from_env(self, monkeypatch):
        monkeypatch.setenv("SYNC_COLLECTIONS", "bills, orders ,sessions,")
        monkeypatch.setenv("SYNC_EXCLUDED_COLLECTIONS", "orders")

        sync = SyncSettings()

        assert sync.collections == ["bills", "orders", "sessions"]
        assert sync.scope == ["bills", "sessions"]

    def test_reserved_collections_never_in_scope(self):
        sync = SyncSettings(collections=["bills", "system.views", "_sync_preflight"])
        assert sync.scope == ["bills"]

    def test_flags_from_env(self, monkeypatch):
        monkeypatch.setenv("SYNC_ENABLED", "true")
        monkeypatch.setenv("SYNC_BIDIRECTIONAL_ENABLED", "true")
        monkeypatch.setenv("SYNC_MAX_RETRIES", "5")

        settings = reload_settings()

        assert settings.sync.enabled is True
        assert settings.sync.bidirectional_enabled is True
        assert settings.sync.max_retries == 5


class TestMongoSettings:
    """Test MongoSettings."""

    def test_from_env(self, monkeypatch):
        monkeypatch.setenv("MONGO_LOCAL_URI", "mongodb://localhost:27017/pos?replicaSet=rs0")
        monkeypatch.setenv("MONGO_REMOTE_URI", "mongodb://atlas.example.net/pos")

        mongo = MongoSettings()

        assert mongo.local_uri.endswith("replicaSet=rs0")
        assert mongo.remote_uri == "mongodb://atlas.example.net/pos"
        assert mongo.server_selection_timeout == 10


class TestValidateSync:
    """Test Settings.validate_sync."""

    def test_disabled_is_always_valid(self):
        result = Settings(sync=SyncSettings(enabled=False)).validate_sync()
        assert result == {"errors": [], "warnings": []}

    def test_valid(self):
        assert enabled_settings().validate_sync()["errors"] == []

    def test_remote_uri_required(self):
        settings = Settings(sync=SyncSettings(enabled=True), mongo=MongoSettings(remote_uri=""))
        errors = settings.validate_sync()["errors"]
        assert any("MONGO_REMOTE_URI" in e for e in errors)

    @pytest.mark.parametrize("field,value,fragment", [
        ("batch_size", 0, "SYNC_BATCH_SIZE"),
        ("batch_size", 1001, "SYNC_BATCH_SIZE"),
        ("max_retries", 0, "SYNC_MAX_RETRIES"),
        ("max_retries", 101, "SYNC_MAX_RETRIES"),
        ("origin_ttl_seconds", 5, "SYNC_ORIGIN_TTL_SECONDS"),
        ("retry_interval", 0, "SYNC_RETRY_INTERVAL"),
    ])
    def test_limits(self, field, value, fragment):
        errors = enabled_settings(**{field: value}).validate_sync()["errors"]
        assert any(fragment in e for e in errors)

    def test_empty_scope(self):
        errors = enabled_settings(collections=["bills"], excluded_collections=["bills"]).validate_sync()["errors"]
        assert any("No collections" in e for e in errors)

    def test_unknown_exclusion_warns(self):
        result = enabled_settings(collections=["bills"], excluded_collections=["payroll"]).validate_sync()
        assert result["errors"] == []
        assert any("payroll" in w for w in result["warnings"])

    def test_missing_replica_set_warns(self):
        settings = Settings(
            mongo=MongoSettings(local_uri="mongodb://localhost:27017/cafe", remote_uri="mongodb://atlas/cafe"),
            sync=SyncSettings(enabled=True),
        )
        assert any("replicaSet" in w for w in settings.validate_sync()["warnings"])

    def test_environment_validation(self):
        with pytest.raises(ValueError):
            Settings(environment="moon")
