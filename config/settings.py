"""
Centralized configuration for the cafesync synchronization engine.

Uses Pydantic Settings for validation and environment variable loading.
Loads from .env file if present, falls back to environment variables, then defaults.
"""
from typing import Annotated, Dict, List, Optional
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


DEFAULT_SYNC_COLLECTIONS = [
    "bills",
    "orders",
    "sessions",
    "tables",
    "tablesections",
    "devices",
    "menuitems",
    "menucategories",
    "menusections",
    "inventoryitems",
    "costs",
    "costcategories",
    "users",
    "employees",
    "attendances",
    "advances",
    "payrolls",
    "notifications",
    "settings",
    "organizations",
]

# Server-internal and engine-owned collections are never synced
RESERVED_PREFIXES = ("system.", "_sync")


def _split_names(value):
    """Accept comma-separated strings for collection lists."""
    if value is None:
        return []
    if isinstance(value, str):
        return [name.strip() for name in value.split(",") if name.strip()]
    return value


class MongoSettings(BaseSettings):
    """Local and remote MongoDB connection configuration."""

    model_config = SettingsConfigDict(
        env_prefix="MONGO_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    local_uri: str = Field(
        default="mongodb://localhost:27017/cafe?replicaSet=rs0",
        description="Local MongoDB URI. Must name the replica set for change streams."
    )
    remote_uri: str = Field(default="", description="Cloud (Atlas) MongoDB URI")

    # Database names (fall back to the URI default database)
    local_database: Optional[str] = Field(default=None, description="Local database name")
    remote_database: Optional[str] = Field(default=None, description="Remote database name")
    default_database: str = Field(default="cafe", description="Database used when neither setting nor URI names one")

    # Connection settings
    connect_timeout: int = Field(default=10, description="Connection timeout in seconds")
    server_selection_timeout: int = Field(default=10, description="Server selection timeout in seconds")
    socket_timeout: int = Field(default=45, description="Socket timeout in seconds")
    max_pool_size: int = Field(default=50, description="Max connection pool size")


class SyncSettings(BaseSettings):
    """Synchronization behaviour."""

    model_config = SettingsConfigDict(
        env_prefix="SYNC_",
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore"
    )

    enabled: bool = Field(default=False, description="Enable the sync engine")
    bidirectional_enabled: bool = Field(
        default=False,
        description="Enable remote -> local sync in addition to local -> remote"
    )

    # Collection scope
    collections: Annotated[List[str], NoDecode] = Field(
        default_factory=lambda: list(DEFAULT_SYNC_COLLECTIONS),
        description="Collections included in sync"
    )
    excluded_collections: Annotated[List[str], NoDecode] = Field(
        default_factory=list,
        description="Collections temporarily excluded from sync"
    )

    # Stream settings
    batch_size: int = Field(default=100, description="Change stream and reconciliation batch size")
    max_await_time_ms: int = Field(default=1000, description="Change stream await time per poll")

    # Supervisory retry policy
    retry_interval: float = Field(default=2.0, description="Backoff base in seconds")
    max_retries: int = Field(default=10, description="Stream reopen attempts before a worker fails")
    max_retry_delay: float = Field(default=60.0, description="Max seconds between reopen attempts")
    apply_retries: int = Field(default=3, description="Attempts per event on transient target errors")

    # Origin tracking
    origin_ttl_seconds: float = Field(default=60.0, description="Origin marker freshness window")

    # Resume token checkpoints
    checkpoint_enabled: bool = Field(default=True, description="Persist change stream resume tokens")
    checkpoint_url: str = Field(
        default="sqlite:///sync_checkpoints.db",
        description="SQLAlchemy URL of the checkpoint store"
    )
    checkpoint_interval: int = Field(default=50, description="Events between checkpoint saves")

    # Startup and reconciliation
    preflight_on_start: bool = Field(default=True, description="Run replica-set preflight before starting")
    reconcile_on_start: bool = Field(default=False, description="Run reconciliation after workers start")
    reconcile_interval_seconds: int = Field(
        default=0,
        description="Periodic reconciliation interval (0 disables)"
    )

    @field_validator("collections", "excluded_collections", mode="before")
    @classmethod
    def split_collection_names(cls, v):
        """Parse comma-separated collection lists."""
        return _split_names(v)

    @property
    def scope(self) -> List[str]:
        """Effective collection scope (configured minus excluded)."""
        excluded = set(self.excluded_collections)
        return [
            name for name in self.collections
            if name not in excluded and not name.startswith(RESERVED_PREFIXES)
        ]


class Settings(BaseSettings):
    """Main application settings combining all sub-settings."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore"
    )

    # Environment
    environment: str = Field(default="development", description="Application environment")
    debug: bool = Field(default=False, description="Debug mode")

    # Logging
    log_level: str = Field(default="INFO", description="Root log level")
    log_json: bool = Field(default=True, description="Emit JSON-structured logs")

    # Sub-configurations
    mongo: MongoSettings = Field(default_factory=MongoSettings)
    sync: SyncSettings = Field(default_factory=SyncSettings)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        """Validate environment value."""
        allowed = {"development", "staging", "production"}
        if v.lower() not in allowed:
            raise ValueError(f"Environment must be one of: {allowed}")
        return v.lower()

    @property
    def is_production(self) -> bool:
        """Check if running in production."""
        return self.environment == "production"

    def validate_sync(self) -> Dict[str, List[str]]:
        """
        Validate sync configuration.

        Returns:
            Dict with ``errors`` (fatal) and ``warnings`` lists
        """
        errors: List[str] = []
        warnings: List[str] = []
        sync = self.sync

        if not sync.enabled:
            return {"errors": errors, "warnings": warnings}

        if not self.mongo.local_uri:
            errors.append("MONGO_LOCAL_URI is required when sync is enabled")
        if not self.mongo.remote_uri:
            errors.append("MONGO_REMOTE_URI is required when sync is enabled")

        if sync.batch_size < 1 or sync.batch_size > 1000:
            errors.append("SYNC_BATCH_SIZE must be between 1 and 1000")
        if sync.max_retries < 1 or sync.max_retries > 100:
            errors.append("SYNC_MAX_RETRIES must be between 1 and 100")
        if sync.retry_interval <= 0:
            errors.append("SYNC_RETRY_INTERVAL must be positive")
        if sync.origin_ttl_seconds < 10:
            errors.append("SYNC_ORIGIN_TTL_SECONDS must be at least 10 seconds")
        if sync.checkpoint_interval < 1:
            errors.append("SYNC_CHECKPOINT_INTERVAL must be at least 1")

        for name in list(sync.collections) + list(sync.excluded_collections):
            if not isinstance(name, str) or not name.strip():
                errors.append(f'Invalid collection name: "{name}"')

        if not sync.scope:
            errors.append("No collections left to sync after exclusions")

        configured = set(sync.collections)
        for name in sync.excluded_collections:
            if name not in configured:
                warnings.append(
                    f'Excluded collection "{name}" is not in SYNC_COLLECTIONS; exclusion has no effect'
                )

        if "replicaSet=" not in self.mongo.local_uri:
            warnings.append(
                "MONGO_LOCAL_URI does not include the replicaSet parameter; "
                "change streams need a replica set (e.g. ?replicaSet=rs0)"
            )

        return {"errors": errors, "warnings": warnings}


# Global settings instance
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Get the global settings instance (singleton pattern)."""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings() -> Settings:
    """Reload settings from environment (useful for testing)."""
    global _settings
    _settings = Settings()
    return _settings
