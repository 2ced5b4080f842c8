"""
Replica-set preflight for the local MongoDB.

Change streams only work on replica sets. The preflight connects directly to
the local server, inspects ``replSetGetStatus`` and opens a throwaway change
stream, then explains how to fix whatever is missing.
"""

import logging
import time
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from pydantic import BaseModel, Field
from pymongo.errors import OperationFailure, PyMongoError

from cafesync.mongodb.connection import (
    LOCAL,
    classify_connection_error,
    create_client,
    redact_uri,
    resolve_database_name,
    uri_has_replica_set,
)

logger = logging.getLogger(__name__)

PREFLIGHT_COLLECTION = "_sync_preflight"
DEFAULT_REPLICA_SET = "rs0"
DEFAULT_HOST = "localhost:27017"

# NoReplicationEnabled / NotYetInitialized
NO_REPLICATION_CODE = 76
NOT_YET_INITIALIZED_CODE = 94


class PreflightStatus(str, Enum):
    """Outcome of the replica-set preflight."""
    OK = "ok"
    NOT_REPLICA_SET = "not_replica_set"
    NOT_INITIALIZED = "not_initialized"
    URI_MISSING_REPLICA_SET = "uri_missing_replica_set"
    NO_PRIMARY = "no_primary"
    CHANGE_STREAM_UNAVAILABLE = "change_stream_unavailable"
    CONNECTION_FAILED = "connection_failed"


class PreflightResult(BaseModel):
    """Result of a preflight check with optional remediation text."""
    ok: bool
    status: PreflightStatus
    details: Dict[str, Any] = Field(default_factory=dict)
    remediation: Optional[str] = None


def replica_set_remediation(
    set_name: str = DEFAULT_REPLICA_SET,
    host: str = DEFAULT_HOST,
    database: str = "cafe",
) -> str:
    """Step-by-step instructions to turn a standalone mongod into a replica set."""
    return "\n".join([
        "The local MongoDB is not running as a replica set (required for change streams).",
        "1. Stop the MongoDB service.",
        "2. Edit mongod.cfg and add:",
        "     replication:",
        f'       replSetName: "{set_name}"',
        "3. Start the MongoDB service again.",
        "4. Initialize the replica set (mongosh, or scripts/sync_diagnostics.py init-replica-set):",
        f'     rs.initiate({{ _id: "{set_name}", members: [{{ _id: 0, host: "{host}" }}] }})',
        "5. Add the replica set name to the connection string:",
        f"     MONGO_LOCAL_URI=mongodb://{host}/{database}?replicaSet={set_name}",
        "6. Run the preflight again.",
    ])


def _first_host(mongo_uri: str) -> str:
    netloc = urlsplit(mongo_uri).netloc
    hosts = netloc.rpartition("@")[2]
    return hosts.split(",")[0] or DEFAULT_HOST


def direct_uri(mongo_uri: str) -> str:
    """
    Rewrite a connection string for a direct connection to its first host.

    Replica-set options are dropped so a standalone server can still answer.
    SRV strings are returned unchanged.
    """
    parts = urlsplit(mongo_uri)
    if parts.scheme != "mongodb":
        return mongo_uri
    userinfo, at, hosts = parts.netloc.rpartition("@")
    netloc = f"{userinfo}{at}{hosts.split(',')[0]}"
    query = [
        (key, value) for key, value in parse_qsl(parts.query)
        if key.lower() not in ("replicaset", "directconnection")
    ]
    return urlunsplit((parts.scheme, netloc, parts.path, urlencode(query), parts.fragment))


def _direct_client(mongo_uri: str, timeout: int):
    uri = direct_uri(mongo_uri)
    return create_client(
        uri,
        connect_timeout=timeout,
        server_selection_timeout=timeout,
        direct_connection=True if uri.startswith("mongodb://") else None,
    )


def _member_summary(status: Dict[str, Any]) -> Dict[str, Any]:
    members: List[Dict[str, Any]] = status.get("members", [])
    primary = next((m.get("name") for m in members if m.get("stateStr") == "PRIMARY"), None)
    return {
        "set_name": status.get("set"),
        "members": len(members),
        "primary": primary,
        "states": [m.get("stateStr") for m in members],
    }


def _connection_failed(error: Exception, details: Dict[str, Any]) -> PreflightResult:
    category, hint = classify_connection_error(error, LOCAL)
    details.update({"category": category, "error": str(error)})
    logger.error(
        f"Preflight could not reach the local MongoDB ({category}): {error}",
        extra={"category": category}
    )
    return PreflightResult(
        ok=False,
        status=PreflightStatus.CONNECTION_FAILED,
        details=details,
        remediation=hint,
    )


def check_replica_set(
    mongo_uri: str,
    database: Optional[str] = None,
    timeout: int = 10,
) -> PreflightResult:
    """
    Verify the local MongoDB can serve change streams.

    Args:
        mongo_uri: Local connection string as configured for the sync engine
        database: Database used for the change stream test
        timeout: Connect and server selection timeout in seconds

    Returns:
        PreflightResult; ``ok`` is True only when every check passed
    """
    database = resolve_database_name(mongo_uri, database, "cafe")
    host = _first_host(mongo_uri)
    details: Dict[str, Any] = {"uri": redact_uri(mongo_uri), "database": database}

    client = None
    try:
        client = _direct_client(mongo_uri, timeout)

        try:
            status = client.admin.command("replSetGetStatus")
        except OperationFailure as e:
            code_name = (e.details or {}).get("codeName")
            if e.code == NO_REPLICATION_CODE or code_name == "NoReplicationEnabled":
                logger.warning("Local MongoDB is not a replica set")
                return PreflightResult(
                    ok=False,
                    status=PreflightStatus.NOT_REPLICA_SET,
                    details=details,
                    remediation=replica_set_remediation(host=host, database=database),
                )
            if e.code == NOT_YET_INITIALIZED_CODE or code_name == "NotYetInitialized":
                return PreflightResult(
                    ok=False,
                    status=PreflightStatus.NOT_INITIALIZED,
                    details=details,
                    remediation=(
                        "Replication is enabled but the set was never initiated. Run "
                        f'rs.initiate({{ _id: "{DEFAULT_REPLICA_SET}", members: [{{ _id: 0, host: "{host}" }}] }}) '
                        "or scripts/sync_diagnostics.py init-replica-set"
                    ),
                )
            raise

        details.update(_member_summary(status))
        set_name = details.get("set_name") or DEFAULT_REPLICA_SET

        if not uri_has_replica_set(mongo_uri):
            return PreflightResult(
                ok=False,
                status=PreflightStatus.URI_MISSING_REPLICA_SET,
                details=details,
                remediation=(
                    f"Add the replicaSet parameter to MONGO_LOCAL_URI, e.g. "
                    f"mongodb://{host}/{database}?replicaSet={set_name}"
                ),
            )

        if details["primary"] is None:
            return PreflightResult(
                ok=False,
                status=PreflightStatus.NO_PRIMARY,
                details=details,
                remediation="No PRIMARY member; wait for the election to finish and check rs.status()",
            )

        try:
            with client[database][PREFLIGHT_COLLECTION].watch(max_await_time_ms=100):
                pass
        except PyMongoError as e:
            details["error"] = str(e)
            logger.error(f"Change stream test failed: {e}")
            return PreflightResult(
                ok=False,
                status=PreflightStatus.CHANGE_STREAM_UNAVAILABLE,
                details=details,
                remediation=(
                    "The replica set is configured but a change stream could not be opened; "
                    "check the server version (4.0+) and the user's changeStream privilege"
                ),
            )

        logger.info(
            "Preflight passed",
            extra={"set_name": details["set_name"], "primary": details["primary"]}
        )
        return PreflightResult(ok=True, status=PreflightStatus.OK, details=details)

    except PyMongoError as e:
        return _connection_failed(e, details)

    finally:
        if client is not None:
            client.close()


def initiate_replica_set(
    mongo_uri: str,
    set_name: str = DEFAULT_REPLICA_SET,
    host: Optional[str] = None,
    wait_seconds: float = 30.0,
    poll_interval: float = 1.0,
    timeout: int = 10,
) -> PreflightResult:
    """
    Initiate a single-member replica set on a mongod started with replSetName.

    Already-initialized sets are left untouched.

    Returns:
        PreflightResult with status OK once a PRIMARY is elected
    """
    host = host or _first_host(mongo_uri)
    details: Dict[str, Any] = {"uri": redact_uri(mongo_uri), "set_name": set_name, "host": host}

    client = None
    try:
        client = _direct_client(mongo_uri, timeout)
        admin = client.admin

        try:
            status = admin.command("replSetGetStatus")
            details.update(_member_summary(status))
            details["already_initialized"] = True
            logger.info("Replica set already initialized", extra={"set_name": status.get("set")})
        except OperationFailure as e:
            if e.code == NO_REPLICATION_CODE:
                return PreflightResult(
                    ok=False,
                    status=PreflightStatus.NOT_REPLICA_SET,
                    details=details,
                    remediation=replica_set_remediation(set_name, host),
                )
            if e.code != NOT_YET_INITIALIZED_CODE:
                raise
            logger.info(f"Initiating replica set {set_name} on {host}")
            admin.command("replSetInitiate", {"_id": set_name, "members": [{"_id": 0, "host": host}]})
            details["already_initialized"] = False

        deadline = time.monotonic() + wait_seconds
        while True:
            details.update(_member_summary(admin.command("replSetGetStatus")))
            if details["primary"] is not None:
                return PreflightResult(ok=True, status=PreflightStatus.OK, details=details)
            if time.monotonic() >= deadline:
                return PreflightResult(
                    ok=False,
                    status=PreflightStatus.NO_PRIMARY,
                    details=details,
                    remediation="The replica set is still electing a PRIMARY; run the preflight again shortly",
                )
            time.sleep(poll_interval)

    except PyMongoError as e:
        return _connection_failed(e, details)

    finally:
        if client is not None:
            client.close()
