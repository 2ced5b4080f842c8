"""MongoDB client construction and connection error triage for both sync sides."""

import logging
from typing import Any, Dict, Optional, Tuple

import pymongo
from pymongo.database import Database
from pymongo.errors import (
    ConfigurationError,
    OperationFailure,
    PyMongoError,
)
from pymongo.uri_parser import parse_uri

logger = logging.getLogger(__name__)

LOCAL = "local"
REMOTE = "remote"

# Auth failure / unauthorized
AUTH_ERROR_CODES = {13, 18}


def _get_client(mongo_uri: str, **options: Any) -> pymongo.MongoClient:
    """Create a MongoClient from a URI. Caller is responsible for closing it.

    Looking up ``pymongo.MongoClient`` at call time allows tests to monkeypatch
    it (e.g. with mongomock) and have our code pick it up.
    """
    return pymongo.MongoClient(mongo_uri, **options)


def create_client(
    mongo_uri: str,
    connect_timeout: int = 10,
    server_selection_timeout: int = 10,
    socket_timeout: int = 45,
    max_pool_size: int = 50,
    direct_connection: Optional[bool] = None,
) -> pymongo.MongoClient:
    """Create a client with bounded timeouts so callers fail fast.

    Args:
        mongo_uri: Connection string
        connect_timeout: Seconds to establish a socket
        server_selection_timeout: Seconds to find a suitable server
        socket_timeout: Seconds a socket operation may block
        max_pool_size: Connection pool size
        direct_connection: Force a direct (non replica-set aware) connection

    Returns:
        A lazily-connecting MongoClient
    """
    options: Dict[str, Any] = {
        "connectTimeoutMS": connect_timeout * 1000,
        "serverSelectionTimeoutMS": server_selection_timeout * 1000,
        "socketTimeoutMS": socket_timeout * 1000,
        "maxPoolSize": max_pool_size,
        "appname": "cafesync",
    }
    if direct_connection is not None:
        options["directConnection"] = direct_connection
    return _get_client(mongo_uri, **options)


def client_from_settings(mongo_settings, side: str) -> pymongo.MongoClient:
    """Build the client for ``side`` ("local" or "remote") from MongoSettings."""
    uri = mongo_settings.local_uri if side == LOCAL else mongo_settings.remote_uri
    return create_client(
        uri,
        connect_timeout=mongo_settings.connect_timeout,
        server_selection_timeout=mongo_settings.server_selection_timeout,
        socket_timeout=mongo_settings.socket_timeout,
        max_pool_size=mongo_settings.max_pool_size,
    )


def resolve_database_name(mongo_uri: str, explicit: Optional[str], fallback: str) -> str:
    """Pick the database name: explicit setting, then URI path, then fallback."""
    if explicit:
        return explicit
    try:
        parsed = parse_uri(mongo_uri) if mongo_uri else {}
    except (ConfigurationError, ValueError) as e:
        logger.warning(f"Could not parse MongoDB URI for database name: {e}")
        parsed = {}
    return parsed.get("database") or fallback


def uri_has_replica_set(mongo_uri: str) -> bool:
    """Check whether a connection string names a replica set."""
    try:
        parsed = parse_uri(mongo_uri)
    except (ConfigurationError, ValueError):
        return "replicaSet=" in (mongo_uri or "")
    return bool(parsed.get("options", {}).get("replicaset"))


def redact_uri(mongo_uri: str) -> str:
    """Hide credentials in a connection string for logging."""
    if not mongo_uri or "@" not in mongo_uri:
        return mongo_uri
    scheme, _, rest = mongo_uri.partition("://")
    return f"{scheme}://***@{rest.split('@', 1)[1]}"


def ping(database: Database) -> None:
    """Round-trip to the server; raises PyMongoError when unreachable."""
    database.client.admin.command("ping")


def classify_connection_error(error: Exception, side: str) -> Tuple[str, str]:
    """
    Categorize a connection failure and suggest a fix.

    Args:
        error: Exception raised while connecting or pinging
        side: "local" or "remote"

    Returns:
        (category, hint) where category is one of
        authentication, dns, timeout, refused, unknown
    """
    message = str(error).lower()
    is_local = side == LOCAL

    if (isinstance(error, OperationFailure) and error.code in AUTH_ERROR_CODES) or "authentication failed" in message:
        return (
            "authentication",
            "Check the username and password in the connection string and the user's database permissions",
        )

    if "nodename nor servname" in message or "name or service not known" in message \
            or "getaddrinfo" in message or "dns" in message or "enotfound" in message:
        if is_local:
            return "dns", "Check the local host name and that MongoDB is running locally"
        return "dns", "Check the internet connection and the cluster host name in the connection string"

    if "connection refused" in message or "econnrefused" in message:
        if is_local:
            return "refused", "Start the local MongoDB service (mongod) and check port 27017"
        return "refused", "The cloud cluster refused the connection; check the port and cluster state"

    if "timed out" in message or "timeout" in message or "no servers" in message:
        if is_local:
            return "timeout", "Make sure the local MongoDB service is running and reachable"
        return (
            "timeout",
            "Likely an IP allow-list issue: add this machine's IP under Network Access in Atlas",
        )

    return "unknown", "Check the connection string and server logs"


def is_retryable_error(error: PyMongoError) -> bool:
    """Check if a stream or write error is worth retrying."""
    if isinstance(error, OperationFailure):
        if error.code in AUTH_ERROR_CODES:
            return False
        return True
    return True
