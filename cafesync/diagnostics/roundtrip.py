"""End-to-end round-trip check: write a marker on one side and wait for it on the other."""

import logging
import time
from datetime import datetime
from typing import Optional

from bson import ObjectId
from pydantic import BaseModel
from pymongo.database import Database
from pymongo.errors import PyMongoError

logger = logging.getLogger(__name__)

ROUNDTRIP_COLLECTION = "sync_roundtrip_markers"


class RoundTripResult(BaseModel):
    ok: bool
    direction: str
    marker_id: str
    latency_seconds: Optional[float] = None
    error: Optional[str] = None


def run_roundtrip(
    source_db: Database,
    target_db: Database,
    direction: str = "local_to_remote",
    collection: str = ROUNDTRIP_COLLECTION,
    timeout: float = 10.0,
    poll_interval: float = 0.2,
) -> RoundTripResult:
    """
    Insert a marker into ``source_db`` and poll ``target_db`` until it shows up.

    A running sync worker for ``direction`` must include ``collection`` in its
    scope. The marker is deleted from both sides afterwards.
    """
    marker_id = ObjectId()
    marker = {"_id": marker_id, "kind": "roundtrip", "direction": direction, "created_at": datetime.utcnow()}
    result = RoundTripResult(ok=False, direction=direction, marker_id=str(marker_id))

    started = time.monotonic()
    try:
        source_db[collection].insert_one(marker)
        deadline = started + timeout
        while time.monotonic() < deadline:
            if target_db[collection].find_one({"_id": marker_id}) is not None:
                result.ok = True
                result.latency_seconds = round(time.monotonic() - started, 3)
                break
            time.sleep(poll_interval)
        else:
            result.error = f"marker not replicated within {timeout}s"

    except PyMongoError as e:
        result.error = str(e)

    finally:
        for database in (source_db, target_db):
            try:
                database[collection].delete_one({"_id": marker_id})
            except PyMongoError as e:
                logger.warning(f"Failed to remove round-trip marker from {database.name}: {e}")

    log = logger.info if result.ok else logger.error
    log(
        f"Round trip {direction}: {'ok' if result.ok else result.error}",
        extra=result.model_dump()
    )
    return result
