"""
CDC (Change Data Capture) module: MongoDB change feeds and resume-token checkpoints.
"""

from .change_feed import (
    ChangeFeed, ChangeEvent, build_pipeline,
    CDCError, ChangeFeedError, StreamInvalidated, CheckpointError
)
from .checkpoint_store import CheckpointStore, SyncCheckpoint

__all__ = [
    "ChangeFeed",
    "ChangeEvent",
    "build_pipeline",
    "CDCError",
    "ChangeFeedError",
    "StreamInvalidated",
    "CheckpointError",
    "CheckpointStore",
    "SyncCheckpoint",
]
