"""
Sync engine exceptions.
"""

from typing import Optional


class SyncError(Exception):
    """Base exception for sync engine errors."""
    pass


class SyncConfigurationError(SyncError):
    """Configuration prevents sync from starting (missing URI, no replica set, ...)."""

    def __init__(self, message: str, remediation: Optional[str] = None):
        super().__init__(message)
        self.remediation = remediation


class SyncConnectionError(SyncError):
    """A database could not be reached within the configured timeouts."""

    def __init__(self, side: str, category: str, hint: str, cause: Optional[Exception] = None):
        super().__init__(f"{side} database unreachable ({category}): {cause}")
        self.side = side
        self.category = category
        self.hint = hint


class WorkerStartError(SyncError):
    """A sync worker could not open its change stream."""
    pass
