"""
Operator diagnostics: replica-set preflight and sync round-trip check.
"""

from .preflight import (
    PreflightResult, PreflightStatus, check_replica_set,
    initiate_replica_set, replica_set_remediation
)
from .roundtrip import ROUNDTRIP_COLLECTION, RoundTripResult, run_roundtrip

__all__ = [
    "PreflightResult",
    "PreflightStatus",
    "check_replica_set",
    "initiate_replica_set",
    "replica_set_remediation",
    "ROUNDTRIP_COLLECTION",
    "RoundTripResult",
    "run_roundtrip",
]
