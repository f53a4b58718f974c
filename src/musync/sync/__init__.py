"""Sync module: matching, quota accounting, remote clients and the reconciliation engine."""

from musync.sync.engine import (
    PlatformOutcome,
    ReconcileReport,
    ReconciliationEngine,
    SyncInProgress,
    SyncPhase,
)

__all__ = [
    "PlatformOutcome",
    "ReconcileReport",
    "ReconciliationEngine",
    "SyncInProgress",
    "SyncPhase",
]
