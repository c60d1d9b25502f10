from __future__ import annotations

from .auto_backup import AutoBackupScheduler
from .reconcile import ReconciliationEngine, RemoteItem, SyncResult, pattern_id_for
from .remote_client import RemoteClient

__all__ = [
    "AutoBackupScheduler",
    "ReconciliationEngine",
    "RemoteClient",
    "RemoteItem",
    "SyncResult",
    "pattern_id_for",
]
