from __future__ import annotations

from typing import Optional

from ..core.logging_setup import LogFunc, make_log_func
from .adapters import (
    ClipboardSyncAdapter,
    EntitySyncAdapter,
    FileSyncAdapter,
    SnippetSyncAdapter,
    build_adapter,
    build_adapters,
)
from .approval import ApprovalGate
from .local_store import LocalStore
from .models import Action, ApprovalRecord, EntityKind, SyncableRecord, SyncResult
from .orchestrator import SyncOrchestrator, SyncState, describe_result
from .remote_store import SupabaseStore
from .resolver import resolve

__all__ = [
    "Action",
    "ApprovalGate",
    "ApprovalRecord",
    "ClipboardSyncAdapter",
    "EntityKind",
    "EntitySyncAdapter",
    "FileSyncAdapter",
    "LocalStore",
    "SnippetSyncAdapter",
    "SupabaseStore",
    "SyncOrchestrator",
    "SyncResult",
    "SyncState",
    "SyncableRecord",
    "build_adapter",
    "build_orchestrator",
    "describe_result",
    "resolve",
]


def build_orchestrator(cfg, log_func: Optional[LogFunc] = None) -> SyncOrchestrator:
    log_func = log_func or make_log_func()
    local = LocalStore(cfg.database.path)
    remote = SupabaseStore.from_config(cfg)
    gate = ApprovalGate(remote, log_func=log_func)
    adapters = build_adapters(local, remote, cfg, log_func=log_func)
    return SyncOrchestrator(gate, adapters, local=local, log_func=log_func)
