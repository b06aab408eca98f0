from __future__ import annotations

import threading
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional

from ..core.errors import AlreadySyncing, SyncNotApproved
from ..core.logging_setup import LogFunc, detail_json, make_log_func
from .approval import ApprovalGate
from .models import ApprovalRecord, PhaseResult, SyncResult, format_timestamp, now_utc, parse_timestamp

LAST_SYNC_TIME_KEY = "last_sync_time"


class SyncState(str, Enum):
    IDLE = "idle"
    APPROVAL_CHECK = "approval_check"
    SYNCING = "syncing"


class SyncOrchestrator:
    """Runs approval check, then push and pull for each entity adapter in order.

    At most one `sync_all` runs per instance; a concurrent call raises
    AlreadySyncing instead of waiting.
    """

    def __init__(self, gate: ApprovalGate, adapters: List, local=None, log_func: Optional[LogFunc] = None,
                 clock: Callable[[], datetime] = now_utc):
        self.gate = gate
        self.adapters = list(adapters)
        self.local = local
        self.log_func = log_func or make_log_func()
        self.clock = clock

        self._lock = threading.Lock()
        self._state = SyncState.IDLE
        self._last_sync_time: Optional[datetime] = None
        self._last_result: Optional[SyncResult] = None

    def _log(self, level: str, message: str, detail: Optional[str] = None):
        self.log_func(level, "sync", message, detail)

    @property
    def state(self) -> SyncState:
        return self._state

    @property
    def is_syncing(self) -> bool:
        return self._state != SyncState.IDLE

    @property
    def last_result(self) -> Optional[SyncResult]:
        return self._last_result

    @property
    def last_sync_time(self) -> Optional[datetime]:
        if self._last_sync_time is None and self.local is not None:
            raw = self.local.get_setting(LAST_SYNC_TIME_KEY)
            if raw:
                self._last_sync_time = parse_timestamp(raw)
        return self._last_sync_time

    def check_approval(self, user_identity: str) -> Optional[ApprovalRecord]:
        return self.gate.check_approval(user_identity)

    def request_approval(self, user_identity: str) -> ApprovalRecord:
        return self.gate.request_approval(user_identity)

    def sync_all(self, user_identity: str, run_type: str = "manual") -> SyncResult:
        if not self._lock.acquire(blocking=False):
            self._log("INFO", "sync_skipped_already_running", detail_json(user=user_identity))
            raise AlreadySyncing()
        try:
            self._state = SyncState.APPROVAL_CHECK
            approval = self.gate.check_approval(user_identity)
            if approval is None or not approval.approved:
                self._log("WARNING", "sync_not_approved", detail_json(user=user_identity, requested=approval is not None))
                raise SyncNotApproved(user_identity)

            self._state = SyncState.SYNCING
            run_id = self.local.insert_sync_run(run_type, user_identity) if self.local is not None else None
            try:
                result = self._run_adapters(user_identity)
                result.sync_time = self.clock()
                summary = result.summary()
                if self.local is not None:
                    self.local.set_setting(LAST_SYNC_TIME_KEY, format_timestamp(result.sync_time))
                    self.local.finish_sync_run(run_id, "partial" if result.partial else "success", summary)
            except Exception as e:
                self._fail_run(run_id, e)
                raise

            self._last_sync_time = result.sync_time
            self._last_result = result
            self._log("INFO", "run_success", detail_json(user=user_identity, run_type=run_type, **summary))
            return result
        finally:
            self._state = SyncState.IDLE
            self._lock.release()

    def _fail_run(self, run_id: Optional[int], error: Exception):
        self._log("ERROR", "run_failed", detail_json(run_id=run_id, error=str(error)))
        if run_id is None:
            return
        try:
            self.local.finish_sync_run(run_id, "failed", {"error": str(error)})
        except Exception as e:
            self._log("ERROR", "run_finish_failed", detail_json(run_id=run_id, error=str(e)))

    def _run_adapters(self, user_identity: str) -> SyncResult:
        result = SyncResult()
        for adapter in self.adapters:
            kind = adapter.kind.value
            entity = PhaseResult()
            for phase_name in ("push", "pull"):
                phase = getattr(adapter, f"{phase_name}_phase")
                try:
                    entity = entity.merge(phase(user_identity))
                except Exception as e:
                    # Whole-phase failure (e.g. listing failed); other adapters still run.
                    entity = entity.merge(PhaseResult(errors=1))
                    self._log("ERROR", f"{phase_name}_phase_failed", detail_json(entity=kind, error=str(e)))
            result.entities[kind] = entity
            result.pushed += entity.pushed
            result.pulled += entity.pulled
            result.errors += entity.errors
            result.diverged += entity.diverged
        return result


def describe_result(result: SyncResult, noun: str = "record") -> str:
    """Short user-facing summary of a run."""
    if result.errors > 0:
        return (
            f"Partially synced: {result.pushed} up, {result.pulled} down, "
            f"{result.errors} failed. Please try again later."
        )
    if result.pushed == 0 and result.pulled == 0:
        return "Everything is up to date"
    if result.pulled == 0:
        return f"Pushed {result.pushed} {noun}{'s' if result.pushed > 1 else ''} to cloud"
    if result.pushed == 0:
        return f"Pulled {result.pulled} {noun}{'s' if result.pulled > 1 else ''} from cloud"
    return f"{result.pushed} up, {result.pulled} down"
