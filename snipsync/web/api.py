from __future__ import annotations

import asyncio
import json
import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from fastapi import APIRouter, HTTPException
from fastapi.responses import JSONResponse

from snipsync.core.config import LAST_SYNC_PATH, RUN_HISTORY_PATH, is_remote_configured, load_config
from snipsync.core.errors import AlreadySyncing, ConfigurationError, RemoteStoreError, SyncNotApproved
from snipsync.sync import SyncOrchestrator, build_orchestrator, describe_result
from snipsync.sync.models import format_timestamp

router = APIRouter(prefix="/api")

ORCHESTRATOR_LOCK = threading.Lock()
SCHEDULER_STATE_LOCK = threading.Lock()
SCHEDULER_POLL_GRANULARITY_SEC = 1
SCHEDULER_MIN_INTERVAL_SEC = 10
SCHEDULER_MAX_INTERVAL_SEC = 86400

_orchestrator: SyncOrchestrator | None = None
# None while an orchestrator is pinned with set_orchestrator.
_orchestrator_remote: str | None = None
_scheduler_task: asyncio.Task | None = None
_scheduler_stop_event: asyncio.Event | None = None
_scheduler_state: dict[str, object] = {
    "running": False,
    "enabled": False,
    "configured_interval_sec": 0,
    "effective_interval_sec": 0,
    "last_started_at": None,
    "last_finished_at": None,
    "last_result": None,
    "last_error": None,
    "next_run_at": None,
    "skipped_busy_count": 0,
    "run_count": 0,
}


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _remote_fingerprint(cfg) -> str:
    return json.dumps(cfg.remote.model_dump(), sort_keys=True)


def get_orchestrator() -> SyncOrchestrator:
    """Process-wide orchestrator; its lock is what keeps manual and scheduled runs single-flight.

    Rebuilt when the remote section of config.yaml changes, but never while a run is in flight.
    """
    global _orchestrator, _orchestrator_remote
    with ORCHESTRATOR_LOCK:
        if _orchestrator is not None and _orchestrator_remote is None:
            return _orchestrator
        cfg = load_config()
        fingerprint = _remote_fingerprint(cfg)
        if _orchestrator is None or (fingerprint != _orchestrator_remote and not _orchestrator.is_syncing):
            if _orchestrator is not None:
                logging.getLogger("snipsync.api").info("orchestrator_rebuilt_remote_changed")
            _orchestrator = build_orchestrator(cfg)
            _orchestrator_remote = fingerprint
        return _orchestrator


def set_orchestrator(orchestrator: SyncOrchestrator | None) -> None:
    """Pin an orchestrator (never rebuilt), or pass None to build from config again."""
    global _orchestrator, _orchestrator_remote
    with ORCHESTRATOR_LOCK:
        _orchestrator = orchestrator
        _orchestrator_remote = None


def _user_identity(user: str | None = None) -> str:
    identity = (user or load_config().sync.user_identity or "").strip()
    if not identity:
        raise HTTPException(status_code=400, detail="user_identity_missing")
    return identity


def _append_run_history(summary: dict) -> None:
    RUN_HISTORY_PATH.parent.mkdir(parents=True, exist_ok=True)
    with RUN_HISTORY_PATH.open("a", encoding="utf-8") as f:
        f.write(json.dumps(summary, ensure_ascii=False))
        f.write("\n")


def _as_int(value: object, default: int = 0) -> int:
    try:
        return int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return default


def _sanitize_poll_interval(raw_value: object) -> int:
    raw = _as_int(raw_value, 0)
    if raw <= 0:
        return 0
    return min(max(raw, SCHEDULER_MIN_INTERVAL_SEC), SCHEDULER_MAX_INTERVAL_SEC)


def _iso_from_ts(ts: object) -> str | None:
    if ts is None:
        return None
    try:
        return datetime.fromtimestamp(float(ts), tz=timezone.utc).isoformat()  # type: ignore[arg-type]
    except (TypeError, ValueError, OverflowError):
        return None


def _scheduler_state_update(**kwargs) -> None:
    with SCHEDULER_STATE_LOCK:
        _scheduler_state.update(kwargs)


def _scheduler_state_snapshot() -> dict[str, object]:
    with SCHEDULER_STATE_LOCK:
        snap = dict(_scheduler_state)

    next_run_at = snap.get("next_run_at")
    next_run_in_sec = None if next_run_at is None else max(int(float(next_run_at) - time.time()), 0)  # type: ignore[arg-type]
    return {
        "running": bool(snap.get("running")),
        "enabled": bool(snap.get("enabled")),
        "configured_interval_sec": _as_int(snap.get("configured_interval_sec")),
        "effective_interval_sec": _as_int(snap.get("effective_interval_sec")),
        "last_started_at": _iso_from_ts(snap.get("last_started_at")),
        "last_finished_at": _iso_from_ts(snap.get("last_finished_at")),
        "next_run_at": _iso_from_ts(next_run_at),
        "next_run_in_sec": next_run_in_sec,
        "last_result": snap.get("last_result"),
        "last_error": snap.get("last_error"),
        "run_count": _as_int(snap.get("run_count")),
        "skipped_busy_count": _as_int(snap.get("skipped_busy_count")),
    }


async def _wait_stop_or_timeout(stop_event: asyncio.Event, timeout_sec: float) -> bool:
    if timeout_sec <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=timeout_sec)
        return True
    except asyncio.TimeoutError:
        return False


def _run_sync_and_record(user_identity: str, run_type: str) -> dict:
    result = get_orchestrator().sync_all(user_identity, run_type=run_type)
    summary = result.summary()
    summary.update({"run_type": run_type, "user_identity": user_identity, "message": describe_result(result)})
    LAST_SYNC_PATH.parent.mkdir(parents=True, exist_ok=True)
    LAST_SYNC_PATH.write_text(json.dumps(summary, ensure_ascii=False, indent=2), encoding="utf-8")
    _append_run_history(summary)
    return summary


def _build_readiness_payload() -> dict:
    checks: dict[str, bool] = {
        "config_load": False,
        "remote_configured": False,
        "user_identity_configured": False,
        "database_parent_ready": False,
        "scheduler_running": False,
        "scheduler_enabled": False,
    }
    warnings: list[str] = []
    errors: list[str] = []
    scheduler = _scheduler_state_snapshot()
    checks["scheduler_running"] = bool(scheduler.get("running"))
    checks["scheduler_enabled"] = bool(scheduler.get("enabled"))

    cfg = None
    try:
        cfg = load_config()
        checks["config_load"] = True
    except Exception as e:
        errors.append(f"config_load_failed: {e}")

    if cfg is not None:
        checks["remote_configured"] = is_remote_configured(cfg)
        if not checks["remote_configured"]:
            warnings.append("remote_not_configured")
        checks["user_identity_configured"] = bool(cfg.sync.user_identity.strip())
        if not checks["user_identity_configured"]:
            warnings.append("user_identity_missing")
        try:
            Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
            checks["database_parent_ready"] = True
        except Exception as e:
            errors.append(f"database_parent_unavailable: {e}")

    if checks["scheduler_enabled"] and not checks["scheduler_running"]:
        warnings.append("scheduler_enabled_but_not_running")

    ok = checks["config_load"] and checks["database_parent_ready"]
    return {
        "ok": ok,
        "checked_at": _now_iso(),
        "checks": checks,
        "warnings": warnings,
        "errors": errors,
        "scheduler": scheduler,
    }


async def _scheduler_loop(stop_event: asyncio.Event) -> None:
    logger = logging.getLogger("snipsync.scheduler")
    next_run_at_ts: float | None = None
    previous_effective_interval: int | None = None
    _scheduler_state_update(running=True, last_error=None, last_result=None)
    logger.info("scheduler_started")

    try:
        while not stop_event.is_set():
            cfg = load_config()
            configured_interval = int(cfg.sync.poll_interval_sec or 0)
            effective_interval = _sanitize_poll_interval(configured_interval)
            user_identity = cfg.sync.user_identity.strip()
            enabled = configured_interval > 0 and bool(user_identity) and is_remote_configured(cfg)

            _scheduler_state_update(
                enabled=enabled,
                configured_interval_sec=configured_interval,
                effective_interval_sec=effective_interval,
            )

            if not enabled:
                next_run_at_ts = None
                previous_effective_interval = None
                _scheduler_state_update(next_run_at=None)
                await _wait_stop_or_timeout(stop_event, SCHEDULER_POLL_GRANULARITY_SEC)
                continue

            now_ts = time.time()
            if next_run_at_ts is None or previous_effective_interval != effective_interval:
                next_run_at_ts = now_ts + effective_interval
            previous_effective_interval = effective_interval
            _scheduler_state_update(next_run_at=next_run_at_ts)

            wait_sec = next_run_at_ts - now_ts
            if wait_sec > 0:
                await _wait_stop_or_timeout(stop_event, min(wait_sec, SCHEDULER_POLL_GRANULARITY_SEC))
                continue

            started_ts = time.time()
            _scheduler_state_update(last_started_at=started_ts, last_result="running", last_error=None)
            try:
                summary = await asyncio.to_thread(_run_sync_and_record, user_identity, "scheduled")
                errors = _as_int(summary.get("errors", 0))
                _scheduler_state_update(
                    last_finished_at=time.time(),
                    last_result="warning" if errors > 0 else "success",
                    last_error=f"errors={errors}" if errors > 0 else None,
                    run_count=_as_int(_scheduler_state_snapshot().get("run_count")) + 1,
                )
                logger.info(
                    "scheduled_sync_completed pushed=%s pulled=%s errors=%s",
                    summary.get("pushed", 0),
                    summary.get("pulled", 0),
                    errors,
                )
            except AlreadySyncing:
                _scheduler_state_update(
                    skipped_busy_count=_as_int(_scheduler_state_snapshot().get("skipped_busy_count")) + 1,
                    last_finished_at=time.time(),
                    last_result="skipped_busy",
                    last_error="sync_busy",
                )
                logger.warning("scheduled_sync_skipped sync_busy")
            except SyncNotApproved as e:
                _scheduler_state_update(
                    last_finished_at=time.time(),
                    last_result="not_approved",
                    last_error=e.code,
                    run_count=_as_int(_scheduler_state_snapshot().get("run_count")) + 1,
                )
                logger.warning("scheduled_sync_not_approved user=%s", user_identity)
            except Exception as e:
                _scheduler_state_update(
                    last_finished_at=time.time(),
                    last_result="failed",
                    last_error=str(e),
                    run_count=_as_int(_scheduler_state_snapshot().get("run_count")) + 1,
                )
                logger.exception("scheduled_sync_failed: %s", e)
            finally:
                next_run_at_ts = time.time() + effective_interval
                _scheduler_state_update(next_run_at=next_run_at_ts)
    finally:
        _scheduler_state_update(running=False, next_run_at=None)
        logger.info("scheduler_stopped")


def start_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_task and not _scheduler_task.done():
        return

    _scheduler_stop_event = asyncio.Event()
    _scheduler_task = asyncio.create_task(_scheduler_loop(_scheduler_stop_event), name="snipsync_scheduler")


async def stop_scheduler() -> None:
    global _scheduler_task, _scheduler_stop_event
    if _scheduler_stop_event is not None:
        _scheduler_stop_event.set()

    if _scheduler_task is not None:
        try:
            await _scheduler_task
        except Exception:
            logging.getLogger("snipsync.scheduler").exception("scheduler_stop_error")

    _scheduler_task = None
    _scheduler_stop_event = None
    _scheduler_state_update(running=False, next_run_at=None)


@router.get("/healthz")
def healthz():
    return {
        "ok": True,
        "status": "alive",
        "checked_at": _now_iso(),
    }


@router.get("/readyz")
def readyz():
    payload = _build_readiness_payload()
    return JSONResponse(status_code=200 if payload["ok"] else 503, content=payload)


@router.get("/status/sync")
def sync_status():
    orchestrator = get_orchestrator()
    last_sync = orchestrator.last_sync_time
    last_result = orchestrator.last_result
    return {
        "ok": True,
        "checked_at": _now_iso(),
        "state": orchestrator.state.value,
        "is_syncing": orchestrator.is_syncing,
        "last_sync_time": format_timestamp(last_sync) if last_sync else None,
        "last_result": last_result.summary() if last_result else None,
        "scheduler": _scheduler_state_snapshot(),
    }


@router.post("/actions/sync")
def run_sync(user: str | None = None):
    """Run one full sync now and return its summary."""
    identity = _user_identity(user)
    try:
        return _run_sync_and_record(identity, "manual_web")
    except AlreadySyncing:
        raise HTTPException(status_code=409, detail="sync_busy")
    except SyncNotApproved as e:
        raise HTTPException(status_code=403, detail=e.code)
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    except RemoteStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))


@router.get("/approval")
def get_approval(user: str | None = None):
    identity = _user_identity(user)
    try:
        record = get_orchestrator().check_approval(identity)
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "user_identity": identity,
        "requested": record is not None,
        "approved": bool(record and record.approved),
        "record": record.model_dump(mode="json") if record else None,
    }


@router.post("/approval")
def request_approval(user: str | None = None):
    identity = _user_identity(user)
    try:
        record = get_orchestrator().request_approval(identity)
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"ok": True, "record": record.model_dump(mode="json")}


@router.get("/history")
def get_history(limit: int = 50):
    limit_sanitized = min(max(int(limit), 1), 500)
    orchestrator = get_orchestrator()
    items: list[dict[str, Any]] = orchestrator.local.recent_sync_runs(limit_sanitized) if orchestrator.local else []
    return {
        "limit": limit_sanitized,
        "count": len(items),
        "items": items,
    }
