from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Callable, Dict, Generic, List, Optional, Type

from ..core.errors import RecordSyncError
from ..core.logging_setup import LogFunc, detail_json, make_log_func
from .models import (
    Action,
    ClipboardPayload,
    EntityKind,
    FilePayload,
    PayloadT,
    PhaseResult,
    SnippetPayload,
    SyncableRecord,
    format_timestamp,
    parse_timestamp,
    to_epoch_ms,
)
from .resolver import PULL_ACTIONS, PUSH_ACTIONS, payload_diverged, resolve, restrict

OUTCOME_PUSHED = "pushed"
OUTCOME_PULLED = "pulled"
OUTCOME_NOOP = "noop"
OUTCOME_DIVERGED = "diverged"
OUTCOME_ERROR = "error"

MAX_KEY_ALLOCATION_ATTEMPTS = 20


def _tally(outcomes: List[str]) -> PhaseResult:
    return PhaseResult(
        pushed=outcomes.count(OUTCOME_PUSHED),
        pulled=outcomes.count(OUTCOME_PULLED),
        errors=outcomes.count(OUTCOME_ERROR),
        diverged=outcomes.count(OUTCOME_DIVERGED),
    )


class EntitySyncAdapter(Generic[PayloadT]):
    """Push/pull one entity kind between the local store and the remote store.

    The remote row for a local record is found by `(user, remote key)`. The
    remote key is the record's own `local_id` unless a sync link says
    otherwise (records pulled from another device keep the key the remote
    row was created with).
    """

    kind: EntityKind
    payload_model: Type[PayloadT]
    # None pushes every local record.
    push_limit: Optional[int] = None
    # None pulls every remote row.
    pull_limit: Optional[int] = None

    def __init__(self, local, remote, log_func: Optional[LogFunc] = None, max_workers: int = 1):
        self.local = local
        self.remote = remote
        self.log_func = log_func or make_log_func()
        self.max_workers = max(1, int(max_workers))
        self._key_lock = threading.Lock()

    def _log(self, level: str, message: str, **detail):
        self.log_func(level, "sync", message, detail_json(entity=self.kind.value, **detail))

    # --- row conversion ----------------------------------------------------

    def to_remote_row(self, record: SyncableRecord, remote_key: int) -> Dict[str, Any]:
        row = self.payload_model.model_validate(record.payload).model_dump()
        row["local_id"] = int(remote_key)
        row["created_at"] = format_timestamp(record.created_at)
        row["updated_at"] = format_timestamp(record.updated_at)
        return row

    def to_remote_update(self, record: SyncableRecord, remote_key: int) -> Dict[str, Any]:
        return self.to_remote_row(record, remote_key)

    def from_remote_row(self, row: Dict[str, Any]) -> SyncableRecord:
        fields = self.payload_model.model_fields
        payload = self.payload_model.model_validate({k: row.get(k) for k in fields if k in row})
        created = row.get("created_at") or row.get("updated_at")
        updated = row.get("updated_at") or created
        return SyncableRecord[self.payload_model](
            local_id=int(row["local_id"]),
            remote_id=str(row["id"]) if row.get("id") is not None else None,
            payload=payload,
            created_at=created,
            updated_at=updated,
        )

    def list_local(self) -> List[SyncableRecord]:
        return self.local.list_all(self.kind, limit=self.push_limit)

    # --- per-record execution ----------------------------------------------

    def _guard(self, phase: str, item, fn: Callable, key_fn: Callable) -> str:
        try:
            return fn(item)
        except Exception as e:
            err = RecordSyncError(self.kind.value, key_fn(item), phase, e)
            self._log("ERROR", f"{phase}_record_failed", key=err.key, error=str(e))
            return OUTCOME_ERROR

    def _run_each(self, phase: str, items: list, fn: Callable, key_fn: Callable) -> List[str]:
        if self.max_workers <= 1 or len(items) <= 1:
            return [self._guard(phase, item, fn, key_fn) for item in items]

        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix=f"sync-{self.kind.value}") as pool:
            futures = [pool.submit(self._guard, phase, item, fn, key_fn) for item in items]
            return [f.result() for f in futures]

    # --- push --------------------------------------------------------------

    def push_phase(self, user_identity: str) -> PhaseResult:
        outcomes = self._push_tombstones(user_identity)

        records = self.list_local()
        links = {int(l["local_id"]): l for l in self.local.links(self.kind)}
        claimed = {int(l["remote_local_id"]): int(l["local_id"]) for l in links.values()}

        def push_one(record: SyncableRecord) -> str:
            link = links.get(record.local_id)
            key = self._remote_key(user_identity, record, link, claimed)
            remote_row = self.remote.find_by_user_and_local_id(user_identity, self.kind, key)
            remote = self.from_remote_row(remote_row) if remote_row else None

            action = restrict(resolve(record, remote), PUSH_ACTIONS)
            if action == Action.PUSH_INSERT:
                remote_id = self.remote.insert(user_identity, self.kind, self.to_remote_row(record, key))
                self.local.save_link(self.kind, record.local_id, key, remote_id)
                return OUTCOME_PUSHED
            if action == Action.PUSH_UPDATE:
                self.remote.update(self.kind, remote.remote_id, self.to_remote_update(record, key))
                self.local.save_link(self.kind, record.local_id, key, remote.remote_id)
                return OUTCOME_PUSHED

            if remote is not None and (link is None or link.get("remote_id") != remote.remote_id):
                self.local.save_link(self.kind, record.local_id, key, remote.remote_id)
            if payload_diverged(record, remote):
                self._log("WARNING", "timestamp_tie_payload_diverged", local_id=record.local_id, key=key)
                return OUTCOME_DIVERGED
            return OUTCOME_NOOP

        outcomes += self._run_each("push", records, push_one, lambda r: r.local_id)
        result = _tally(outcomes)
        self._log("INFO", "push_phase_done", user=user_identity, **result.model_dump())
        return result

    def _push_tombstones(self, user_identity: str) -> List[str]:
        def delete_one(tombstone: dict) -> str:
            key = int(tombstone["remote_local_id"])
            remote_row = self.remote.find_by_user_and_local_id(user_identity, self.kind, key)
            remote = self.from_remote_row(remote_row) if remote_row else None
            action = resolve(None, remote, tombstoned=True)
            if action == Action.PUSH_DELETE:
                self.remote.delete_by_user_and_local_id(user_identity, self.kind, key)
                self.local.clear_tombstone(self.kind, key)
                return OUTCOME_PUSHED
            self.local.clear_tombstone(self.kind, key)
            return OUTCOME_NOOP

        tombstones = self.local.tombstones(self.kind)
        return self._run_each("delete", tombstones, delete_one, lambda t: t["remote_local_id"])

    def _remote_key(self, user_identity: str, record: SyncableRecord, link: Optional[dict],
                    claimed: Dict[int, int]) -> int:
        if link is not None:
            return int(link["remote_local_id"])
        owner = claimed.get(record.local_id)
        if owner is None or owner == record.local_id:
            return record.local_id
        # Our own id is already the remote key of a record pulled from another device.
        return self._allocate_key(user_identity, claimed, record.local_id)

    def _allocate_key(self, user_identity: str, claimed: Dict[int, int], local_id: int) -> int:
        with self._key_lock:
            candidate = max([local_id, *claimed.keys()]) + 1
            for _ in range(MAX_KEY_ALLOCATION_ATTEMPTS):
                if candidate not in claimed and self.local.get_by_id(self.kind, candidate) is None:
                    if not self.remote.find_by_user_and_local_id(user_identity, self.kind, candidate):
                        claimed[candidate] = local_id
                        self._log("INFO", "remote_key_allocated", local_id=local_id, key=candidate)
                        return candidate
                candidate += 1
        raise RuntimeError(f"remote_key_allocation_failed: local_id={local_id}")

    # --- pull --------------------------------------------------------------

    def list_remote(self, user_identity: str) -> List[Dict[str, Any]]:
        rows = self.remote.list_by_user(user_identity, self.kind)
        if self.pull_limit is not None:
            # Remote listing is newest first.
            rows = rows[: self.pull_limit]
        return rows

    def pull_phase(self, user_identity: str) -> PhaseResult:
        remote_rows = self._dedup_remote(self.list_remote(user_identity))
        links = {int(l["local_id"]): l for l in self.local.links(self.kind)}
        local_by_key = {int(l["remote_local_id"]): int(l["local_id"]) for l in links.values()}
        tombstoned = {int(t["remote_local_id"]) for t in self.local.tombstones(self.kind)}

        def local_for_key(key: int) -> Optional[SyncableRecord]:
            if key in local_by_key:
                return self.local.get_by_id(self.kind, local_by_key[key])
            own_link = links.get(key)
            if own_link is not None and int(own_link["remote_local_id"]) != key:
                return None
            return self.local.get_by_id(self.kind, key)

        def pull_one(row: Dict[str, Any]) -> str:
            remote = self.from_remote_row(row)
            key = int(remote.local_id)
            if key in tombstoned:
                return OUTCOME_NOOP
            local = local_for_key(key)

            action = restrict(resolve(local, remote), PULL_ACTIONS)
            if action == Action.PULL_INSERT:
                new_id = self.local.insert(
                    self.kind,
                    remote.payload,
                    created_at=remote.created_at,
                    updated_at=remote.updated_at,
                )
                self.local.save_link(self.kind, new_id, key, remote.remote_id)
                return OUTCOME_PULLED
            if action == Action.PULL_UPDATE:
                self.local.update(self.kind, local.local_id, remote.payload, updated_at=remote.updated_at)
                self.local.save_link(self.kind, local.local_id, key, remote.remote_id)
                return OUTCOME_PULLED

            if payload_diverged(local, remote):
                self._log("WARNING", "timestamp_tie_payload_diverged", local_id=local.local_id, key=key)
                return OUTCOME_DIVERGED
            return OUTCOME_NOOP

        outcomes = self._run_each("pull", remote_rows, pull_one, lambda r: r.get("id") or r.get("local_id"))
        result = _tally(outcomes)
        self._log("INFO", "pull_phase_done", user=user_identity, **result.model_dump())
        return result

    @staticmethod
    def _row_key(row: Dict[str, Any]) -> Optional[int]:
        try:
            return int(row["local_id"])
        except (KeyError, TypeError, ValueError):
            return None

    @staticmethod
    def _row_updated_ms(row: Dict[str, Any]) -> int:
        try:
            return to_epoch_ms(parse_timestamp(row.get("updated_at") or row.get("created_at")))
        except (TypeError, ValueError, OverflowError):
            return -1

    def _dedup_remote(self, rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Keep the newest remote row per key; the rest are logged and ignored.

        Rows without a usable key pass through and fail in their own pull step.
        """
        by_key: Dict[int, Dict[str, Any]] = {}
        unkeyed: List[Dict[str, Any]] = []
        for row in rows:
            key = self._row_key(row)
            if key is None:
                unkeyed.append(row)
                continue
            current = by_key.get(key)
            if current is None:
                by_key[key] = row
                continue
            newer = self._row_updated_ms(row) > self._row_updated_ms(current)
            keep, drop = (row, current) if newer else (current, row)
            by_key[key] = keep
            self._log("WARNING", "remote_duplicate_key_ignored", key=key, remote_id=drop.get("id"))
        return list(by_key.values()) + unkeyed

    # --- delete ------------------------------------------------------------

    def delete_record(self, user_identity: Optional[str], local_id: int) -> bool:
        """Delete locally and propagate to the remote store.

        Returns False when the remote delete is deferred to the next push phase.
        """
        remote_key = self.local.delete(self.kind, local_id)
        if remote_key is None:
            return True
        if not user_identity or not self.remote.is_configured():
            self._log("INFO", "remote_delete_deferred", local_id=local_id, key=remote_key, error="no_remote")
            return False
        try:
            self.remote.delete_by_user_and_local_id(user_identity, self.kind, remote_key)
        except Exception as e:
            self._log("WARNING", "remote_delete_deferred", local_id=local_id, key=remote_key, error=str(e))
            return False
        self.local.clear_tombstone(self.kind, remote_key)
        return True


class SnippetSyncAdapter(EntitySyncAdapter[SnippetPayload]):
    kind = EntityKind.SNIPPETS
    payload_model = SnippetPayload

    def from_remote_row(self, row: Dict[str, Any]) -> SyncableRecord:
        data = dict(row)
        data["tags"] = data.get("tags") or ""
        data["description"] = data.get("description") or ""
        return super().from_remote_row(data)


class ClipboardSyncAdapter(EntitySyncAdapter[ClipboardPayload]):
    kind = EntityKind.CLIPBOARD
    payload_model = ClipboardPayload
    push_limit = 1000
    pull_limit = 10000

    def __init__(self, local, remote, log_func: Optional[LogFunc] = None, max_workers: int = 1,
                 push_limit: Optional[int] = None, pull_limit: Optional[int] = None):
        super().__init__(local, remote, log_func=log_func, max_workers=max_workers)
        if push_limit is not None:
            self.push_limit = push_limit
        if pull_limit is not None:
            self.pull_limit = pull_limit

    def to_remote_update(self, record: SyncableRecord, remote_key: int) -> Dict[str, Any]:
        payload = ClipboardPayload.model_validate(record.payload)
        return {
            "content": payload.content,
            "source": payload.source,
            "category": payload.category,
            "updated_at": format_timestamp(record.updated_at),
        }

    def from_remote_row(self, row: Dict[str, Any]) -> SyncableRecord:
        data = dict(row)
        data["source"] = data.get("source") or "system"
        data["category"] = data.get("category") or "general"
        if not data.get("updated_at"):
            data["updated_at"] = data.get("created_at")
        return super().from_remote_row(data)


class FileSyncAdapter(EntitySyncAdapter[FilePayload]):
    """File metadata only; file bytes stay in the device's local storage dir."""

    kind = EntityKind.FILES
    payload_model = FilePayload


ADAPTER_CLASSES: Dict[str, Type[EntitySyncAdapter]] = {
    EntityKind.SNIPPETS.value: SnippetSyncAdapter,
    EntityKind.CLIPBOARD.value: ClipboardSyncAdapter,
    EntityKind.FILES.value: FileSyncAdapter,
}
DEFAULT_ORDER = [EntityKind.SNIPPETS.value, EntityKind.CLIPBOARD.value, EntityKind.FILES.value]


def build_adapter(kind, local, remote, cfg=None, log_func: Optional[LogFunc] = None) -> EntitySyncAdapter:
    """One adapter for `kind`, whether or not the config enables it for `sync_all`."""
    cls = ADAPTER_CLASSES[EntityKind(kind).value]
    max_workers = int(cfg.sync.max_workers) if cfg is not None else 1
    if cls is ClipboardSyncAdapter and cfg is not None:
        return cls(
            local,
            remote,
            log_func=log_func,
            max_workers=max_workers,
            push_limit=int(cfg.clipboard.push_limit),
            pull_limit=int(cfg.clipboard.pull_limit),
        )
    return cls(local, remote, log_func=log_func, max_workers=max_workers)


def build_adapters(local, remote, cfg=None, log_func: Optional[LogFunc] = None) -> List[EntitySyncAdapter]:
    kinds = list(cfg.sync.entity_kinds) if cfg is not None else list(DEFAULT_ORDER)
    # Fixed order regardless of how the config lists them.
    ordered = [k for k in DEFAULT_ORDER if k in kinds]
    return [build_adapter(kind, local, remote, cfg=cfg, log_func=log_func) for kind in ordered]
