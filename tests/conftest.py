from __future__ import annotations

import itertools
from pathlib import Path

import pytest

from snipsync.core.errors import ConfigurationError, RemoteStoreError
from snipsync.sync.local_store import LocalStore


class FakeRemoteStore:
    """In-memory stand-in for SupabaseStore, keyed by (kind, user, local_id)."""

    def __init__(self, configured: bool = True):
        self.configured = configured
        self.rows: dict[str, list[dict]] = {"snippets": [], "clipboard": [], "files": []}
        self.approvals: dict[str, dict] = {}
        self.calls: list[tuple] = []
        self.fail_on: dict[tuple[str, int], Exception] = {}
        self.list_errors: dict[str, Exception] = {}
        self._ids = itertools.count(1)

    def _kind(self, kind) -> str:
        return getattr(kind, "value", kind)

    def is_configured(self) -> bool:
        return self.configured

    def ensure_configured(self):
        if not self.configured:
            raise ConfigurationError("supabase_not_configured")

    def _maybe_fail(self, op: str, local_id: int):
        err = self.fail_on.get((op, int(local_id)))
        if err is not None:
            raise err

    def find_by_user_and_local_id(self, user, kind, local_id):
        self.calls.append(("find", self._kind(kind), int(local_id)))
        self._maybe_fail("find", local_id)
        for row in self.rows[self._kind(kind)]:
            if row["user_email"] == user and int(row["local_id"]) == int(local_id):
                return dict(row)
        return None

    def list_by_user(self, user, kind):
        self.calls.append(("list", self._kind(kind)))
        err = self.list_errors.get(self._kind(kind))
        if err is not None:
            raise err
        return [dict(r) for r in self.rows[self._kind(kind)] if r["user_email"] == user]

    def insert(self, user, kind, row):
        self.calls.append(("insert", self._kind(kind), int(row["local_id"])))
        self._maybe_fail("insert", row["local_id"])
        stored = dict(row)
        stored["user_email"] = user
        stored["id"] = f"r{next(self._ids)}"
        self.rows[self._kind(kind)].append(stored)
        return stored["id"]

    def update(self, kind, remote_id, row):
        self.calls.append(("update", self._kind(kind), remote_id))
        for stored in self.rows[self._kind(kind)]:
            if stored["id"] == remote_id:
                stored.update({k: v for k, v in row.items() if k not in ("id", "user_email")})
                return
        raise RemoteStoreError("supabase_error_status_404", 404)

    def delete_by_user_and_local_id(self, user, kind, local_id):
        self.calls.append(("delete", self._kind(kind), int(local_id)))
        self._maybe_fail("delete", local_id)
        self.rows[self._kind(kind)] = [
            r for r in self.rows[self._kind(kind)]
            if not (r["user_email"] == user and int(r["local_id"]) == int(local_id))
        ]

    def get_approval(self, user):
        self.calls.append(("get_approval", user))
        row = self.approvals.get(user)
        return dict(row) if row else None

    def upsert_approval(self, user, row):
        self.calls.append(("upsert_approval", user))
        if user not in self.approvals:
            stored = dict(row)
            stored["user_email"] = user
            self.approvals[user] = stored

    def approve(self, user):
        self.approvals[user] = {"user_email": user, "approved": True, "requested_at": None, "encryption_enabled": False}

    def seed(self, kind, user, local_id, updated_at, created_at=None, **payload):
        row = dict(payload)
        row.update(
            {
                "id": f"r{next(self._ids)}",
                "user_email": user,
                "local_id": int(local_id),
                "created_at": created_at or updated_at,
                "updated_at": updated_at,
            }
        )
        self.rows[self._kind(kind)].append(row)
        return row

    def count(self, op: str) -> int:
        return sum(1 for c in self.calls if c[0] == op)


@pytest.fixture
def remote() -> FakeRemoteStore:
    return FakeRemoteStore()


@pytest.fixture
def store(tmp_path: Path) -> LocalStore:
    return LocalStore(str(tmp_path / "nobraindev.db"))


@pytest.fixture
def quiet_log():
    events: list[tuple] = []

    def log_func(level, module, message, detail=None):
        events.append((level, module, message, detail))

    log_func.events = events  # type: ignore[attr-defined]
    return log_func
