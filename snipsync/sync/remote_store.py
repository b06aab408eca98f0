from __future__ import annotations

from typing import Any

import requests

from ..core.errors import ConfigurationError, RemoteStoreError
from .models import EntityKind

REMOTE_TABLES = {
    EntityKind.SNIPPETS.value: "snippets",
    EntityKind.CLIPBOARD.value: "clipboard_history",
    EntityKind.FILES.value: "files",
}
APPROVAL_TABLE = "user_approvals"


class SupabaseStore:
    """PostgREST client over the user-scoped Supabase tables."""

    def __init__(self, supabase_url: str, api_key: str, access_token: str = "", timeout: int = 30,
                 page_size: int = 1000):
        self.supabase_url = (supabase_url or "").rstrip("/")
        self.api_key = api_key or ""
        self.access_token = access_token or ""
        self.timeout = timeout
        self.page_size = page_size

    @classmethod
    def from_config(cls, cfg) -> "SupabaseStore":
        return cls(
            supabase_url=cfg.remote.supabase_url,
            api_key=cfg.remote.api_key,
            access_token=cfg.remote.access_token,
            timeout=int(cfg.remote.timeout_sec),
            page_size=int(cfg.remote.page_size),
        )

    def is_configured(self) -> bool:
        return bool(self.supabase_url and self.api_key)

    def ensure_configured(self):
        if not self.is_configured():
            raise ConfigurationError("supabase_not_configured")

    def _table_url(self, table: str) -> str:
        self.ensure_configured()
        return f"{self.supabase_url}/rest/v1/{table}"

    def _entity_url(self, kind) -> str:
        value = kind.value if isinstance(kind, EntityKind) else str(kind)
        table = REMOTE_TABLES.get(value)
        if not table:
            raise ValueError(f"unknown_entity_kind: {value}")
        return self._table_url(table)

    def _headers(self, prefer: str | None = None) -> dict[str, str]:
        headers = {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.access_token or self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }
        if prefer:
            headers["Prefer"] = prefer
        return headers

    def _check(self, res: requests.Response) -> Any:
        if res.status_code >= 400:
            text = (res.text or "").strip()
            raise RemoteStoreError(f"supabase_error_status_{res.status_code}: {text[:200]}", res.status_code)
        text = (res.text or "").strip()
        if not text:
            return None
        try:
            return res.json()
        except ValueError:
            raise RemoteStoreError(f"supabase_non_json_response: {text[:200]}", res.status_code)

    def _rows(self, payload: Any) -> list[dict[str, Any]]:
        if payload is None:
            return []
        if isinstance(payload, dict):
            return [payload]
        if not isinstance(payload, list):
            raise RemoteStoreError("invalid_response")
        return [row for row in payload if isinstance(row, dict)]

    # --- entity rows -------------------------------------------------------

    def find_by_user_and_local_id(self, user_identity: str, kind, local_id: int) -> dict[str, Any] | None:
        res = requests.get(
            self._entity_url(kind),
            params={
                "select": "*",
                "user_email": f"eq.{user_identity}",
                "local_id": f"eq.{int(local_id)}",
                "limit": "1",
            },
            headers=self._headers(),
            timeout=self.timeout,
        )
        rows = self._rows(self._check(res))
        return rows[0] if rows else None

    def list_by_user(self, user_identity: str, kind) -> list[dict[str, Any]]:
        url = self._entity_url(kind)
        items: list[dict[str, Any]] = []
        offset = 0
        while True:
            res = requests.get(
                url,
                params={
                    "select": "*",
                    "user_email": f"eq.{user_identity}",
                    "order": "created_at.desc,id.desc",
                    "limit": str(self.page_size),
                    "offset": str(offset),
                },
                headers=self._headers(),
                timeout=self.timeout,
            )
            page = self._rows(self._check(res))
            items.extend(page)
            if len(page) < self.page_size:
                break
            offset += len(page)
        return items

    def insert(self, user_identity: str, kind, row: dict[str, Any]) -> str:
        body = dict(row)
        body["user_email"] = user_identity
        res = requests.post(
            self._entity_url(kind),
            json=body,
            headers=self._headers(prefer="return=representation"),
            timeout=self.timeout,
        )
        rows = self._rows(self._check(res))
        if not rows or rows[0].get("id") is None:
            raise RemoteStoreError("insert_no_remote_id")
        return str(rows[0]["id"])

    def update(self, kind, remote_id: str, row: dict[str, Any]) -> None:
        body = {k: v for k, v in row.items() if k not in ("id", "user_email")}
        res = requests.patch(
            self._entity_url(kind),
            params={"id": f"eq.{remote_id}"},
            json=body,
            headers=self._headers(prefer="return=minimal"),
            timeout=self.timeout,
        )
        self._check(res)

    def delete_by_user_and_local_id(self, user_identity: str, kind, local_id: int) -> None:
        res = requests.delete(
            self._entity_url(kind),
            params={"user_email": f"eq.{user_identity}", "local_id": f"eq.{int(local_id)}"},
            headers=self._headers(prefer="return=minimal"),
            timeout=self.timeout,
        )
        self._check(res)

    # --- approvals ---------------------------------------------------------

    def get_approval(self, user_identity: str) -> dict[str, Any] | None:
        res = requests.get(
            self._table_url(APPROVAL_TABLE),
            params={
                "select": "user_email,approved,requested_at,encryption_enabled",
                "user_email": f"eq.{user_identity}",
                "limit": "1",
            },
            headers=self._headers(),
            timeout=self.timeout,
        )
        rows = self._rows(self._check(res))
        return rows[0] if rows else None

    def upsert_approval(self, user_identity: str, row: dict[str, Any]) -> None:
        """Insert the approval row unless one already exists for this user."""
        body = dict(row)
        body["user_email"] = user_identity
        res = requests.post(
            self._table_url(APPROVAL_TABLE),
            params={"on_conflict": "user_email"},
            json=body,
            headers=self._headers(prefer="resolution=ignore-duplicates,return=minimal"),
            timeout=self.timeout,
        )
        self._check(res)
