from __future__ import annotations

import json
from datetime import datetime
from typing import Dict, List, Optional, Type

from pydantic import BaseModel

from .db import get_conn, init_db
from .models import (
    ClipboardPayload,
    EntityKind,
    FilePayload,
    SnippetPayload,
    SyncableRecord,
    format_timestamp,
    now_utc,
    parse_timestamp,
)


class TableSpec:
    def __init__(self, table: str, payload_model: Type[BaseModel], columns: List[str], order_by: str,
                 extra_columns: Optional[List[str]] = None):
        self.table = table
        self.payload_model = payload_model
        self.columns = columns
        self.order_by = order_by
        self.extra_columns = extra_columns or []


TABLES: Dict[str, TableSpec] = {
    EntityKind.SNIPPETS.value: TableSpec(
        "snippets",
        SnippetPayload,
        ["title", "content", "language", "description", "tags"],
        "updated_at DESC, id DESC",
    ),
    EntityKind.CLIPBOARD.value: TableSpec(
        "clipboard_history",
        ClipboardPayload,
        ["content", "source", "category"],
        "created_at DESC, id DESC",
    ),
    EntityKind.FILES.value: TableSpec(
        "files",
        FilePayload,
        ["filename", "file_type", "mime_type", "size", "sha256"],
        "id",
        extra_columns=["storage_path"],
    ),
}


def _kind(kind) -> str:
    value = kind.value if isinstance(kind, EntityKind) else str(kind)
    if value not in TABLES:
        raise ValueError(f"unknown_entity_kind: {value}")
    return value


class LocalStore:
    """sqlite-backed local store. Every call opens and closes its own connection."""

    def __init__(self, db_path: str, initialize: bool = True):
        self.db_path = db_path
        if initialize:
            init_db(db_path)

    def _db(self):
        return get_conn(self.db_path)

    def _spec(self, kind) -> TableSpec:
        return TABLES[_kind(kind)]

    def _row_to_record(self, spec: TableSpec, row) -> SyncableRecord:
        data = dict(row)
        payload = spec.payload_model.model_validate({c: data.get(c) for c in spec.columns})
        created = data.get("created_at")
        updated = data.get("updated_at") or created
        return SyncableRecord[spec.payload_model](
            local_id=int(data["id"]),
            payload=payload,
            created_at=created,
            updated_at=updated,
        )

    def _payload_values(self, spec: TableSpec, payload) -> list:
        model = payload if isinstance(payload, spec.payload_model) else spec.payload_model.model_validate(payload)
        dumped = model.model_dump()
        return [dumped.get(c) for c in spec.columns]

    # --- records -----------------------------------------------------------

    def list_all(self, kind, limit: Optional[int] = None) -> List[SyncableRecord]:
        spec = self._spec(kind)
        sql = f"SELECT * FROM {spec.table} ORDER BY {spec.order_by}"
        params: tuple = ()
        if limit is not None:
            sql += " LIMIT ?"
            params = (int(limit),)
        conn = self._db()
        rows = conn.execute(sql, params).fetchall()
        conn.close()
        return [self._row_to_record(spec, r) for r in rows]

    def get_by_id(self, kind, local_id: int) -> Optional[SyncableRecord]:
        spec = self._spec(kind)
        conn = self._db()
        row = conn.execute(f"SELECT * FROM {spec.table} WHERE id=?", (int(local_id),)).fetchone()
        conn.close()
        if not row:
            return None
        return self._row_to_record(spec, row)

    def get_extra(self, kind, local_id: int) -> dict:
        spec = self._spec(kind)
        if not spec.extra_columns:
            return {}
        conn = self._db()
        row = conn.execute(
            f"SELECT {', '.join(spec.extra_columns)} FROM {spec.table} WHERE id=?",
            (int(local_id),),
        ).fetchone()
        conn.close()
        return dict(row) if row else {}

    def insert(self, kind, payload, created_at: Optional[datetime] = None, updated_at: Optional[datetime] = None,
               extra: Optional[dict] = None) -> int:
        spec = self._spec(kind)
        created = parse_timestamp(created_at) if created_at is not None else now_utc()
        updated = parse_timestamp(updated_at) if updated_at is not None else created
        extra = {k: v for k, v in (extra or {}).items() if k in spec.extra_columns}

        columns = spec.columns + list(extra.keys()) + ["created_at", "updated_at"]
        values = self._payload_values(spec, payload) + list(extra.values()) + [
            format_timestamp(created),
            format_timestamp(updated),
        ]
        placeholders = ",".join("?" for _ in columns)

        conn = self._db()
        cur = conn.cursor()
        cur.execute(f"INSERT INTO {spec.table}({','.join(columns)}) VALUES ({placeholders})", values)
        local_id = cur.lastrowid
        conn.commit()
        conn.close()
        return int(local_id)

    def update(self, kind, local_id: int, payload, updated_at: Optional[datetime] = None):
        """Overwrite the payload. `updated_at` defaults to now (a local edit)."""
        spec = self._spec(kind)
        updated = parse_timestamp(updated_at) if updated_at is not None else now_utc()
        assignments = ", ".join(f"{c}=?" for c in spec.columns)
        values = self._payload_values(spec, payload) + [format_timestamp(updated), int(local_id)]

        conn = self._db()
        cur = conn.execute(f"UPDATE {spec.table} SET {assignments}, updated_at=? WHERE id=?", values)
        changed = cur.rowcount
        conn.commit()
        conn.close()
        if not changed:
            raise LookupError(f"local_record_missing: {_kind(kind)}:{local_id}")

    def delete(self, kind, local_id: int) -> Optional[int]:
        """Delete a record. If it was ever synced, its link becomes a tombstone.

        Returns the remote key that now needs a remote delete, or None.
        """
        spec = self._spec(kind)
        kind_value = _kind(kind)
        conn = self._db()
        link = conn.execute(
            "SELECT * FROM sync_links WHERE entity_kind=? AND local_id=?",
            (kind_value, int(local_id)),
        ).fetchone()
        conn.execute(f"DELETE FROM {spec.table} WHERE id=?", (int(local_id),))
        remote_key = None
        if link:
            remote_key = int(link["remote_local_id"])
            conn.execute("DELETE FROM sync_links WHERE id=?", (link["id"],))
            conn.execute(
                "INSERT OR REPLACE INTO tombstones(entity_kind,local_id,remote_local_id) VALUES (?,?,?)",
                (kind_value, int(local_id), remote_key),
            )
        conn.commit()
        conn.close()
        return remote_key

    def count(self, kind) -> int:
        spec = self._spec(kind)
        conn = self._db()
        value = conn.execute(f"SELECT COUNT(1) FROM {spec.table}").fetchone()[0]
        conn.close()
        return int(value)

    # --- sync links --------------------------------------------------------

    def get_link(self, kind, local_id: int) -> Optional[dict]:
        conn = self._db()
        row = conn.execute(
            "SELECT * FROM sync_links WHERE entity_kind=? AND local_id=?",
            (_kind(kind), int(local_id)),
        ).fetchone()
        conn.close()
        return dict(row) if row else None

    def links(self, kind) -> List[dict]:
        conn = self._db()
        rows = conn.execute("SELECT * FROM sync_links WHERE entity_kind=? ORDER BY id", (_kind(kind),)).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    def save_link(self, kind, local_id: int, remote_local_id: int, remote_id: Optional[str]):
        kind_value = _kind(kind)
        conn = self._db()
        conn.execute(
            "DELETE FROM sync_links WHERE entity_kind=? AND (local_id=? OR remote_local_id=?)",
            (kind_value, int(local_id), int(remote_local_id)),
        )
        conn.execute(
            "INSERT INTO sync_links(entity_kind,local_id,remote_local_id,remote_id) VALUES (?,?,?,?)",
            (kind_value, int(local_id), int(remote_local_id), remote_id),
        )
        conn.commit()
        conn.close()

    # --- tombstones --------------------------------------------------------

    def tombstones(self, kind) -> List[dict]:
        conn = self._db()
        rows = conn.execute("SELECT * FROM tombstones WHERE entity_kind=? ORDER BY id", (_kind(kind),)).fetchall()
        conn.close()
        return [dict(r) for r in rows]

    def clear_tombstone(self, kind, remote_local_id: int):
        conn = self._db()
        conn.execute(
            "DELETE FROM tombstones WHERE entity_kind=? AND remote_local_id=?",
            (_kind(kind), int(remote_local_id)),
        )
        conn.commit()
        conn.close()

    # --- settings / checkpoint ----------------------------------------------

    def get_setting(self, key: str) -> Optional[str]:
        conn = self._db()
        row = conn.execute("SELECT value FROM settings WHERE key=?", (key,)).fetchone()
        conn.close()
        return row["value"] if row else None

    def set_setting(self, key: str, value: str):
        conn = self._db()
        conn.execute(
            """
            INSERT INTO settings(key,value,updated_at) VALUES (?,?,CURRENT_TIMESTAMP)
            ON CONFLICT(key) DO UPDATE SET value=excluded.value, updated_at=CURRENT_TIMESTAMP
            """,
            (key, value),
        )
        conn.commit()
        conn.close()

    # --- sync run history ---------------------------------------------------

    def insert_sync_run(self, run_type: str, user_identity: str) -> int:
        conn = self._db()
        cur = conn.cursor()
        cur.execute(
            "INSERT INTO sync_runs(run_type,user_identity,status,started_at,summary_json) VALUES (?,?,?,?,?)",
            (run_type, user_identity, "running", format_timestamp(now_utc()), "{}"),
        )
        rid = cur.lastrowid
        conn.commit()
        conn.close()
        return int(rid)

    def finish_sync_run(self, run_id: int, status: str, summary: dict):
        conn = self._db()
        conn.execute(
            "UPDATE sync_runs SET status=?, finished_at=?, summary_json=? WHERE id=?",
            (status, format_timestamp(now_utc()), json.dumps(summary, ensure_ascii=False, default=str), run_id),
        )
        conn.commit()
        conn.close()

    def recent_sync_runs(self, limit: int = 50) -> List[dict]:
        conn = self._db()
        rows = conn.execute("SELECT * FROM sync_runs ORDER BY id DESC LIMIT ?", (int(limit),)).fetchall()
        conn.close()
        out = []
        for r in rows:
            item = dict(r)
            try:
                item["summary"] = json.loads(item.pop("summary_json") or "{}")
            except ValueError:
                item["summary"] = {}
            out.append(item)
        return out
