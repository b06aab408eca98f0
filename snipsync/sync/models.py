from __future__ import annotations

import hashlib
import json
from datetime import datetime, timezone
from enum import Enum
from typing import Generic, Optional, TypeVar

from pydantic import BaseModel, Field, field_validator


class EntityKind(str, Enum):
    SNIPPETS = "snippets"
    CLIPBOARD = "clipboard"
    FILES = "files"


class Action(str, Enum):
    NOOP = "noop"
    PUSH_INSERT = "push_insert"
    PUSH_UPDATE = "push_update"
    PUSH_DELETE = "push_delete"
    PULL_INSERT = "pull_insert"
    PULL_UPDATE = "pull_update"


def now_utc() -> datetime:
    return normalize_timestamp(datetime.now(timezone.utc))


def normalize_timestamp(value: datetime) -> datetime:
    """Return `value` as an aware UTC datetime truncated to millisecond precision."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    value = value.astimezone(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def parse_timestamp(value) -> datetime:
    """Parse ISO-8601 strings, epoch seconds or epoch milliseconds.

    Numbers above 1e11 are read as milliseconds. Naive ISO values are UTC.
    """
    if isinstance(value, datetime):
        return normalize_timestamp(value)
    if isinstance(value, bool) or value is None:
        raise ValueError(f"invalid_timestamp: {value!r}")
    if isinstance(value, (int, float)):
        return _from_epoch(float(value))

    raw = str(value).strip()
    if not raw:
        raise ValueError("invalid_timestamp: empty")
    try:
        return _from_epoch(float(raw))
    except ValueError:
        pass
    if raw.endswith("Z") or raw.endswith("z"):
        raw = raw[:-1] + "+00:00"
    return normalize_timestamp(datetime.fromisoformat(raw))


def _from_epoch(number: float) -> datetime:
    seconds = number / 1000.0 if abs(number) > 1e11 else number
    return normalize_timestamp(datetime.fromtimestamp(seconds, tz=timezone.utc))


def format_timestamp(value: datetime) -> str:
    value = normalize_timestamp(value)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"


def to_epoch_ms(value: datetime) -> int:
    value = normalize_timestamp(value)
    return int(value.timestamp() * 1000)


class SnippetPayload(BaseModel):
    title: str
    content: str
    language: str = "text"
    description: str = ""
    tags: str = ""

    @field_validator("description", "tags", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else v


class ClipboardPayload(BaseModel):
    content: str
    source: str = "system"
    category: str = "general"

    @field_validator("source", mode="before")
    @classmethod
    def _default_source(cls, v):
        return v or "system"

    @field_validator("category", mode="before")
    @classmethod
    def _default_category(cls, v):
        return v or "general"


class FilePayload(BaseModel):
    filename: str
    file_type: str = "other"
    mime_type: Optional[str] = None
    size: int = 0
    sha256: str = ""


PayloadT = TypeVar("PayloadT", bound=BaseModel)


class SyncableRecord(BaseModel, Generic[PayloadT]):
    """One record of any entity kind.

    On the remote side `local_id` is the foreign attribute holding the
    originating device's local id, and `remote_id` is the row identifier.
    """

    local_id: Optional[int] = None
    remote_id: Optional[str] = None
    payload: PayloadT
    created_at: datetime
    updated_at: datetime

    @field_validator("created_at", "updated_at", mode="before")
    @classmethod
    def _normalize(cls, v):
        return parse_timestamp(v)

    @property
    def updated_ms(self) -> int:
        return to_epoch_ms(self.updated_at)

    def payload_hash(self) -> str:
        raw = json.dumps(self.payload.model_dump(), sort_keys=True, ensure_ascii=False)
        return hashlib.sha256(raw.encode("utf-8")).hexdigest()


class ApprovalRecord(BaseModel):
    user_identity: str
    approved: bool = False
    requested_at: Optional[datetime] = None
    encryption_enabled: bool = False

    @field_validator("requested_at", mode="before")
    @classmethod
    def _normalize(cls, v):
        return None if v in (None, "") else parse_timestamp(v)


class PhaseResult(BaseModel):
    pushed: int = 0
    pulled: int = 0
    errors: int = 0
    diverged: int = 0

    def merge(self, other: "PhaseResult") -> "PhaseResult":
        return PhaseResult(
            pushed=self.pushed + other.pushed,
            pulled=self.pulled + other.pulled,
            errors=self.errors + other.errors,
            diverged=self.diverged + other.diverged,
        )


class SyncResult(BaseModel):
    pushed: int = 0
    pulled: int = 0
    errors: int = 0
    diverged: int = 0
    sync_time: Optional[datetime] = None
    entities: dict[str, PhaseResult] = Field(default_factory=dict)

    @property
    def up_to_date(self) -> bool:
        return self.pushed == 0 and self.pulled == 0 and self.errors == 0

    @property
    def partial(self) -> bool:
        return self.errors > 0

    def summary(self) -> dict:
        out = self.model_dump(mode="json")
        out["sync_time"] = format_timestamp(self.sync_time) if self.sync_time else None
        return out
