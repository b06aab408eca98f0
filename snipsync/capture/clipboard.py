from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..sync.models import ClipboardPayload, EntityKind, SnippetPayload, SyncableRecord
from .categorizer import categorize


@dataclass
class CaptureResult:
    is_new: bool
    message: str
    local_id: Optional[int] = None
    category: Optional[str] = None


def admit_capture(store, content: str, source: str = "system") -> CaptureResult:
    """Save a clipboard capture unless it is blank or repeats the latest entry."""
    if not content or not content.strip():
        return CaptureResult(is_new=False, message="Clipboard is empty")

    latest = store.list_all(EntityKind.CLIPBOARD, limit=1)
    if latest and latest[0].payload.content == content:
        return CaptureResult(is_new=False, message="Already saved", local_id=latest[0].local_id)

    category = categorize(content)
    local_id = store.insert(
        EntityKind.CLIPBOARD,
        ClipboardPayload(content=content, source=source, category=category),
    )
    return CaptureResult(is_new=True, message="Clipboard saved", local_id=local_id, category=category)


def convert_to_snippet(
    store,
    entry_id: int,
    title: Optional[str] = None,
    language: Optional[str] = None,
    tags: Iterable[str] = (),
    description: Optional[str] = None,
) -> int:
    """Create a snippet from a clipboard entry. The entry itself is kept."""
    entry = store.get_by_id(EntityKind.CLIPBOARD, entry_id)
    if entry is None:
        raise LookupError(f"clipboard_entry_missing: {entry_id}")

    payload = SnippetPayload(
        title=title or "Untitled",
        language=language or "text",
        content=entry.payload.content,
        tags=",".join(t.strip() for t in tags if t and t.strip()),
        description=description or "Converted from clipboard",
    )
    return store.insert(EntityKind.SNIPPETS, payload)


def search_history(store, query: str, limit: int = 50) -> List[SyncableRecord]:
    needle = (query or "").lower()
    return [e for e in store.list_all(EntityKind.CLIPBOARD, limit=limit) if needle in e.payload.content.lower()]


def clear_history(store) -> int:
    entries = store.list_all(EntityKind.CLIPBOARD)
    for entry in entries:
        store.delete(EntityKind.CLIPBOARD, entry.local_id)
    return len(entries)
