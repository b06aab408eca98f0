"""Last-write-wins decision function shared by every entity adapter.

`resolve` only looks at presence and `updated_at`; it never touches a store,
so push and pull phases can each ask it the same question and filter the
answer down to the actions they are allowed to execute.
"""

from __future__ import annotations

from typing import Optional

from .models import Action, SyncableRecord

PUSH_ACTIONS = frozenset({Action.PUSH_INSERT, Action.PUSH_UPDATE, Action.PUSH_DELETE})
PULL_ACTIONS = frozenset({Action.PULL_INSERT, Action.PULL_UPDATE})


def resolve(
    local: Optional[SyncableRecord],
    remote: Optional[SyncableRecord],
    *,
    tombstoned: bool = False,
) -> Action:
    if tombstoned:
        return Action.PUSH_DELETE if remote is not None else Action.NOOP

    if local is None and remote is None:
        return Action.NOOP
    if local is None:
        return Action.PULL_INSERT
    if remote is None:
        return Action.PUSH_INSERT

    local_ms = local.updated_ms
    remote_ms = remote.updated_ms
    if local_ms > remote_ms:
        return Action.PUSH_UPDATE
    if remote_ms > local_ms:
        return Action.PULL_UPDATE
    # Ties are treated as already synced.
    return Action.NOOP


def restrict(action: Action, allowed: frozenset) -> Action:
    return action if action in allowed else Action.NOOP


def payload_diverged(local: Optional[SyncableRecord], remote: Optional[SyncableRecord]) -> bool:
    """True when both sides exist with equal timestamps but different content."""
    if local is None or remote is None:
        return False
    if local.updated_ms != remote.updated_ms:
        return False
    return local.payload_hash() != remote.payload_hash()
