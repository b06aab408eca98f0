from __future__ import annotations

from typing import Optional

from ..core.logging_setup import LogFunc, detail_json, make_log_func
from .models import ApprovalRecord, format_timestamp, now_utc


class ApprovalGate:
    def __init__(self, remote, log_func: Optional[LogFunc] = None):
        self.remote = remote
        self.log_func = log_func or make_log_func()

    def check_approval(self, user_identity: str) -> Optional[ApprovalRecord]:
        """Return the user's approval row, or None when access was never requested.

        Raises ConfigurationError when the remote store is not configured.
        """
        self.remote.ensure_configured()
        row = self.remote.get_approval(user_identity)
        if not row:
            return None
        return ApprovalRecord(
            user_identity=row.get("user_email") or user_identity,
            approved=bool(row.get("approved")),
            requested_at=row.get("requested_at"),
            encryption_enabled=bool(row.get("encryption_enabled")),
        )

    def request_approval(self, user_identity: str) -> ApprovalRecord:
        existing = self.check_approval(user_identity)
        if existing is not None:
            return existing

        requested_at = now_utc()
        self.remote.upsert_approval(
            user_identity,
            {"approved": False, "requested_at": format_timestamp(requested_at)},
        )
        self.log_func("INFO", "approval", "approval_requested", detail_json(user=user_identity))
        return ApprovalRecord(user_identity=user_identity, approved=False, requested_at=requested_at)
