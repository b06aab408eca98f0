from __future__ import annotations


class SnipSyncError(RuntimeError):
    """Base class for errors raised by the sync engine."""


class ConfigurationError(SnipSyncError):
    """Remote store endpoint or credentials are missing."""


class SyncNotApproved(SnipSyncError):
    code = "SYNC_NOT_APPROVED"

    def __init__(self, user_identity: str = ""):
        super().__init__(self.code)
        self.user_identity = user_identity


class AlreadySyncing(SnipSyncError):
    code = "ALREADY_SYNCING"

    def __init__(self):
        super().__init__(self.code)


class RemoteStoreError(SnipSyncError):
    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class RecordSyncError(SnipSyncError):
    """One record failed to push or pull. Never escapes an adapter."""

    def __init__(self, entity_kind: str, key: object, action: str, cause: BaseException):
        super().__init__(f"{entity_kind}:{key} {action} failed: {cause}")
        self.entity_kind = entity_kind
        self.key = key
        self.action = action
        self.cause = cause


class FileTooLarge(SnipSyncError):
    pass
