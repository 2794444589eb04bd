"""Task synchronization errors."""

from __future__ import annotations


class SyncError(Exception):
    """Base error for synchronization operations."""

    def __init__(self, message: str, code: str = "SYNC_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class AuthRequired(SyncError):
    """No active session."""

    def __init__(self, message: str = "No active session"):
        super().__init__(message, "AUTH_REQUIRED")


class NotFound(SyncError):
    """Row absent for an id-scoped operation."""

    def __init__(self, table: str, row_id: str):
        super().__init__(f"{table} row not found: {row_id}", "NOT_FOUND")
        self.table = table
        self.row_id = row_id


class MissingUnit(SyncError):
    """Acting user has no assigned unit."""

    def __init__(self, user_id: str):
        super().__init__("User does not have an assigned unit", "MISSING_UNIT")
        self.user_id = user_id


class RemoteFailure(SyncError):
    """Network or store error surfaced from the remote call."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message, "REMOTE_FAILURE")
        self.cause = cause


class PartialFailure(SyncError):
    """A multi-step write stopped half way and could not be rolled back."""

    def __init__(self, message: str, cause: BaseException | None = None):
        super().__init__(message, "PARTIAL_FAILURE")
        self.cause = cause


class DecodeError(SyncError):
    """A remote row did not match the expected schema."""

    def __init__(self, table: str, detail: str):
        super().__init__(f"Malformed {table} row: {detail}", "DECODE_ERROR")
        self.table = table
        self.detail = detail


def error_reason(exc: BaseException) -> str:
    """The user-facing message of an error, falling back to its string form."""
    return getattr(exc, "message", None) or str(exc)
