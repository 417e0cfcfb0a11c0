from __future__ import annotations

from typing import Any, Optional

from ...core.exceptions import ConflictError, CriticalError


class StateLockedError(ConflictError):
    """The conversation state is held by another worker."""

    def __init__(self, sender_id: str, page_id: str) -> None:
        super().__init__(
            f"State was locked (senderId={sender_id!r}, pageId={page_id!r})"
        )
        self.sender_id = sender_id
        self.page_id = page_id


class SequenceConflictError(ConflictError):
    """Another writer claimed the same audit sequence number first."""

    def __init__(self, workspace_id: str, seq: int) -> None:
        super().__init__(f"Audit sequence {seq} already taken in workspace {workspace_id!r}")
        self.workspace_id = workspace_id
        self.seq = seq


class AuditLogStoreError(CriticalError):
    """The audit entry could not be stored within the retry budget."""

    def __init__(self, message: str, *, entry: Optional[dict[str, Any]] = None) -> None:
        super().__init__(
            message, user_message="The audit log is unavailable. Try again later."
        )
        self.entry = entry


__all__ = [
    "AuditLogStoreError",
    "SequenceConflictError",
    "StateLockedError",
]
