"""Shared error hierarchy.

Errors carry two class-level hints consumed by callers: ``recoverable`` (a retry
or back-off may succeed) and ``severity`` (how loudly the failure should be
reported). Adapter layers subclass these instead of raising bare exceptions.
"""

from __future__ import annotations

from typing import Optional

DUPLICATE_KEY_CODE = 11000


class BotStorageError(Exception):
    """Base error for the storage adapters."""

    recoverable = True
    severity = "error"

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        super().__init__(message)
        self.user_message = user_message


class TransientError(BotStorageError):
    """Failure that may succeed when retried."""

    recoverable = True
    severity = "warning"


class PermanentError(BotStorageError):
    """Failure that will not succeed without a change of input or setup."""

    recoverable = False
    severity = "error"


class CriticalError(BotStorageError):
    """Failure that must abort the operation and be reported."""

    recoverable = False
    severity = "critical"


class ConflictError(TransientError):
    """A conditional write found no matching document or a duplicate key.

    ``code`` is shared by every conflict so callers can recognize contention
    without knowing which adapter raised it.
    """

    code = DUPLICATE_KEY_CODE

    def __init__(self, message: str, *, user_message: Optional[str] = None) -> None:
        if user_message is None:
            user_message = "The record is busy. Retry shortly."
        super().__init__(message, user_message=user_message)


class StorageNetworkError(TransientError):
    """The database could not be reached."""


class StorageConfigError(PermanentError):
    """Invalid adapter or storage configuration."""


class InvalidCursorError(PermanentError):
    """A pagination token could not be decoded."""


__all__ = [
    "DUPLICATE_KEY_CODE",
    "BotStorageError",
    "TransientError",
    "PermanentError",
    "CriticalError",
    "ConflictError",
    "StorageNetworkError",
    "StorageConfigError",
    "InvalidCursorError",
]
