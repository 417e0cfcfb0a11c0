"""Opaque pagination tokens.

A token is URL-safe base64 of a small JSON object with a ``kind`` tag, so a
listing can reject a token that was produced by a different listing.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from typing import Any, Generic, Optional, TypeVar, Union

from .exceptions import InvalidCursorError

T = TypeVar("T")

KIND_WATERMARK = "watermark"
KIND_SKIP = "skip"
KIND_ID = "id"


@dataclass(frozen=True)
class WatermarkCursor:
    """Continue at records whose timestamp is <= ``timestamp_ms``."""

    timestamp_ms: int


@dataclass(frozen=True)
class SkipCursor:
    """Continue after skipping ``offset`` records of the same query."""

    offset: int


@dataclass(frozen=True)
class IdCursor:
    """Continue past the record with identifier ``value``."""

    value: str


Cursor = Union[WatermarkCursor, SkipCursor, IdCursor]


@dataclass(frozen=True)
class Page(Generic[T]):
    data: list[T] = field(default_factory=list)
    next_cursor: Optional[str] = None


def encode_cursor(cursor: Cursor) -> str:
    if isinstance(cursor, WatermarkCursor):
        payload: dict[str, Any] = {"kind": KIND_WATERMARK, "value": cursor.timestamp_ms}
    elif isinstance(cursor, SkipCursor):
        payload = {"kind": KIND_SKIP, "value": cursor.offset}
    else:
        payload = {"kind": KIND_ID, "value": cursor.value}
    raw = json.dumps(payload, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def _int_value(payload: dict[str, Any]) -> int:
    value = payload.get("value")
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidCursorError("Cursor value must be a non-negative integer")
    return value


def decode_cursor(token: str) -> Cursor:
    if not isinstance(token, str) or not token:
        raise InvalidCursorError("Cursor must be a non-empty string")
    try:
        payload = json.loads(base64.urlsafe_b64decode(token.encode("ascii")))
    except (binascii.Error, UnicodeError, ValueError) as exc:
        raise InvalidCursorError(f"Malformed cursor: {exc}") from exc
    if not isinstance(payload, dict):
        raise InvalidCursorError("Malformed cursor payload")
    kind = payload.get("kind")
    if kind == KIND_WATERMARK:
        return WatermarkCursor(_int_value(payload))
    if kind == KIND_SKIP:
        return SkipCursor(_int_value(payload))
    if kind == KIND_ID:
        value = payload.get("value")
        if not isinstance(value, str) or not value:
            raise InvalidCursorError("Cursor id must be a non-empty string")
        return IdCursor(value)
    raise InvalidCursorError(f"Unknown cursor kind: {kind!r}")


def decode_cursor_as(token: Optional[str], *kinds: type) -> Optional[Cursor]:
    """Decode ``token`` and require it to be one of ``kinds``."""
    if token is None:
        return None
    cursor = decode_cursor(token)
    if not isinstance(cursor, kinds):
        raise InvalidCursorError(
            f"Cursor of kind {type(cursor).__name__} is not valid for this listing"
        )
    return cursor


__all__ = [
    "Cursor",
    "IdCursor",
    "Page",
    "SkipCursor",
    "WatermarkCursor",
    "decode_cursor",
    "decode_cursor_as",
    "encode_cursor",
]
