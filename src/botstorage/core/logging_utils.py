from __future__ import annotations

import json
import logging
from datetime import date, datetime
from typing import Any, Mapping, Optional

_MAX_FIELD_CHARS = 2000


def _sanitize(value: Any) -> Any:
    if value is None or isinstance(value, (bool, int, float, str)):
        if isinstance(value, str) and len(value) > _MAX_FIELD_CHARS:
            return value[:_MAX_FIELD_CHARS] + "..."
        return value
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_sanitize(item) for item in value]
    return str(value)


def log_event(
    logger: Optional[logging.Logger],
    level: int,
    event: str,
    *,
    exc: Optional[BaseException] = None,
    **fields: Any,
) -> None:
    """Emit a single structured record as one JSON object."""
    if logger is None or not logger.isEnabledFor(level):
        return
    payload: dict[str, Any] = {"event": event}
    for key, value in fields.items():
        payload[key] = _sanitize(value)
    if exc is not None:
        payload["error"] = str(exc)
        payload["error_type"] = type(exc).__name__
    logger.log(level, json.dumps(payload, ensure_ascii=False, default=str))


__all__ = ["log_event"]
