import time
from datetime import datetime, timedelta, timezone

# Larger than any real enqueue time; marks a task as claimed.
MAX_TS = 9999999999999

_EPOCH = datetime(1970, 1, 1, tzinfo=timezone.utc)
_ONE_MS = timedelta(milliseconds=1)


def now_ms() -> int:
    return time.time_ns() // 1_000_000


def utc_now() -> datetime:
    """Current UTC time truncated to the millisecond precision BSON stores."""
    value = datetime.now(timezone.utc)
    return value.replace(microsecond=(value.microsecond // 1000) * 1000)


def ms_to_datetime(value: int) -> datetime:
    """Naive UTC datetime, the shape the driver returns for stored dates."""
    return (_EPOCH + timedelta(milliseconds=int(value))).replace(tzinfo=None)


def datetime_to_ms(value: datetime) -> int:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return (value - _EPOCH) // _ONE_MS


__all__ = ["MAX_TS", "now_ms", "utc_now", "ms_to_datetime", "datetime_to_ms"]
