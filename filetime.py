"""
FILETIME helpers: 64-bit counts of 100-nanosecond ticks since
1601-01-01T00:00:00 UTC, the encoding Windows (and PowerShell's
``ToFileTimeUtc()``) uses for file timestamps.

Everything here is pure so the capture and restore scripts can share it.
"""

from datetime import datetime, timedelta, timezone

EPOCH = datetime(1601, 1, 1, tzinfo=timezone.utc)
TICKS_PER_SECOND = 10_000_000
NS_PER_TICK = 100
# ticks between 1601-01-01 and 1970-01-01
UNIX_EPOCH_TICKS = 116_444_736_000_000_000

INT64_MIN = -(2 ** 63)
INT64_MAX = 2 ** 63 - 1


class TimestampConversionError(ValueError):
    """Raw value cannot be turned into a UTC instant."""


def _check_raw(raw) -> int:
    # bool is an int subclass; a manifest value of true/false is never a time
    if isinstance(raw, bool) or not isinstance(raw, int):
        raise TimestampConversionError(f"raw timestamp must be an integer, got {raw!r}")
    if not INT64_MIN <= raw <= INT64_MAX:
        raise TimestampConversionError(f"raw timestamp {raw} outside signed 64-bit range")
    return raw


def filetime_to_datetime(raw: int) -> datetime:
    """
    EPOCH + raw * 100ns as an aware UTC datetime.
    Sub-microsecond ticks are rounded down to a whole microsecond.
    """
    raw = _check_raw(raw)
    try:
        return EPOCH + timedelta(microseconds=raw // 10)
    except OverflowError as e:
        raise TimestampConversionError(
            f"raw timestamp {raw} is outside the representable date range"
        ) from e


def filetime_to_unix_ns(raw: int) -> int:
    """Exact nanoseconds since 1970-01-01 UTC, for os.utime(ns=...)."""
    # validates range the same way as the datetime form so both agree
    filetime_to_datetime(raw)
    return (raw - UNIX_EPOCH_TICKS) * NS_PER_TICK


def unix_ns_to_filetime(ns: int) -> int:
    return ns // NS_PER_TICK + UNIX_EPOCH_TICKS


def datetime_to_filetime(dt: datetime) -> int:
    if dt.tzinfo is None:
        raise TimestampConversionError(f"naive datetime {dt!r}; a UTC-aware value is required")
    delta = dt - EPOCH
    return (delta.days * 86_400 + delta.seconds) * TICKS_PER_SECOND + delta.microseconds * 10
