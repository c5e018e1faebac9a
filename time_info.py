"""
Time information appended to every collected feedback response.

The block is a newline-joined list of ``key: value`` lines. ``full`` emits
``timezone, date, time, iso, unix``; every other format emits ``timezone``
followed by its own fields.
"""

from __future__ import annotations

from datetime import datetime, tzinfo
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

TIME_FORMATS = ("full", "iso", "date", "time", "unix")


class UnknownTimezone(ValueError):
    pass


def resolve_timezone(name: Optional[str]) -> Optional[tzinfo]:
    """Return a tzinfo for an IANA name, or None for the local zone."""
    if name is None or not name.strip():
        return None
    try:
        return ZoneInfo(name.strip())
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise UnknownTimezone(f"Unknown timezone: {name}") from e


def _zone_label(now: datetime, zone: Optional[tzinfo]) -> str:
    key = getattr(zone, "key", None)
    if key:
        return key
    return now.tzname() or "local"


def time_info_fields(time_format: str = "full", zone: Optional[tzinfo] = None,
                     now: Optional[datetime] = None) -> List[Tuple[str, str]]:
    if time_format not in TIME_FORMATS:
        raise ValueError(f"Unknown time format: {time_format}")

    if now is None:
        now = datetime.now(zone) if zone is not None else datetime.now().astimezone()
    elif zone is not None:
        now = now.astimezone(zone)
    elif now.tzinfo is None:
        now = now.astimezone()

    epoch_ms = int(now.timestamp() * 1000)
    values = {
        "date": now.strftime("%Y-%m-%d"),
        "time": now.strftime("%H:%M:%S"),
        "iso": now.isoformat(timespec="seconds"),
        "unix": str(epoch_ms // 1000),
        "milliseconds": str(epoch_ms),
    }
    keys = {
        "full": ("date", "time", "iso", "unix"),
        "iso": ("iso",),
        "date": ("date",),
        "time": ("time",),
        "unix": ("unix", "milliseconds"),
    }[time_format]

    fields = [("timezone", _zone_label(now, zone))]
    fields.extend((key, values[key]) for key in keys)
    return fields


def format_time_info(time_format: str = "full", zone: Optional[tzinfo] = None,
                     now: Optional[datetime] = None) -> str:
    return "\n".join(f"{key}: {value}" for key, value in time_info_fields(time_format, zone, now))
