import re
from datetime import datetime, timedelta, timezone
from typing import Optional, Union

_OFFSET_RE = re.compile(r'^([+-])(\d{2}):?(\d{2})$')


def normalize(dt: datetime) -> datetime:
    """Whole-second, timezone-aware datetime. Naive values are taken as UTC."""
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.replace(microsecond=0)


def parse_offset(raw: Union[str, int, None]) -> Optional[timezone]:
    """
    Parses '+HH:MM' / '-HHMM' strings or integer seconds east of UTC.
    Returns None for anything unrecognised.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        if abs(raw) >= 24 * 3600:
            return None
        return timezone(timedelta(seconds=raw))
    if isinstance(raw, str):
        m = _OFFSET_RE.match(raw.strip())
        if not m:
            return None
        sign, hours, minutes = m.groups()
        delta = timedelta(hours=int(hours), minutes=int(minutes))
        if delta >= timedelta(hours=24) or int(minutes) >= 60:
            return None
        return timezone(-delta if sign == '-' else delta)
    return None


def format_offset(dt: datetime) -> str:
    """'+HH:MM' as written into EXIF OffsetTime* tags."""
    offset = dt.utcoffset() or timedelta(0)
    total = int(offset.total_seconds())
    sign = '-' if total < 0 else '+'
    total = abs(total)
    return f"{sign}{total // 3600:02d}:{(total % 3600) // 60:02d}"


def same_instant_and_offset(a: datetime, b: datetime) -> bool:
    return a == b and a.utcoffset() == b.utcoffset()
