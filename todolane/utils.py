from datetime import date, datetime, time, timezone, tzinfo
import logging
import re
import zoneinfo

from dateutil.parser import isoparse

from .errors import InvalidInput

logger = logging.getLogger(__name__)

# calendar date, a T or space separator, then at least HH:MM
_DATE_AND_TIME_RE = re.compile(r'^\d{4}-\d{2}-\d{2}[Tt ]\d{2}:\d{2}')


def now_utc() -> datetime:
    """Return timezone-aware current UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(dt: datetime | None) -> datetime | None:
    """Return ``dt`` as an aware UTC datetime.

    SQLite drops tzinfo on storage, so naive values read back from the
    database are treated as UTC.
    """
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_due_date(value) -> datetime | None:
    """Parse a due date supplied by a caller into aware UTC.

    Accepts ISO-8601 / RFC3339 strings or datetime objects. Offset-less
    values are taken as UTC. ``None`` and the empty string mean "no due
    date". Anything else raises InvalidInput.
    """
    if value is None:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    if isinstance(value, date):
        raise InvalidInput('due_date must include a time of day, e.g. 2024-01-02T15:04:05Z')
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return None
        if not _DATE_AND_TIME_RE.match(s):
            raise InvalidInput(
                f'invalid due_date {value!r}; expected RFC3339 format (e.g. 2024-01-02T15:04:05Z)'
            )
        try:
            parsed = isoparse(s)
        except (ValueError, OverflowError) as exc:
            raise InvalidInput(
                f'invalid due_date {value!r}; expected RFC3339 format (e.g. 2024-01-02T15:04:05Z)'
            ) from exc
        return ensure_utc(parsed)
    raise InvalidInput(f'invalid due_date type {type(value).__name__}')


def resolve_local_timezone(name: str | None = None) -> tzinfo | None:
    """Return the configured local zone, or None for the host's local time."""
    if name:
        try:
            return zoneinfo.ZoneInfo(name)
        except zoneinfo.ZoneInfoNotFoundError:
            logger.warning('unknown LOCAL_TIMEZONE %s; using host local time', name)
    return None


def to_local(dt: datetime, local_tz: tzinfo | None) -> datetime:
    if local_tz is None:
        return ensure_utc(dt).astimezone()
    return ensure_utc(dt).astimezone(local_tz)


def local_midnight_utc(day: date, local_tz: tzinfo | None) -> datetime:
    """Midnight of ``day`` in local time, expressed in UTC."""
    # naive astimezone() interprets the value as host local time
    if local_tz is None:
        return datetime.combine(day, time(0, 0)).astimezone(timezone.utc)
    return datetime.combine(day, time(0, 0), tzinfo=local_tz).astimezone(timezone.utc)


def clean_title(title: str | None, what: str = 'title') -> str:
    s = (title or '').strip()
    if not s:
        raise InvalidInput(f'{what} is required')
    return s
