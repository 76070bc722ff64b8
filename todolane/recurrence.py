from datetime import datetime
from enum import Enum
import logging

from dateutil.relativedelta import relativedelta

from .errors import InvalidInput
from .utils import ensure_utc

logger = logging.getLogger(__name__)


class RecurrenceUnit(str, Enum):
    DAY = 'day'
    WEEK = 'week'
    MONTH = 'month'
    YEAR = 'year'

    @classmethod
    def parse(cls, value) -> "RecurrenceUnit | None":
        """Case-insensitive lookup accepting singular or plural names."""
        if isinstance(value, cls):
            return value
        if not isinstance(value, str):
            return None
        s = value.strip().lower()
        if s.endswith('s'):
            s = s[:-1]
        try:
            return cls(s)
        except ValueError:
            return None


def normalize_recurrence(interval, unit) -> tuple[int | None, str | None]:
    """Validate an (interval, unit) pair from a caller.

    Both must be present or both absent, the interval must be >= 1 and the
    unit one of day/week/month/year. Returns the stored representation.
    """
    if unit == '':
        unit = None
    if interval is None and unit is None:
        return None, None
    if interval is None or unit is None:
        raise InvalidInput('recurrence_interval and recurrence_unit must be set together')
    if isinstance(interval, bool) or not isinstance(interval, int):
        raise InvalidInput('recurrence_interval must be an integer')
    if interval < 1:
        raise InvalidInput('recurrence_interval must be at least 1')
    parsed = RecurrenceUnit.parse(unit)
    if parsed is None:
        raise InvalidInput(f'unknown recurrence_unit {unit!r}; expected day, week, month or year')
    return interval, parsed.value


def next_due(base_due: datetime, interval: int, unit) -> datetime | None:
    """Next occurrence after ``base_due``, or None when it cannot be computed.

    Month and year steps clamp to the end of the target month
    (2024-01-31 + 1 month = 2024-02-29). The time of day of ``base_due`` is
    kept exactly. Unknown units come from stored data the engine cannot
    interpret and yield None rather than an error.
    """
    parsed = RecurrenceUnit.parse(unit)
    if parsed is None:
        logger.warning('recurrence unit %r not understood; no next occurrence', unit)
        return None
    if isinstance(interval, bool) or not isinstance(interval, int) or interval < 1:
        logger.warning('recurrence interval %r not usable; no next occurrence', interval)
        return None
    base = ensure_utc(base_due)
    if parsed is RecurrenceUnit.DAY:
        step = relativedelta(days=interval)
    elif parsed is RecurrenceUnit.WEEK:
        step = relativedelta(days=7 * interval)
    elif parsed is RecurrenceUnit.MONTH:
        step = relativedelta(months=interval)
    else:
        step = relativedelta(years=interval)
    nxt = base + step
    return nxt.replace(hour=base.hour, minute=base.minute, second=base.second, microsecond=base.microsecond)
