"""Runtime configuration for the todolane service.

Values are read from environment variables so deployments can toggle
behaviour without code changes.
"""
import os


def _trueish(v: str | None) -> bool:
    if not v:
        return False
    return v.lower() in ('1', 'true', 'yes', 'on')


def _int_env(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


# SQLAlchemy async URL. The sqlite parent directory is created on startup.
DATABASE_URL = os.getenv('DATABASE_URL', 'sqlite+aiosqlite:///./data/todos.db')

# Calendar feed refresh. The background worker sleeps for the interval
# before each pass; subscribing to a new feed always syncs it immediately.
FEED_REFRESH_ENABLED = _trueish(os.getenv('FEED_REFRESH_ENABLED', '1'))
FEED_REFRESH_INTERVAL_SECONDS = _int_env('FEED_REFRESH_INTERVAL_SECONDS', 3600)
FEED_FETCH_TIMEOUT_SECONDS = _int_env('FEED_FETCH_TIMEOUT_SECONDS', 30)

# Events are imported from the start of today up to December 31st of the
# year FEED_WINDOW_YEARS from now.
FEED_WINDOW_YEARS = _int_env('FEED_WINDOW_YEARS', 2)

# IANA zone used as "local time" for all-day feed events. Empty means the
# host's local zone.
LOCAL_TIMEZONE = os.getenv('LOCAL_TIMEZONE', '')

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()

# Optional local overrides: define variables in todolane/local_config.py to
# override the defaults above without changing versioned config.
try:
    from .local_config import *  # type: ignore  # noqa: F401,F403
except ImportError:
    pass
