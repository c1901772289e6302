"""
Timezone Utilities
IANA zone normalization and conversion; unknown zones fall back to UTC
"""
import logging
from datetime import datetime, timezone as dt_timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = 'UTC'


def normalize_timezone(name) -> str:
    """Return a loadable IANA zone name, or UTC for empty/invalid input"""
    if not name or not isinstance(name, str):
        return DEFAULT_TIMEZONE

    name = name.strip()
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError, OSError):
        logger.warning(f"Unknown timezone '{name}', falling back to {DEFAULT_TIMEZONE}")
        return DEFAULT_TIMEZONE
    return name


def get_zone(name) -> ZoneInfo:
    return ZoneInfo(normalize_timezone(name))


def to_zone(moment: datetime, name) -> datetime:
    """
    Convert a moment to the wall clock of a zone

    Naive datetimes are treated as UTC, matching how timestamps are stored.
    """
    if moment.tzinfo is None:
        moment = moment.replace(tzinfo=dt_timezone.utc)
    return moment.astimezone(get_zone(name))
