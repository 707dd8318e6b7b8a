"""
Update interval parsing

Intervals are configured as "<hours>:<minutes>" strings, e.g. "12:00" for
twelve hours or "0:30" for half an hour.
"""
import logging
import re

logger = logging.getLogger(__name__)

_INTERVAL_PATTERN = re.compile(r"^(\d{1,4}):(\d{1,2})$")


class IntervalFormatError(ValueError):
    """Raised when an interval string is invalid"""
    pass


def parse_interval_ms(interval: str | None) -> int:
    """
    Parse an "H:MM" interval string into milliseconds

    Args:
        interval: Interval string (e.g., '12:00', '0:30')

    Returns:
        Interval length in milliseconds (always > 0)

    Raises:
        IntervalFormatError: If the string is malformed, minutes >= 60 or the total is zero
    """
    if not isinstance(interval, str):
        raise IntervalFormatError(f"Invalid interval format: {interval!r}. Use H:MM (e.g., '12:00')")

    match = _INTERVAL_PATTERN.match(interval.strip())
    if not match:
        raise IntervalFormatError(f"Invalid interval format: '{interval}'. Use H:MM (e.g., '12:00')")

    hours, minutes = int(match.group(1)), int(match.group(2))
    if minutes >= 60:
        raise IntervalFormatError(f"Invalid interval minutes in '{interval}': must be < 60")

    total_ms = (hours * 60 + minutes) * 60 * 1000
    if total_ms <= 0:
        raise IntervalFormatError(f"Interval must be greater than zero: '{interval}'")

    logger.debug("Parsed interval '%s' -> %s ms", interval, total_ms)
    return total_ms

