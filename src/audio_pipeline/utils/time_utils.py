"""
Time utility functions for the audio processing pipeline.
"""

import re

from ..logging_config import get_logger

logger = get_logger(__name__)

_TIMESTAMP_PATTERN = re.compile(r"^(-)?(\d+):(\d{1,2}):(\d{1,2})(?:\.(\d+))?$")


def convert_string_to_milliseconds(time_str: str) -> int:
    """
    Convert an ffmpeg style ``HH:MM:SS.ff`` timestamp to milliseconds.

    The fractional part is read as a decimal fraction of a second, so
    ``"01:02:03.45"`` is 3723450 ms. For the two-digit hundredths ffmpeg
    prints this equals ``ff * 10``; a one-digit fraction is tenths, so
    ``"00:00:01.5"`` is 1500 ms rather than 1050. Malformed input yields 0
    and a warning; a negative timestamp (ffmpeg prints these while priming)
    yields 0.

    Args:
        time_str: Timestamp text taken from a diagnostic stream

    Returns:
        Milliseconds as an integer, never negative
    """
    if not time_str:
        logger.warning("Failed to parse time string", time_str=time_str, reason="empty")
        return 0

    match = _TIMESTAMP_PATTERN.match(time_str.strip())
    if not match:
        logger.warning("Failed to parse time string", time_str=time_str, reason="format")
        return 0

    negative, hours, minutes, seconds, fraction = match.groups()
    if negative:
        return 0

    fraction_ms = int(round(float(f"0.{fraction}") * 1000)) if fraction else 0
    return (int(hours) * 3600 + int(minutes) * 60 + int(seconds)) * 1000 + fraction_ms


def format_duration(seconds: float) -> str:
    """
    Format duration in seconds to HH:MM:SS.mmm format.

    Args:
        seconds: Duration in seconds

    Returns:
        Formatted duration string
    """
    if seconds < 0:
        raise ValueError("Duration cannot be negative")

    hours = int(seconds // 3600)
    minutes = int((seconds % 3600) // 60)
    secs = seconds % 60

    return f"{hours:02d}:{minutes:02d}:{secs:06.3f}"


def format_seconds_argument(seconds: float) -> str:
    """Render seconds for a command line flag without a trailing ``.0``."""
    if float(seconds).is_integer():
        return str(int(seconds))
    return f"{seconds:.3f}".rstrip("0").rstrip(".")
