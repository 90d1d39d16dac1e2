"""
Validation utility functions for the audio processing pipeline.
"""

import math
from typing import Any
from urllib.parse import parse_qsl, urlencode, urlparse, urlunparse

from ..logging_config import get_logger

logger = get_logger(__name__)


def validate_url(url: str) -> bool:
    """
    Validate if a string is a valid URL.

    Args:
        url: URL string to validate

    Returns:
        True if valid URL, False otherwise
    """
    try:
        result = urlparse(url)
        is_valid = all([result.scheme, result.netloc])
        logger.debug("URL validation", url=url, valid=is_valid)
        return is_valid
    except ValueError as e:
        logger.debug("URL validation failed", url=url, error=str(e))
        return False


def is_non_empty_string(value: Any) -> bool:
    return isinstance(value, str) and bool(value)


def is_finite_number(value: Any) -> bool:
    """True for int/float values that are neither NaN nor infinite (bools excluded)."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def remove_timestamp_param(url: str) -> str:
    """
    Drop the ``t`` query parameter so a shared link does not start mid-video.

    Unparsable URLs are returned unchanged.
    """
    try:
        parsed = urlparse(url)
    except ValueError as e:
        logger.error("Invalid URL", url=url, error=str(e))
        return url

    if not parsed.query:
        return url

    query = [(key, value) for key, value in parse_qsl(parsed.query, keep_blank_values=True) if key != "t"]
    return urlunparse(parsed._replace(query=urlencode(query)))
