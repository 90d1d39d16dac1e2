"""
Utility modules for the audio processing pipeline.
"""

from .file_utils import (
    ensure_directory,
    safe_filename,
    url_basename,
)

from .time_utils import (
    convert_string_to_milliseconds,
    format_duration,
    format_seconds_argument,
)

from .validation import (
    validate_url,
    remove_timestamp_param,
)

__all__ = [
    "ensure_directory",
    "safe_filename",
    "url_basename",
    "convert_string_to_milliseconds",
    "format_duration",
    "format_seconds_argument",
    "validate_url",
    "remove_timestamp_param",
]
