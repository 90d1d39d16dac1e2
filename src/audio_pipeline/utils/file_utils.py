"""
File utility functions for the audio processing pipeline.
"""

import os
from pathlib import Path
from typing import Union
from urllib.parse import urlparse

from ..logging_config import get_logger

logger = get_logger(__name__)


def ensure_directory(path: Union[str, Path]) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Args:
        path: Directory path to create

    Returns:
        Path object for the directory
    """
    path = Path(path)
    path.mkdir(parents=True, exist_ok=True)
    logger.debug("Directory ensured", path=str(path))
    return path


def safe_filename(filename: str, max_length: int = 255) -> str:
    """
    Create a safe filename by removing/replacing problematic characters.

    Args:
        filename: Original filename
        max_length: Maximum length for the filename

    Returns:
        Safe filename string
    """
    safe_chars = "abcdefghijklmnopqrstuvwxyzABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789-_."
    safe_name = "".join(c if c in safe_chars else "_" for c in filename)

    if len(safe_name) > max_length:
        name, ext = os.path.splitext(safe_name)
        safe_name = name[:max_length - len(ext)] + ext

    return safe_name or "file"


def url_basename(url: str) -> str:
    """Return the last path segment of ``url`` without query string or fragment."""
    path = urlparse(url).path
    name = path.rstrip("/").rsplit("/", 1)[-1]
    return name or "download"
