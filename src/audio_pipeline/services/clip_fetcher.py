"""HTTP download of intro and outro clips."""

from __future__ import annotations

import asyncio
from pathlib import Path

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from ..config import get_settings
from ..errors import ClipFetchError
from ..logging_config import CorrelationContext, LoggerMixin
from ..temp_resources import TempResourceRegistry
from ..utils.file_utils import url_basename
from ..utils.validation import validate_url

DOWNLOAD_CHUNK_SIZE = 1024 * 1024


class ClipFetcher(LoggerMixin):
    """HTTP client with retries used to fetch auxiliary clips."""

    def __init__(self, settings=None, session: requests.Session | None = None):
        self.settings = settings or get_settings()
        self.timeout = int(getattr(self.settings, "http_timeout", 600))

        if session is None:
            retries = Retry(
                total=3,
                connect=3,
                read=3,
                status=3,
                backoff_factor=0.5,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=frozenset(["GET"]),
                raise_on_status=False,
            )
            adapter = HTTPAdapter(max_retries=retries)
            session = requests.Session()
            session.mount("http://", adapter)
            session.mount("https://", adapter)
        self.session = session

    def download_from_url(self, url: str, output_path: Path) -> Path:
        """Stream ``url`` into ``output_path``."""
        output_path.parent.mkdir(parents=True, exist_ok=True)

        with self.session.get(url, stream=True, timeout=self.timeout) as response:
            response.raise_for_status()
            with open(output_path, "wb") as f:
                for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                    if chunk:
                        f.write(chunk)
        return output_path

    async def fetch(self, url: str, registry: TempResourceRegistry, context: CorrelationContext) -> Path:
        """
        Download a clip into a registered temp file.

        Raises:
            ClipFetchError: If the URL is invalid, the request fails or returns an error status
        """
        log = context.bind(self.logger)
        if not validate_url(url):
            raise ClipFetchError(f"Invalid clip URL: {url}")

        destination = registry.create_temp_file(url_basename(url))
        log.info("Downloading clip", url=url, destination=str(destination))
        try:
            await asyncio.to_thread(self.download_from_url, url, destination)
        except (requests.RequestException, OSError) as e:
            log.error("Clip download failed", url=url, error=str(e))
            raise ClipFetchError(f"Failed to download {url}: {e}") from e
        return destination
