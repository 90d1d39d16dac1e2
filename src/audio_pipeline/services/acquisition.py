"""
Acquisition stage: obtain the input bytes for the transcoder.

Remote sources are tried in priority order:

1. direct-URL input seeking (the transcoder seeks into a resolved media URL),
2. precise section download (the downloader fetches only the window),
3. full-stream pass-through (no trim window; the downloader pipes into the
   transcoder's standard input).

Stored objects are copied to a local scratch file.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional

import yt_dlp

from ..cancellation import CancellationToken
from ..config import get_settings
from ..errors import InvalidSource, PipelineError
from ..logging_config import CorrelationContext, LoggerMixin
from ..models import AudioSource, Phase, RemoteUrl, StoredObject, TrimWindow
from ..temp_resources import TempResourceRegistry
from ..utils.time_utils import format_seconds_argument
from .interfaces import ObjectStorage
from .media_probe import MediaProbe
from .process_channel import (
    DiagnosticEvent,
    DiagnosticKind,
    DiagnosticParser,
    ExternalProcessChannel,
)
from .progress import ProgressAggregator


class AcquisitionPolicy(Enum):
    """How the input bytes were obtained."""
    DIRECT_URL = "direct_url"
    SECTION_DOWNLOAD = "section_download"
    PASS_THROUGH = "pass_through"
    STORED_OBJECT = "stored_object"


class InputKind(Enum):
    """What the transcoder reads from."""
    FILE = "file"
    URL = "url"
    PIPE = "pipe"


@dataclass
class AcquiredInput:
    """Result of acquisition, consumed by the transcode stage."""
    policy: AcquisitionPolicy
    kind: InputKind
    locator: str
    apply_seek: bool
    secondary_trim: bool = False
    temp_path: Optional[Path] = None
    upstream: Optional[ExternalProcessChannel] = None
    actual_duration_seconds: Optional[float] = None

    @property
    def is_pipe(self) -> bool:
        return self.kind is InputKind.PIPE


class AcquisitionStage(LoggerMixin):
    """Obtains transcoder input for one job."""

    def __init__(
        self,
        storage: ObjectStorage,
        registry: TempResourceRegistry,
        cancel_token: CancellationToken,
        context: CorrelationContext,
        aggregator: ProgressAggregator,
        settings=None,
        probe: Optional[MediaProbe] = None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage
        self.registry = registry
        self.cancel_token = cancel_token
        self.context = context.child("acquisition")
        self.aggregator = aggregator
        self.probe = probe or MediaProbe(cancel_token, self.context, self.settings)
        self._cookies_path: Optional[Path] = None
        self._cookies_resolved = False

    @property
    def log(self):
        return self.context.bind(self.logger)

    async def acquire(self, source: AudioSource, trim: TrimWindow) -> AcquiredInput:
        """
        Obtain input for the transcoder.

        Args:
            source: Where the audio comes from
            trim: Requested window

        Returns:
            Description of the input the transcoder should read

        Raises:
            Cancelled: If cancellation was requested before or during acquisition
            InvalidSource: If the source kind is not supported
            SpawnFailure, SubprocessFailure, FatalDiagnostic: From the downloader
        """
        self.cancel_token.raise_if_requested("acquisition")
        await self.aggregator.begin_phase(Phase.ACQUISITION)

        if isinstance(source, StoredObject):
            acquired = await self._copy_stored_object(source)
        elif isinstance(source, RemoteUrl):
            acquired = await self._acquire_remote(source, trim)
        else:
            raise InvalidSource(f"Unsupported audio source: {source!r}")

        self.log.info(
            "Acquisition ready",
            policy=acquired.policy.value,
            input_kind=acquired.kind.value,
            secondary_trim=acquired.secondary_trim,
        )
        return acquired

    # ------------------------------------------------------------------
    # Stored objects
    # ------------------------------------------------------------------

    async def _copy_stored_object(self, source: StoredObject) -> AcquiredInput:
        destination = self.registry.create_temp_file(f"raw-{Path(source.locator).name}")
        self.log.debug("Downloading raw audio source", source=source.locator, destination=str(destination))
        await self.storage.download(source.locator, destination)
        self.cancel_token.raise_if_requested("acquisition")
        await self.aggregator.report_phase_progress(Phase.ACQUISITION, 100.0)
        return AcquiredInput(
            policy=AcquisitionPolicy.STORED_OBJECT,
            kind=InputKind.FILE,
            locator=str(destination),
            apply_seek=True,
            temp_path=destination,
        )

    # ------------------------------------------------------------------
    # Remote sources
    # ------------------------------------------------------------------

    async def _acquire_remote(self, source: RemoteUrl, trim: TrimWindow) -> AcquiredInput:
        if not trim.is_trimming:
            return await self._start_pass_through(source.locator)

        direct_url = await self.resolve_direct_url(source.locator)
        if direct_url:
            await self.aggregator.report_phase_progress(Phase.ACQUISITION, 100.0)
            return AcquiredInput(
                policy=AcquisitionPolicy.DIRECT_URL,
                kind=InputKind.URL,
                locator=direct_url,
                apply_seek=True,
            )

        self.log.warning("Direct URL unavailable, falling back to section download", url=source.locator)
        return await self.download_section(source.locator, trim)

    async def resolve_direct_url(self, url: str) -> Optional[str]:
        """
        Resolve ``url`` to a directly fetchable media URL.

        Returns None when resolution fails; the caller falls back to a
        section download.
        """
        self.cancel_token.raise_if_requested("acquisition")
        cookies = self.cookies_file()
        try:
            direct_url = await asyncio.to_thread(self._extract_direct_url, url, cookies)
        except Exception as e:
            self.log.warning("Direct URL resolution failed", url=url, error=str(e))
            return None

        if not direct_url:
            self.log.warning("Direct URL resolution returned no media URL", url=url)
        return direct_url

    def _extract_direct_url(self, url: str, cookies: Optional[Path]) -> Optional[str]:
        params = {
            "format": self.settings.ytdlp_format,
            "noplaylist": True,
            "quiet": True,
            "no_warnings": True,
            "skip_download": True,
        }
        if cookies is not None:
            params["cookiefile"] = str(cookies)

        with yt_dlp.YoutubeDL(params) as ydl:
            info = ydl.extract_info(url, download=False)

        if not info:
            return None
        if info.get("url"):
            return info["url"]
        for fmt in info.get("requested_formats") or []:
            if fmt.get("url"):
                return fmt["url"]
        return None

    async def _start_pass_through(self, url: str) -> AcquiredInput:
        channel = self._downloader_channel(self.pass_through_args(url), stdout_pipe=True)
        await channel.start()
        return AcquiredInput(
            policy=AcquisitionPolicy.PASS_THROUGH,
            kind=InputKind.PIPE,
            locator="pipe:0",
            apply_seek=True,
            upstream=channel,
        )

    async def download_section(self, url: str, trim: TrimWindow) -> AcquiredInput:
        """
        Fetch only the requested window with the downloader.

        Also the fallback when the transcoder could not read a resolved
        direct URL (expired links, refused range requests).
        """
        destination = self.registry.create_temp_file("section-audio")
        channel = self._downloader_channel(self.section_args(url, trim, destination), diagnostics_on_stdout=True)
        async with channel:
            await channel.wait()

        self.cancel_token.raise_if_requested("acquisition")
        actual = await self.probe.get_duration_seconds(destination)
        secondary_trim = self.needs_secondary_trim(actual, trim.duration_seconds)
        await self.aggregator.report_phase_progress(Phase.ACQUISITION, 100.0)

        return AcquiredInput(
            policy=AcquisitionPolicy.SECTION_DOWNLOAD,
            kind=InputKind.FILE,
            locator=str(destination),
            apply_seek=False,
            secondary_trim=secondary_trim,
            temp_path=destination,
            actual_duration_seconds=actual,
        )

    def needs_secondary_trim(self, actual_seconds: float, requested_seconds: Optional[float]) -> bool:
        """
        Decide whether a downloaded section overshoots the requested duration.

        Only an excess beyond the configured tolerance triggers the corrective
        trim, which always uses the requested duration.
        """
        if requested_seconds is None:
            return False

        tolerance = self.settings.section_duration_tolerance_seconds
        excess = actual_seconds - requested_seconds
        if excess > tolerance:
            self.log.warning(
                "Section longer than requested, secondary trim required",
                actual_seconds=actual_seconds,
                requested_seconds=requested_seconds,
                tolerance_seconds=tolerance,
            )
            return True

        if excess < -tolerance:
            self.log.warning(
                "Section shorter than requested",
                actual_seconds=actual_seconds,
                requested_seconds=requested_seconds,
            )
        return False

    # ------------------------------------------------------------------
    # Downloader invocation
    # ------------------------------------------------------------------

    def _base_args(self) -> List[str]:
        args = [self.settings.ytdlp_path]
        cookies = self.cookies_file()
        if cookies is not None:
            args += ["--cookies", str(cookies)]
        args += [
            "-f", self.settings.ytdlp_format,
            "-N", str(self.settings.ytdlp_concurrent_fragments),
            "--no-playlist",
            "--newline",
        ]
        return args

    def pass_through_args(self, url: str) -> List[str]:
        return self._base_args() + ["-o", "-", url]

    def section_args(self, url: str, trim: TrimWindow, destination: Path) -> List[str]:
        end = trim.end_seconds
        section = f"*{format_seconds_argument(trim.start_seconds)}-{format_seconds_argument(end) if end is not None else 'inf'}"
        return self._base_args() + [
            "--download-sections", section,
            "--force-keyframes-at-cuts",
            "-o", str(destination),
            url,
        ]

    def _downloader_channel(
        self,
        argv: List[str],
        stdout_pipe: bool = False,
        diagnostics_on_stdout: bool = False,
    ) -> ExternalProcessChannel:
        return ExternalProcessChannel(
            "yt-dlp",
            argv,
            cancel_token=self.cancel_token,
            context=self.context,
            parser=DiagnosticParser(
                fatal_patterns=self.settings.downloader_fatal_patterns,
                parse_percent=True,
            ),
            on_event=self._on_download_event,
            stdout_pipe=stdout_pipe,
            diagnostics_on_stdout=diagnostics_on_stdout,
            terminate_timeout=self.settings.terminate_timeout_seconds,
        )

    async def _on_download_event(self, event: DiagnosticEvent) -> None:
        if event.kind is DiagnosticKind.PERCENT:
            await self.aggregator.report_phase_progress(Phase.ACQUISITION, event.percent)

    def cookies_file(self) -> Optional[Path]:
        """
        Cookie file passed to the downloader, if one is configured.

        Base64 encoded contents take precedence and are written to a
        registered scratch file once per job.
        """
        if self._cookies_resolved:
            return self._cookies_path

        encoded = self.settings.ytdlp_cookies_base64
        if encoded:
            try:
                decoded = base64.b64decode(encoded, validate=True)
            except (binascii.Error, ValueError) as e:
                raise PipelineError(f"Failed to decode yt-dlp cookies: {e}") from e
            path = self.registry.create_temp_file("cookies.txt")
            path.write_bytes(decoded)
            self._cookies_path = path
            self.log.debug("Cookie file created from encoded settings", path=str(path))
        elif self.settings.ytdlp_cookies_file is not None:
            if Path(self.settings.ytdlp_cookies_file).is_file():
                self._cookies_path = Path(self.settings.ytdlp_cookies_file)
            else:
                self.log.warning("Configured cookie file does not exist", path=str(self.settings.ytdlp_cookies_file))

        self._cookies_resolved = True
        return self._cookies_path
