"""
Transcode stage: run the transcoder over the acquired input and stream the
result into storage.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional

from ..cancellation import CancellationToken
from ..config import get_settings
from ..errors import InvalidSource
from ..logging_config import CorrelationContext, LoggerMixin
from ..models import CustomMetadata, Phase, TrimWindow
from ..temp_resources import TempResourceRegistry
from ..utils.time_utils import format_seconds_argument
from .acquisition import AcquiredInput, InputKind
from .interfaces import ObjectStorage
from .process_channel import DiagnosticEvent, DiagnosticKind, DiagnosticParser, ExternalProcessChannel
from .progress import ProgressAggregator
from .streaming import stream_process_to_sink

AUDIO_CONTENT_TYPE = "audio/mpeg"

StartedCallback = Callable[[], Awaitable[None]]


@dataclass
class TranscodeResult:
    """Outcome of one transcoder run."""
    locator: str
    bytes_written: int
    output_seconds: Optional[float]
    input_closed_early: bool = False


class TranscodeStage(LoggerMixin):
    """Drives the transcoder for one job."""

    def __init__(
        self,
        storage: ObjectStorage,
        registry: TempResourceRegistry,
        cancel_token: CancellationToken,
        context: CorrelationContext,
        aggregator: ProgressAggregator,
        settings=None,
    ):
        self.settings = settings or get_settings()
        self.storage = storage
        self.registry = registry
        self.cancel_token = cancel_token
        self.context = context.child("transcode")
        self.aggregator = aggregator

    @property
    def log(self):
        return self.context.bind(self.logger)

    # ------------------------------------------------------------------
    # Argument construction
    # ------------------------------------------------------------------

    def build_args(self, acquired: AcquiredInput, trim: TrimWindow) -> List[str]:
        """
        Build the transcoder argument vector.

        Seeking goes before ``-i`` for files and URLs (input seeking) and after
        it for a pipe, which cannot be seeked. ``-t`` is applied whenever the
        window still has to be cut here, or when a section download came back
        too long and needs the exact requested duration.
        """
        args = [self.settings.ffmpeg_path]
        seek = self._seek_args(acquired, trim)

        if acquired.kind is InputKind.PIPE:
            args += ["-i", "pipe:0"] + seek
        else:
            args += seek + ["-i", acquired.locator]

        if trim.duration_seconds is not None and (acquired.apply_seek or acquired.secondary_trim):
            args += ["-t", format_seconds_argument(trim.duration_seconds)]

        args += [
            "-acodec", self.settings.audio_codec,
            "-b:a", self.settings.audio_bitrate,
            "-ac", str(self.settings.audio_channels),
            "-ar", str(self.settings.audio_sample_rate),
            "-af", self.settings.audio_filter_chain,
            "-f", self.settings.output_format,
            "pipe:1",
        ]
        return args

    def build_stream_copy_args(self, acquired: AcquiredInput, trim: TrimWindow) -> List[str]:
        """Argument vector for trimming without re-encoding."""
        args = [self.settings.ffmpeg_path]
        args += self._seek_args(acquired, trim)
        args += ["-i", acquired.locator]
        if trim.duration_seconds is not None:
            args += ["-t", format_seconds_argument(trim.duration_seconds)]
        args += ["-c", "copy", "-f", self.settings.output_format, "pipe:1"]
        return args

    @staticmethod
    def _seek_args(acquired: AcquiredInput, trim: TrimWindow) -> List[str]:
        if acquired.apply_seek and trim.start_seconds > 0:
            return ["-ss", format_seconds_argument(trim.start_seconds)]
        return []

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def run(
        self,
        acquired: AcquiredInput,
        trim: TrimWindow,
        destination: str,
        metadata: CustomMetadata,
        on_started: Optional[StartedCallback] = None,
    ) -> TranscodeResult:
        """
        Transcode ``acquired`` into ``destination``.

        ``on_started`` runs once, on the first position marker, so a tool that
        dies during startup never produces a status change.

        Raises:
            Cancelled, SpawnFailure, SubprocessFailure, FatalDiagnostic: From the tools
            UploadFailure: If the storage upload does not complete
        """
        try:
            self.cancel_token.raise_if_requested("transcode")
            self.log.info(
                "Starting trim and transcode",
                input_kind=acquired.kind.value,
                policy=acquired.policy.value,
                start_seconds=trim.start_seconds,
                duration_seconds=trim.duration_seconds,
                destination=destination,
            )
            return await self._execute(self.build_args(acquired, trim), acquired, trim, destination, metadata, on_started)
        finally:
            await self._release_input(acquired)

    async def trim_copy(
        self,
        acquired: AcquiredInput,
        trim: TrimWindow,
        destination: str,
        metadata: CustomMetadata,
    ) -> TranscodeResult:
        """
        Cut the window out of a local file without re-encoding.

        Raises:
            InvalidSource: If the input is not a local file
        """
        try:
            if acquired.kind is not InputKind.FILE:
                raise InvalidSource("Audio source must be a stored file in order to trim without transcoding")

            self.cancel_token.raise_if_requested("trim")
            self.log.info("Starting trim operation", start_seconds=trim.start_seconds,
                          duration_seconds=trim.duration_seconds, destination=destination)
            return await self._execute(self.build_stream_copy_args(acquired, trim), acquired, trim, destination, metadata, None)
        finally:
            await self._release_input(acquired)

    async def _release_input(self, acquired: AcquiredInput) -> None:
        # A downloader still feeding the pipe must not outlive this stage
        if acquired.upstream is not None:
            if acquired.upstream.returncode is None:
                self.log.warning("Stopping input downloader left running")
            await acquired.upstream.close()
        if acquired.temp_path is not None:
            self.log.debug("Deleting raw audio temp file", file=str(acquired.temp_path))
            self.registry.release(acquired.temp_path)

    async def _execute(
        self,
        args: List[str],
        acquired: AcquiredInput,
        trim: TrimWindow,
        destination: str,
        metadata: CustomMetadata,
        on_started: Optional[StartedCallback],
    ) -> TranscodeResult:
        progress = _TranscodeProgress(self, acquired, trim, on_started)
        channel = ExternalProcessChannel(
            "ffmpeg",
            args,
            cancel_token=self.cancel_token,
            context=self.context,
            parser=DiagnosticParser(fatal_patterns=self.settings.fatal_diagnostic_patterns),
            on_event=progress.handle,
            stdin_pipe=acquired.is_pipe,
            terminate_timeout=self.settings.terminate_timeout_seconds,
        )
        sink = await self.storage.open_write_stream(destination, AUDIO_CONTENT_TYPE, metadata)
        outcome = await stream_process_to_sink(channel, sink, self.log, upstream=acquired.upstream)

        self.log.info("Trim and transcode completed successfully", destination=destination,
                      size_bytes=outcome.bytes_written)
        return TranscodeResult(
            locator=destination,
            bytes_written=outcome.bytes_written,
            output_seconds=progress.output_seconds,
            input_closed_early=outcome.input_closed_early,
        )


class _TranscodeProgress:
    """Turns transcoder diagnostics into progress reports and the start signal."""

    def __init__(
        self,
        stage: TranscodeStage,
        acquired: AcquiredInput,
        trim: TrimWindow,
        on_started: Optional[StartedCallback],
    ):
        self.stage = stage
        self.acquired = acquired
        self.trim = trim
        self.on_started = on_started
        self.started = False
        self.total_ms: Optional[int] = None
        self.last_position_ms: Optional[int] = None

    @property
    def output_seconds(self) -> Optional[float]:
        if self.last_position_ms is None:
            return None
        return self.last_position_ms / 1000.0

    def expected_output_ms(self) -> Optional[float]:
        if self.trim.duration_seconds is not None:
            return self.trim.duration_seconds * 1000.0
        if self.total_ms:
            if self.acquired.apply_seek:
                return self.total_ms - self.trim.start_seconds * 1000.0
            return float(self.total_ms)
        return None

    async def handle(self, event: DiagnosticEvent) -> None:
        stage = self.stage
        if event.kind is DiagnosticKind.DURATION and self.total_ms is None:
            self.total_ms = event.milliseconds
            stage.log.info("Detected input duration", milliseconds=event.milliseconds)
            if self.trim.duration_seconds is None and self.trim.start_seconds > 0 and event.milliseconds > 0:
                stage.aggregator.recompute(event.milliseconds / 1000.0)
            return

        if event.kind is not DiagnosticKind.POSITION:
            return

        if not self.started:
            self.started = True
            stage.log.info("Transcoding started")
            await stage.aggregator.begin_phase(Phase.TRANSCODE)
            if self.on_started is not None:
                try:
                    await self.on_started()
                except Exception as e:
                    stage.log.error("Failed to update document status", error=str(e))

        self.last_position_ms = event.milliseconds
        expected = self.expected_output_ms()
        if expected and expected > 0:
            await stage.aggregator.report_phase_progress(Phase.TRANSCODE, event.milliseconds / expected * 100.0)
