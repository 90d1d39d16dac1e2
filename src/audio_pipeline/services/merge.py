"""
Merge stage: concatenate intro, content and outro into the final object.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

from ..cancellation import CancellationToken
from ..config import get_settings
from ..logging_config import CorrelationContext, LoggerMixin
from ..models import CustomMetadata, Phase
from ..temp_resources import TempResourceRegistry
from .interfaces import ObjectStorage
from .process_channel import DiagnosticEvent, DiagnosticKind, DiagnosticParser, ExternalProcessChannel
from .progress import ProgressAggregator
from .streaming import stream_process_to_sink
from .transcode import AUDIO_CONTENT_TYPE


@dataclass
class MergeResult:
    """Outcome of one concat run."""
    locator: str
    bytes_written: int
    input_count: int


class MergeStage(LoggerMixin):
    """Runs the transcoder in stream-copy concat mode."""

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
        self.context = context.child("merge")
        self.aggregator = aggregator

    @property
    def log(self):
        return self.context.bind(self.logger)

    def write_concat_list(self, paths: Sequence[Path]) -> Path:
        """
        Write the concat demuxer list file.

        Single quotes inside a path are closed, escaped and reopened, which is
        the quoting the concat demuxer understands.
        """
        list_path = self.registry.create_temp_file("list.txt")
        lines = []
        for path in paths:
            escaped = str(path).replace("'", "'\\''")
            lines.append(f"file '{escaped}'")
        list_path.write_text("\n".join(lines) + "\n", encoding="utf-8")
        return list_path

    def build_args(self, list_path: Path) -> List[str]:
        return [
            self.settings.ffmpeg_path,
            "-f", "concat",
            "-safe", "0",
            "-i", str(list_path),
            "-c", "copy",
            "-f", self.settings.output_format,
            "pipe:1",
        ]

    async def merge(
        self,
        inputs: Sequence[Path],
        destination: str,
        total_duration_seconds: float,
        metadata: CustomMetadata,
    ) -> MergeResult:
        """
        Concatenate ``inputs`` in order and upload the result.

        Args:
            inputs: Local files, already ordered intro, content, outro
            destination: Storage locator of the merged object
            total_duration_seconds: Expected length of the merged output
            metadata: Metadata attached to the uploaded object

        Raises:
            ValueError: If no inputs are given
            Cancelled, SpawnFailure, SubprocessFailure, FatalDiagnostic: From the transcoder
            UploadFailure: If the storage upload does not complete
        """
        if not inputs:
            raise ValueError("At least one input is required to merge")

        self.cancel_token.raise_if_requested("merge")
        self.log.info("Starting file merge", file_count=len(inputs), destination=destination)
        await self.aggregator.begin_phase(Phase.MERGE)

        list_path = self.write_concat_list(inputs)
        try:
            channel = ExternalProcessChannel(
                "ffmpeg",
                self.build_args(list_path),
                cancel_token=self.cancel_token,
                context=self.context,
                parser=DiagnosticParser(fatal_patterns=self.settings.fatal_diagnostic_patterns),
                on_event=_MergeProgress(self.aggregator, total_duration_seconds).handle,
                terminate_timeout=self.settings.terminate_timeout_seconds,
            )
            sink = await self.storage.open_write_stream(destination, AUDIO_CONTENT_TYPE, metadata)
            outcome = await stream_process_to_sink(channel, sink, self.log)
        finally:
            self.registry.release(list_path)

        self.log.info("Merge completed successfully", destination=destination, size_bytes=outcome.bytes_written)
        return MergeResult(locator=destination, bytes_written=outcome.bytes_written, input_count=len(inputs))


class _MergeProgress:
    """Scales concat positions against the summed clip length into the merge band."""

    def __init__(self, aggregator: ProgressAggregator, total_duration_seconds: Optional[float]):
        self.aggregator = aggregator
        self.total_ms = (total_duration_seconds or 0) * 1000.0

    async def handle(self, event: DiagnosticEvent) -> None:
        if event.kind is DiagnosticKind.POSITION and self.total_ms > 0:
            await self.aggregator.report_phase_progress(Phase.MERGE, event.milliseconds / self.total_ms * 100.0)
