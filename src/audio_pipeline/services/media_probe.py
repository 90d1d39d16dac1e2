"""Media length lookup through ffprobe."""

import json
from pathlib import Path
from typing import Union

from ..cancellation import CancellationToken
from ..config import get_settings
from ..errors import ProbeError
from ..logging_config import CorrelationContext, LoggerMixin
from .process_channel import ExternalProcessChannel


class MediaProbe(LoggerMixin):
    """Reads container metadata of local media files."""

    def __init__(self, cancel_token: CancellationToken, context: CorrelationContext, settings=None):
        self.settings = settings or get_settings()
        self.cancel_token = cancel_token
        self.context = context

    def build_args(self, path: Union[str, Path]) -> list:
        return [
            self.settings.ffprobe_path,
            "-v", "error",
            "-show_entries", "format=duration",
            "-of", "json",
            str(path),
        ]

    async def get_duration_seconds(self, path: Union[str, Path]) -> float:
        """
        Return the container duration of ``path`` in seconds.

        A file without a duration entry reports 0.0.

        Raises:
            SubprocessFailure: If ffprobe exits non-zero
            ProbeError: If ffprobe output is not the expected JSON
        """
        channel = ExternalProcessChannel(
            "ffprobe",
            self.build_args(path),
            cancel_token=self.cancel_token,
            context=self.context.child("probe"),
            terminate_timeout=self.settings.terminate_timeout_seconds,
        )
        async with channel:
            output = await channel.stdout.read()
            await channel.wait()

        try:
            metadata = json.loads(output.decode("utf-8") or "{}")
            duration = float((metadata.get("format") or {}).get("duration") or 0)
        except (ValueError, AttributeError) as e:
            raise ProbeError(f"Failed to parse ffprobe output for {path}: {e}") from e

        self.context.bind(self.logger).debug("Media duration probed", path=str(path), duration_seconds=duration)
        return duration
