"""
Progress aggregation across pipeline phases.

Each phase reports its own 0-100 progress; the aggregator maps it into the
phase's band of the global 0-100 scale and forwards only strictly increasing
integer values to the progress sink.
"""

from __future__ import annotations

import asyncio
import math
from dataclasses import dataclass
from typing import Dict, Optional

from ..config import get_settings
from ..logging_config import CorrelationContext, LoggerMixin
from ..models import Phase, TrimWindow
from .interfaces import ProgressSink

PHASE_ORDER = (Phase.ACQUISITION, Phase.TRANSCODE, Phase.MERGE)


@dataclass(frozen=True)
class ProgressRange:
    """Band of the global scale owned by one phase."""
    start: float
    end: float

    def __post_init__(self):
        """Validate data after initialization."""
        if not 0 <= self.start <= self.end <= 100:
            raise ValueError(f"Invalid progress range [{self.start}, {self.end}]")

    def map(self, local_percent: float) -> float:
        """Map a phase-local percentage into this band, clamped to its bounds."""
        local = min(100.0, max(0.0, local_percent))
        value = self.start + (local / 100.0) * (self.end - self.start)
        return min(self.end, max(self.start, value))


def acquisition_band_end(
    trim: TrimWindow,
    total_seconds: Optional[float] = None,
    *,
    speed_ratio: float = 5.0,
    ceiling: float = 98.0,
    download_band_end: float = 2.0,
) -> float:
    """
    Estimate where acquisition ends on the global scale.

    Without trimming the transcoder starts consuming almost immediately, so
    acquisition gets a fixed small band. With trimming the band is the share
    of media time that has to be fetched before the window starts, divided by
    ``speed_ratio``. The ratio is a hand-tuned estimate of how much faster
    acquisition runs than transcoding, not a measured constant.

    Args:
        trim: Requested window
        total_seconds: Total media length, once known
        speed_ratio: Acquisition speed relative to transcoding
        ceiling: Upper bound of all non-final phases
        download_band_end: Band end used when nothing is trimmed

    Returns:
        End of the acquisition band, between 0 and ``ceiling``
    """
    if not trim.is_trimming:
        return min(download_band_end, ceiling)

    start = trim.start_seconds
    if trim.duration_seconds is not None:
        span = trim.duration_seconds
    elif total_seconds is not None and total_seconds > start:
        span = total_seconds - start
    else:
        return min(download_band_end, ceiling)

    end = round((start / (start + span)) / speed_ratio * ceiling)
    return float(min(max(end, 0), ceiling))


class ProgressAggregator(LoggerMixin):
    """
    Single monotonically increasing progress value for one job.

    Values written to the sink never decrease. Reports that would move the
    value backwards (noisy measurements, late reports from a finished phase,
    re-estimated bands) are logged at debug level and dropped.
    """

    def __init__(
        self,
        sink: ProgressSink,
        locator: str,
        context: CorrelationContext,
        settings=None,
    ):
        self.settings = settings or get_settings()
        self.sink = sink
        self.locator = locator
        self.context = context
        self.final_band_start = float(self.settings.final_band_start_percent)

        self._ranges: Dict[Phase, ProgressRange] = {}
        self._active: Optional[Phase] = None
        self._max_emitted = -1
        self._trim = TrimWindow()
        self._lock = asyncio.Lock()
        self.plan(TrimWindow())

    @property
    def log(self):
        return self.context.bind(self.logger)

    @property
    def max_emitted(self) -> int:
        """Last value written to the sink, or -1 before the first write."""
        return self._max_emitted

    @property
    def active_phase(self) -> Optional[Phase]:
        return self._active

    def range_for(self, phase: Phase) -> ProgressRange:
        return self._ranges[phase]

    # ------------------------------------------------------------------
    # Band planning
    # ------------------------------------------------------------------

    def plan(self, trim: TrimWindow, total_seconds: Optional[float] = None) -> None:
        """Compute the initial bands for a job with the given trim window."""
        self._trim = trim
        acquisition_end = self._acquisition_end(total_seconds)
        self._ranges = {
            Phase.ACQUISITION: ProgressRange(0.0, acquisition_end),
            Phase.TRANSCODE: ProgressRange(acquisition_end, self.final_band_start),
            Phase.MERGE: ProgressRange(self.final_band_start, 100.0),
        }
        self.log.debug(
            "Progress bands planned",
            acquisition=[0.0, acquisition_end],
            transcode=[acquisition_end, self.final_band_start],
        )

    def recompute(self, total_seconds: float) -> None:
        """
        Re-estimate bands once the true media length is known.

        The value already emitted becomes the floor of the active phase, so a
        new estimate never shows as a jump backwards.
        """
        acquisition_end = self._acquisition_end(total_seconds)
        floor = float(max(self._max_emitted, 0))
        proposed = {
            Phase.ACQUISITION: (0.0, acquisition_end),
            Phase.TRANSCODE: (acquisition_end, self.final_band_start),
        }

        active_index = PHASE_ORDER.index(self._active) if self._active else -1
        for index, phase in enumerate(PHASE_ORDER[:2]):
            if index < active_index:
                continue
            start, end = proposed[phase]
            if index == active_index:
                start = max(self._ranges[phase].start, floor)
            else:
                start = max(start, floor)
            end = min(max(end, start), self.final_band_start)
            self._ranges[phase] = ProgressRange(min(start, end), end)

        self.log.debug(
            "Progress bands recomputed",
            total_seconds=total_seconds,
            acquisition=[self._ranges[Phase.ACQUISITION].start, self._ranges[Phase.ACQUISITION].end],
            transcode=[self._ranges[Phase.TRANSCODE].start, self._ranges[Phase.TRANSCODE].end],
        )

    def _acquisition_end(self, total_seconds: Optional[float]) -> float:
        return acquisition_band_end(
            self._trim,
            total_seconds,
            speed_ratio=self.settings.acquisition_speed_ratio,
            ceiling=self.final_band_start,
            download_band_end=float(self.settings.download_band_end_percent),
        )

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    async def begin_phase(self, phase: Phase) -> None:
        """Make ``phase`` the active phase and emit its starting value."""
        if self._active is not None and PHASE_ORDER.index(phase) < PHASE_ORDER.index(self._active):
            self.log.debug("Ignoring restart of an earlier phase", phase=phase.value, active=self._active.value)
            return
        if self._active is not phase:
            self._active = phase
            self.log.debug("Progress phase started", phase=phase.value)
        await self.report_phase_progress(phase, 0.0)

    async def report_phase_progress(self, phase: Phase, local_percent: float) -> Optional[int]:
        """
        Map phase-local progress to the global scale and forward it.

        Returns:
            The value written to the sink, or None if the report was dropped
        """
        if local_percent is None or math.isnan(local_percent):
            self.log.debug("Dropping invalid progress report", phase=phase.value, local_percent=local_percent)
            return None

        if self._active is None:
            self._active = phase
        elif phase is not self._active:
            if PHASE_ORDER.index(phase) < PHASE_ORDER.index(self._active):
                self.log.debug("Dropping report from finished phase", phase=phase.value, active=self._active.value)
                return None
            self._active = phase

        value = int(round(self._ranges[phase].map(local_percent)))
        return await self._emit(value, phase=phase.value, local_percent=local_percent)

    async def complete(self) -> Optional[int]:
        """Write the final 100."""
        return await self._emit(100, phase="complete", local_percent=100.0)

    async def remove(self) -> None:
        """Delete the job's progress entry; failures are logged only."""
        try:
            await self.sink.remove(self.locator)
        except Exception as e:
            self.log.error("Failed to remove progress entry", locator=self.locator, error=str(e))

    async def _emit(self, value: int, **fields) -> Optional[int]:
        async with self._lock:
            if value <= self._max_emitted:
                if value < self._max_emitted:
                    self.log.debug("Skipping backwards progress update",
                                   previous=self._max_emitted, value=value, **fields)
                return None
            self._max_emitted = value

            # Held across the write so the sink sees values in emission order
            try:
                await self.sink.set(self.locator, value)
            except Exception as e:
                self.log.error("Failed to update progress", locator=self.locator, value=value, error=str(e))
                return None

        self.log.debug("Progress updated", value=value, **fields)
        return value
