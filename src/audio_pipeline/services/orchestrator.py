"""Pipeline orchestration for one audio job.

The orchestrator sequences the stages of a job:
1. Wait for the job document to exist
2. Acquisition (stored object copy, direct URL, section download or pass-through)
3. Transcode (or stream-copy trim) into the processed object
4. Merge with intro and outro clips, when any were requested

Status messages are written to the job document on every stage boundary,
and the finalization block always removes the progress entry and releases
every temp file, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import posixpath
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from ..cancellation import CancellationToken
from ..config import get_settings
from ..errors import DocumentNotFound, FatalDiagnostic, InvalidSource, SubprocessFailure
from ..logging_config import CorrelationContext, LoggerMixin
from ..models import CustomMetadata, JobSpec, JobStatusEnum, StoredObject
from ..temp_resources import TempResourceRegistry
from ..utils.time_utils import format_duration
from .acquisition import AcquisitionPolicy, AcquisitionStage
from .clip_fetcher import ClipFetcher
from .interfaces import DocumentStore, ObjectStorage, ProgressSink
from .media_probe import MediaProbe
from .merge import MergeStage
from .progress import ProgressAggregator
from .transcode import TranscodeResult, TranscodeStage

DEFAULT_TITLE = "untitled"

STATUS_GETTING_DATA = "Getting Data"
STATUS_TRIMMING = "Trimming"
STATUS_TRANSCODING = "Trimming and Transcoding"
STATUS_DOWNLOADING = "Downloading YouTube Audio"
STATUS_MERGING = "Adding Intro and Outro"

ClipPaths = Tuple[Optional[Path], Optional[Path]]


class PipelineOrchestrator(LoggerMixin):
    """Run audio jobs against injected storage, document and progress backends."""

    def __init__(
        self,
        storage: ObjectStorage,
        documents: DocumentStore,
        progress_sink: ProgressSink,
        settings=None,
        clip_fetcher: Optional[ClipFetcher] = None,
    ):
        """Initialize the orchestrator.

        Args:
            storage: Object storage holding sources and outputs
            documents: Store with one status document per job
            progress_sink: Realtime progress store
            settings: Optional settings object (uses default if not provided)
            clip_fetcher: HTTP client for intro and outro clips
        """
        self.settings = settings or get_settings()
        self.storage = storage
        self.documents = documents
        self.progress_sink = progress_sink
        self.clip_fetcher = clip_fetcher or ClipFetcher(self.settings)

    # ---------------------------
    # Job execution
    # ---------------------------

    async def run(self, job: JobSpec, cancel_token: Optional[CancellationToken] = None) -> None:
        """Process one job to completion.

        Completes when the document reaches PROCESSED; otherwise the document
        is moved to ERROR (best effort) and the original error is raised.

        Args:
            job: Validated job
            cancel_token: Token the caller may use to cancel the job

        Raises:
            DocumentNotFound: If the job document never appears
            Cancelled: If the job was cancelled or ran past its deadline
            PipelineError: Any other stage failure
        """
        token = cancel_token or CancellationToken()
        context = CorrelationContext(job_id=job.job_id)
        log = context.bind(self.logger)
        registry = TempResourceRegistry(self.settings.temp_dir / context.request_id, context)
        aggregator = ProgressAggregator(
            self.progress_sink,
            f"{self.settings.progress_prefix}/{job.job_id}",
            context,
            self.settings,
        )
        aggregator.plan(job.trim)

        deadline = self.settings.job_deadline_seconds
        timer = asyncio.get_running_loop().call_later(
            deadline,
            token.request_cancellation,
            f"job timed out after {deadline} seconds",
        )
        clip_task: Optional[asyncio.Task] = None

        log.info(
            "Job started",
            source=type(job.source).__name__,
            start_seconds=job.trim.start_seconds,
            duration_seconds=job.trim.duration_seconds,
            skip_transcode=job.skip_transcode,
            has_intro=bool(job.intro_url),
            has_outro=bool(job.outro_url),
        )

        base_status: Optional[Dict[str, Any]] = None

        try:
            document = await self.wait_for_document(job.job_id, token, context)
            title = document.get("title") or DEFAULT_TITLE
            base_status = dict(document.get("status") or {})

            token.raise_if_requested("job")
            await self._set_status(job.job_id, base_status, JobStatusEnum.PROCESSING, STATUS_GETTING_DATA)

            metadata = CustomMetadata(
                duration=job.trim.duration_seconds or 0.0,
                title=title,
                intro_url=job.intro_url,
                outro_url=job.outro_url,
            )
            processed_locator = f"{self.settings.processed_prefix}/{job.job_id}"

            token.raise_if_requested("job")
            await self._set_status(job.job_id, base_status, JobStatusEnum.PROCESSING, self.stage_message(job))

            if job.has_auxiliary_clips:
                clip_task = asyncio.create_task(self._fetch_clips(job, registry, context))

            result = await self._produce(job, processed_locator, metadata, registry, token, context, aggregator,
                                         base_status)
            token.raise_if_requested("job")

            content_seconds = job.trim.duration_seconds
            if content_seconds is None:
                content_seconds = result.output_seconds or 0.0

            if clip_task is not None:
                duration_seconds = await self._merge_with_clips(
                    job, processed_locator, content_seconds, metadata, clip_task,
                    registry, token, context, aggregator, base_status,
                )
            else:
                log.info("No intro or outro, skipping merge")
                duration_seconds = content_seconds

            token.raise_if_requested("job")
            log.info("Updating status to PROCESSED", duration=format_duration(duration_seconds))
            await self.documents.update(job.job_id, {
                "status": {**base_status, "audioStatus": JobStatusEnum.PROCESSED.value},
                "durationSeconds": duration_seconds,
            })
            await aggregator.complete()

            if job.delete_original:
                await self._delete_original(job, log)

            log.info("Job completed successfully", duration_seconds=duration_seconds)

        except BaseException as e:
            log.error("Job failed", error=str(e), error_type=type(e).__name__)
            # Without a document there is nothing to record the error on
            if base_status is not None:
                await self._record_error(job.job_id, base_status, e, log)
            raise

        finally:
            timer.cancel()
            if clip_task is not None and not clip_task.done():
                clip_task.cancel()
            if clip_task is not None:
                await asyncio.gather(clip_task, return_exceptions=True)
            await aggregator.remove()
            registry.close()

    @staticmethod
    def stage_message(job: JobSpec) -> str:
        """Status message shown while the main stage runs."""
        if job.skip_transcode:
            return STATUS_TRIMMING
        if isinstance(job.source, StoredObject):
            return STATUS_TRANSCODING
        return STATUS_DOWNLOADING

    async def wait_for_document(
        self,
        document_id: str,
        token: CancellationToken,
        context: CorrelationContext,
    ) -> Dict[str, Any]:
        """Poll until the job document exists.

        Returns:
            The document fields

        Raises:
            DocumentNotFound: After the configured number of attempts
        """
        log = context.bind(self.logger)
        attempts = self.settings.document_poll_attempts
        for attempt in range(1, attempts + 1):
            token.raise_if_requested("document lookup")
            log.info("Checking if document exists", attempt=attempt, max_attempts=attempts)
            snapshot = await self.documents.get(document_id)
            if snapshot.exists:
                return dict(snapshot.fields)

            log.info("Document does not exist yet", attempt=attempt, max_attempts=attempts)
            if attempt < attempts:
                await asyncio.sleep(self.settings.document_poll_interval)

        log.error("Document not found", attempts=attempts)
        raise DocumentNotFound(document_id, attempts)

    # ---------------------------
    # Stages
    # ---------------------------

    async def _produce(
        self,
        job: JobSpec,
        destination: str,
        metadata: CustomMetadata,
        registry: TempResourceRegistry,
        token: CancellationToken,
        context: CorrelationContext,
        aggregator: ProgressAggregator,
        base_status: Dict[str, Any],
    ) -> TranscodeResult:
        if job.skip_transcode and not isinstance(job.source, StoredObject):
            raise InvalidSource("Audio source must be a stored file in order to trim without transcoding")

        acquisition = AcquisitionStage(self.storage, registry, token, context, aggregator, self.settings)
        transcode = TranscodeStage(self.storage, registry, token, context, aggregator, self.settings)

        acquired = await acquisition.acquire(job.source, job.trim)

        if job.skip_transcode:
            return await transcode.trim_copy(acquired, job.trim, destination, metadata)

        async def on_started() -> None:
            await self._set_status(job.job_id, base_status, JobStatusEnum.PROCESSING, STATUS_TRANSCODING)

        try:
            return await transcode.run(acquired, job.trim, destination, metadata, on_started=on_started)
        except (SubprocessFailure, FatalDiagnostic) as e:
            if acquired.policy is not AcquisitionPolicy.DIRECT_URL:
                raise
            context.bind(self.logger).warning(
                "Transcode from direct URL failed, falling back to section download",
                error=str(e),
                error_type=type(e).__name__,
            )

        token.raise_if_requested("acquisition")
        acquired = await acquisition.download_section(job.source.locator, job.trim)
        return await transcode.run(acquired, job.trim, destination, metadata, on_started=on_started)

    async def _fetch_clips(
        self,
        job: JobSpec,
        registry: TempResourceRegistry,
        context: CorrelationContext,
    ) -> ClipPaths:
        intro: Optional[Path] = None
        outro: Optional[Path] = None
        if job.intro_url:
            intro = await self.clip_fetcher.fetch(job.intro_url, registry, context)
        if job.outro_url:
            outro = await self.clip_fetcher.fetch(job.outro_url, registry, context)
        return intro, outro

    async def _merge_with_clips(
        self,
        job: JobSpec,
        processed_locator: str,
        content_seconds: float,
        metadata: CustomMetadata,
        clip_task: asyncio.Task,
        registry: TempResourceRegistry,
        token: CancellationToken,
        context: CorrelationContext,
        aggregator: ProgressAggregator,
        base_status: Dict[str, Any],
    ) -> float:
        log = context.bind(self.logger)
        processed_path = registry.create_temp_file(f"processed-{posixpath.basename(job.job_id)}")
        log.info("Downloading processed audio", destination=str(processed_path))
        (intro, outro), _ = await asyncio.gather(
            clip_task,
            self.storage.download(processed_locator, processed_path),
        )

        probe = MediaProbe(token, context, self.settings)
        duration_seconds = content_seconds
        for clip in (intro, outro):
            if clip is not None:
                duration_seconds += await probe.get_duration_seconds(clip)
        metadata.duration = duration_seconds
        log.info("Total duration", duration=format_duration(duration_seconds))

        inputs: List[Path] = []
        if intro is not None:
            inputs.append(intro)
        inputs.append(processed_path)
        if outro is not None:
            inputs.append(outro)

        token.raise_if_requested("merge")
        await self._set_status(job.job_id, base_status, JobStatusEnum.PROCESSING, STATUS_MERGING)
        merge = MergeStage(self.storage, registry, token, context, aggregator, self.settings)
        await merge.merge(
            inputs,
            f"{self.settings.intro_outro_prefix}/{posixpath.basename(job.job_id)}",
            duration_seconds,
            metadata,
        )
        return duration_seconds

    # ---------------------------
    # Document helpers
    # ---------------------------

    async def _set_status(
        self,
        document_id: str,
        base_status: Dict[str, Any],
        status: JobStatusEnum,
        message: str,
    ) -> None:
        await self.documents.update(document_id, {
            "status": {**base_status, "audioStatus": status.value, "message": message},
        })

    async def _record_error(self, document_id: str, base_status: Dict[str, Any], error: BaseException, log) -> None:
        log.info("Updating audioStatus to ERROR")
        try:
            await self._set_status(document_id, base_status, JobStatusEnum.ERROR, str(error) or type(error).__name__)
        except Exception as e:
            log.error("Failed to record error status", error=str(e))

    async def _delete_original(self, job: JobSpec, log) -> None:
        if not isinstance(job.source, StoredObject):
            return
        if await self.storage.exists(job.source.locator):
            log.info("Deleting original audio file", locator=job.source.locator)
            await self.storage.delete(job.source.locator)
