"""Tests for the transcode stage."""

import json
from pathlib import Path
from unittest.mock import AsyncMock

import pytest

from audio_pipeline.errors import Cancelled, InvalidSource, SubprocessFailure
from audio_pipeline.models import CustomMetadata, TrimWindow
from audio_pipeline.services.acquisition import AcquiredInput, AcquisitionPolicy, AcquisitionStage, InputKind
from audio_pipeline.services.local_backends import LocalObjectStorage
from audio_pipeline.services.progress import ProgressAggregator
from audio_pipeline.services.transcode import TranscodeStage
from audio_pipeline.models import RemoteUrl

ENCODE_FLAGS = [
    "-acodec", "libmp3lame",
    "-b:a", "128k",
    "-ac", "2",
    "-ar", "44100",
]


@pytest.fixture
def storage(test_settings):
    return LocalObjectStorage(test_settings.storage_root)


@pytest.fixture
def aggregator(test_settings, progress_sink, context):
    aggregator = ProgressAggregator(progress_sink, "addIntroOutro/job-1", context, test_settings)
    aggregator.plan(TrimWindow(10, 30))
    return aggregator


@pytest.fixture
def stage(test_settings, storage, registry, cancel_token, context, aggregator):
    return TranscodeStage(storage, registry, cancel_token, context, aggregator, test_settings)


def file_input(path, apply_seek=True, secondary_trim=False, policy=AcquisitionPolicy.STORED_OBJECT):
    return AcquiredInput(policy=policy, kind=InputKind.FILE, locator=str(path), apply_seek=apply_seek,
                         secondary_trim=secondary_trim, temp_path=Path(path))


class TestTranscodeArguments:
    """Test suite for transcoder argument construction."""

    def test_file_input_seeks_before_input(self, stage, test_settings):
        args = stage.build_args(file_input("/tmp/raw.mp3"), TrimWindow(10, 30))
        assert args == [
            test_settings.ffmpeg_path,
            "-ss", "10",
            "-i", "/tmp/raw.mp3",
            "-t", "30",
            *ENCODE_FLAGS,
            "-af", test_settings.audio_filter_chain,
            "-f", "mp3",
            "pipe:1",
        ]

    def test_pipe_input_seeks_after_input(self, stage):
        acquired = AcquiredInput(AcquisitionPolicy.PASS_THROUGH, InputKind.PIPE, "pipe:0", apply_seek=True)
        args = stage.build_args(acquired, TrimWindow(5))
        assert args[1:5] == ["-i", "pipe:0", "-ss", "5"]
        assert "-t" not in args

    def test_no_trim_has_no_seek_or_limit(self, stage):
        args = stage.build_args(file_input("/tmp/raw.mp3"), TrimWindow())
        assert "-ss" not in args
        assert "-t" not in args

    def test_section_download_without_secondary_trim(self, stage):
        acquired = file_input("/tmp/s.m4a", apply_seek=False, policy=AcquisitionPolicy.SECTION_DOWNLOAD)
        args = stage.build_args(acquired, TrimWindow(40, 20))
        assert "-ss" not in args
        assert "-t" not in args

    def test_secondary_trim_uses_requested_duration(self, stage):
        acquired = file_input("/tmp/s.m4a", apply_seek=False, secondary_trim=True,
                              policy=AcquisitionPolicy.SECTION_DOWNLOAD)
        args = stage.build_args(acquired, TrimWindow(40, 20))
        assert "-ss" not in args
        assert args[args.index("-t") + 1] == "20"

    def test_stream_copy_args(self, stage, test_settings):
        args = stage.build_stream_copy_args(file_input("/tmp/raw.mp3"), TrimWindow(10, 30))
        assert args == [
            test_settings.ffmpeg_path,
            "-ss", "10",
            "-i", "/tmp/raw.mp3",
            "-t", "30",
            "-c", "copy",
            "-f", "mp3",
            "pipe:1",
        ]


class TestTranscodeRun:
    """Test suite for TranscodeStage.run against the stand-in transcoder."""

    @pytest.mark.asyncio
    async def test_transcode_uploads_and_reports(self, stage, registry, progress_sink, test_settings, fake_tools):
        raw = registry.create_temp_file("raw-a.mp3")
        raw.write_bytes(b"raw audio bytes")
        on_started = AsyncMock()
        metadata = CustomMetadata(duration=30, title="Sermon")

        result = await stage.run(file_input(raw), TrimWindow(10, 30), "processed-sermons/job-1", metadata,
                                 on_started=on_started)

        target = test_settings.storage_root / "processed-sermons" / "job-1"
        assert target.read_bytes() == b"raw audio bytes"
        assert result.bytes_written == len(b"raw audio bytes")
        assert result.output_seconds == 30.0
        on_started.assert_awaited_once()

        sidecar = json.loads((target.parent / "job-1.metadata.json").read_text())
        assert sidecar["contentType"] == "audio/mpeg"

        assert progress_sink.values == sorted(set(progress_sink.values))
        assert progress_sink.values[-1] == 98
        assert raw not in registry
        assert not raw.exists()
        assert len(fake_tools.calls("ffmpeg")) == 1

    @pytest.mark.asyncio
    async def test_status_not_changed_when_startup_fails(self, stage, registry, progress_sink, test_settings,
                                                         fake_tools):
        fake_tools.ffmpeg(mode="fail")
        raw = registry.create_temp_file("raw-a.mp3")
        raw.write_bytes(b"raw")
        on_started = AsyncMock()

        with pytest.raises(SubprocessFailure):
            await stage.run(file_input(raw), TrimWindow(10, 30), "processed-sermons/job-1",
                            CustomMetadata(duration=30), on_started=on_started)

        on_started.assert_not_awaited()
        assert progress_sink.values == []
        assert not (test_settings.storage_root / "processed-sermons" / "job-1").exists()
        assert raw not in registry

    @pytest.mark.asyncio
    async def test_status_callback_failure_is_logged(self, stage, registry, test_settings):
        raw = registry.create_temp_file("raw-a.mp3")
        raw.write_bytes(b"raw")
        on_started = AsyncMock(side_effect=ConnectionError("document store down"))

        result = await stage.run(file_input(raw), TrimWindow(10, 30), "processed-sermons/job-1",
                                 CustomMetadata(duration=30), on_started=on_started)
        assert result.bytes_written == 3

    @pytest.mark.asyncio
    async def test_trim_copy(self, stage, registry, test_settings, fake_tools):
        raw = registry.create_temp_file("raw-a.mp3")
        raw.write_bytes(b"stored")

        await stage.trim_copy(file_input(raw), TrimWindow(10, 30), "processed-sermons/job-1",
                              CustomMetadata(duration=30))

        args = fake_tools.calls("ffmpeg")[0]
        assert args[args.index("-c") + 1] == "copy"
        assert "-af" not in args
        assert (test_settings.storage_root / "processed-sermons" / "job-1").read_bytes() == b"stored"

    @pytest.mark.asyncio
    async def test_trim_copy_requires_file(self, stage):
        acquired = AcquiredInput(AcquisitionPolicy.DIRECT_URL, InputKind.URL, "https://media/x", apply_seek=True)
        with pytest.raises(InvalidSource):
            await stage.trim_copy(acquired, TrimWindow(10, 30), "processed-sermons/job-1",
                                  CustomMetadata(duration=30))

    @pytest.mark.asyncio
    async def test_pass_through_pipe(self, stage, storage, registry, cancel_token, context, aggregator,
                                     test_settings, fake_tools):
        acquisition = AcquisitionStage(storage, registry, cancel_token, context, aggregator, test_settings)
        acquired = await acquisition.acquire(RemoteUrl("https://www.youtube.com/watch?v=abc"), TrimWindow())

        result = await stage.run(acquired, TrimWindow(), "processed-sermons/job-1", CustomMetadata(duration=0))

        assert result.bytes_written == 4 * 65536
        args = fake_tools.calls("ffmpeg")[0]
        assert args[:2] == ["-i", "pipe:0"]

    @pytest.mark.asyncio
    async def test_upload_open_failure_stops_downloader(self, storage, registry, cancel_token, context,
                                                        aggregator, test_settings, fake_tools):
        fake_tools.ytdlp(chunks=400)
        acquisition = AcquisitionStage(storage, registry, cancel_token, context, aggregator, test_settings)
        acquired = await acquisition.acquire(RemoteUrl("https://www.youtube.com/watch?v=abc"), TrimWindow())
        broken_storage = LocalObjectStorage(test_settings.storage_root)
        broken_storage.open_write_stream = AsyncMock(side_effect=ConnectionError("bucket unavailable"))
        stage = TranscodeStage(broken_storage, registry, cancel_token, context, aggregator, test_settings)

        with pytest.raises(ConnectionError):
            await stage.run(acquired, TrimWindow(), "processed-sermons/job-1", CustomMetadata(duration=0))

        assert acquired.upstream.returncode is not None
        assert fake_tools.calls("ffmpeg") == []

    @pytest.mark.asyncio
    async def test_cancelled_before_transcode_stops_downloader(self, stage, storage, registry, cancel_token,
                                                               context, aggregator, test_settings, fake_tools):
        fake_tools.ytdlp(chunks=400)
        acquisition = AcquisitionStage(storage, registry, cancel_token, context, aggregator, test_settings)
        acquired = await acquisition.acquire(RemoteUrl("https://www.youtube.com/watch?v=abc"), TrimWindow())
        cancel_token.request_cancellation("shutdown")

        with pytest.raises(Cancelled):
            await stage.run(acquired, TrimWindow(), "processed-sermons/job-1", CustomMetadata(duration=0))

        assert acquired.upstream.returncode is not None

    @pytest.mark.asyncio
    async def test_trim_copy_rejects_pipe_and_stops_downloader(self, stage, storage, registry, cancel_token,
                                                               context, aggregator, test_settings, fake_tools):
        fake_tools.ytdlp(chunks=400)
        acquisition = AcquisitionStage(storage, registry, cancel_token, context, aggregator, test_settings)
        acquired = await acquisition.acquire(RemoteUrl("https://www.youtube.com/watch?v=abc"), TrimWindow())

        with pytest.raises(InvalidSource):
            await stage.trim_copy(acquired, TrimWindow(), "processed-sermons/job-1", CustomMetadata(duration=0))

        assert acquired.upstream.returncode is not None

    @pytest.mark.asyncio
    async def test_consumer_stopping_early_is_benign(self, stage, storage, registry, cancel_token, context,
                                                     aggregator, test_settings, fake_tools):
        fake_tools.ytdlp(chunks=64)
        fake_tools.ffmpeg(mode="partial")
        acquisition = AcquisitionStage(storage, registry, cancel_token, context, aggregator, test_settings)
        acquired = await acquisition.acquire(RemoteUrl("https://www.youtube.com/watch?v=abc"), TrimWindow())

        result = await stage.run(acquired, TrimWindow(), "processed-sermons/job-1", CustomMetadata(duration=0))

        assert result.bytes_written == 16
        assert acquired.upstream.returncode is not None
