"""
Pytest configuration and fixtures for the audio processing pipeline tests.

External tools are replaced by small executable Python scripts that print
the same diagnostic markers as ffmpeg, ffprobe and yt-dlp.
"""

import json
import shutil
import stat
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, Generator, List, Optional

import pytest

from audio_pipeline.cancellation import CancellationToken
from audio_pipeline.config import Settings
from audio_pipeline.logging_config import CorrelationContext
from audio_pipeline.models import DocumentSnapshot
from audio_pipeline.services.interfaces import DocumentStore, ProgressSink
from audio_pipeline.temp_resources import TempResourceRegistry


FFMPEG_SCRIPT = r'''
import json
import sys
import time

MODE = {mode!r}
args = sys.argv[1:]
with open({calls!r}, "a") as f:
    f.write(json.dumps(args) + "\n")

err = sys.stderr
err.write("Input #0, mp3, from 'input':\n  Duration: {duration}, start: 0.000000, bitrate: 128 kb/s\n")
err.flush()

source = args[args.index("-i") + 1] if "-i" in args else None
if MODE == "fail-url" and source is not None and source.startswith("http"):
    err.write("[https @ 0x1] HTTP error 403 Forbidden\n")
    sys.exit(1)
if MODE == "fail":
    err.write("Conversion failed!\n")
    sys.exit(1)
if MODE == "fatal":
    err.write("Output file is empty, nothing was encoded\n")
    err.flush()
    time.sleep(30)
    sys.exit(0)
if MODE == "hang":
    err.write("size=       0kB time=00:00:01.00 bitrate=   0.0kbits/s speed=1x\r")
    err.flush()
    time.sleep(30)
    sys.exit(0)

data = b""
if source == "pipe:0":
    if MODE == "partial":
        data = sys.stdin.buffer.read(16)
    else:
        data = sys.stdin.buffer.read()
elif "concat" in args:
    with open(source) as listing:
        for line in listing:
            line = line.strip()
            if line.startswith("file '"):
                path = line[len("file '"):-1].replace("'\\''", "'")
                with open(path, "rb") as part:
                    data += part.read()
elif source is not None and not source.startswith("http"):
    with open(source, "rb") as f:
        data = f.read()

for second in (10, 20, 30):
    err.write("size=  %dkB time=00:00:%02d.00 bitrate= 128.0kbits/s speed=10x\r" % (second, second))
    err.flush()

sys.stdout.buffer.write(data or b"ID3-transcoded")
sys.stdout.flush()
err.write("\n")
sys.exit(0)
'''

FFPROBE_SCRIPT = r'''
import json
import sys

DURATIONS = {durations!r}
DEFAULT = {default!r}
args = sys.argv[1:]
with open({calls!r}, "a") as f:
    f.write(json.dumps(args) + "\n")

if DEFAULT == "garbage":
    sys.stdout.write("not json")
    sys.exit(0)

path = args[-1]
duration = DEFAULT
for fragment, value in DURATIONS.items():
    if fragment in path:
        duration = value
sys.stdout.write(json.dumps({{"format": {{"duration": str(duration)}}}}))
sys.exit(0)
'''

YTDLP_SCRIPT = r'''
import json
import sys
import time

MODE = {mode!r}
args = sys.argv[1:]
with open({calls!r}, "a") as f:
    f.write(json.dumps(args) + "\n")

output = args[args.index("-o") + 1]
progress = sys.stderr if output == "-" else sys.stdout

if MODE == "error":
    sys.stderr.write("ERROR: [youtube] abc: Video unavailable\n")
    sys.stderr.flush()
    sys.exit(1)

for percent in ("10.0", "55.5", "100"):
    progress.write("[download]  %s%% of 1.00MiB at 1.00MiB/s ETA 00:00\n" % percent)
    progress.flush()

if output == "-":
    chunk = b"A" * 65536
    for _ in range({chunks}):
        sys.stdout.buffer.write(chunk)
        sys.stdout.buffer.flush()
else:
    with open(output, "wb") as f:
        f.write(b"section-audio")
sys.exit(0)
'''


class FakeTools:
    """Writes stand-in tool executables and reads back their invocations."""

    def __init__(self, root: Path):
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def _write(self, name: str, body: str) -> str:
        path = self.root / name
        path.write_text(f"#!{sys.executable}\n{body}", encoding="utf-8")
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return str(path)

    def calls_path(self, name: str) -> Path:
        return self.root / f"{name}.calls"

    def calls(self, name: str) -> List[List[str]]:
        path = self.calls_path(name)
        if not path.exists():
            return []
        return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]

    def ffmpeg(self, mode: str = "ok", duration: str = "00:01:40.00") -> str:
        return self._write("ffmpeg", FFMPEG_SCRIPT.format(
            mode=mode, duration=duration, calls=str(self.calls_path("ffmpeg"))))

    def ffprobe(self, default: Any = 30.0, durations: Optional[Dict[str, float]] = None) -> str:
        return self._write("ffprobe", FFPROBE_SCRIPT.format(
            default=default, durations=durations or {}, calls=str(self.calls_path("ffprobe"))))

    def ytdlp(self, mode: str = "ok", chunks: int = 4) -> str:
        return self._write("yt-dlp", YTDLP_SCRIPT.format(
            mode=mode, chunks=chunks, calls=str(self.calls_path("yt-dlp"))))


class RecordingProgressSink(ProgressSink):
    """Progress sink that keeps every write in order."""

    def __init__(self, fail_on: Optional[int] = None):
        self.values: List[int] = []
        self.current: Dict[str, int] = {}
        self.removed: List[str] = []
        self.fail_on = fail_on

    async def set(self, locator: str, value: int) -> None:
        if self.fail_on is not None and value == self.fail_on:
            raise ConnectionError("progress store unavailable")
        self.values.append(value)
        self.current[locator] = value

    async def remove(self, locator: str) -> None:
        self.removed.append(locator)
        self.current.pop(locator, None)


class MemoryDocumentStore(DocumentStore):
    """Document store kept in a dict, recording every update."""

    def __init__(self, documents: Optional[Dict[str, Dict[str, Any]]] = None, fail_updates: bool = False):
        self.documents = documents or {}
        self.updates: List[Dict[str, Any]] = []
        self.get_calls = 0
        self.fail_updates = fail_updates

    async def get(self, document_id: str) -> DocumentSnapshot:
        self.get_calls += 1
        if document_id not in self.documents:
            return DocumentSnapshot(exists=False)
        return DocumentSnapshot(exists=True, fields=dict(self.documents[document_id]))

    async def update(self, document_id: str, fields: Dict[str, Any]) -> None:
        if self.fail_updates:
            raise ConnectionError("document store unavailable")
        self.updates.append(fields)
        self.documents.setdefault(document_id, {}).update(fields)

    def messages(self) -> List[str]:
        return [u["status"].get("message") for u in self.updates if "status" in u]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for tests."""
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def fake_tools(temp_dir: Path) -> FakeTools:
    tools = FakeTools(temp_dir / "bin")
    tools.ffmpeg()
    tools.ffprobe()
    tools.ytdlp()
    return tools


@pytest.fixture
def test_settings(temp_dir: Path, fake_tools: FakeTools) -> Settings:
    """Create test settings pointing at stand-in tools and temporary directories."""
    return Settings(
        ffmpeg_path=str(fake_tools.root / "ffmpeg"),
        ffprobe_path=str(fake_tools.root / "ffprobe"),
        ytdlp_path=str(fake_tools.root / "yt-dlp"),
        temp_dir=temp_dir / "scratch",
        storage_root=temp_dir / "storage",
        documents_root=temp_dir / "documents",
        progress_file=temp_dir / "progress.json",
        document_poll_attempts=3,
        document_poll_interval=0.01,
        terminate_timeout_seconds=2.0,
        ytdlp_cookies_file=None,
        ytdlp_cookies_base64=None,
        log_level="DEBUG",
    )


@pytest.fixture
def context() -> CorrelationContext:
    return CorrelationContext(job_id="job-1")


@pytest.fixture
def cancel_token() -> CancellationToken:
    return CancellationToken()


@pytest.fixture
def registry(test_settings: Settings, context: CorrelationContext) -> TempResourceRegistry:
    return TempResourceRegistry(test_settings.temp_dir, context)


@pytest.fixture
def progress_sink() -> RecordingProgressSink:
    return RecordingProgressSink()


@pytest.fixture
def documents() -> MemoryDocumentStore:
    return MemoryDocumentStore({"job-1": {"title": "Sunday Service", "status": {"audioStatus": "PENDING"}}})


@pytest.fixture
def mock_audio_file(temp_dir: Path) -> Path:
    """Create a mock audio file for testing."""
    audio_file = temp_dir / "test_audio.mp3"
    audio_file.write_bytes(b"fake audio content")
    return audio_file


# Property-based testing fixtures
@pytest.fixture
def hypothesis_settings():
    """Configure Hypothesis settings for property tests."""
    from hypothesis import settings

    return settings(max_examples=100, deadline=None)
