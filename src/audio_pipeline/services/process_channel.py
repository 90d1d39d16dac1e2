"""
External process channel.

Wraps one spawned tool (transcoder, downloader or probe), exposes its
standard streams for piping and turns its diagnostic stream into structured
events. Each channel is a small state machine:

    PENDING -> RUNNING -> SUCCEEDED | FAILED
    PENDING -> SPAWN_ERROR

Callers ``await channel.wait()`` instead of registering callbacks; the
awaitable resolves with a :class:`ProcessResult` or raises the typed failure
that ended the process.
"""

from __future__ import annotations

import asyncio
import inspect
import re
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence, Union

from ..cancellation import CancellationToken
from ..errors import Cancelled, FatalDiagnostic, SpawnFailure, SubprocessFailure
from ..logging_config import CorrelationContext, LoggerMixin
from ..utils.time_utils import convert_string_to_milliseconds

POSITION_PATTERN = re.compile(r"time=\s*(-?\d+:\d{2}:\d{2}(?:\.\d+)?)")
DURATION_PATTERN = re.compile(r"Duration:\s*(\d+:\d{2}:\d{2}(?:\.\d+)?)")
PERCENT_PATTERN = re.compile(r"(100(\.0{1,2})?|\d{1,2}(\.\d{1,2})?)%")
LINE_BREAK = re.compile(rb"[\r\n]")

READ_CHUNK_SIZE = 64 * 1024


class DiagnosticKind(Enum):
    """Kinds of structured events found on a diagnostic stream."""
    POSITION = "position"
    DURATION = "duration"
    PERCENT = "percent"
    FATAL = "fatal"


@dataclass(frozen=True)
class DiagnosticEvent:
    """One structured event parsed from a diagnostic line."""
    kind: DiagnosticKind
    line: str
    milliseconds: int = 0
    percent: float = 0.0
    pattern: Optional[str] = None


class DiagnosticParser:
    """
    Classify diagnostic lines.

    The total duration marker is reported once per parser (the first
    ``Duration:`` header belongs to the primary input). Fatal patterns are
    plain substrings and win over every other marker on the same line.
    """

    def __init__(
        self,
        fatal_patterns: Sequence[str] = (),
        parse_percent: bool = False,
        percent_keyword: str = "download",
    ):
        self.fatal_patterns = tuple(fatal_patterns)
        self.parse_percent = parse_percent
        self.percent_keyword = percent_keyword
        self._duration_seen = False

    def parse(self, line: str) -> List[DiagnosticEvent]:
        for pattern in self.fatal_patterns:
            if pattern and pattern in line:
                return [DiagnosticEvent(DiagnosticKind.FATAL, line, pattern=pattern)]

        events: List[DiagnosticEvent] = []

        if not self._duration_seen:
            match = DURATION_PATTERN.search(line)
            if match:
                self._duration_seen = True
                events.append(DiagnosticEvent(
                    DiagnosticKind.DURATION,
                    line,
                    milliseconds=convert_string_to_milliseconds(match.group(1)),
                ))

        match = POSITION_PATTERN.search(line)
        if match:
            events.append(DiagnosticEvent(
                DiagnosticKind.POSITION,
                line,
                milliseconds=convert_string_to_milliseconds(match.group(1)),
            ))

        if self.parse_percent and self.percent_keyword in line:
            match = PERCENT_PATTERN.search(line)
            if match:
                events.append(DiagnosticEvent(DiagnosticKind.PERCENT, line, percent=float(match.group(1))))

        return events


class ChannelState(Enum):
    """Lifecycle states of an external process channel."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SPAWN_ERROR = "spawn_error"


@dataclass(frozen=True)
class ProcessResult:
    """Terminal outcome of a channel."""
    name: str
    state: ChannelState
    returncode: Optional[int]
    signal: Optional[int] = None


class PipeOutcome(Enum):
    """How a stream pump ended."""
    COMPLETED = "completed"
    CLOSED_EARLY = "closed_early"


EventHandler = Callable[[DiagnosticEvent], Union[None, Awaitable[None]]]

# Errors raised when the reading side of a pipe has gone away
PIPE_CLOSED_ERRORS = (BrokenPipeError, ConnectionResetError)


class ExternalProcessChannel(LoggerMixin):
    """
    One spawned external process with parsed diagnostics.

    The argument vector is passed to ``exec`` as discrete tokens; no shell is
    involved, so paths and URLs with special characters need no quoting.

    Args:
        name: Short tool name used in logs and error messages
        argv: Executable followed by its arguments
        cancel_token: Job-wide cancellation flag
        context: Correlation context of the owning stage
        parser: Diagnostic parser (defaults to one without fatal patterns)
        on_event: Called for every non-fatal diagnostic event; may be async
        stdin_pipe: Open a writable standard input instead of /dev/null
        stdout_pipe: Capture standard output for the caller to read
        diagnostics_on_stdout: The tool writes its progress to standard output;
            merge both streams and parse them as diagnostics
        terminate_timeout: Seconds to wait after SIGTERM before SIGKILL
    """

    def __init__(
        self,
        name: str,
        argv: Sequence[str],
        *,
        cancel_token: CancellationToken,
        context: CorrelationContext,
        parser: Optional[DiagnosticParser] = None,
        on_event: Optional[EventHandler] = None,
        stdin_pipe: bool = False,
        stdout_pipe: bool = True,
        diagnostics_on_stdout: bool = False,
        terminate_timeout: float = 5.0,
    ):
        if not argv:
            raise ValueError("argv must contain at least the executable")
        self.name = name
        self.argv = [str(arg) for arg in argv]
        self.cancel_token = cancel_token
        self.context = context
        self.parser = parser or DiagnosticParser()
        self.on_event = on_event
        self.stdin_pipe = stdin_pipe
        self.stdout_pipe = stdout_pipe and not diagnostics_on_stdout
        self.diagnostics_on_stdout = diagnostics_on_stdout
        self.terminate_timeout = terminate_timeout

        self._state = ChannelState.PENDING
        self._process: Optional[asyncio.subprocess.Process] = None
        self._failure: Optional[Exception] = None
        self._failed = asyncio.Event()
        self._work_complete = False
        self._diagnostics_task: Optional[asyncio.Task] = None
        self._cancel_watch_task: Optional[asyncio.Task] = None
        self._result: Optional[ProcessResult] = None

    @property
    def log(self):
        return self.context.bind(self.logger).bind(process=self.name)

    @property
    def state(self) -> ChannelState:
        return self._state

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def stdin(self) -> Optional[asyncio.StreamWriter]:
        return self._process.stdin if self._process else None

    @property
    def stdout(self) -> Optional[asyncio.StreamReader]:
        if self._process is None or self.diagnostics_on_stdout:
            return None
        return self._process.stdout

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> "ExternalProcessChannel":
        """
        Spawn the process and begin consuming its diagnostic stream.

        Raises:
            Cancelled: If cancellation was requested before spawning
            SpawnFailure: If the executable could not be started
        """
        if self._state is not ChannelState.PENDING:
            raise RuntimeError(f"{self.name} channel already started")

        self.cancel_token.raise_if_requested(self.name)
        self.log.info("Spawning process", command=" ".join(self.argv))

        if self.diagnostics_on_stdout:
            stdout, stderr = asyncio.subprocess.PIPE, asyncio.subprocess.STDOUT
        else:
            stdout = asyncio.subprocess.PIPE if self.stdout_pipe else asyncio.subprocess.DEVNULL
            stderr = asyncio.subprocess.PIPE

        try:
            self._process = await asyncio.create_subprocess_exec(
                *self.argv,
                stdin=asyncio.subprocess.PIPE if self.stdin_pipe else asyncio.subprocess.DEVNULL,
                stdout=stdout,
                stderr=stderr,
            )
        except (OSError, ValueError) as e:
            self._state = ChannelState.SPAWN_ERROR
            self._failure = SpawnFailure(self.name, str(e))
            self.log.error("Process spawn error", error=str(e))
            raise self._failure from e

        self._state = ChannelState.RUNNING
        self._diagnostics_task = asyncio.create_task(self._consume_diagnostics())
        self._cancel_watch_task = asyncio.create_task(self._watch_cancellation())
        return self

    async def wait(self) -> ProcessResult:
        """
        Await the terminal state of the process.

        Returns as soon as a fatal diagnostic or cancellation is observed
        (after the process has been terminated), without waiting for the tool
        to exit on its own.

        Raises:
            SpawnFailure: If the process never started
            FatalDiagnostic: If a fatal pattern appeared on the diagnostic stream
            Cancelled: If cancellation was observed while running
            SubprocessFailure: On non-zero exit or death by signal
        """
        if self._result is not None:
            return self._result
        if self._state is ChannelState.SPAWN_ERROR:
            raise self._failure
        if self._process is None:
            raise RuntimeError(f"{self.name} channel was never started")

        exit_task = asyncio.create_task(self._process.wait())
        failed_task = asyncio.create_task(self._failed.wait())
        try:
            await asyncio.wait({exit_task, failed_task}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await self.terminate()
            raise
        finally:
            for task in (exit_task, failed_task):
                if not task.done():
                    task.cancel()

        if self._failure is not None and not self._work_complete:
            await self.terminate()
            await self._diagnostics_task
            self._stop_watchers()
            self._state = ChannelState.FAILED
            raise self._failure

        # Drain the remaining diagnostics so trailing markers are seen
        await self._diagnostics_task
        self._stop_watchers()

        if self._failure is not None and not self._work_complete:
            self._state = ChannelState.FAILED
            raise self._failure

        return self._finish(self._process.returncode)

    async def terminate(self) -> None:
        """Send SIGTERM, escalating to SIGKILL after ``terminate_timeout``."""
        process = self._process
        if process is None or process.returncode is not None:
            return

        self.log.debug("Terminating process", pid=process.pid)
        try:
            process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=self.terminate_timeout)
        except asyncio.TimeoutError:
            self.log.warning("Process ignored SIGTERM, killing", pid=process.pid)
            try:
                process.kill()
            except ProcessLookupError:
                return
            await process.wait()

    async def stop(self) -> None:
        """
        Stop a producer whose output is no longer needed.

        Used once the consumer finished its logical work; the resulting
        non-zero exit of this process is not reported as a failure.
        """
        self._work_complete = True
        await self.terminate()

    async def close(self) -> None:
        """Terminate the process if it still runs and stop the background readers."""
        if self._process is not None and self._process.returncode is None:
            await self.terminate()
        self._stop_watchers()
        if self._diagnostics_task is not None and not self._diagnostics_task.done():
            self._diagnostics_task.cancel()

    async def __aenter__(self) -> "ExternalProcessChannel":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _finish(self, returncode: Optional[int]) -> ProcessResult:
        signal = -returncode if returncode is not None and returncode < 0 else None

        if self._work_complete:
            state = ChannelState.SUCCEEDED if returncode == 0 else ChannelState.FAILED
            self._state = state
            self._result = ProcessResult(self.name, state, returncode, signal)
            self.log.debug("Process stopped after work completed", returncode=returncode)
            return self._result

        if returncode == 0:
            self._state = ChannelState.SUCCEEDED
            self._result = ProcessResult(self.name, ChannelState.SUCCEEDED, 0)
            self.log.info("Process completed successfully")
            return self._result

        self._state = ChannelState.FAILED
        self.log.error("Process failed", returncode=returncode, signal=signal)
        self._failure = SubprocessFailure(
            self.name,
            returncode if signal is None else None,
            signal,
        )
        raise self._failure

    def _fail(self, error: Exception) -> None:
        if self._failure is not None:
            return
        self._failure = error
        self._failed.set()

    def _stop_watchers(self) -> None:
        if self._cancel_watch_task is not None and not self._cancel_watch_task.done():
            self._cancel_watch_task.cancel()

    async def _watch_cancellation(self) -> None:
        await self.cancel_token.wait()
        if self._failure is None and not self._work_complete:
            self.log.warning("Cancellation requested, terminating process")
            self._fail(Cancelled(self.name, self.cancel_token.reason))
            await self.terminate()

    async def _consume_diagnostics(self) -> None:
        stream = self._process.stdout if self.diagnostics_on_stdout else self._process.stderr
        pending = b""
        while True:
            chunk = await stream.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            pending += chunk
            *lines, pending = LINE_BREAK.split(pending)
            for raw_line in lines:
                if raw_line:
                    await self._handle_line(raw_line.decode("utf-8", errors="replace"))
        if pending:
            await self._handle_line(pending.decode("utf-8", errors="replace"))

    async def _handle_line(self, line: str) -> None:
        # Keep draining after a failure so the process never blocks on stderr
        if self._failure is not None:
            return

        if self.cancel_token.is_requested() and not self._work_complete:
            self.log.warning("Cancellation observed on diagnostic event")
            self._fail(Cancelled(self.name, self.cancel_token.reason))
            await self.terminate()
            return

        for event in self.parser.parse(line):
            if event.kind is DiagnosticKind.FATAL:
                self.log.error("Fatal pattern in diagnostic stream", pattern=event.pattern, line=line.strip())
                self._fail(FatalDiagnostic(self.name, event.pattern, line))
                await self.terminate()
                return

            if self.on_event is None:
                continue
            try:
                result = self.on_event(event)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self.log.error("Diagnostic event handler failed", error=str(e), kind=event.kind.value)
                self._fail(e)
                await self.terminate()
                return


async def pipe_to_process(
    source: asyncio.StreamReader,
    consumer: ExternalProcessChannel,
) -> PipeOutcome:
    """
    Copy ``source`` into the consumer's standard input until EOF.

    An early close by the consumer (it stopped reading, e.g. after ``-t``
    was satisfied) ends the copy with :attr:`PipeOutcome.CLOSED_EARLY`. The
    caller decides whether that was benign by looking at how the consumer
    itself terminated.
    """
    sink = consumer.stdin
    if sink is None:
        raise RuntimeError(f"{consumer.name} has no standard input pipe")

    outcome = PipeOutcome.COMPLETED
    try:
        while True:
            chunk = await source.read(READ_CHUNK_SIZE)
            if not chunk:
                break
            sink.write(chunk)
            await sink.drain()
    except PIPE_CLOSED_ERRORS:
        outcome = PipeOutcome.CLOSED_EARLY

    try:
        sink.close()
        await sink.wait_closed()
    except PIPE_CLOSED_ERRORS:
        outcome = PipeOutcome.CLOSED_EARLY

    consumer.log.debug("Input pipe finished", outcome=outcome.value)
    return outcome
