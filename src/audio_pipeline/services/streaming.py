"""
Supervision of a producer process whose standard output is uploaded.

A run consists of the producing channel, the upload pump, and optionally an
upstream channel feeding the producer's standard input. The first failure
among them terminates every process, aborts the upload and propagates.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Dict, Optional

from ..errors import UploadFailure
from .interfaces import WriteSink
from .process_channel import READ_CHUNK_SIZE, ExternalProcessChannel, PipeOutcome, pipe_to_process


@dataclass
class StreamOutcome:
    """What a successful run produced."""
    bytes_written: int
    input_closed_early: bool = False


async def stream_process_to_sink(
    channel: ExternalProcessChannel,
    sink: WriteSink,
    log,
    upstream: Optional[ExternalProcessChannel] = None,
) -> StreamOutcome:
    """
    Start ``channel``, upload its standard output to ``sink`` and wait for both.

    The producer exiting with code 0 is not enough: the upload's own
    completion signal is awaited separately before returning.

    Args:
        channel: Producer whose standard output is uploaded (not yet started)
        sink: Open upload
        log: Bound logger of the calling stage
        upstream: Already started channel piped into the producer's input

    Raises:
        UploadFailure: If writing to or completing the upload fails
        Any failure raised by the producer or upstream channel
    """
    tasks: Dict[str, asyncio.Task] = {}
    try:
        await channel.start()
        tasks["producer"] = asyncio.create_task(channel.wait())
        tasks["upload"] = asyncio.create_task(_upload(channel, sink))
        if upstream is not None:
            tasks["input"] = asyncio.create_task(pipe_to_process(upstream.stdout, channel))
            tasks["upstream"] = asyncio.create_task(upstream.wait())

        await _wait_for_producer(tasks)

        # The producer finished its work; its input is no longer needed
        input_outcome = PipeOutcome.COMPLETED
        if upstream is not None:
            await upstream.stop()
            await tasks["upstream"]
            input_outcome = await tasks["input"]
            if input_outcome is PipeOutcome.CLOSED_EARLY:
                log.debug("Input pipe closed early after the producer completed, ignoring")

        bytes_written = await tasks["upload"]
        await sink.close()
        try:
            await sink.wait_completed()
        except UploadFailure:
            raise
        except Exception as e:
            raise UploadFailure(f"Upload did not complete: {e}") from e

    except BaseException as e:
        await _abort(e, channel, upstream, sink, tasks, log)
        raise

    return StreamOutcome(
        bytes_written=bytes_written,
        input_closed_early=input_outcome is PipeOutcome.CLOSED_EARLY,
    )


async def _wait_for_producer(tasks: Dict[str, asyncio.Task]) -> None:
    """Wait until the producer exits, failing fast if a companion task fails first."""
    producer = tasks["producer"]
    pending = set(tasks.values())
    while not producer.done():
        done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
        if producer in done:
            break
        for task in done:
            if task.exception() is not None:
                raise task.exception()
    producer.result()


async def _upload(channel: ExternalProcessChannel, sink: WriteSink) -> int:
    total = 0
    stdout = channel.stdout
    while True:
        chunk = await stdout.read(READ_CHUNK_SIZE)
        if not chunk:
            break
        try:
            await sink.write(chunk)
        except UploadFailure:
            raise
        except Exception as e:
            raise UploadFailure(f"Failed to write process output: {e}") from e
        total += len(chunk)
    return total


async def _abort(
    error: BaseException,
    channel: ExternalProcessChannel,
    upstream: Optional[ExternalProcessChannel],
    sink: WriteSink,
    tasks: Dict[str, asyncio.Task],
    log,
) -> None:
    log.error("Process run failed", process=channel.name, error=str(error), error_type=type(error).__name__)
    for process in (channel, upstream):
        if process is not None:
            await process.terminate()
    for task in tasks.values():
        if not task.done():
            task.cancel()
    # Companion failures are consequences of ``error``, which is what propagates
    await asyncio.gather(*tasks.values(), return_exceptions=True)
    try:
        await sink.abort(error)
    except Exception as e:
        log.warning("Failed to abort upload", error=str(e))
