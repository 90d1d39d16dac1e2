"""
Command-line entry point.

Runs one job described by a JSON payload against local filesystem backends.
"""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import List, Optional

from .config import get_settings
from .errors import JobValidationError, PipelineError
from .logging_config import get_logger
from .models import JobSpec
from .services.local_backends import JsonDocumentStore, JsonProgressSink, LocalObjectStorage
from .services.orchestrator import PipelineOrchestrator

logger = get_logger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="audio-pipeline",
        description="Trim, transcode and merge audio jobs",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Transcode a stored object from 10s to 40s
  audio-pipeline run job.json

  # Use a different storage root
  audio-pipeline run job.json --storage-root /data/bucket

job.json example:
  {"id": "sermon-1", "storageFilePath": "sermons/sermon-1.mp3",
   "startTime": 10, "duration": 30}
        """,
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Run one job from a JSON payload file")
    run.add_argument("job_file", type=Path, help="Path to the job payload (JSON)")
    run.add_argument("--storage-root", type=Path, help="Directory used as object storage")
    run.add_argument("--documents-root", type=Path, help="Directory holding job documents")
    run.add_argument("--progress-file", type=Path, help="JSON file receiving progress values")
    return parser


def load_job(job_file: Path) -> JobSpec:
    """
    Read and validate a job payload.

    Raises:
        JobValidationError: If the payload is not valid JSON or misses fields
    """
    try:
        payload = json.loads(job_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise JobValidationError("data", f"invalid JSON: {e}") from e
    return JobSpec.from_payload(payload)


async def run_job(args: argparse.Namespace) -> None:
    settings = get_settings()
    orchestrator = PipelineOrchestrator(
        storage=LocalObjectStorage(args.storage_root or settings.storage_root),
        documents=JsonDocumentStore(args.documents_root or settings.documents_root),
        progress_sink=JsonProgressSink(args.progress_file or settings.progress_file),
        settings=settings,
    )
    job = load_job(args.job_file)
    await orchestrator.run(job)


def main(argv: Optional[List[str]] = None) -> int:
    """Command-line interface for running one job."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        asyncio.run(run_job(args))
    except (PipelineError, OSError) as e:
        logger.error("Job failed", error=str(e), error_type=type(e).__name__)
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"Job {args.job_file} processed")
    return 0


if __name__ == "__main__":
    sys.exit(main())
