"""
Audio Processing Pipeline

Trims, transcodes and normalizes audio taken from a remote video URL or a
stored object, optionally wraps it with intro and outro clips, and streams
progress while it runs.
"""

__version__ = "0.1.0"

from .cancellation import CancellationToken
from .errors import (
    PipelineError,
    JobValidationError,
    SpawnFailure,
    SubprocessFailure,
    FatalDiagnostic,
    UploadFailure,
    Cancelled,
    DocumentNotFound,
    InvalidSource,
    ClipFetchError,
    ProbeError,
)
from .models import (
    JobSpec,
    JobStatusEnum,
    Phase,
    RemoteUrl,
    StoredObject,
    TrimWindow,
    CustomMetadata,
)

__all__ = [
    "CancellationToken",
    "PipelineError",
    "JobValidationError",
    "SpawnFailure",
    "SubprocessFailure",
    "FatalDiagnostic",
    "UploadFailure",
    "Cancelled",
    "DocumentNotFound",
    "InvalidSource",
    "ClipFetchError",
    "ProbeError",
    "JobSpec",
    "JobStatusEnum",
    "Phase",
    "RemoteUrl",
    "StoredObject",
    "TrimWindow",
    "CustomMetadata",
]
