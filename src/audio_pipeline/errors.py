"""
Error taxonomy shared by every pipeline stage.

Stages raise these types; the orchestrator records the message on the job
document and re-raises to the caller.
"""

from typing import Optional


class PipelineError(Exception):
    """Base class for all pipeline failures."""


class JobValidationError(PipelineError, ValueError):
    """Raised when a job payload is malformed."""

    def __init__(self, field_name: str, message: str):
        self.field_name = field_name
        super().__init__(f"Invalid argument '{field_name}': {message}")


class SpawnFailure(PipelineError):
    """Raised when an external process could not be started."""

    def __init__(self, process_name: str, reason: str):
        self.process_name = process_name
        super().__init__(f"Failed to start {process_name}: {reason}")


class SubprocessFailure(PipelineError):
    """Raised when an external process exits non-zero or is killed by a signal."""

    def __init__(self, process_name: str, returncode: Optional[int], signal: Optional[int] = None):
        self.process_name = process_name
        self.returncode = returncode
        self.signal = signal
        if signal is not None:
            detail = f"was terminated by signal {signal}"
        else:
            detail = f"exited with code {returncode}"
        super().__init__(f"{process_name} process {detail}")


class FatalDiagnostic(PipelineError):
    """Raised when a fatal pattern shows up on a process diagnostic stream."""

    def __init__(self, process_name: str, pattern: str, line: str):
        self.process_name = process_name
        self.pattern = pattern
        self.line = line
        super().__init__(f"{process_name} error: {pattern} found in diagnostic output: {line.strip()}")


class UploadFailure(PipelineError):
    """Raised when the storage sink rejects its completion signal."""


class Cancelled(PipelineError):
    """Raised when a stage observes cooperative cancellation."""

    def __init__(self, operation: str, reason: Optional[str] = None):
        self.operation = operation
        self.reason = reason
        message = f"{operation} operation was cancelled"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)


class DocumentNotFound(PipelineError):
    """Raised when the backing job document never appears."""

    def __init__(self, document_id: str, attempts: int):
        self.document_id = document_id
        self.attempts = attempts
        super().__init__(f"Document {document_id} not found after {attempts} attempts")


class InvalidSource(PipelineError):
    """Raised when the audio source kind does not support the requested operation."""


class ClipFetchError(PipelineError):
    """Raised when an intro or outro clip cannot be downloaded."""


class ProbeError(PipelineError):
    """Raised when media probe output cannot be interpreted."""
