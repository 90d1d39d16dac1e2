"""
Core data models for the audio processing pipeline.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Mapping, Optional, Union

from .errors import JobValidationError
from .logging_config import get_logger
from .utils.validation import is_finite_number, is_non_empty_string, remove_timestamp_param

logger = get_logger(__name__)


class JobStatusEnum(Enum):
    """Audio status values stored on the job document."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    ERROR = "ERROR"


class Phase(Enum):
    """Pipeline phases, each with its own progress scale."""
    ACQUISITION = "acquisition"
    TRANSCODE = "transcode"
    MERGE = "merge"


@dataclass(frozen=True)
class RemoteUrl:
    """A video page URL resolved through the downloader."""
    locator: str

    def __post_init__(self):
        if not self.locator:
            raise ValueError("Remote URL cannot be empty")


@dataclass(frozen=True)
class StoredObject:
    """An object path inside the storage bucket."""
    locator: str

    def __post_init__(self):
        if not self.locator:
            raise ValueError("Storage path cannot be empty")


AudioSource = Union[RemoteUrl, StoredObject]


@dataclass(frozen=True)
class TrimWindow:
    """Requested time range of the source, in seconds."""
    start_seconds: float = 0.0
    duration_seconds: Optional[float] = None

    def __post_init__(self):
        """Validate data after initialization."""
        if self.start_seconds < 0:
            raise ValueError("Start time cannot be negative")
        if self.duration_seconds is not None and self.duration_seconds <= 0:
            raise ValueError("Duration must be positive")

    @property
    def is_trimming(self) -> bool:
        """False when the whole source is transcoded as-is."""
        return self.start_seconds > 0 or self.duration_seconds is not None

    @property
    def end_seconds(self) -> Optional[float]:
        if self.duration_seconds is None:
            return None
        return self.start_seconds + self.duration_seconds


@dataclass
class CustomMetadata:
    """Metadata attached to every uploaded audio object."""
    duration: float
    title: Optional[str] = None
    intro_url: Optional[str] = None
    outro_url: Optional[str] = None

    @property
    def content_disposition(self) -> str:
        filename = f"{self.title}.mp3" if self.title else "untitled.mp3"
        return f'inline; filename="{filename}"'

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the camelCase mapping stored with the object."""
        data: Dict[str, Any] = {"duration": self.duration}
        if self.title:
            data["title"] = self.title
        if self.intro_url:
            data["introUrl"] = self.intro_url
        if self.outro_url:
            data["outroUrl"] = self.outro_url
        return data


@dataclass(frozen=True)
class DocumentSnapshot:
    """Result of reading a job document."""
    exists: bool
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class JobSpec:
    """One unit of work: where the audio comes from and what to do with it."""
    job_id: str
    source: AudioSource
    trim: TrimWindow = field(default_factory=TrimWindow)
    intro_url: Optional[str] = None
    outro_url: Optional[str] = None
    delete_original: bool = False
    skip_transcode: bool = False

    def __post_init__(self):
        """Validate data after initialization."""
        if not self.job_id:
            raise ValueError("Job ID cannot be empty")

    @property
    def has_auxiliary_clips(self) -> bool:
        return bool(self.intro_url or self.outro_url)

    @classmethod
    def from_payload(cls, data: Mapping[str, Any]) -> 'JobSpec':
        """
        Build a job from a request payload.

        Expected keys: ``id``, ``startTime``, optional ``duration``, exactly one
        of ``youtubeUrl`` / ``storageFilePath``, optional ``introUrl``,
        ``outroUrl``, ``deleteOriginal`` and ``skipTranscode``.

        Raises:
            JobValidationError: If any field is missing or malformed
        """
        if not isinstance(data, Mapping):
            raise JobValidationError("data", "payload must be an object")

        job_id = data.get("id")
        if not is_non_empty_string(job_id):
            raise JobValidationError("id", "must be a non-empty string")

        start_time = data.get("startTime", 0)
        if not is_finite_number(start_time) or start_time < 0:
            raise JobValidationError("startTime", "must be a finite number greater than or equal to 0")

        duration = data.get("duration")
        if duration is not None and (not is_finite_number(duration) or duration <= 0):
            raise JobValidationError("duration", "must be a positive finite number")

        has_url = "youtubeUrl" in data
        has_path = "storageFilePath" in data
        if has_url == has_path:
            raise JobValidationError(
                "source", "payload must contain exactly one of youtubeUrl or storageFilePath"
            )

        source: AudioSource
        if has_url:
            if not is_non_empty_string(data["youtubeUrl"]):
                raise JobValidationError("youtubeUrl", "must be a non-empty string")
            source = RemoteUrl(remove_timestamp_param(data["youtubeUrl"]))
        else:
            if not is_non_empty_string(data["storageFilePath"]):
                raise JobValidationError("storageFilePath", "must be a non-empty string")
            source = StoredObject(data["storageFilePath"])

        for key in ("introUrl", "outroUrl"):
            if key in data and data[key] is not None and not is_non_empty_string(data[key]):
                raise JobValidationError(key, "must be a non-empty string if provided")

        for key in ("deleteOriginal", "skipTranscode"):
            if key in data and not isinstance(data[key], bool):
                raise JobValidationError(key, "must be a boolean if provided")

        spec = cls(
            job_id=job_id,
            source=source,
            trim=TrimWindow(start_seconds=float(start_time),
                            duration_seconds=float(duration) if duration is not None else None),
            intro_url=data.get("introUrl") or None,
            outro_url=data.get("outroUrl") or None,
            delete_original=bool(data.get("deleteOriginal", False)),
            skip_transcode=bool(data.get("skipTranscode", False)),
        )
        logger.debug("Job payload validated", job_id=spec.job_id, source=type(source).__name__)
        return spec
