"""
Interfaces of the collaborators the pipeline drives.

The orchestrator receives concrete implementations through its constructor;
nothing in the pipeline reaches for a global client.
"""

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Dict

from ..models import CustomMetadata, DocumentSnapshot


class WriteSink(ABC):
    """
    Writable end of an upload.

    ``close`` only says the producer is done; the upload is durable once
    ``wait_completed`` returns. Implementations raise
    :class:`~audio_pipeline.errors.UploadFailure` from ``wait_completed``
    when the upload did not land.
    """

    @abstractmethod
    async def write(self, chunk: bytes) -> None:
        ...

    @abstractmethod
    async def close(self) -> None:
        ...

    @abstractmethod
    async def abort(self, reason: BaseException) -> None:
        ...

    @abstractmethod
    async def wait_completed(self) -> None:
        ...


class ObjectStorage(ABC):
    """Bucket-like object storage."""

    @abstractmethod
    async def download(self, locator: str, destination: Path) -> Path:
        """Copy the object at ``locator`` to ``destination`` and return it."""

    @abstractmethod
    async def open_write_stream(
        self,
        locator: str,
        content_type: str,
        metadata: CustomMetadata,
    ) -> WriteSink:
        """Start an upload to ``locator``."""

    @abstractmethod
    async def exists(self, locator: str) -> bool:
        ...

    @abstractmethod
    async def delete(self, locator: str) -> None:
        ...


class ProgressSink(ABC):
    """Realtime progress store keyed by locator."""

    @abstractmethod
    async def set(self, locator: str, value: int) -> None:
        ...

    @abstractmethod
    async def remove(self, locator: str) -> None:
        ...


class DocumentStore(ABC):
    """Store holding one status document per job."""

    @abstractmethod
    async def get(self, document_id: str) -> DocumentSnapshot:
        ...

    @abstractmethod
    async def update(self, document_id: str, fields: Dict[str, Any]) -> None:
        """Shallow-merge ``fields`` into the document."""
