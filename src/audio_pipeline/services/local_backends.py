"""
Filesystem implementations of the collaborator interfaces.

Used by the command line entry point and by tests; production deployments
plug in bucket, database and realtime clients behind the same interfaces.
"""

from __future__ import annotations

import asyncio
import json
import os
import shutil
from pathlib import Path
from typing import Any, BinaryIO, Dict, Optional, Union

from ..errors import UploadFailure
from ..logging_config import LoggerMixin
from ..models import CustomMetadata, DocumentSnapshot
from ..utils.file_utils import ensure_directory, safe_filename
from .interfaces import DocumentStore, ObjectStorage, ProgressSink, WriteSink


class LocalWriteSink(WriteSink, LoggerMixin):
    """Upload into a ``.part`` file that is renamed into place on close."""

    def __init__(self, target: Path, content_type: str, metadata: CustomMetadata):
        self.target = target
        self.content_type = content_type
        self.metadata = metadata
        self.part_path = target.with_name(f"{target.name}.part")
        self.bytes_written = 0
        self._handle: Optional[BinaryIO] = None
        self._completed: asyncio.Future = asyncio.get_running_loop().create_future()

    async def write(self, chunk: bytes) -> None:
        if self._completed.done():
            raise UploadFailure(f"Upload to {self.target} is already finished")
        if self._handle is None:
            ensure_directory(self.part_path.parent)
            self._handle = open(self.part_path, "wb")
        self._handle.write(chunk)
        self.bytes_written += len(chunk)

    async def close(self) -> None:
        if self._completed.done():
            return
        try:
            if self._handle is None:
                ensure_directory(self.part_path.parent)
                self._handle = open(self.part_path, "wb")
            self._handle.close()
            os.replace(self.part_path, self.target)
            sidecar = self.target.with_name(f"{self.target.name}.metadata.json")
            sidecar.write_text(json.dumps({
                "contentType": self.content_type,
                "contentDisposition": self.metadata.content_disposition,
                "metadata": self.metadata.to_dict(),
            }, indent=2, ensure_ascii=False), encoding="utf-8")
        except OSError as e:
            self.logger.error("Upload finalization failed", target=str(self.target), error=str(e))
            self._completed.set_exception(UploadFailure(f"Upload to {self.target} failed: {e}"))
            return

        self.logger.debug("Upload complete", target=str(self.target), size_bytes=self.bytes_written)
        self._completed.set_result(self.bytes_written)

    async def abort(self, reason: BaseException) -> None:
        if self._completed.done():
            return
        if self._handle is not None:
            self._handle.close()
        self.part_path.unlink(missing_ok=True)
        self.logger.debug("Upload aborted", target=str(self.target), reason=str(reason))
        self._completed.set_exception(UploadFailure(f"Upload to {self.target} aborted: {reason}"))
        # The caller already holds the original error
        self._completed.exception()

    async def wait_completed(self) -> None:
        await asyncio.shield(self._completed)


class LocalObjectStorage(ObjectStorage, LoggerMixin):
    """Object storage rooted at a local directory."""

    def __init__(self, root: Union[str, Path]):
        self.root = ensure_directory(root).resolve()

    def path_for(self, locator: str) -> Path:
        path = (self.root / locator.lstrip("/")).resolve()
        if path != self.root and self.root not in path.parents:
            raise ValueError(f"Locator escapes storage root: {locator}")
        return path

    async def download(self, locator: str, destination: Path) -> Path:
        source = self.path_for(locator)
        if not source.is_file():
            raise FileNotFoundError(f"Object not found: {locator}")
        ensure_directory(Path(destination).parent)
        await asyncio.to_thread(shutil.copyfile, source, destination)
        self.logger.debug("Object downloaded", locator=locator, destination=str(destination))
        return Path(destination)

    async def open_write_stream(self, locator: str, content_type: str, metadata: CustomMetadata) -> WriteSink:
        return LocalWriteSink(self.path_for(locator), content_type, metadata)

    async def exists(self, locator: str) -> bool:
        return self.path_for(locator).is_file()

    async def delete(self, locator: str) -> None:
        self.path_for(locator).unlink(missing_ok=True)
        self.logger.info("Object deleted", locator=locator)


class JsonDocumentStore(DocumentStore, LoggerMixin):
    """One JSON file per document."""

    def __init__(self, root: Union[str, Path]):
        self.root = ensure_directory(root)
        self._lock = asyncio.Lock()

    def _path(self, document_id: str) -> Path:
        return self.root / f"{safe_filename(document_id)}.json"

    async def get(self, document_id: str) -> DocumentSnapshot:
        path = self._path(document_id)
        if not path.exists():
            return DocumentSnapshot(exists=False)
        return DocumentSnapshot(exists=True, fields=json.loads(path.read_text(encoding="utf-8")))

    async def update(self, document_id: str, fields: Dict[str, Any]) -> None:
        async with self._lock:
            path = self._path(document_id)
            if not path.exists():
                raise FileNotFoundError(f"Document not found: {document_id}")
            data = json.loads(path.read_text(encoding="utf-8"))
            data.update(fields)
            path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")


class JsonProgressSink(ProgressSink, LoggerMixin):
    """Progress values kept in a single JSON object on disk."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)
        self._lock = asyncio.Lock()

    def _read(self) -> Dict[str, int]:
        if not self.path.exists():
            return {}
        return json.loads(self.path.read_text(encoding="utf-8"))

    def _write(self, data: Dict[str, int]) -> None:
        ensure_directory(self.path.parent)
        self.path.write_text(json.dumps(data, indent=2), encoding="utf-8")

    async def set(self, locator: str, value: int) -> None:
        async with self._lock:
            data = self._read()
            data[locator] = value
            self._write(data)

    async def remove(self, locator: str) -> None:
        async with self._lock:
            data = self._read()
            if data.pop(locator, None) is not None:
                self._write(data)
