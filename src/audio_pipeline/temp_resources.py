"""Tracking and cleanup of transient files created during one job."""

import shutil
import uuid
from pathlib import Path
from typing import List, Optional, Set, Union

from .logging_config import CorrelationContext, LoggerMixin
from .utils.file_utils import ensure_directory, safe_filename


class TempResourceRegistry(LoggerMixin):
    """
    Registry of scratch files owned by a job.

    Every path handed out by :meth:`create_temp_file` stays registered until
    :meth:`release` deletes it. The orchestrator calls :meth:`close`
    from its ``finally`` block so nothing outlives the job, whatever path the
    job took to finish.
    """

    def __init__(self, scratch_dir: Union[str, Path], context: Optional[CorrelationContext] = None):
        self.scratch_dir = Path(scratch_dir)
        self.context = context or CorrelationContext(job_id="unknown")
        self._paths: Set[Path] = set()

    @property
    def log(self):
        return self.context.bind(self.logger)

    def __len__(self) -> int:
        return len(self._paths)

    def __contains__(self, path: object) -> bool:
        return Path(path) in self._paths if isinstance(path, (str, Path)) else False

    @property
    def paths(self) -> List[Path]:
        return sorted(self._paths)

    def create_temp_file(self, name_hint: str) -> Path:
        """
        Register and return a unique path under the scratch directory.

        The file itself is not created; the caller (or the tool it launches)
        writes to it.

        Args:
            name_hint: Human readable part of the file name

        Returns:
            Absolute path of the registered file
        """
        ensure_directory(self.scratch_dir)
        path = (self.scratch_dir / f"{uuid.uuid4().hex[:12]}-{safe_filename(name_hint)}").resolve()
        self._paths.add(path)
        self.log.debug("Temp file registered", path=str(path))
        return path

    def release(self, path: Union[str, Path]) -> bool:
        """
        Delete ``path`` and forget it. Deletion errors are logged, not raised.

        Returns:
            True if the path was registered and is now gone from disk
        """
        path = Path(path)
        if path not in self._paths:
            self.log.debug("Release of unregistered path ignored", path=str(path))
            return False

        self._paths.discard(path)
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            self.log.error("Failed to delete temp file", path=str(path), error=str(e))
            return False

        self.log.debug("Temp file released", path=str(path))
        return True

    def release_all(self) -> int:
        """Release every remaining path. Returns how many were deleted."""
        deleted = 0
        for path in list(self._paths):
            if self.release(path):
                deleted += 1
        self.log.info("Temp files released", deleted=deleted, remaining=len(self._paths))
        return deleted

    def close(self) -> int:
        """
        Release every path, then remove the scratch directory itself.

        Anything a tool left beside a registered path (partial downloads,
        fragment files) goes with the directory.

        Returns:
            How many registered paths were deleted
        """
        deleted = self.release_all()
        if self.scratch_dir.exists():
            try:
                shutil.rmtree(self.scratch_dir)
            except OSError as e:
                self.log.error("Failed to remove scratch directory", path=str(self.scratch_dir), error=str(e))
            else:
                self.log.debug("Scratch directory removed", path=str(self.scratch_dir))
        return deleted
