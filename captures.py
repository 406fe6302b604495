"""
Camera captures held on disk between a form submit and the photo upload.

A capture lives only while an action may still need it: an upload awaiting
Retry, or end-trip input kept for resubmission. Everything else is deleted.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Iterable, Optional

logger = logging.getLogger(__name__)


class CaptureFolder:
    def __init__(self, directory: str | Path):
        self._dir = Path(directory)

    @property
    def directory(self) -> Path:
        return self._dir

    def save(self, data: bytes, phase: str, content_type: Optional[str] = None) -> Path:
        extension = "png" if "png" in (content_type or "") else "jpg"
        self._dir.mkdir(parents=True, exist_ok=True)
        path = self._dir / f"{phase}_{uuid.uuid4().hex}.{extension}"
        path.write_bytes(data)
        logger.debug("Saved %s capture to %s", phase, path)
        return path

    def _owns(self, path: Path) -> bool:
        return path.resolve().parent == self._dir.resolve()

    def discard(self, path: Optional[Path], keep: Iterable[Optional[Path]] = ()) -> bool:
        """
        Delete one capture unless it is listed in `keep`. Paths outside the
        folder are never touched. True if a file was removed.
        """
        if path is None or path in set(keep) or not self._owns(path):
            return False
        try:
            path.unlink(missing_ok=True)
        except OSError as e:
            logger.warning("Could not delete capture %s: %s", path, e)
            return False
        return True

    def clear(self) -> int:
        """Delete every capture. Run once per process, before any session exists."""
        if not self._dir.is_dir():
            return 0
        removed = 0
        for path in self._dir.iterdir():
            if path.is_file() and self.discard(path):
                removed += 1
        if removed:
            logger.info("Removed %d leftover captures from %s", removed, self._dir)
        return removed
