"""
Best-effort photo upload with a user-mediated retry-or-cancel loop.

The same loop serves the trip start photo, the trip end photo and receipt
photos; only the phase tag (the object-store folder) differs.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Optional, Protocol

from errors import RemoteError

logger = logging.getLogger(__name__)

# (phase, error) -> True to retry, False to cancel. May block on the user.
RetryPrompt = Callable[[str, Exception], bool]


class PhotoStore(Protocol):
    def put(self, path: str, data: bytes, content_type: str) -> str: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def photo_extension(local_ref: str | Path) -> str:
    suffix = Path(local_ref).suffix.lower().lstrip(".")
    return suffix or "jpg"


def content_type_for(extension: str) -> str:
    return "image/png" if extension.lower() == "png" else "image/jpeg"


def photo_path(phase: str, owner_id: str, attempted_at: datetime, extension: str) -> str:
    millis = int(attempted_at.timestamp() * 1000)
    return f"{phase}/{owner_id}_{millis}.{extension}"


def upload_photo(
    store: PhotoStore,
    owner_id: str,
    phase: str,
    local_ref: Optional[str | Path],
    prompt: RetryPrompt,
    clock: Callable[[], datetime] = _utcnow,
) -> Optional[str]:
    """
    Upload one captured photo, asking `prompt` after every failed attempt.

    Returns the stored object path, or None when there was nothing to upload
    or the user cancelled. No attempt cap and no backoff: it only stops on
    success or cancel.
    """
    if local_ref is None:
        return None

    extension = photo_extension(local_ref)
    content_type = content_type_for(extension)
    attempt = 0

    while True:
        attempt += 1
        path = photo_path(phase, owner_id, clock(), extension)
        try:
            data = Path(local_ref).read_bytes()
            store.put(path, data, content_type)
        except (RemoteError, OSError) as e:
            logger.warning("Upload of %s photo for %s failed (attempt %d): %s", phase, owner_id, attempt, e)
            if prompt(phase, e):
                continue
            logger.info("Upload of %s photo for %s cancelled by user", phase, owner_id)
            return None

        logger.info("Uploaded %s photo for %s to %s", phase, owner_id, path)
        return path


def attempt_upload(
    store: PhotoStore,
    owner_id: str,
    phase: str,
    local_ref: Optional[str | Path],
    prompt: RetryPrompt,
    clock: Callable[[], datetime] = _utcnow,
) -> bool:
    return upload_photo(store, owner_id, phase, local_ref, prompt, clock) is not None
