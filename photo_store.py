from __future__ import annotations

import logging
from typing import Any, Optional

from db import call_remote

logger = logging.getLogger(__name__)


def _signed_url_from(res: Any) -> Optional[str]:
    if isinstance(res, dict):
        return res.get("signedURL") or res.get("signedUrl") or res.get("signed_url")
    return getattr(res, "signed_url", None) or getattr(res, "signedURL", None)


class SupabasePhotoStore:
    """
    Object store for trip and receipt photos (one Supabase storage bucket).
    """

    def __init__(self, supabase, bucket: str = "trips_photos", signed_url_ttl: int = 3600):
        self._supabase = supabase
        self._bucket = bucket
        self._signed_url_ttl = signed_url_ttl

    def _bucket_api(self):
        return self._supabase.storage.from_(self._bucket)

    def put(self, path: str, data: bytes, content_type: str) -> str:
        call_remote(
            lambda: self._bucket_api().upload(
                path=path,
                file=data,
                file_options={
                    "content-type": content_type,
                    "cache-control": "3600",
                    "upsert": "false",
                },
            ),
            "Photo upload",
        )
        logger.info("Uploaded %s (%d bytes) to %s", path, len(data), self._bucket)
        return path

    def signed_url(self, path: str) -> Optional[str]:
        """
        Signed URL for a stored photo, falling back to the bucket's public URL.
        """
        res = call_remote(
            lambda: self._bucket_api().create_signed_url(path, self._signed_url_ttl),
            "Photo URL",
        )
        url = _signed_url_from(res)
        if url:
            return url
        return self._bucket_api().get_public_url(path) or None
