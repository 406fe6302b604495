"""On-device cache of the active trip, used to resume it after a restart."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, Mapping

from errors import CacheError

logger = logging.getLogger(__name__)

ACTIVE_TRIP_ID = "active_trip_id"
IS_TRIP_ACTIVE = "is_trip_active"
STARTING_ODOMETER = "starting_odometer"
START_TIMESTAMP = "start_timestamp"
EARNINGS_DRAFT = "earnings_draft"

CACHE_KEYS = (ACTIVE_TRIP_ID, IS_TRIP_ACTIVE, STARTING_ODOMETER, START_TIMESTAMP, EARNINGS_DRAFT)


class LocalTripCache:
    """
    String key -> string value store persisted as one JSON file.

    Writes go to a temp file that replaces the snapshot, so a crash mid-write
    leaves the previous snapshot intact.
    """

    def __init__(self, path: str | Path) -> None:
        self._path = Path(path)

    @property
    def path(self) -> Path:
        return self._path

    def get_all(self) -> Dict[str, str]:
        if not self._path.exists():
            return {}
        try:
            text = self._path.read_text(encoding="utf-8").strip()
        except OSError as e:
            raise CacheError(f"Could not read the trip cache: {e}") from e
        if not text:
            return {}

        try:
            data = json.loads(text)
        except json.JSONDecodeError:
            # Corrupted snapshot: keep a copy for inspection and start fresh
            backup = self._path.with_suffix(self._path.suffix + ".broken")
            logger.warning("Trip cache %s is corrupted, moving it to %s", self._path, backup)
            try:
                self._path.replace(backup)
            except OSError as e:
                raise CacheError(f"Could not move the corrupted trip cache aside: {e}") from e
            return {}

        if not isinstance(data, dict):
            return {}
        return {str(k): str(v) for k, v in data.items() if k in CACHE_KEYS and v is not None}

    def set_all(self, values: Mapping[str, str]) -> None:
        """
        Merge `values` into the stored entries. Unknown keys are rejected.
        """
        unknown = set(values) - set(CACHE_KEYS)
        if unknown:
            raise ValueError(f"Unknown trip cache keys: {sorted(unknown)}")

        data = self.get_all()
        data.update({k: str(v) for k, v in values.items()})

        tmp = self._path.with_suffix(self._path.suffix + ".tmp")
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp.write_text(json.dumps(data, ensure_ascii=False, indent=2), encoding="utf-8")
            tmp.replace(self._path)
        except OSError as e:
            raise CacheError(f"Could not save the trip cache: {e}") from e
        logger.debug("Trip cache saved (%s)", ", ".join(sorted(values)))

    def clear_all(self) -> None:
        try:
            self._path.unlink(missing_ok=True)
        except OSError as e:
            raise CacheError(f"Could not clear the trip cache: {e}") from e
        logger.debug("Trip cache cleared")
