from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping, Optional

ENV_PREFIX = "TRIP_TRACKER_"
LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off", ""}


@dataclass(frozen=True)
class Settings:
    """
    Runtime configuration for the tracker.

    Values come from Streamlit secrets first, then TRIP_TRACKER_* environment
    variables, then the defaults below.
    """
    supabase_url: str = ""
    supabase_key: str = field(default="", repr=False)
    trips_table: str = "trips"
    receipts_table: str = "receipts"
    photo_bucket: str = "trips_photos"
    request_timeout_seconds: float = 30.0
    signed_url_ttl_seconds: int = 3600
    cache_path: Path = Path(".trip_cache/active_trip.json")
    capture_dir: Path = Path(".trip_cache/captures")
    log_level: str = "INFO"
    show_dev_details: bool = False


def _lookup(key: str, secrets: Mapping[str, Any], environ: Mapping[str, str]) -> Optional[Any]:
    if key in secrets:
        return secrets[key]
    return environ.get(ENV_PREFIX + key)


def _as_bool(key: str, value: Any) -> bool:
    if isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in _TRUE:
        return True
    if text in _FALSE:
        return False
    raise ValueError(f"{key} must be a boolean, got {value!r}.")


def _as_positive_number(key: str, value: Any, cast):
    try:
        number = cast(value)
    except (TypeError, ValueError) as e:
        raise ValueError(f"{key} must be a number, got {value!r}.") from e
    if number <= 0:
        raise ValueError(f"{key} must be greater than zero.")
    return number


def load_settings(
    secrets: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    secrets = secrets or {}
    environ = os.environ if environ is None else environ
    defaults = Settings()

    def get(key: str, default: Any) -> Any:
        value = _lookup(key, secrets, environ)
        return default if value is None else value

    return Settings(
        supabase_url=str(get("SUPABASE_URL", defaults.supabase_url)),
        supabase_key=str(get("SUPABASE_KEY", defaults.supabase_key)),
        trips_table=str(get("TRIPS_TABLE", defaults.trips_table)),
        receipts_table=str(get("RECEIPTS_TABLE", defaults.receipts_table)),
        photo_bucket=str(get("PHOTO_BUCKET", defaults.photo_bucket)),
        request_timeout_seconds=_as_positive_number(
            "REQUEST_TIMEOUT_SECONDS",
            get("REQUEST_TIMEOUT_SECONDS", defaults.request_timeout_seconds),
            float,
        ),
        signed_url_ttl_seconds=_as_positive_number(
            "SIGNED_URL_TTL_SECONDS",
            get("SIGNED_URL_TTL_SECONDS", defaults.signed_url_ttl_seconds),
            int,
        ),
        cache_path=Path(get("CACHE_PATH", defaults.cache_path)),
        capture_dir=Path(get("CAPTURE_DIR", defaults.capture_dir)),
        log_level=str(get("LOG_LEVEL", defaults.log_level)).upper(),
        show_dev_details=_as_bool(
            "SHOW_DEV_DETAILS", get("SHOW_DEV_DETAILS", defaults.show_dev_details)
        ),
    )


def configure_logging(level: str = "INFO") -> None:
    """
    Install one stream handler on the root logger. Safe to call on every
    Streamlit rerun: an existing handler is reused and only the level changes.
    """
    root = logging.getLogger()
    if not any(getattr(h, "_trip_tracker", False) for h in root.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        handler._trip_tracker = True  # type: ignore[attr-defined]
        root.addHandler(handler)
    root.setLevel(level)
