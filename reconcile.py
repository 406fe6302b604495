from __future__ import annotations

import logging
from typing import Dict, Optional, Protocol

from errors import CacheError, RecordNotFound, RemoteError, ValidationError
from models import IDLE, ActiveTrip, RemoteTripRecord, TripSession, parse_odometer, parse_timestamp
from trip_cache import (
    ACTIVE_TRIP_ID,
    EARNINGS_DRAFT,
    IS_TRIP_ACTIVE,
    START_TIMESTAMP,
    STARTING_ODOMETER,
    LocalTripCache,
)

logger = logging.getLogger(__name__)


class TripLookup(Protocol):
    def get(self, trip_id: str) -> RemoteTripRecord: ...


def _reading(value: Optional[str]) -> Optional[str]:
    """The odometer text if it parses as a reading, else None."""
    if not value:
        return None
    try:
        parse_odometer(value)
    except ValidationError:
        logger.warning("Ignoring unreadable starting odometer %r", value)
        return None
    return value.strip()


def session_from_cache(
    stored: Dict[str, str],
    record: Optional[RemoteTripRecord] = None,
) -> Optional[ActiveTrip]:
    """
    Build the Active session from cached fields. Fields missing from the
    cache, or unreadable there, are taken from `record` when given. None if
    still incomplete.
    """
    trip_id = stored.get(ACTIVE_TRIP_ID)
    odometer = _reading(stored.get(STARTING_ODOMETER)) or (_reading(record.starting_odometer) if record else None)

    try:
        started = parse_timestamp(stored.get(START_TIMESTAMP))
    except (ValueError, OverflowError):
        logger.warning("Cached start timestamp %r is unreadable", stored.get(START_TIMESTAMP))
        started = None
    if started is None and record is not None:
        started = record.start_timestamp

    if not trip_id or not odometer or started is None:
        return None

    return ActiveTrip(
        trip_id=trip_id,
        starting_odometer=odometer,
        start_timestamp=started,
        earnings_draft=stored.get(EARNINGS_DRAFT) or None,
    )


def _discard(cache: LocalTripCache, reason: str) -> TripSession:
    logger.info("Discarding cached trip: %s", reason)
    try:
        cache.clear_all()
    except CacheError as e:
        logger.warning("Could not clear stale trip cache: %s", e)
    return IDLE


def reconcile(cache: LocalTripCache, trips: TripLookup) -> TripSession:
    """
    Decide on launch whether a cached in-progress trip is still open.

    - nothing cached, or not flagged active: Idle
    - remote record open: restore Active from the cache
    - remote record closed or missing: clear the cache, Idle
    - remote unreachable or failing: trust the cache, restore Active

    Idempotent: a second run with no mutation in between lands on the
    same state.
    """
    try:
        stored = cache.get_all()
    except CacheError as e:
        logger.error("Could not read trip cache, starting idle: %s", e)
        return IDLE

    trip_id = stored.get(ACTIVE_TRIP_ID)
    if not trip_id or stored.get(IS_TRIP_ACTIVE) != "true":
        logger.info("No active trip found in cache")
        return IDLE

    try:
        record = trips.get(trip_id)
    except RecordNotFound:
        return _discard(cache, f"trip {trip_id} does not exist remotely")
    except RemoteError as e:
        logger.warning("Could not verify trip %s, trusting local cache: %s", trip_id, e)
        session = session_from_cache(stored)
        if session is None:
            # keep the cache so the next launch can try again
            logger.warning("Cached trip %s is incomplete, starting idle", trip_id)
            return IDLE
        return session

    if record.is_closed:
        return _discard(cache, f"trip {trip_id} already ended at {record.end_timestamp.isoformat()}")

    session = session_from_cache(stored, record)
    if session is None:
        return _discard(cache, f"cached trip {trip_id} is incomplete")

    logger.info("Restoring active trip %s", trip_id)
    return session
