from __future__ import annotations

import logging
import secrets
import string
import threading
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Literal, Optional, Protocol

from errors import CacheError, PreconditionError, RemoteError, RemoteTimeout, ValidationError
from models import IDLE, ActiveTrip, EndingTrip, RemoteTripRecord, TripSession, parse_odometer
from reconcile import reconcile
from trip_cache import (
    ACTIVE_TRIP_ID,
    EARNINGS_DRAFT,
    IS_TRIP_ACTIVE,
    START_TIMESTAMP,
    STARTING_ODOMETER,
    LocalTripCache,
)
from uploads import PhotoStore, RetryPrompt, upload_photo

logger = logging.getLogger(__name__)

StartOutcome = Literal["STARTED", "CANCELLED"]
EndOutcome = Literal["ENDED", "CANCELLED"]

CENT = Decimal("0.01")
_BASE36 = string.digits + string.ascii_lowercase

TIMEOUT_MESSAGE = "Request timed out. Please check your connection and try again."


class TripStore(Protocol):
    def create(self, trip_id: str, starting_odometer: str, start_timestamp: datetime) -> RemoteTripRecord: ...

    def get(self, trip_id: str) -> RemoteTripRecord: ...

    def update_partial(self, trip_id: str, changes: Dict[str, Any]) -> RemoteTripRecord: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _to_base36(n: int) -> str:
    if n == 0:
        return "0"
    digits = []
    while n:
        n, rem = divmod(n, 36)
        digits.append(_BASE36[rem])
    return "".join(reversed(digits))


def generate_trip_id(now: Optional[datetime] = None) -> str:
    """
    Millisecond timestamp in base 36 followed by 13 random base-36 chars,
    e.g. "l5k8m9pqx7z9k2m5p". Collisions are improbable, not impossible.
    """
    now = now or _utcnow()
    millis = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(13))
    return f"{_to_base36(millis)}{suffix}"


# -----------------------------
# Input parsing
# -----------------------------

def parse_money(value: Optional[str], label: str = "Earnings") -> Optional[Decimal]:
    """
    Blank -> None. Otherwise a non-negative amount rounded half-up to cents.
    """
    text = (value or "").strip().lstrip("$")
    if not text:
        return None
    try:
        amount = Decimal(text)
    except InvalidOperation as e:
        raise ValidationError(f"{label} must be a number.") from e
    if not amount.is_finite() or amount < 0:
        raise ValidationError(f"{label} cannot be negative.")
    return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def _cache_entries(trip: ActiveTrip) -> Dict[str, str]:
    return {
        ACTIVE_TRIP_ID: trip.trip_id,
        IS_TRIP_ACTIVE: "true",
        STARTING_ODOMETER: trip.starting_odometer,
        START_TIMESTAMP: trip.start_timestamp.isoformat(),
        EARNINGS_DRAFT: trip.earnings_draft or "",
    }


def _remote_failure(e: RemoteError, message: str) -> RemoteError:
    if isinstance(e, RemoteTimeout):
        return RemoteTimeout(TIMEOUT_MESSAGE)
    return RemoteError(message)


# -----------------------------
# Controller
# -----------------------------

class TripController:
    """
    Owns the single trip session and every transition of it.

    States: Idle -> Active (start_trip) -> Ending -> Idle (end_trip).
    A failed or cancelled transition leaves the previous state in place. The
    photo for a phase is always uploaded before the remote record is touched.

    One controller serves the whole process. Transitions are serialized: a
    second caller arriving while one is in flight is refused, not queued.
    """

    def __init__(
        self,
        trips: TripStore,
        photos: PhotoStore,
        cache: LocalTripCache,
        prompt: RetryPrompt,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._trips = trips
        self._photos = photos
        self._cache = cache
        self._prompt = prompt
        self._clock = clock
        self._state: TripSession = IDLE
        self._initialized = False
        # reentrant: the retry prompt runs inside a transition
        self._lock = threading.RLock()
        self.last_completed: Optional[RemoteTripRecord] = None

    @property
    def state(self) -> TripSession:
        return self._state

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def is_active(self) -> bool:
        return isinstance(self._state, ActiveTrip)

    @property
    def active_trip(self) -> Optional[ActiveTrip]:
        return self._state if isinstance(self._state, ActiveTrip) else None

    def initialize(self) -> TripSession:
        """
        Run startup reconciliation once. Transitions are refused until this
        has completed, whatever its outcome.
        """
        with self._lock:
            if self._initialized:
                return self._state
            try:
                self._state = reconcile(self._cache, self._trips)
            except Exception:
                logger.exception("Trip reconciliation failed, starting idle")
                self._state = IDLE
            finally:
                self._initialized = True
            return self._state

    @contextmanager
    def _transition(self) -> Iterator[None]:
        if not self._lock.acquire(blocking=False):
            raise PreconditionError("Another trip action is in progress. Please try again in a moment.")
        try:
            if not self._initialized:
                raise PreconditionError("Trip state is still loading. Please try again in a moment.")
            yield
        finally:
            self._lock.release()

    def _confirm_after_timeout(
        self,
        trip_id: str,
        applied: Callable[[RemoteTripRecord], bool],
    ) -> Optional[RemoteTripRecord]:
        """
        A timed-out write may still have reached the server. Look the trip up
        once; return it if `applied` says the write is there.
        """
        try:
            record = self._trips.get(trip_id)
        except RemoteError as e:
            logger.warning("Could not confirm trip %s after a timeout: %s", trip_id, e)
            return None
        if not applied(record):
            return None
        logger.warning("Write to trip %s timed out but was applied", trip_id)
        return record

    # -------------------------
    # Idle -> Active
    # -------------------------

    def start_trip(self, starting_odometer: Optional[str], start_photo_ref: Optional[Path]) -> StartOutcome:
        with self._transition():
            return self._start(starting_odometer, start_photo_ref)

    def _start(self, starting_odometer: Optional[str], start_photo_ref: Optional[Path]) -> StartOutcome:
        if isinstance(self._state, (ActiveTrip, EndingTrip)):
            raise PreconditionError("You have already started a trip.")

        parse_odometer(starting_odometer)
        odometer_text = starting_odometer.strip()
        if start_photo_ref is None:
            raise ValidationError("Please take a start photo before starting the trip.")

        started_at = self._clock()
        trip_id = generate_trip_id(started_at)

        if upload_photo(self._photos, trip_id, "start", start_photo_ref, self._prompt, self._clock) is None:
            logger.info("Trip start cancelled during photo upload")
            return "CANCELLED"

        try:
            self._trips.create(trip_id, odometer_text, started_at)
        except RemoteTimeout as e:
            if self._confirm_after_timeout(trip_id, lambda r: not r.is_closed) is None:
                logger.error("Timed out creating trip %s: %s", trip_id, e)
                raise RemoteTimeout(TIMEOUT_MESSAGE) from e
        except RemoteError as e:
            logger.error("Error creating trip %s: %s", trip_id, e)
            raise RemoteError("Failed to create trip. Please check your connection and try again.") from e

        active = ActiveTrip(trip_id=trip_id, starting_odometer=odometer_text, start_timestamp=started_at)
        self._state = active
        logger.info("Trip %s started at odometer %s", trip_id, odometer_text)

        try:
            self._cache.set_all(_cache_entries(active))
        except CacheError as e:
            logger.error("Trip %s started but could not be cached: %s", trip_id, e)
            raise CacheError(
                "Trip started, but it could not be saved on this device. "
                "It will not be restored if the app restarts."
            ) from e
        return "STARTED"

    # -------------------------
    # Active: end-form drafts
    # -------------------------

    def update_end_draft(
        self,
        ending_odometer: Optional[str] = None,
        earnings: Optional[str] = None,
    ) -> ActiveTrip:
        """
        Remember end-form input. The earnings draft is also cached so it
        survives a restart; failing to cache it only costs that.
        """
        with self._transition():
            active = self.active_trip
            if active is None:
                raise PreconditionError("There is no active trip.")

            changes: Dict[str, Any] = {}
            if ending_odometer is not None:
                changes["ending_odometer_draft"] = ending_odometer
            if earnings is not None:
                changes["earnings_draft"] = earnings
            if not changes:
                return active

            self._state = replace(active, **changes)
            if earnings is not None and earnings != active.earnings_draft:
                try:
                    self._cache.set_all({EARNINGS_DRAFT: earnings})
                except CacheError as e:
                    logger.warning("Earnings draft for trip %s kept in memory only: %s", active.trip_id, e)
            return self._state

    # -------------------------
    # Active -> Ending -> Idle
    # -------------------------

    def end_trip(
        self,
        ending_odometer: Optional[str],
        earnings: Optional[str],
        end_photo_ref: Optional[Path],
    ) -> EndOutcome:
        with self._transition():
            return self._end(ending_odometer, earnings, end_photo_ref)

    def _end(
        self,
        ending_odometer: Optional[str],
        earnings: Optional[str],
        end_photo_ref: Optional[Path],
    ) -> EndOutcome:
        if isinstance(self._state, EndingTrip):
            raise PreconditionError("This trip is already being ended.")
        active = self.active_trip
        if active is None:
            raise PreconditionError("There is no active trip to end.")

        ending = parse_odometer(ending_odometer)
        if ending <= parse_odometer(active.starting_odometer):
            raise ValidationError(
                f"Ending odometer must be greater than the starting odometer ({active.starting_odometer})."
            )
        parsed_earnings = parse_money(earnings)
        if end_photo_ref is None:
            raise ValidationError("Please take an end photo before ending the trip.")

        ending_text = ending_odometer.strip()
        ended_at = self._clock()
        self._state = EndingTrip(
            trip=active,
            ending_odometer=ending_text,
            end_timestamp=ended_at,
            earnings=parsed_earnings,
        )

        try:
            uploaded = upload_photo(self._photos, active.trip_id, "end", end_photo_ref, self._prompt, self._clock)
            if uploaded is None:
                logger.info("Trip %s end cancelled during photo upload", active.trip_id)
                self._state = active
                return "CANCELLED"

            changes: Dict[str, Any] = {
                "ending_odometer": ending_text,
                "end_timestamp": ended_at.isoformat(),
            }
            if parsed_earnings is not None:
                changes["earnings"] = float(parsed_earnings)

            try:
                record = self._trips.update_partial(active.trip_id, changes)
            except RemoteTimeout:
                record = self._confirm_after_timeout(active.trip_id, lambda r: r.is_closed)
                if record is None:
                    raise
        except RemoteError as e:
            logger.error("Error ending trip %s: %s", active.trip_id, e)
            self._state = replace(
                active,
                ending_odometer_draft=ending_odometer,
                earnings_draft=earnings,
                end_photo_ref=end_photo_ref,
            )
            raise _remote_failure(e, "Failed to end trip. Please check your connection and try again.") from e
        except Exception:
            self._state = active
            raise

        self.last_completed = record
        self._state = IDLE
        logger.info("Trip %s ended at odometer %s", active.trip_id, ending_text)

        try:
            self._cache.clear_all()
        except CacheError as e:
            # a stale entry is discarded by reconciliation on next launch
            logger.warning("Trip %s ended but the cache could not be cleared: %s", active.trip_id, e)
        return "ENDED"
