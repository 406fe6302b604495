from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest

from errors import RecordNotFound, RemoteError, RemoteTimeout
from models import ReceiptRecord, RemoteTripRecord, row_to_trip_record
from trip_cache import LocalTripCache
from trips import TripController


class FakeTripStore:
    """
    In-memory Remote Trip Store. Set fail_* to an exception to make calls fail;
    with timeout_after_write, writes land and then report a timeout.
    """

    def __init__(self, events):
        self.events = events
        self.rows = {}
        self.fail_create = None
        self.fail_get = None
        self.fail_update = None
        self.updates = []
        self.timeout_after_write = False

    def add(self, **row):
        self.rows[row["id"]] = row
        return row_to_trip_record(row)

    def create(self, trip_id, starting_odometer, start_timestamp):
        self.events.append(("create", trip_id))
        if self.fail_create:
            raise self.fail_create
        record = self.add(
            id=trip_id,
            starting_odometer=starting_odometer,
            start_timestamp=start_timestamp.isoformat(),
            ending_odometer=None,
            end_timestamp=None,
            earnings=None,
        )
        if self.timeout_after_write:
            raise RemoteTimeout("Create trip timed out.")
        return record

    def get(self, trip_id):
        self.events.append(("get", trip_id))
        if self.fail_get:
            raise self.fail_get
        if trip_id not in self.rows:
            raise RecordNotFound(f"Trip {trip_id} does not exist.")
        return row_to_trip_record(self.rows[trip_id])

    def update_partial(self, trip_id, changes):
        self.events.append(("update", trip_id))
        self.updates.append((trip_id, dict(changes)))
        if self.fail_update:
            raise self.fail_update
        if trip_id not in self.rows:
            raise RecordNotFound(f"Trip {trip_id} does not exist.")
        self.rows[trip_id].update(changes)
        if self.timeout_after_write:
            raise RemoteTimeout("Update trip timed out.")
        return row_to_trip_record(self.rows[trip_id])


class FakePhotoStore:
    """Records uploads; the first `failures` puts raise RemoteError."""

    def __init__(self, events):
        self.events = events
        self.puts = []
        self.failures = 0

    def put(self, path, data, content_type):
        self.events.append(("upload", path))
        if self.failures > 0:
            self.failures -= 1
            raise RemoteError("storage rejected the upload")
        self.puts.append((path, data, content_type))
        return path

    def signed_url(self, path):
        return f"https://storage.example.test/{path}?token=abc"


class ScriptedPrompt:
    """Retry prompt answering from a script (True = retry). Cancels once exhausted."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.calls = []

    def __call__(self, phase, error):
        self.calls.append((phase, str(error)))
        return self.answers.pop(0) if self.answers else False


class FakeReceiptStore:
    def __init__(self, events):
        self.events = events
        self.records = {}
        self.fail_create = None
        self.fail_set_url = None
        self.timeout_after_write = False

    def create(self, record: ReceiptRecord):
        self.events.append(("create_receipt", record.id))
        if self.fail_create:
            raise self.fail_create
        self.records[record.id] = record
        if self.timeout_after_write:
            raise RemoteTimeout("Create receipt timed out.")
        return record

    def get(self, receipt_id):
        self.events.append(("get_receipt", receipt_id))
        if receipt_id not in self.records:
            raise RecordNotFound(f"Receipt {receipt_id} does not exist.")
        return self.records[receipt_id]

    def query(self, options):
        return sorted(self.records.values(), key=lambda r: r.receipt_date, reverse=True)

    def set_image_url(self, receipt_id, url):
        self.events.append(("set_image_url", receipt_id))
        if self.fail_set_url:
            raise self.fail_set_url
        self.records[receipt_id] = replace(self.records[receipt_id], receipt_image_url=url)


class Clock:
    def __init__(self, start):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def events():
    """Shared, ordered log of remote calls across all fakes."""
    return []


@pytest.fixture
def trip_store(events):
    return FakeTripStore(events)


@pytest.fixture
def photo_store(events):
    return FakePhotoStore(events)


@pytest.fixture
def receipt_store(events):
    return FakeReceiptStore(events)


@pytest.fixture
def prompt():
    return ScriptedPrompt()


@pytest.fixture
def clock():
    return Clock(datetime(2025, 3, 14, 9, 30, tzinfo=timezone.utc))


@pytest.fixture
def cache(tmp_path):
    """A real on-disk trip cache in a temp dir."""
    return LocalTripCache(tmp_path / "cache" / "active_trip.json")


@pytest.fixture
def photo_a(tmp_path):
    path = tmp_path / "start_photo.jpg"
    path.write_bytes(b"\xff\xd8start-photo")
    return path


@pytest.fixture
def photo_b(tmp_path):
    path = tmp_path / "end_photo.png"
    path.write_bytes(b"\x89PNGend-photo")
    return path


@pytest.fixture
def controller(trip_store, photo_store, cache, prompt, clock):
    """An initialized controller over an empty cache."""
    ctl = TripController(trip_store, photo_store, cache, prompt, clock=clock)
    ctl.initialize()
    return ctl


@pytest.fixture
def open_remote_trip(trip_store):
    return trip_store.add(
        id="lx1abc",
        starting_odometer="1000",
        start_timestamp="2025-03-14T08:00:00+00:00",
        ending_odometer=None,
        end_timestamp=None,
        earnings=None,
    )


def _make_trip(trip_id, start, hours, start_km, end_km, earnings=None):
    """Closed RemoteTripRecord helper for dashboard tests."""
    return RemoteTripRecord(
        id=trip_id,
        starting_odometer=str(start_km),
        start_timestamp=start,
        ending_odometer=str(end_km),
        end_timestamp=start + timedelta(hours=hours),
        earnings=Decimal(earnings) if earnings is not None else None,
    )


@pytest.fixture
def make_trip():
    return _make_trip
