"""
Supabase adapters against a recording fake of the query builder.
"""

import threading
from datetime import date, datetime, timezone
from decimal import Decimal
from types import SimpleNamespace

import httpx
import pytest
from postgrest.exceptions import APIError

import db
from db import ReceiptQuery, SupabaseReceiptStore, SupabaseTripStore, _extract_data, call_remote, connect
from errors import RecordNotFound, RemoteError, RemoteTimeout, StoreUnavailable
from models import ReceiptCategory, ReceiptRecord
from photo_store import SupabasePhotoStore

TRIP_ROW = {
    "id": "lx1abc",
    "starting_odometer": "1000",
    "start_timestamp": "2025-03-14T08:00:00+00:00",
    "ending_odometer": None,
    "end_timestamp": None,
    "earnings": None,
    "created_at": "2025-03-14T08:00:01.123456+00:00",
}


class FakeQuery:
    """Chainable stand-in for a postgrest request builder."""

    def __init__(self, client, table):
        self.client = client
        self.table = table
        self.calls = []

    def __getattr__(self, name):
        def record(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self

        return record

    def execute(self):
        self.client.executed.append(self)
        if self.client.error:
            raise self.client.error
        return SimpleNamespace(data=self.client.data)


class FakeSupabase:
    def __init__(self, data=None, error=None):
        self.data = data if data is not None else []
        self.error = error
        self.executed = []

    def table(self, name):
        return FakeQuery(self, name)

    @property
    def last(self):
        return self.executed[-1]


class TestExtractData:

    def test_shapes(self):
        assert _extract_data(None) == []
        assert _extract_data({"data": [1], "count": 1}) == [1]
        assert _extract_data(SimpleNamespace(data=None)) == []


class TestConnect:

    def test_timeouts_are_set_on_the_client(self, monkeypatch):
        calls = []
        monkeypatch.setattr(db, "create_client", lambda url, key, options: calls.append((url, key, options)))

        connect("https://project.supabase.co", "anon-key", timeout=2.5)

        (url, key, options), = calls
        assert url == "https://project.supabase.co"
        assert options.postgrest_client_timeout == httpx.Timeout(2.5)
        assert options.storage_client_timeout == 3

    def test_missing_credentials(self):
        with pytest.raises(ValueError, match="SUPABASE_URL"):
            connect("", "anon-key")


class TestCallRemote:

    def test_returns_result(self):
        assert call_remote(lambda: 42, "Answer") == 42

    def test_httpx_timeout(self):
        def boom():
            raise httpx.ReadTimeout("read timed out")

        with pytest.raises(RemoteTimeout, match="Lookup timed out"):
            call_remote(boom, "Lookup")

    def test_call_runs_in_the_calling_thread(self):
        """Nothing is left running in the background once the call returns or fails."""
        seen = []
        call_remote(lambda: seen.append(threading.current_thread()), "Lookup")
        assert seen == [threading.current_thread()]

    def test_connect_error_is_unavailable(self):
        def boom():
            raise httpx.ConnectError("name or service not known")

        with pytest.raises(StoreUnavailable):
            call_remote(boom, "Lookup")

    def test_api_error_is_remote_error(self):
        def boom():
            raise APIError({"message": "permission denied", "code": "42501", "hint": None, "details": None})

        with pytest.raises(RemoteError, match="permission denied") as exc:
            call_remote(boom, "Create trip")
        assert not isinstance(exc.value, (StoreUnavailable, RemoteTimeout))

    def test_other_failures_wrapped(self):
        def boom():
            raise ValueError("bad payload")

        with pytest.raises(RemoteError, match="bad payload"):
            call_remote(boom, "Create trip")


class TestTripStore:

    def test_create_sends_open_trip(self):
        client = FakeSupabase(data=[TRIP_ROW])
        store = SupabaseTripStore(client, table="trips")

        record = store.create("lx1abc", "1000", datetime(2025, 3, 14, 8, tzinfo=timezone.utc))

        q = client.last
        assert q.table == "trips"
        (name, args, _), = q.calls
        assert name == "insert"
        assert args[0] == {
            "id": "lx1abc",
            "starting_odometer": "1000",
            "start_timestamp": "2025-03-14T08:00:00+00:00",
            "ending_odometer": None,
            "end_timestamp": None,
            "earnings": None,
        }
        assert record.id == "lx1abc"
        assert not record.is_closed
        assert record.created_at is not None

    def test_create_without_row_is_error(self):
        with pytest.raises(RemoteError):
            SupabaseTripStore(FakeSupabase(data=[])).create("x", "1", datetime.now(timezone.utc))

    def test_get(self):
        client = FakeSupabase(data=[dict(TRIP_ROW, end_timestamp="2025-03-14T09:00:00Z", ending_odometer="1040")])

        record = SupabaseTripStore(client).get("lx1abc")

        assert [c[0] for c in client.last.calls] == ["select", "eq", "limit"]
        assert client.last.calls[1][1] == ("id", "lx1abc")
        assert record.is_closed
        assert record.distance() == Decimal("40")

    def test_get_missing_is_not_found(self):
        with pytest.raises(RecordNotFound):
            SupabaseTripStore(FakeSupabase(data=[])).get("nope")

    def test_get_network_error_is_not_not_found(self):
        client = FakeSupabase(error=httpx.ConnectError("offline"))
        with pytest.raises(StoreUnavailable):
            SupabaseTripStore(client).get("lx1abc")

    def test_update_partial(self):
        client = FakeSupabase(data=[dict(TRIP_ROW, ending_odometer="1050", end_timestamp="2025-03-14T09:00:00+00:00", earnings=42.5)])

        record = SupabaseTripStore(client).update_partial("lx1abc", {"ending_odometer": "1050"})

        assert client.last.calls[0] == ("update", ({"ending_odometer": "1050"},), {})
        assert client.last.calls[1] == ("eq", ("id", "lx1abc"), {})
        assert record.earnings == Decimal("42.5")

    def test_update_requires_changes(self):
        with pytest.raises(ValueError):
            SupabaseTripStore(FakeSupabase()).update_partial("lx1abc", {})

    def test_list_all_newest_first(self):
        client = FakeSupabase(data=[TRIP_ROW])
        records = SupabaseTripStore(client).list_all()

        assert ("order", ("start_timestamp",), {"desc": True}) in client.last.calls
        assert [r.id for r in records] == ["lx1abc"]


RECEIPT_ROW = {
    "id": "receipt_1_abc",
    "receipt_date": "2025-03-10",
    "category": "Fuel",
    "vendor": "Shell",
    "description": None,
    "subtotal": 100.0,
    "gst": 10.0,
    "total_amount": 110.0,
    "receipt_image_url": None,
    "created_at": "2025-03-10T10:00:00+00:00",
}


class TestReceiptStore:

    def test_create_payload(self):
        client = FakeSupabase(data=[RECEIPT_ROW])
        record = ReceiptRecord(
            id="receipt_1_abc",
            receipt_date=date(2025, 3, 10),
            category=ReceiptCategory.FUEL,
            vendor="Shell",
            subtotal=Decimal("100.00"),
            gst=Decimal("10.00"),
            total_amount=Decimal("110.00"),
        )

        saved = SupabaseReceiptStore(client).create(record)

        payload = client.last.calls[0][1][0]
        assert payload["receipt_date"] == "2025-03-10"
        assert payload["category"] == "Fuel"
        assert payload["total_amount"] == 110.0
        assert saved.total_amount == Decimal("110.0")

    def test_query_filters(self):
        client = FakeSupabase(data=[RECEIPT_ROW])
        options = ReceiptQuery(
            search="50%",
            category=ReceiptCategory.FUEL,
            start_date=date(2025, 1, 1),
            end_date=date(2025, 3, 31),
            min_amount=Decimal("10"),
            max_amount=Decimal("200"),
        )

        results = SupabaseReceiptStore(client).query(options)

        calls = client.last.calls
        assert ("or_", ("vendor.ilike.%50\\%%,description.ilike.%50\\%%,category.ilike.%50\\%%",), {}) in calls
        assert ("eq", ("category", "Fuel"), {}) in calls
        assert ("gte", ("receipt_date", "2025-01-01"), {}) in calls
        assert ("lte", ("receipt_date", "2025-03-31"), {}) in calls
        assert ("gte", ("total_amount", 10.0), {}) in calls
        assert ("lte", ("total_amount", 200.0), {}) in calls
        assert results[0].category is ReceiptCategory.FUEL

    def test_list_all_has_no_filters(self):
        client = FakeSupabase(data=[])
        SupabaseReceiptStore(client).list_all()
        assert [c[0] for c in client.last.calls] == ["select", "order"]

    def test_set_image_url_missing_receipt(self):
        with pytest.raises(RecordNotFound):
            SupabaseReceiptStore(FakeSupabase(data=[])).set_image_url("nope", "https://x")


class FakeBucket:
    def __init__(self, signed=None, error=None):
        self.uploads = []
        self.signed = signed
        self.error = error

    def upload(self, path, file, file_options):
        if self.error:
            raise self.error
        self.uploads.append((path, file, file_options))
        return SimpleNamespace(path=path)

    def create_signed_url(self, path, expires_in):
        return {"signedURL": self.signed} if self.signed else {}

    def get_public_url(self, path):
        return f"https://public.example.test/{path}"


class TestPhotoStore:

    def _connection(self, bucket):
        storage = SimpleNamespace(from_=lambda name: bucket)
        return SimpleNamespace(storage=storage)

    def test_put(self):
        bucket = FakeBucket()
        store = SupabasePhotoStore(self._connection(bucket), "trips_photos")

        assert store.put("start/abc_1.png", b"img", "image/png") == "start/abc_1.png"
        (path, data, options), = bucket.uploads
        assert options["content-type"] == "image/png"
        assert options["upsert"] == "false"

    def test_put_failure_is_remote_error(self):
        store = SupabasePhotoStore(self._connection(FakeBucket(error=RuntimeError("bucket not found"))))
        with pytest.raises(RemoteError, match="bucket not found"):
            store.put("start/abc_1.jpg", b"img", "image/jpeg")

    def test_signed_url_with_public_fallback(self):
        assert SupabasePhotoStore(self._connection(FakeBucket(signed="https://signed"))).signed_url("p") == "https://signed"
        assert SupabasePhotoStore(self._connection(FakeBucket())).signed_url("p") == "https://public.example.test/p"
