from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, TypeVar

import httpx
from postgrest.exceptions import APIError
from supabase import Client, ClientOptions, create_client

from errors import RecordNotFound, RemoteError, RemoteTimeout, StoreUnavailable
from models import (
    ReceiptCategory,
    ReceiptRecord,
    RemoteTripRecord,
    row_to_receipt_record,
    row_to_trip_record,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_TIMEOUT_SECONDS = 30.0


def connect(url: str, key: str, timeout: float = DEFAULT_TIMEOUT_SECONDS) -> Client:
    """
    Supabase client whose table and storage requests give up after `timeout`
    seconds. The HTTP request itself is cut off, so nothing is left running
    once a RemoteTimeout has been raised.
    """
    if not url or not key:
        raise ValueError("SUPABASE_URL and SUPABASE_KEY must be configured.")
    options = ClientOptions(
        postgrest_client_timeout=httpx.Timeout(timeout),
        # storage only takes whole seconds
        storage_client_timeout=max(1, math.ceil(timeout)),
    )
    logger.info("Connecting to Supabase at %s (timeout %gs)", url, timeout)
    return create_client(url, key, options=options)


def _extract_data(res: Any) -> List[Dict[str, Any]]:
    """Rows from an APIResponse (`.data`) or a plain {"data": [...]} dict."""
    if res is None:
        return []
    if isinstance(res, dict):
        return res.get("data", []) or []
    data = getattr(res, "data", None)
    return data or []


def call_remote(fn: Callable[[], T], what: str) -> T:
    """
    Run one remote call, mapping every failure onto the RemoteError family.
    """
    try:
        return fn()
    except httpx.TimeoutException as e:
        raise RemoteTimeout(f"{what} timed out.") from e
    except (httpx.TransportError, ConnectionError, OSError) as e:
        raise StoreUnavailable(f"{what} failed: could not reach the server ({e}).") from e
    except APIError as e:
        message = getattr(e, "message", None) or str(e)
        raise RemoteError(f"{what} was rejected: {message}") from e
    except RemoteError:
        raise
    except Exception as e:
        raise RemoteError(f"{what} failed: {e}") from e


def _iso(value: datetime) -> str:
    return value.isoformat()


# -----------------------------
# Trips
# -----------------------------

class SupabaseTripStore:
    """
    Remote Trip Store backed by one Supabase table.
    """

    def __init__(self, supabase, table: str = "trips"):
        self._supabase = supabase
        self._table = table

    def _query(self):
        return self._supabase.table(self._table)

    def create(self, trip_id: str, starting_odometer: str, start_timestamp: datetime) -> RemoteTripRecord:
        payload: Dict[str, Any] = {
            "id": trip_id,
            "starting_odometer": starting_odometer,
            "start_timestamp": _iso(start_timestamp),
            # filled in when the trip ends
            "ending_odometer": None,
            "end_timestamp": None,
            "earnings": None,
        }
        logger.info("Creating trip %s", trip_id)
        logger.debug("Create trip payload: %s", payload)

        res = call_remote(
            lambda: self._query().insert(payload).execute(),
            "Create trip",
        )
        data = _extract_data(res)
        if not data:
            raise RemoteError("Create trip returned no row.")
        return row_to_trip_record(data[0])

    def get(self, trip_id: str) -> RemoteTripRecord:
        res = call_remote(
            lambda: self._query().select("*").eq("id", trip_id).limit(1).execute(),
            "Trip lookup",
        )
        data = _extract_data(res)
        if not data:
            raise RecordNotFound(f"Trip {trip_id} does not exist.")
        return row_to_trip_record(data[0])

    def update_partial(self, trip_id: str, changes: Dict[str, Any]) -> RemoteTripRecord:
        if not changes:
            raise ValueError("changes must not be empty.")

        logger.info("Updating trip %s (%s)", trip_id, ", ".join(sorted(changes)))
        res = call_remote(
            lambda: self._query().update(changes).eq("id", trip_id).execute(),
            "Update trip",
        )
        data = _extract_data(res)
        if not data:
            raise RecordNotFound(f"Trip {trip_id} does not exist.")
        return row_to_trip_record(data[0])

    def list_all(self) -> List[RemoteTripRecord]:
        """
        All trips, newest start first.
        """
        res = call_remote(
            lambda: self._query().select("*").order("start_timestamp", desc=True).execute(),
            "List trips",
        )
        rows = _extract_data(res)
        logger.debug("Fetched %d trips", len(rows))
        return [row_to_trip_record(r) for r in rows]


# -----------------------------
# Receipts
# -----------------------------

@dataclass(frozen=True)
class ReceiptQuery:
    search: Optional[str] = None
    category: Optional[ReceiptCategory] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    min_amount: Optional[Decimal] = None
    max_amount: Optional[Decimal] = None


def _search_pattern(term: str) -> str:
    escaped = term.replace("%", "\\%")
    return f"%{escaped}%"


class SupabaseReceiptStore:
    def __init__(self, supabase, table: str = "receipts"):
        self._supabase = supabase
        self._table = table

    def _query(self):
        return self._supabase.table(self._table)

    def create(self, record: ReceiptRecord) -> ReceiptRecord:
        payload: Dict[str, Any] = {
            "id": record.id,
            "receipt_date": record.receipt_date.isoformat(),
            "category": record.category.value,
            "vendor": record.vendor,
            "description": record.description,
            "subtotal": float(record.subtotal),
            "gst": float(record.gst),
            "total_amount": float(record.total_amount),
            "receipt_image_url": record.receipt_image_url,
        }
        logger.info("Creating receipt %s", record.id)

        res = call_remote(
            lambda: self._query().insert(payload).execute(),
            "Create receipt",
        )
        data = _extract_data(res)
        if not data:
            raise RemoteError("Create receipt returned no row.")
        return row_to_receipt_record(data[0])

    def get(self, receipt_id: str) -> ReceiptRecord:
        res = call_remote(
            lambda: self._query().select("*").eq("id", receipt_id).limit(1).execute(),
            "Receipt lookup",
        )
        data = _extract_data(res)
        if not data:
            raise RecordNotFound(f"Receipt {receipt_id} does not exist.")
        return row_to_receipt_record(data[0])

    def list_all(self) -> List[ReceiptRecord]:
        return self.query(ReceiptQuery())

    def query(self, options: ReceiptQuery) -> List[ReceiptRecord]:
        """
        Filtered receipts, newest receipt_date first.
        """

        def run():
            q = self._query().select("*").order("receipt_date", desc=True)
            if options.search:
                term = _search_pattern(options.search.strip())
                q = q.or_(f"vendor.ilike.{term},description.ilike.{term},category.ilike.{term}")
            if options.category is not None:
                q = q.eq("category", options.category.value)
            if options.start_date is not None:
                q = q.gte("receipt_date", options.start_date.isoformat())
            if options.end_date is not None:
                q = q.lte("receipt_date", options.end_date.isoformat())
            if options.min_amount is not None:
                q = q.gte("total_amount", float(options.min_amount))
            if options.max_amount is not None:
                q = q.lte("total_amount", float(options.max_amount))
            return q.execute()

        res = call_remote(run, "List receipts")
        return [row_to_receipt_record(r) for r in _extract_data(res)]

    def set_image_url(self, receipt_id: str, url: Optional[str]) -> None:
        res = call_remote(
            lambda: self._query().update({"receipt_image_url": url}).eq("id", receipt_id).execute(),
            "Update receipt photo",
        )
        if not _extract_data(res):
            raise RecordNotFound(f"Receipt {receipt_id} does not exist.")
