from __future__ import annotations
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List

from models import ReceiptRecord, RemoteTripRecord

WEEK = timedelta(days=7)
MONTH = timedelta(days=30)


def _safe_div(numerator: float, denominator: float) -> float:
    return numerator / denominator if denominator else 0.0


def completed_trips(trips: List[RemoteTripRecord]) -> List[RemoteTripRecord]:
    """Trips with both an end timestamp and an ending odometer."""
    return [t for t in trips if t.is_complete]


def _in_window(ts: datetime, start: datetime, end: datetime) -> bool:
    return start <= ts <= end


def _earnings(trips: List[RemoteTripRecord]) -> Decimal:
    return sum((t.earnings or Decimal("0") for t in trips), Decimal("0"))


@dataclass
class TripStats:
    total_trips: int = 0
    total_distance: float = 0.0
    avg_distance: float = 0.0
    longest_trip: float = 0.0
    shortest_trip: float = 0.0
    total_hours: float = 0.0
    avg_hours: float = 0.0
    this_week_trips: int = 0
    this_month_trips: int = 0
    current_odometer: str = "0"
    avg_speed: float = 0.0
    total_earnings: Decimal = Decimal("0")
    avg_earnings_per_trip: Decimal = Decimal("0")
    earnings_per_hour: Decimal = Decimal("0")
    earnings_per_km: Decimal = Decimal("0")
    today_earnings: Decimal = Decimal("0")
    week_earnings: Decimal = Decimal("0")
    month_earnings: Decimal = Decimal("0")


def current_odometer(trips: List[RemoteTripRecord]) -> str:
    """
    Latest reading from the newest trip (trips are newest first):
    its ending odometer if it has a real one, else its starting odometer.
    """
    if not trips:
        return "0"
    latest = trips[0]
    if latest.ending_odometer and latest.ending_odometer != "0":
        return latest.ending_odometer
    return latest.starting_odometer or "0"


def summarize_trips(trips: List[RemoteTripRecord], now: datetime) -> TripStats:
    """
    Dashboard KPIs over completed trips.

    - week / month windows are the last 7 / 30 days up to `now`
    - "today" is the calendar day of `now` in its own timezone
    - ratios with a zero denominator are reported as 0
    """
    done = completed_trips(trips)
    if not done:
        return TripStats(current_odometer=current_odometer(trips))

    distances = [float(t.distance()) for t in done]
    total_distance = sum(distances)
    total_hours = sum(t.duration_hours() for t in done)
    total_trips = len(done)

    week_start = now - WEEK
    month_start = now - MONTH
    week = [t for t in done if _in_window(t.start_timestamp, week_start, now)]
    month = [t for t in done if _in_window(t.start_timestamp, month_start, now)]
    today = [t for t in done if t.start_timestamp.astimezone(now.tzinfo).date() == now.date()]

    total_earnings = _earnings(done)

    def per(amount: Decimal, denominator: float) -> Decimal:
        if not denominator:
            return Decimal("0")
        return amount / Decimal(str(denominator))

    return TripStats(
        total_trips=total_trips,
        total_distance=total_distance,
        avg_distance=total_distance / total_trips,
        longest_trip=max(distances),
        shortest_trip=min(distances),
        total_hours=total_hours,
        avg_hours=total_hours / total_trips,
        this_week_trips=len(week),
        this_month_trips=len(month),
        current_odometer=current_odometer(trips),
        avg_speed=_safe_div(total_distance, total_hours),
        total_earnings=total_earnings,
        avg_earnings_per_trip=per(total_earnings, total_trips),
        earnings_per_hour=per(total_earnings, total_hours),
        earnings_per_km=per(total_earnings, total_distance),
        today_earnings=_earnings(today),
        week_earnings=_earnings(week),
        month_earnings=_earnings(month),
    )


@dataclass
class ReceiptSummary:
    count: int = 0
    subtotal: Decimal = Decimal("0")
    gst: Decimal = Decimal("0")
    total: Decimal = Decimal("0")
    by_category: Dict[str, Decimal] = field(default_factory=dict)


def summarize_receipts(receipts: List[ReceiptRecord]) -> ReceiptSummary:
    by_category: Dict[str, Decimal] = defaultdict(lambda: Decimal("0"))
    summary = ReceiptSummary()
    for r in receipts:
        summary.count += 1
        summary.subtotal += r.subtotal
        summary.gst += r.gst
        summary.total += r.total_amount
        by_category[r.category.value] += r.total_amount
    summary.by_category = dict(by_category)
    return summary
