from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Dict, Optional, Union

from dateutil.parser import isoparse

from errors import ValidationError


# -----------------------------
# Trip session (local working state)
# -----------------------------

@dataclass(frozen=True)
class IdleTrip:
    """No trip is being tracked."""
    tag: ClassVar[str] = "Idle"


@dataclass(frozen=True)
class ActiveTrip:
    """
    A started trip that has not been ended yet.

    The *_draft fields and end_photo_ref hold end-form input that has not been
    committed, so a failed end can be retried without retyping.
    """
    trip_id: str
    starting_odometer: str
    start_timestamp: datetime
    earnings_draft: Optional[str] = None
    ending_odometer_draft: Optional[str] = None
    end_photo_ref: Optional[Path] = None

    tag: ClassVar[str] = "Active"


@dataclass(frozen=True)
class EndingTrip:
    """End confirmed; photo upload and remote update are in flight."""
    trip: ActiveTrip
    ending_odometer: str
    end_timestamp: datetime
    earnings: Optional[Decimal]

    tag: ClassVar[str] = "Ending"


TripSession = Union[IdleTrip, ActiveTrip, EndingTrip]

IDLE = IdleTrip()


# -----------------------------
# Remote records
# -----------------------------

def parse_timestamp(value: Any) -> Optional[datetime]:
    """ISO string (or datetime) -> datetime. Empty string and None mean absent."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value
    return isoparse(str(value))


def parse_odometer(value: Optional[str]) -> Decimal:
    """A finite, non-negative reading. Anything else is a ValidationError."""
    text = (value or "").strip()
    if not text:
        raise ValidationError("Please enter a valid odometer reading.")
    try:
        reading = Decimal(text)
    except InvalidOperation as e:
        raise ValidationError("Please enter a valid odometer reading.") from e
    if not reading.is_finite() or reading < 0:
        raise ValidationError("Please enter a valid odometer reading.")
    return reading


def _decimal_or_none(value: Any) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    return Decimal(str(value))


def _text_or_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


@dataclass(frozen=True)
class RemoteTripRecord:
    id: str
    starting_odometer: str
    start_timestamp: datetime
    ending_odometer: Optional[str] = None
    end_timestamp: Optional[datetime] = None
    earnings: Optional[Decimal] = None
    created_at: Optional[datetime] = None

    @property
    def is_closed(self) -> bool:
        return self.end_timestamp is not None

    @property
    def is_complete(self) -> bool:
        """Closed and carrying an ending reading (what dashboards count)."""
        return self.is_closed and self.ending_odometer is not None

    def distance(self) -> Optional[Decimal]:
        if self.ending_odometer is None:
            return None
        return Decimal(self.ending_odometer) - Decimal(self.starting_odometer)

    def duration_hours(self) -> Optional[float]:
        if self.end_timestamp is None:
            return None
        return (self.end_timestamp - self.start_timestamp).total_seconds() / 3600.0


def row_to_trip_record(row: Dict[str, Any]) -> RemoteTripRecord:
    return RemoteTripRecord(
        id=str(row["id"]),
        starting_odometer=str(row["starting_odometer"]),
        start_timestamp=parse_timestamp(row["start_timestamp"]),
        ending_odometer=_text_or_none(row.get("ending_odometer")),
        end_timestamp=parse_timestamp(row.get("end_timestamp")),
        earnings=_decimal_or_none(row.get("earnings")),
        created_at=parse_timestamp(row.get("created_at")),
    )


# -----------------------------
# Receipts
# -----------------------------

class ReceiptCategory(str, Enum):
    FUEL = "Fuel"
    CAR_SERVICE = "Car Service"
    CAR_WASH = "Car Wash"
    PARKING = "Parking"
    SUPPLIES = "Supplies"
    FOOD_MEALS = "Food/Meals"
    TOOLS = "Tools"
    MAINTENANCE = "Maintenance"


RECEIPT_CATEGORIES = [c.value for c in ReceiptCategory]


@dataclass(frozen=True)
class ReceiptRecord:
    id: str
    receipt_date: date
    category: ReceiptCategory
    vendor: str
    subtotal: Decimal
    gst: Decimal
    total_amount: Decimal
    description: Optional[str] = None
    receipt_image_url: Optional[str] = None
    created_at: Optional[datetime] = None


def row_to_receipt_record(row: Dict[str, Any]) -> ReceiptRecord:
    return ReceiptRecord(
        id=str(row["id"]),
        receipt_date=date.fromisoformat(str(row["receipt_date"])[:10]),
        category=ReceiptCategory(row["category"]),
        vendor=str(row["vendor"]),
        subtotal=Decimal(str(row["subtotal"])),
        gst=Decimal(str(row["gst"])),
        total_amount=Decimal(str(row["total_amount"])),
        description=_text_or_none(row.get("description")),
        receipt_image_url=row.get("receipt_image_url") or None,
        created_at=parse_timestamp(row.get("created_at")),
    )
