from __future__ import annotations

import logging
import re
import secrets
import string
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Callable, List, Literal, Optional, Protocol

from dateutil.relativedelta import relativedelta

from db import ReceiptQuery
from errors import RemoteError, RemoteTimeout, ValidationError
from models import ReceiptCategory, ReceiptRecord
from uploads import RetryPrompt, upload_photo

logger = logging.getLogger(__name__)

AmountMode = Literal["total", "subtotal"]
ReceiptOutcome = Literal["SAVED", "SAVED_WITHOUT_PHOTO"]

CENT = Decimal("0.01")
GST_RATE = Decimal("0.10")
GST_MULTIPLIER = Decimal("1.1")
GST_DIVISOR = Decimal("11")
MAX_AMOUNT = Decimal("10000000")
MAX_VENDOR_LENGTH = 100
MAX_DESCRIPTION_LENGTH = 500

_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_BASE36 = string.digits + string.ascii_lowercase


def round_cents(value: Decimal) -> Decimal:
    """Round half away from zero to 2 decimal places."""
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


# -----------------------------
# Amount entry
# -----------------------------

@dataclass(frozen=True)
class ReceiptAmounts:
    subtotal: Decimal
    gst: Decimal
    total: Decimal


def resolve_amounts(subtotal: Optional[Decimal] = None, total: Optional[Decimal] = None) -> ReceiptAmounts:
    """
    GST-inclusive total wins when both are given:
    - total entered:    GST = total / 11, subtotal = total - GST
    - subtotal entered: GST = subtotal * 0.10, total = subtotal + GST
    """
    if total is not None:
        total = round_cents(Decimal(total))
        gst = round_cents(total / GST_DIVISOR)
        return ReceiptAmounts(subtotal=round_cents(total - gst), gst=gst, total=total)

    if subtotal is not None:
        subtotal = round_cents(Decimal(subtotal))
        gst = round_cents(subtotal * GST_RATE)
        return ReceiptAmounts(subtotal=subtotal, gst=gst, total=round_cents(subtotal + gst))

    raise ValidationError("Either subtotal or total amount must be provided for a receipt.")


def sanitize_amount(value: str) -> str:
    """
    Keep digits and the first decimal point, with at most 2 decimals.
    """
    cleaned = re.sub(r"[^\d.]", "", value.strip())
    parts = cleaned.split(".")
    if len(parts) > 2:
        cleaned = parts[0] + "." + "".join(parts[1:])
        parts = cleaned.split(".")
    if len(parts) == 2 and len(parts[1]) > 2:
        cleaned = parts[0] + "." + parts[1][:2]
    return cleaned


def parse_amount(value: Optional[str]) -> Optional[Decimal]:
    text = sanitize_amount(value or "")
    if not text or text == ".":
        return None
    try:
        return Decimal(text)
    except InvalidOperation:
        return None


def switch_amount_mode(value: str, to_mode: AmountMode) -> str:
    """
    Convert the figure typed in the other mode so the underlying amount is
    kept: total -> subtotal divides by 1.1, subtotal -> total multiplies.
    Blank or non-positive input converts to "".
    """
    amount = parse_amount(value)
    if amount is None or amount <= 0:
        return ""
    converted = amount * GST_MULTIPLIER if to_mode == "total" else amount / GST_MULTIPLIER
    return f"{round_cents(converted):.2f}"


# -----------------------------
# Validation
# -----------------------------

@dataclass(frozen=True)
class ReceiptDraft:
    vendor: str
    category: ReceiptCategory
    receipt_date: date
    amounts: ReceiptAmounts
    description: Optional[str] = None


def _parse_receipt_date(value: str | date, today: date) -> date:
    if isinstance(value, date):
        parsed = value
    else:
        text = value.strip()
        if not _DATE_RE.match(text):
            raise ValidationError("Please enter a valid date in YYYY-MM-DD format.")
        try:
            parsed = date.fromisoformat(text)
        except ValueError as e:
            raise ValidationError("Please enter a valid date in YYYY-MM-DD format.") from e

    if parsed > today + relativedelta(years=1):
        raise ValidationError("Receipt date cannot be more than one year in the future.")
    return parsed


def validate_receipt(
    vendor: str,
    category: Optional[str],
    receipt_date: str | date,
    amount: Optional[str],
    mode: AmountMode = "total",
    description: str = "",
    photo_ref: Optional[Path] = None,
    today: Optional[date] = None,
) -> ReceiptDraft:
    if photo_ref is None:
        raise ValidationError("Please capture a receipt photo first.")

    vendor = (vendor or "").strip()
    if not vendor:
        raise ValidationError("Please enter a vendor name.")
    if len(vendor) > MAX_VENDOR_LENGTH:
        raise ValidationError(f"Vendor name must be {MAX_VENDOR_LENGTH} characters or less.")

    if not category:
        raise ValidationError("Please select a receipt category.")
    try:
        parsed_category = ReceiptCategory(category)
    except ValueError as e:
        raise ValidationError(f"Unknown receipt category: {category}.") from e

    parsed_date = _parse_receipt_date(receipt_date, today or date.today())

    description = (description or "").strip()
    if len(description) > MAX_DESCRIPTION_LENGTH:
        raise ValidationError(f"Description must be {MAX_DESCRIPTION_LENGTH} characters or less.")

    value = parse_amount(amount)
    if value is None or value <= 0 or value > MAX_AMOUNT:
        raise ValidationError("Please enter a valid total or subtotal amount.")

    amounts = resolve_amounts(total=value) if mode == "total" else resolve_amounts(subtotal=value)

    return ReceiptDraft(
        vendor=vendor,
        category=parsed_category,
        receipt_date=parsed_date,
        amounts=amounts,
        description=description or None,
    )


# -----------------------------
# Service
# -----------------------------

class ReceiptStore(Protocol):
    def create(self, record: ReceiptRecord) -> ReceiptRecord: ...

    def get(self, receipt_id: str) -> ReceiptRecord: ...

    def query(self, options: ReceiptQuery) -> List[ReceiptRecord]: ...

    def set_image_url(self, receipt_id: str, url: Optional[str]) -> None: ...


class ReceiptPhotoStore(Protocol):
    def put(self, path: str, data: bytes, content_type: str) -> str: ...

    def signed_url(self, path: str) -> Optional[str]: ...


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_receipt_id(now: Optional[datetime] = None) -> str:
    now = now or _utcnow()
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"receipt_{int(now.timestamp() * 1000)}_{suffix}"


class ReceiptService:
    """
    Saves receipts: the record first, then its photo, then the photo URL.
    A photo that never makes it leaves the receipt saved without one.
    """

    def __init__(
        self,
        receipts: ReceiptStore,
        photos: ReceiptPhotoStore,
        prompt: RetryPrompt,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self._receipts = receipts
        self._photos = photos
        self._prompt = prompt
        self._clock = clock

    def create_receipt(self, draft: ReceiptDraft, photo_ref: Path) -> ReceiptOutcome:
        receipt_id = generate_receipt_id(self._clock())
        record = ReceiptRecord(
            id=receipt_id,
            receipt_date=draft.receipt_date,
            category=draft.category,
            vendor=draft.vendor,
            description=draft.description,
            subtotal=draft.amounts.subtotal,
            gst=draft.amounts.gst,
            total_amount=draft.amounts.total,
        )

        try:
            self._receipts.create(record)
        except RemoteTimeout as e:
            if not self._created_despite_timeout(receipt_id):
                logger.error("Timed out creating receipt %s: %s", receipt_id, e)
                raise RemoteTimeout("Request timed out. Please check your connection and try again.") from e
        except RemoteError as e:
            logger.error("Error creating receipt %s: %s", receipt_id, e)
            raise RemoteError("Failed to create receipt. Please check your connection and try again.") from e

        path = upload_photo(self._photos, receipt_id, "receipts", photo_ref, self._prompt, self._clock)
        if path is None:
            logger.warning("Receipt %s saved without a photo", receipt_id)
            return "SAVED_WITHOUT_PHOTO"

        try:
            self._receipts.set_image_url(receipt_id, self._photos.signed_url(path))
        except RemoteError as e:
            logger.warning("Receipt %s photo uploaded but its URL could not be saved: %s", receipt_id, e)
            return "SAVED_WITHOUT_PHOTO"

        logger.info("Receipt %s saved (%s, total %s)", receipt_id, draft.vendor, draft.amounts.total)
        return "SAVED"

    def _created_despite_timeout(self, receipt_id: str) -> bool:
        try:
            self._receipts.get(receipt_id)
        except RemoteError as e:
            logger.warning("Could not confirm receipt %s after a timeout: %s", receipt_id, e)
            return False
        logger.warning("Create of receipt %s timed out but the row was written", receipt_id)
        return True

    def list_receipts(self, options: Optional[ReceiptQuery] = None) -> List[ReceiptRecord]:
        return self._receipts.query(options or ReceiptQuery())
