import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

import streamlit as st

from calculator import summarize_receipts, summarize_trips
from captures import CaptureFolder
from config import configure_logging, load_settings
from db import ReceiptQuery, SupabaseReceiptStore, SupabaseTripStore, connect
from errors import CacheError, TripTrackerError
from models import RECEIPT_CATEGORIES, ActiveTrip, EndingTrip, ReceiptCategory
from photo_store import SupabasePhotoStore
from receipts import ReceiptService, switch_amount_mode, validate_receipt
from trip_cache import LocalTripCache
from trips import TripController


def read_secrets() -> Dict[str, Any]:
    try:
        return dict(st.secrets)
    except FileNotFoundError:
        # no secrets.toml: environment variables only
        return {}


settings = load_settings(read_secrets())
configure_logging(settings.log_level)
logger = logging.getLogger("streamlit_app")


def format_timestamp(ts: Optional[datetime]) -> str:
    """Local time, day first."""
    if ts is None:
        return "—"
    return ts.astimezone().strftime("%a %d/%m/%Y %H:%M")


# -------------------------
# PAGE CONFIG
# -------------------------
st.set_page_config(page_title="Trip Tracker", page_icon="🚗")

st.markdown(
    """
    <style>
    div[data-testid="InputInstructions"] {
        display: none !important;
    }

    div.block-container {
        max-width: 880px;
        padding-top: 2.2rem;
    }

    div[data-testid="stButton"] > button {
        border-radius: 999px !important;
        padding: 0.65rem 1rem !important;
    }
    </style>
    """,
    unsafe_allow_html=True,
)


# -------------------------
# Upload retry prompt
# -------------------------
# A Streamlit run cannot wait for a click, so a failed upload is recorded and
# the run cancels; the Retry button re-submits the same inputs on the next run.
def record_upload_failure(phase: str, error: Exception) -> bool:
    st.session_state["upload_failure"] = {"phase": phase, "error": str(error)}
    return False


# -------------------------
# SUPABASE CONNECTION + TRIP STATE (once per process)
# -------------------------
# Every browser session shares the one trip cache file, so they must also
# share the one controller that owns it.
@st.cache_resource
def get_supabase():
    return connect(settings.supabase_url, settings.supabase_key, settings.request_timeout_seconds)


@st.cache_resource
def get_captures() -> CaptureFolder:
    captures = CaptureFolder(settings.capture_dir)
    captures.clear()
    return captures


@st.cache_resource
def get_photo_store() -> SupabasePhotoStore:
    return SupabasePhotoStore(get_supabase(), settings.photo_bucket, settings.signed_url_ttl_seconds)


@st.cache_resource
def get_trip_store() -> SupabaseTripStore:
    return SupabaseTripStore(get_supabase(), settings.trips_table)


@st.cache_resource
def get_trip_controller() -> TripController:
    controller = TripController(
        get_trip_store(),
        get_photo_store(),
        LocalTripCache(settings.cache_path),
        prompt=record_upload_failure,
    )
    controller.initialize()
    return controller


@st.cache_resource
def get_receipt_service() -> ReceiptService:
    store = SupabaseReceiptStore(get_supabase(), settings.receipts_table)
    return ReceiptService(store, get_photo_store(), prompt=record_upload_failure)


def show_error(e: Exception) -> None:
    st.error(str(e) if isinstance(e, TripTrackerError) else "An unexpected error occurred. Please try again.")
    if settings.show_dev_details:
        with st.expander("Details (developer)"):
            st.exception(e)


try:
    get_supabase()
except Exception as e:
    logger.exception("Could not create the Supabase client")
    st.error("Supabase is not configured. Set SUPABASE_URL and SUPABASE_KEY in secrets or the environment.")
    if settings.show_dev_details:
        st.exception(e)
    st.stop()

with st.spinner("Checking for a trip in progress…"):
    controller = get_trip_controller()
trip_store = get_trip_store()
receipt_service = get_receipt_service()
captures = get_captures()

st.title("🚗 Trip Tracker")
st.caption("Log trips with odometer photos, track earnings and expenses.")

if "flash" in st.session_state:
    kind, msg = st.session_state.pop("flash")
    getattr(st, kind)(msg)


# -------------------------
# Captures
# -------------------------
def save_capture(upload, phase: str) -> Optional[Path]:
    """Write a camera capture to disk so it can be re-read on retry."""
    if upload is None:
        return None
    return captures.save(upload.getvalue(), phase, upload.type)


def release_capture(*paths: Optional[Path]) -> None:
    """Delete captures no pending retry or kept end-trip input still refers to."""
    keep = [p for p in st.session_state.get("pending_action", ()) if isinstance(p, Path)]
    active = controller.active_trip
    if active is not None:
        keep.append(active.end_photo_ref)
    for path in paths:
        captures.discard(path, keep=keep)


# -------------------------
# Actions (shared by forms and the Retry button)
# -------------------------
def run_start(odometer: str, photo: Optional[Path]) -> None:
    st.session_state["pending_action"] = ("start", odometer, photo)
    try:
        outcome = controller.start_trip(odometer, photo)
    except CacheError as e:
        st.session_state.pop("pending_action", None)
        release_capture(photo)
        st.session_state["flash"] = ("warning", str(e))
        st.rerun()
    except TripTrackerError as e:
        st.session_state.pop("pending_action", None)
        release_capture(photo)
        show_error(e)
        return

    if outcome == "STARTED":
        st.session_state.pop("pending_action", None)
        release_capture(photo)
        trip = controller.active_trip
        if trip is not None:
            st.session_state["flash"] = (
                "success",
                f"Trip started. Trip ID: {trip.trip_id} · Odometer: {trip.starting_odometer} · "
                f"{format_timestamp(trip.start_timestamp)}",
            )
    # CANCELLED: the capture stays for Retry; rerun so the prompt is shown
    st.rerun()


def run_end(odometer: str, earnings: str, photo: Optional[Path]) -> None:
    st.session_state["pending_action"] = ("end", odometer, earnings, photo)
    active = controller.active_trip
    previous = active.end_photo_ref if active is not None else None
    try:
        outcome = controller.end_trip(odometer, earnings, photo)
    except TripTrackerError as e:
        # a failed update keeps the photo on the trip for resubmission
        st.session_state.pop("pending_action", None)
        release_capture(photo, previous)
        show_error(e)
        return

    if outcome == "ENDED":
        st.session_state.pop("pending_action", None)
        release_capture(photo, previous)
        record = controller.last_completed
        if record is not None:
            earned = f" · Earnings: ${record.earnings:.2f}" if record.earnings is not None else ""
            st.session_state["flash"] = ("success", f"Trip ended. Distance: {record.distance()} km{earned}")
    st.rerun()


def run_receipt(draft, photo: Path) -> None:
    try:
        outcome = receipt_service.create_receipt(draft, photo)
    except TripTrackerError as e:
        show_error(e)
        return
    finally:
        # no retry for receipts, so the capture is done with either way
        captures.discard(photo)

    # the receipt row exists either way; a photo failure is reported, not retried
    st.session_state.pop("upload_failure", None)
    if outcome == "SAVED":
        st.session_state["flash"] = (
            "success",
            f"Receipt saved. {draft.vendor} · {draft.category.value} · "
            f"Total ${draft.amounts.total} (GST ${draft.amounts.gst})",
        )
    else:
        st.session_state["flash"] = (
            "warning",
            "Receipt was saved but the photo couldn't be uploaded. The receipt is still available in your list.",
        )
    st.rerun()


def resubmit(action) -> None:
    kind, *args = action
    if kind == "start":
        run_start(*args)
    else:
        run_end(*args)


failure = st.session_state.get("upload_failure")
pending = st.session_state.get("pending_action")
if failure and pending:
    st.warning(f"The {failure['phase']} photo could not be uploaded: {failure['error']}")
    col_retry, col_cancel = st.columns(2)
    if col_retry.button("Retry upload", use_container_width=True):
        st.session_state.pop("upload_failure", None)
        resubmit(pending)
    if col_cancel.button("Cancel", use_container_width=True):
        st.session_state.pop("upload_failure", None)
        st.session_state.pop("pending_action", None)
        release_capture(pending[-1])
        st.rerun()


# -------------------------
# 1. CURRENT TRIP
# -------------------------
st.header("1. Current trip")

state = controller.state
if isinstance(state, EndingTrip):
    st.info("Ending trip…")
elif isinstance(state, ActiveTrip):
    st.markdown(
        f"**Trip {state.trip_id}** started {format_timestamp(state.start_timestamp)} "
        f"at **{state.starting_odometer}** km"
    )
    with st.form("end_trip_form"):
        ending = st.text_input("Ending odometer reading", value=state.ending_odometer_draft or "")
        earnings = st.text_input("Earnings ($, optional)", value=state.earnings_draft or "")
        end_photo = st.camera_input("End photo")
        col_save, col_end = st.columns(2)
        save_draft = col_save.form_submit_button("Save draft", use_container_width=True)
        submitted = col_end.form_submit_button("End trip", type="primary", use_container_width=True)

    if save_draft:
        try:
            controller.update_end_draft(ending_odometer=ending, earnings=earnings)
            st.success("Draft saved.")
        except TripTrackerError as e:
            show_error(e)
    if submitted:
        run_end(ending, earnings, save_capture(end_photo, "end") or state.end_photo_ref)
else:
    with st.form("start_trip_form"):
        starting = st.text_input("Starting odometer reading", placeholder="Enter odometer reading")
        start_photo = st.camera_input("Start photo")
        submitted = st.form_submit_button("Start trip", type="primary", use_container_width=True)

    if submitted:
        run_start(starting, save_capture(start_photo, "start"))


# -------------------------
# 2. DASHBOARD
# -------------------------
st.header("2. Dashboard")

try:
    trips = trip_store.list_all()
except TripTrackerError as e:
    trips = []
    show_error(e)

stats = summarize_trips(trips, now=datetime.now(timezone.utc))
c1, c2, c3 = st.columns(3)
c1.metric("Completed trips", stats.total_trips)
c2.metric("Total distance", f"{stats.total_distance:.1f} km")
c3.metric("Total earnings", f"${stats.total_earnings:.2f}")
c1.metric("Avg distance", f"{stats.avg_distance:.1f} km")
c2.metric("Total time", f"{stats.total_hours:.1f} h")
c3.metric("Earnings / hour", f"${stats.earnings_per_hour:.2f}")
c1.metric("This week", stats.this_week_trips)
c2.metric("Avg speed", f"{stats.avg_speed:.1f} km/h")
c3.metric("Earnings / km", f"${stats.earnings_per_km:.2f}")
st.caption(
    f"Current odometer: {stats.current_odometer} · Longest {stats.longest_trip:.1f} km · "
    f"Shortest {stats.shortest_trip:.1f} km · Today ${stats.today_earnings:.2f} · "
    f"Week ${stats.week_earnings:.2f} · Month ${stats.month_earnings:.2f}"
)


# -------------------------
# 3. TRIP HISTORY
# -------------------------
st.header("3. Trip history")

if trips:
    for trip in trips:
        status = "in progress" if not trip.is_closed else f"{trip.distance()} km"
        with st.expander(f"{format_timestamp(trip.start_timestamp)} · {status}"):
            st.write(f"- Trip ID: `{trip.id}`")
            st.write(f"- Odometer: {trip.starting_odometer} → {trip.ending_odometer or '—'}")
            st.write(f"- Ended: {format_timestamp(trip.end_timestamp)}")
            if trip.duration_hours() is not None:
                st.write(f"- Duration: {trip.duration_hours():.1f} h")
            if trip.earnings is not None:
                st.write(f"- Earnings: ${trip.earnings:.2f}")
else:
    st.info("No trips yet.")


# -------------------------
# 4. RECEIPTS
# -------------------------
st.header("4. Add a receipt")

mode_label = st.radio("Amount entered as", ["Total (incl. GST)", "Subtotal (excl. GST)"], horizontal=True)
mode = "total" if mode_label.startswith("Total") else "subtotal"

previous_mode = st.session_state.get("amount_mode", mode)
if previous_mode != mode and st.session_state.get("receipt_amount"):
    st.session_state["receipt_amount"] = switch_amount_mode(st.session_state["receipt_amount"], mode)
st.session_state["amount_mode"] = mode

with st.form("add_receipt_form"):
    vendor = st.text_input("Vendor", max_chars=100)
    category = st.selectbox("Category", RECEIPT_CATEGORIES, index=None, placeholder="Choose a category")
    receipt_date = st.date_input("Receipt date", value=date.today(), format="DD/MM/YYYY")
    description = st.text_area("Description (optional)", max_chars=500)
    amount = st.text_input("Amount ($)", key="receipt_amount")
    receipt_photo = st.camera_input("Receipt photo")
    submitted = st.form_submit_button("Save receipt")

    if submitted:
        photo = save_capture(receipt_photo, "receipts")
        try:
            draft = validate_receipt(
                vendor=vendor,
                category=category,
                receipt_date=receipt_date,
                amount=amount,
                mode=mode,
                description=description,
                photo_ref=photo,
            )
        except TripTrackerError as e:
            captures.discard(photo)
            show_error(e)
        else:
            run_receipt(draft, photo)


st.header("5. Receipts")

col_search, col_category = st.columns([2, 1])
search = col_search.text_input("Search vendor, description or category")
category_filter = col_category.selectbox("Category filter", ["All"] + RECEIPT_CATEGORIES)

try:
    receipts = receipt_service.list_receipts(
        ReceiptQuery(
            search=search or None,
            category=None if category_filter == "All" else ReceiptCategory(category_filter),
        )
    )
except TripTrackerError as e:
    receipts = []
    show_error(e)

if receipts:
    summary = summarize_receipts(receipts)
    st.write(
        f"**{summary.count}** receipts · total **${summary.total:.2f}** · GST **${summary.gst:.2f}**"
    )
    for r in receipts:
        with st.expander(f"{r.receipt_date.strftime('%d/%m/%Y')} · {r.vendor} · ${r.total_amount:.2f}"):
            st.write(f"- Category: {r.category.value}")
            st.write(f"- Subtotal ${r.subtotal:.2f} · GST ${r.gst:.2f}")
            if r.description:
                st.write(f"- {r.description}")
            if r.receipt_image_url:
                st.image(r.receipt_image_url, width=240)
else:
    st.info("No receipts found.")
