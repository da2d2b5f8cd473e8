"""
Booking Record Store – creation, lookup and report metadata for lab bookings.

Status changes go through status_engine and payment facts through
payment_tracker; everything else that mutates a booking lives here.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any, List

from fitledger.config.database import Collections
from fitledger.database.db_operations import db_ops
from fitledger.services import events
from fitledger.services.commission_service import LAB_PARTNER, get_partner
from fitledger.utils.errors import (
    BookingNotFound,
    InvalidBookingRequest,
    InvalidBookingState,
    PartnerSuspended,
    PaymentNotVerified,
    ReportNotFound,
)
from fitledger.utils.helpers import as_naive_utc, clamp_page, parse_object_id, utc_now

logger = logging.getLogger(__name__)


def _snapshot_tests(selected_tests: List[Dict]) -> List[Dict]:
    if not selected_tests:
        raise InvalidBookingRequest("Select at least one test")
    snapshot = []
    for index, test in enumerate(selected_tests):
        name = (test.get("test_name") or "").strip()
        price = test.get("price")
        if not name:
            raise InvalidBookingRequest("Every selected test needs a name", test_index=index)
        if price is None or price < 0:
            raise InvalidBookingRequest("Test prices cannot be negative", test_index=index, price=price)
        snapshot.append({"test_id": test.get("test_id"), "test_name": name, "price": price})
    return snapshot


async def create_booking(data: Dict, now: Optional[datetime] = None) -> Dict:
    """
    Persist a new pending booking. selected_tests is stored as given (order
    kept) and total_amount is fixed to the sum of the snapshot prices.
    """
    tests = _snapshot_tests(data.get("selected_tests") or [])
    if not data.get("booking_date") or not (data.get("time_slot") or "").strip():
        raise InvalidBookingRequest("Booking date and time slot are required")

    enthusiast_id = parse_object_id(data.get("fitness_enthusiast_id"))
    if enthusiast_id is None:
        raise InvalidBookingRequest("Invalid fitness enthusiast id",
                                    fitness_enthusiast_id=data.get("fitness_enthusiast_id"))

    partner = await get_partner(data.get("lab_partner_id"), user_type=LAB_PARTNER)
    if partner.get("is_suspended"):
        raise PartnerSuspended(
            lab_partner_id=partner["_id"],
            suspension_reason=partner.get("suspension_reason"),
        )

    now = now or utc_now()
    booking = {
        "fitness_enthusiast_id": enthusiast_id,
        "fitness_enthusiast_name": data.get("fitness_enthusiast_name"),
        "lab_partner_id": partner["_id"],
        "selected_tests": tests,
        "booking_date": as_naive_utc(data["booking_date"]),
        "time_slot": data["time_slot"].strip(),
        "total_amount": sum(t["price"] for t in tests),
        "status": "pending",
        "expected_report_delivery_time": None,
        "report_url": None,
        "report_uploaded_at": None,
        # payment fact #1
        "payment_status": "pending",
        "user_paid_to_lab": False,
        "user_payment_date": None,
        "user_payment_method": None,
        "user_payment_verified_by": None,
        # payment fact #2
        "payment_received_by_lab": False,
        "payment_received_date": None,
        "commission_amount": 0,
        "commission_rate": None,
        "commission_status": None,
        "billed_invoice_id": None,
        "billing_period": None,
        "notes": data.get("notes"),
        "contact_phone": data.get("contact_phone"),
        "contact_email": data.get("contact_email"),
        "created_at": now,
        "updated_at": now,
    }
    booking = await db_ops.create(Collections.LAB_BOOKINGS, booking)
    await events.emit(events.BOOKING_CREATED, booking["_id"], {
        "lab_partner_id": str(partner["_id"]),
        "total_amount": booking["total_amount"],
    }, now=now)
    logger.info("🧪 Lab booking %s created (%d tests, total %s)",
                booking["_id"], len(tests), booking["total_amount"])
    return booking


async def get_booking(booking_id: Any) -> Dict:
    booking = await db_ops.get_by_id(Collections.LAB_BOOKINGS, booking_id)
    if not booking:
        raise BookingNotFound(booking_id=booking_id)
    return booking


async def list_bookings(
    lab_partner_id: Optional[str] = None,
    fitness_enthusiast_id: Optional[str] = None,
    status: Optional[str] = None,
    commission_status: Optional[str] = None,
    skip: int = 0,
    limit: int = 20,
) -> List[Dict]:
    """Newest first"""
    query: Dict[str, Any] = {}
    if lab_partner_id:
        query["lab_partner_id"] = parse_object_id(lab_partner_id)
    if fitness_enthusiast_id:
        query["fitness_enthusiast_id"] = parse_object_id(fitness_enthusiast_id)
    if status:
        query["status"] = status
    if commission_status:
        query["commission_status"] = commission_status
    skip, limit = clamp_page(skip, limit)
    return await db_ops.get_all(
        Collections.LAB_BOOKINGS, query, skip=skip, limit=limit,
        sort=[("created_at", -1), ("_id", -1)],
    )


async def update_delivery_estimate(booking_id: Any, estimate: str, now: Optional[datetime] = None) -> Dict:
    """Editable in any status; this is an edit, not a transition."""
    estimate = (estimate or "").strip()
    if not estimate:
        raise InvalidBookingRequest("Delivery estimate cannot be empty", booking_id=booking_id)
    booking = await get_booking(booking_id)
    return await db_ops.update(Collections.LAB_BOOKINGS, booking["_id"], {
        "expected_report_delivery_time": estimate,
        "updated_at": now or utc_now(),
    })


# ─── Reports ──────────────────────────────────────────────────────────────────

async def attach_report(booking_id: Any, report_url: str, now: Optional[datetime] = None) -> Dict:
    report_url = (report_url or "").strip()
    if not report_url:
        raise InvalidBookingRequest("Report URL is required", booking_id=booking_id)

    booking = await get_booking(booking_id)
    now = now or utc_now()
    updated = await db_ops.compare_and_set(
        Collections.LAB_BOOKINGS,
        booking["_id"],
        {"status": {"$ne": "cancelled"}},
        {"report_url": report_url, "report_uploaded_at": now, "updated_at": now},
    )
    if updated is None:
        raise InvalidBookingState(
            "Reports cannot be attached to a cancelled booking",
            booking_id=booking["_id"], operation="attach_report",
        )
    await events.emit(events.BOOKING_REPORT_ATTACHED, booking["_id"], {"report_url": report_url}, now=now)
    logger.info("📄 Report attached to booking %s", booking["_id"])
    return updated


async def remove_report(booking_id: Any, now: Optional[datetime] = None) -> Dict:
    booking = await get_booking(booking_id)
    if not booking.get("report_url"):
        raise ReportNotFound(booking_id=booking["_id"])
    return await db_ops.update(Collections.LAB_BOOKINGS, booking["_id"], {
        "report_url": None,
        "report_uploaded_at": None,
        "updated_at": now or utc_now(),
    })


async def get_report_for_enthusiast(booking_id: Any, enthusiast_id: Any) -> Dict:
    """
    The enthusiast sees the report once it exists and their payment to the lab
    has been recorded. A suspended lab does not hide reports already delivered.
    """
    booking = await get_booking(booking_id)
    if parse_object_id(enthusiast_id) != booking.get("fitness_enthusiast_id"):
        # Not their booking: indistinguishable from a missing one
        raise BookingNotFound(booking_id=booking_id)
    if not booking.get("report_url"):
        raise ReportNotFound(booking_id=booking["_id"])
    if not booking.get("user_paid_to_lab"):
        raise PaymentNotVerified(booking_id=booking["_id"])

    partner = await db_ops.get_by_id(Collections.USERS, booking["lab_partner_id"])
    lab_suspended = bool(partner and partner.get("is_suspended"))
    return {
        "booking_id": str(booking["_id"]),
        "report_url": booking["report_url"],
        "report_uploaded_at": booking.get("report_uploaded_at"),
        "selected_tests": booking.get("selected_tests", []),
        "payment_verified": True,
        "lab_suspended": lab_suspended,
        "access_note": (
            "Report available. The lab is currently suspended but your report remains accessible."
            if lab_suspended else "Report available."
        ),
    }
