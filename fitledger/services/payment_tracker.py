"""
Payment Reconciliation Tracker

Recording the enthusiast's payment to the lab (fact #1) is the single point
where commission liability is created: the same atomic update marks the lab
as paid (fact #2) and stamps the commission at the rate in effect right now.
Both facts are set once and never reversed.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any

from fitledger.config.database import Collections, db_config
from fitledger.config.settings import settings
from fitledger.database.db_operations import db_ops
from fitledger.services import events
from fitledger.services.booking_store import get_booking
from fitledger.services.commission_service import (
    LAB_PARTNER,
    compute_commission,
    get_current_commission_rate,
    get_partner,
)
from fitledger.utils.errors import AlreadyRecorded, InvalidPaymentMethod, NoEligibleBookings
from fitledger.utils.helpers import utc_now

logger = logging.getLogger(__name__)


def validate_payment_method(method: Optional[str], allowed) -> str:
    method = (method or "cash").strip().lower()
    if method not in allowed:
        raise InvalidPaymentMethod(
            f"Invalid payment method '{method}'. Use one of: {', '.join(allowed)}",
            payment_method=method,
        )
    return method


async def record_user_payment(
    booking_id: Any,
    method: Optional[str] = None,
    commission_rate: Optional[float] = None,
    now: Optional[datetime] = None,
    verified_by: Optional[str] = None,
) -> Dict:
    """
    Record that the enthusiast paid the lab. `commission_rate` is the rate in
    effect at this moment; when omitted it is read from the partner.
    Raises AlreadyRecorded on any second attempt, including a concurrent one.
    """
    method = validate_payment_method(method, settings.VALID_USER_PAYMENT_METHODS)
    booking = await get_booking(booking_id)
    if booking.get("user_paid_to_lab"):
        raise AlreadyRecorded(booking_id=booking["_id"], operation="record_user_payment")

    if commission_rate is None:
        commission_rate = await get_current_commission_rate(booking["lab_partner_id"])
    commission = compute_commission(booking, commission_rate)
    now = now or utc_now()

    updated = await db_ops.compare_and_set(
        Collections.LAB_BOOKINGS,
        booking["_id"],
        {"user_paid_to_lab": False},
        {
            "user_paid_to_lab": True,
            "user_payment_date": now,
            "user_payment_method": method,
            "user_payment_verified_by": verified_by,
            "payment_status": "paid",
            "payment_received_by_lab": True,
            "payment_received_date": now,
            "commission_amount": commission["commission_amount"],
            "commission_rate": commission["commission_rate"],
            "commission_status": "unbilled",
            "updated_at": now,
        },
    )
    if updated is None:
        raise AlreadyRecorded(booking_id=booking["_id"], operation="record_user_payment")

    await events.emit(events.BOOKING_PAYMENT_RECORDED, booking["_id"], {
        "payment_method": method,
        "commission_amount": commission["commission_amount"],
        "commission_rate": commission["commission_rate"],
    }, now=now)
    logger.info(
        "💰 User payment recorded for booking %s (%s) → commission %s at %s%%",
        booking["_id"], method, commission["commission_amount"], commission["commission_rate"],
    )
    return updated


async def get_unbilled_summary(lab_partner_id: Any) -> Dict:
    """Outstanding commission a lab would be invoiced for right now."""
    partner = await get_partner(lab_partner_id, user_type=LAB_PARTNER)
    coll = db_config.get_collection(Collections.LAB_BOOKINGS)

    total_commission = 0
    total_value = 0
    count = 0
    oldest = None
    async for doc in coll.find({"lab_partner_id": partner["_id"], "commission_status": "unbilled"}):
        total_commission += doc.get("commission_amount", 0) or 0
        total_value += doc.get("total_amount", 0) or 0
        count += 1
        paid_at = doc.get("user_payment_date")
        if paid_at and (oldest is None or paid_at < oldest):
            oldest = paid_at

    return {
        "lab_partner_id": str(partner["_id"]),
        "unbilled_commission": total_commission,
        "unbilled_booking_value": total_value,
        "unbilled_bookings": count,
        "oldest_unbilled_payment_date": oldest,
    }


async def request_invoice(lab_partner_id: Any) -> Dict:
    """Lab-side "request an invoice" nudge; only meaningful with something unbilled."""
    summary = await get_unbilled_summary(lab_partner_id)
    if summary["unbilled_bookings"] == 0:
        raise NoEligibleBookings("No unbilled commissions to invoice", lab_partner_id=lab_partner_id)
    logger.info("📨 Lab %s requested an invoice for %s unbilled commission",
                lab_partner_id, summary["unbilled_commission"])
    return summary
