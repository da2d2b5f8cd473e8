"""
Status Transition Engine

    pending ──► confirmed ──► completed
       │
       └──► cancelled

Confirming requires an expected report delivery time, either already on the
booking or supplied with the request. Commission is never computed here;
see payment_tracker.
"""
import logging
from datetime import datetime
from typing import Optional, Dict, Any

from fitledger.config.database import Collections
from fitledger.database.db_operations import db_ops
from fitledger.services import events
from fitledger.services.booking_store import get_booking
from fitledger.utils.errors import ConcurrentModification, InvalidTransition, MissingDeliveryEstimate
from fitledger.utils.helpers import utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS = {
    "pending": {"confirmed", "cancelled"},
    "confirmed": {"completed"},
    "completed": set(),
    "cancelled": set(),
}


def plan_transition(booking: Dict, target: str, delivery_estimate: Optional[str] = None) -> Dict[str, Any]:
    """
    Validate the edge and return the fields to set. Raises without side
    effects, so a caller can prompt for a missing estimate and retry.
    """
    current = booking.get("status")
    if target not in ALLOWED_TRANSITIONS.get(current, set()):
        raise InvalidTransition(
            f"Cannot move a {current} booking to {target}",
            booking_id=booking.get("_id"),
            from_status=current,
            to_status=target,
        )

    changes: Dict[str, Any] = {"status": target}
    estimate = (delivery_estimate or "").strip()
    if estimate:
        changes["expected_report_delivery_time"] = estimate

    if target == "confirmed":
        existing = (booking.get("expected_report_delivery_time") or "").strip()
        if not estimate and not existing:
            raise MissingDeliveryEstimate(
                booking_id=booking.get("_id"),
                from_status=current,
                to_status=target,
            )
    return changes


async def transition(
    booking_id: Any,
    target: str,
    delivery_estimate: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict:
    booking = await get_booking(booking_id)
    changes = plan_transition(booking, target, delivery_estimate)
    now = now or utc_now()
    changes["updated_at"] = now

    updated = await db_ops.compare_and_set(
        Collections.LAB_BOOKINGS,
        booking["_id"],
        {"status": booking["status"]},
        changes,
    )
    if updated is None:
        raise ConcurrentModification(
            booking_id=booking["_id"],
            operation=f"transition:{booking['status']}->{target}",
        )

    await events.emit(events.BOOKING_STATUS_CHANGED, booking["_id"], {
        "from": booking["status"],
        "to": target,
        "expected_report_delivery_time": updated.get("expected_report_delivery_time"),
    }, now=now)
    logger.info("🔁 Booking %s: %s → %s", booking["_id"], booking["status"], target)
    return updated


async def cancel_booking(booking_id: Any, now: Optional[datetime] = None) -> Dict:
    return await transition(booking_id, "cancelled", now=now)
