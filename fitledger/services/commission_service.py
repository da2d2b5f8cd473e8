"""
Commission Service – computes the platform's cut of a booking and owns the
partner-facing commission settings (current rate, rate change requests).

The calculator itself is pure: callers pass the booking and the rate in
effect at the moment of computation and persist the result themselves.
"""
import logging
from datetime import datetime
from decimal import Decimal, ROUND_HALF_UP
from typing import Optional, Dict, Any, List

from fitledger.config.database import Collections
from fitledger.config.settings import settings
from fitledger.database.db_operations import db_ops
from fitledger.services import events
from fitledger.utils.errors import (
    ComputationError,
    DuplicateRequest,
    InvalidCommissionRate,
    InvalidBookingState,
    PartnerNotFound,
    RequestNotFound,
)
from fitledger.utils.helpers import utc_now

logger = logging.getLogger(__name__)

LAB_PARTNER = "lab-partner"
TRAINER = "trainer"
FITNESS_ENTHUSIAST = "fitness-enthusiast"
PARTNER_TYPES = (LAB_PARTNER, TRAINER)

_ONE = Decimal("1")
_HUNDRED = Decimal("100")


# ─── Calculation helpers ──────────────────────────────────────────────────────

def validate_rate(rate: Any) -> float:
    try:
        value = float(rate)
    except (TypeError, ValueError):
        raise InvalidCommissionRate(rate=rate)
    if value < 0 or value > 100:
        raise InvalidCommissionRate(rate=value)
    return value


def commission_for_amount(total_amount: Any, rate: Any) -> int:
    """round(total * rate / 100), half-up to a whole currency unit."""
    rate = validate_rate(rate)
    total = Decimal(str(total_amount))
    if total < 0:
        raise ComputationError("Booking total cannot be negative", total_amount=total_amount)
    amount = (total * Decimal(str(rate)) / _HUNDRED).quantize(_ONE, rounding=ROUND_HALF_UP)
    return int(amount)


def compute_commission(booking: Dict, rate: Any) -> Dict[str, Any]:
    """
    Commission for a booking at the given rate. Does not touch the booking;
    the payment tracker stamps the result.
    """
    rate = validate_rate(rate)
    return {
        "commission_amount": commission_for_amount(booking.get("total_amount", 0), rate),
        "commission_rate": rate,
    }


def default_rate_for(user_type: Optional[str]) -> float:
    if user_type == TRAINER:
        return settings.DEFAULT_TRAINER_COMMISSION_RATE
    return settings.DEFAULT_LAB_COMMISSION_RATE


# ─── Partner loaders ──────────────────────────────────────────────────────────

async def get_partner(partner_id: Any, user_type: Optional[str] = None) -> Dict:
    partner = await db_ops.get_by_id(Collections.USERS, partner_id)
    if not partner or partner.get("user_type") not in PARTNER_TYPES:
        raise PartnerNotFound(partner_id=partner_id)
    if user_type and partner.get("user_type") != user_type:
        raise PartnerNotFound(f"No {user_type} with this id", partner_id=partner_id)
    return partner


async def get_current_commission_rate(partner_id: Any) -> float:
    """The rate in effect right now; falls back to the partner type's default."""
    partner = await get_partner(partner_id)
    rate = partner.get("commission_rate")
    if rate is None:
        return default_rate_for(partner.get("user_type"))
    return float(rate)


async def update_commission_rate(partner_id: Any, rate: Any, now: Optional[datetime] = None) -> Dict:
    """
    Point-in-time rate change. Bookings already carrying a commission keep the
    rate they were stamped with.
    """
    rate = validate_rate(rate)
    partner = await get_partner(partner_id)
    old_rate = partner.get("commission_rate")
    if old_rate is None:
        old_rate = default_rate_for(partner.get("user_type"))

    await db_ops.update(Collections.USERS, partner["_id"], {
        "commission_rate": rate,
        "updated_at": now or utc_now(),
    })
    await events.emit(events.COMMISSION_RATE_CHANGED, partner["_id"], {
        "old_rate": old_rate,
        "new_rate": rate,
    }, now=now)
    logger.info("💱 Commission rate for %s changed %s%% → %s%%", partner["_id"], old_rate, rate)
    return {
        "partner_id": str(partner["_id"]),
        "user_type": partner.get("user_type"),
        "old_commission_rate": float(old_rate),
        "new_commission_rate": rate,
    }


# ─── Rate change requests (manager → admin) ───────────────────────────────────

async def request_rate_change(
    target_user_id: Any,
    proposed_rate: Any,
    reason: str,
    requested_by: str,
    now: Optional[datetime] = None,
) -> Dict:
    proposed_rate = validate_rate(proposed_rate)
    target = await get_partner(target_user_id)

    existing = await db_ops.get_one(Collections.COMMISSION_CHANGE_REQUESTS, {
        "target_user_id": target["_id"],
        "status": "pending",
    })
    if existing:
        raise DuplicateRequest(
            "A pending rate change request already exists for this partner",
            target_user_id=target["_id"],
            request_id=existing["_id"],
        )

    current = target.get("commission_rate")
    now = now or utc_now()
    return await db_ops.create(Collections.COMMISSION_CHANGE_REQUESTS, {
        "requested_by": requested_by,
        "target_user_id": target["_id"],
        "target_user_type": target.get("user_type"),
        "current_rate": float(current) if current is not None else default_rate_for(target.get("user_type")),
        "proposed_rate": proposed_rate,
        "reason": reason,
        "status": "pending",
        "admin_response": None,
        "responded_at": None,
        "responded_by": None,
        "created_at": now,
    })


async def respond_to_rate_change(
    request_id: Any,
    approve: bool,
    admin_response: Optional[str] = None,
    responded_by: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict:
    request = await db_ops.get_by_id(Collections.COMMISSION_CHANGE_REQUESTS, request_id)
    if not request:
        raise RequestNotFound(request_id=request_id)
    if request.get("status") != "pending":
        raise InvalidBookingState(
            f"Request has already been {request.get('status')}",
            request_id=request_id,
        )

    now = now or utc_now()
    decided = await db_ops.compare_and_set(
        Collections.COMMISSION_CHANGE_REQUESTS,
        request["_id"],
        {"status": "pending"},
        {
            "status": "approved" if approve else "denied",
            "admin_response": admin_response,
            "responded_at": now,
            "responded_by": responded_by,
            "updated_at": now,
        },
    )
    if decided is None:
        raise InvalidBookingState("Request was decided by someone else", request_id=request_id)

    if approve:
        await update_commission_rate(request["target_user_id"], request["proposed_rate"], now=now)
    return decided


async def list_rate_change_requests(
    status: Optional[str] = None,
    requested_by: Optional[str] = None,
) -> List[Dict]:
    query: Dict[str, Any] = {}
    if status:
        query["status"] = status
    if requested_by:
        query["requested_by"] = requested_by
    return await db_ops.find_all(
        Collections.COMMISSION_CHANGE_REQUESTS, query, sort=[("created_at", -1)]
    )


async def partner_ids_of_type(user_type: str) -> List:
    """All partners of a type, oldest first (ObjectId order)."""
    docs = await db_ops.find_all(Collections.USERS, {"user_type": user_type}, sort=[("_id", 1)])
    return [d["_id"] for d in docs]
