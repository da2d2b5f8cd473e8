"""
Billing event outbox.

Every successful lifecycle change (status transition, payment fact, invoice
generation/payment, partner suspension) appends one document to the
billing_events collection. Notification layers pull from here instead of
re-polling bookings and invoices.

Events are written after the state change they describe has been committed,
so delivery is at most once. A failed append is logged and the change
stands.
"""
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from pymongo.errors import PyMongoError

from fitledger.config.database import db_config, Collections
from fitledger.utils.helpers import utc_now

logger = logging.getLogger(__name__)

BOOKING_CREATED = "booking.created"
BOOKING_STATUS_CHANGED = "booking.status_changed"
BOOKING_PAYMENT_RECORDED = "booking.payment_recorded"
BOOKING_REPORT_ATTACHED = "booking.report_attached"
INVOICE_GENERATED = "invoice.generated"
INVOICE_PAID = "invoice.paid"
PARTNER_SUSPENDED = "partner.suspended"
PARTNER_RESTORED = "partner.restored"
COMMISSION_RATE_CHANGED = "partner.commission_rate_changed"


async def _append(doc: Dict) -> Any:
    coll = db_config.get_collection(Collections.BILLING_EVENTS)
    result = await coll.insert_one(doc)
    return result.inserted_id


async def emit(
    event_type: str,
    entity_id: Any,
    payload: Optional[Dict] = None,
    now: Optional[datetime] = None,
) -> Optional[Dict]:
    doc = {
        "type": event_type,
        "entity_id": str(entity_id),
        "payload": payload or {},
        "created_at": now or utc_now(),
    }
    try:
        doc["_id"] = await _append(doc)
    except PyMongoError as exc:
        logger.error("❌ Could not record %s event for %s: %s", event_type, entity_id, exc)
        return None
    logger.debug("📣 %s %s", event_type, entity_id)
    return doc


async def list_events(
    since: Optional[datetime] = None,
    event_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    limit: int = 100,
) -> List[Dict]:
    """Oldest first, so consumers can resume from the last created_at they saw"""
    coll = db_config.get_collection(Collections.BILLING_EVENTS)
    query: Dict[str, Any] = {}
    if since:
        query["created_at"] = {"$gt": since}
    if event_type:
        query["type"] = event_type
    if entity_id:
        query["entity_id"] = entity_id
    cursor = coll.find(query).sort([("created_at", 1), ("_id", 1)]).limit(limit)
    return await cursor.to_list(length=limit)
