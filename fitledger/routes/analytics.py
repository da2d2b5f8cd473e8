"""
Revenue analytics, class bookings and the billing event feed
"""
from fastapi import APIRouter, Query, status
from typing import Optional
from datetime import datetime

from fitledger.models.booking import ClassBookingCreate
from fitledger.services import analytics_service, events
from fitledger.services.commission_service import LAB_PARTNER
from fitledger.utils.helpers import as_naive_utc, serialize_doc, serialize_docs

router = APIRouter(prefix="/analytics", tags=["Analytics"])
class_bookings_router = APIRouter(prefix="/class-bookings", tags=["Class Bookings"])
events_router = APIRouter(prefix="/events", tags=["Events"])


@router.get("/revenue-series")
async def revenue_series(start: datetime, end: datetime, bucket: str = "month"):
    return serialize_docs(await analytics_service.revenue_time_series(start, end, bucket))


@router.get("/partner-breakdown")
async def partner_breakdown(start: datetime, end: datetime, bucket: str = "month"):
    return serialize_docs(await analytics_service.partner_earnings_breakdown(start, end, bucket))


@router.get("/leaderboard")
async def leaderboard(
    partner_type: str = LAB_PARTNER,
    metric: str = "commission",
    start: Optional[datetime] = None,
    end: Optional[datetime] = None,
    limit: Optional[int] = Query(None, ge=1, le=100),
):
    return await analytics_service.leaderboard(partner_type, metric, start, end, limit)


@router.get("/platform-revenue")
async def platform_revenue(start: datetime, end: datetime):
    return serialize_doc(await analytics_service.platform_revenue(start, end))


@router.get("/partners/{partner_id}/financial-summary")
async def partner_financial_summary(partner_id: str):
    return serialize_doc(await analytics_service.partner_financial_summary(partner_id))


@router.get("/user-growth")
async def user_growth(start: datetime, end: datetime):
    return await analytics_service.monthly_user_growth(start, end)


@router.get("/engagement")
async def engagement(start: datetime, end: datetime):
    return serialize_doc(await analytics_service.engagement_metrics(start, end))


# ─── Class bookings ───────────────────────────────────────────────────────────

@class_bookings_router.post("/", status_code=status.HTTP_201_CREATED)
async def create_class_booking(payload: ClassBookingCreate):
    booking = await analytics_service.record_class_booking(
        payload.trainer_id,
        payload.user_id,
        payload.class_id,
        payload.amount_paid,
        booking_date=payload.booking_date,
    )
    return serialize_doc(booking)


# ─── Event feed ───────────────────────────────────────────────────────────────

@events_router.get("/")
async def list_events(
    since: Optional[datetime] = None,
    event_type: Optional[str] = Query(None, alias="type"),
    entity_id: Optional[str] = None,
    limit: int = Query(100, ge=1, le=500),
):
    """Pull-based feed; pass the last seen created_at as `since` to resume."""
    found = await events.list_events(
        since=as_naive_utc(since) if since else None,
        event_type=event_type,
        entity_id=entity_id,
        limit=limit,
    )
    return serialize_docs(found)
