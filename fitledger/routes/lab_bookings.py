"""
Lab Booking API routes – booking creation, lifecycle transitions, report
metadata and the enthusiast → lab payment fact.

Services raise BillingError subclasses; the application-level handler turns
them into JSON responses, so routes only shape input and output.
"""
from fastapi import APIRouter, Query, status
from typing import List, Optional

from fitledger.models.booking import (
    BookingReportResponse,
    DeliveryEstimateUpdate,
    LabBookingCreate,
    LabBookingResponse,
    ReportAttachRequest,
    StatusTransitionRequest,
    UserPaymentRequest,
)
from fitledger.services import booking_store, payment_tracker, status_engine
from fitledger.utils.helpers import serialize_doc, serialize_docs

router = APIRouter(prefix="/lab-bookings", tags=["Lab Bookings"])


# ─── Create / Read ────────────────────────────────────────────────────────────

@router.post("/", response_model=LabBookingResponse, status_code=status.HTTP_201_CREATED)
async def create_lab_booking(payload: LabBookingCreate):
    booking = await booking_store.create_booking(payload.model_dump())
    return serialize_doc(booking)


@router.get("/", response_model=List[LabBookingResponse])
async def list_lab_bookings(
    lab_partner_id: Optional[str] = None,
    fitness_enthusiast_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    commission_status: Optional[str] = None,
    skip: int = 0,
    limit: int = 20,
):
    bookings = await booking_store.list_bookings(
        lab_partner_id=lab_partner_id,
        fitness_enthusiast_id=fitness_enthusiast_id,
        status=status_filter,
        commission_status=commission_status,
        skip=skip,
        limit=limit,
    )
    return serialize_docs(bookings)


@router.get("/{booking_id}", response_model=LabBookingResponse)
async def get_lab_booking(booking_id: str):
    return serialize_doc(await booking_store.get_booking(booking_id))


# ─── Lifecycle ────────────────────────────────────────────────────────────────

@router.post("/{booking_id}/transition", response_model=LabBookingResponse)
async def transition_lab_booking(booking_id: str, payload: StatusTransitionRequest):
    """Move a booking along pending → confirmed → completed (or pending → cancelled)."""
    booking = await status_engine.transition(
        booking_id, payload.status, payload.expected_report_delivery_time
    )
    return serialize_doc(booking)


@router.post("/{booking_id}/cancel", response_model=LabBookingResponse)
async def cancel_lab_booking(booking_id: str):
    return serialize_doc(await status_engine.cancel_booking(booking_id))


@router.put("/{booking_id}/delivery-estimate", response_model=LabBookingResponse)
async def update_delivery_estimate(booking_id: str, payload: DeliveryEstimateUpdate):
    booking = await booking_store.update_delivery_estimate(
        booking_id, payload.expected_report_delivery_time
    )
    return serialize_doc(booking)


# ─── Reports ──────────────────────────────────────────────────────────────────

@router.put("/{booking_id}/report", response_model=LabBookingResponse)
async def attach_report(booking_id: str, payload: ReportAttachRequest):
    return serialize_doc(await booking_store.attach_report(booking_id, payload.report_url))


@router.delete("/{booking_id}/report", response_model=LabBookingResponse)
async def remove_report(booking_id: str):
    return serialize_doc(await booking_store.remove_report(booking_id))


@router.get("/{booking_id}/report", response_model=BookingReportResponse)
async def get_report(booking_id: str, enthusiast_id: str):
    return serialize_doc(await booking_store.get_report_for_enthusiast(booking_id, enthusiast_id))


# ─── Payment ──────────────────────────────────────────────────────────────────

@router.post("/{booking_id}/user-payment", response_model=LabBookingResponse)
async def record_user_payment(booking_id: str, payload: UserPaymentRequest = UserPaymentRequest()):
    """
    Lab attests the enthusiast has paid. This also accrues the platform
    commission at the lab's current rate.
    """
    booking = await payment_tracker.record_user_payment(
        booking_id, payload.payment_method, verified_by=payload.verified_by
    )
    return serialize_doc(booking)
