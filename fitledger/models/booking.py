"""
Lab booking model and schemas
Handles lab test bookings, their lifecycle requests and payment facts
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Literal, Dict, Any
from datetime import datetime

BookingStatus = Literal["pending", "confirmed", "completed", "cancelled"]
CommissionStatus = Literal["unbilled", "billed", "paid"]


class SelectedTest(BaseModel):
    """Snapshot of one catalogue test at booking time"""
    test_id: Optional[str] = None
    test_name: str = Field(..., min_length=1, max_length=200)
    price: float = Field(..., ge=0)


class LabBookingCreate(BaseModel):
    fitness_enthusiast_id: str = Field(..., description="ID of the booking fitness enthusiast")
    fitness_enthusiast_name: Optional[str] = None
    lab_partner_id: str = Field(..., description="ID of the lab partner")
    selected_tests: List[SelectedTest] = Field(..., min_length=1)
    booking_date: datetime
    time_slot: str = Field(..., min_length=1, description="e.g. 9:00 AM - 10:00 AM")
    notes: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None


class StatusTransitionRequest(BaseModel):
    status: str = Field(..., description="Target status: confirmed, completed or cancelled")
    expected_report_delivery_time: Optional[str] = Field(None, description="e.g. 2 days, 3-5 days")


class DeliveryEstimateUpdate(BaseModel):
    expected_report_delivery_time: str = Field(..., min_length=1)


class ReportAttachRequest(BaseModel):
    report_url: str = Field(..., min_length=1, description="Reference returned by report storage")


class UserPaymentRequest(BaseModel):
    payment_method: Optional[str] = Field(None, description="cash, card, online or upi")
    verified_by: Optional[str] = Field(None, description="Partner staff member attesting the payment")


class LabBookingResponse(BaseModel):
    id: str = Field(alias="_id")
    fitness_enthusiast_id: str
    fitness_enthusiast_name: Optional[str] = None
    lab_partner_id: str
    selected_tests: List[SelectedTest]
    booking_date: Any
    time_slot: str
    total_amount: float
    status: BookingStatus
    expected_report_delivery_time: Optional[str] = None
    report_url: Optional[str] = None
    report_uploaded_at: Optional[Any] = None

    payment_status: str = "pending"
    user_paid_to_lab: bool = False
    user_payment_date: Optional[Any] = None
    user_payment_method: Optional[str] = None
    user_payment_verified_by: Optional[str] = None

    payment_received_by_lab: bool = False
    payment_received_date: Optional[Any] = None
    commission_amount: float = 0
    commission_rate: Optional[float] = None
    commission_status: Optional[CommissionStatus] = None
    billed_invoice_id: Optional[str] = None
    billing_period: Optional[Dict[str, Any]] = None

    notes: Optional[str] = None
    contact_phone: Optional[str] = None
    contact_email: Optional[str] = None
    created_at: Any
    updated_at: Any

    model_config = {"populate_by_name": True}


class BookingReportResponse(BaseModel):
    booking_id: str
    report_url: str
    report_uploaded_at: Optional[Any] = None
    selected_tests: List[SelectedTest]
    payment_verified: bool
    lab_suspended: bool
    access_note: str


class ClassBookingCreate(BaseModel):
    user_id: str
    class_id: str
    trainer_id: str
    amount_paid: float = Field(..., ge=0)
    booking_date: Optional[datetime] = None
