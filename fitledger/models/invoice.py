"""
Platform invoice model and schemas
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Literal, Any
from datetime import datetime

PeriodType = Literal["monthly", "weekly", "custom"]
InvoiceStatus = Literal["payment_due", "paid", "overdue"]


class BillingPeriodRequest(BaseModel):
    type: PeriodType = "monthly"
    month: Optional[int] = Field(None, ge=1, le=12)
    year: Optional[int] = Field(None, ge=2020)
    start_date: Optional[datetime] = None   # weekly / custom
    end_date: Optional[datetime] = None     # custom only, inclusive


class InvoiceGenerateRequest(BillingPeriodRequest):
    generated_by: Optional[str] = None
    notes: Optional[str] = None


class GenerateAllInvoicesRequest(BillingPeriodRequest):
    partner_ids: Optional[List[str]] = None
    generated_by: Optional[str] = None


class MarkInvoicePaidRequest(BaseModel):
    payment_method: Optional[str] = Field(None, description="bank_transfer, online, cash, cheque")
    payment_reference: Optional[str] = None
    payment_notes: Optional[str] = None


class CommissionBreakdownEntry(BaseModel):
    booking_id: str
    fitness_enthusiast_id: Optional[str] = None
    fitness_enthusiast_name: Optional[str] = None
    test_names: List[str] = Field(default_factory=list)
    booking_date: Any = None
    total_amount: float
    commission_rate: Optional[float] = None
    commission_amount: float


class BillingPeriodResponse(BaseModel):
    type: PeriodType
    month: Optional[int] = None
    year: Optional[int] = None
    start_date: Any
    end_date: Any


class InvoiceResponse(BaseModel):
    id: str = Field(alias="_id")
    invoice_number: str
    lab_partner_id: str
    billing_period: BillingPeriodResponse
    commission_breakdown: List[CommissionBreakdownEntry]
    booking_ids: List[str]
    number_of_bookings: int
    total_booking_value: float
    total_commission: float
    status: InvoiceStatus
    due_date: Any
    generated_date: Any
    paid_date: Optional[Any] = None
    payment_method: Optional[str] = None
    payment_reference: Optional[str] = None
    payment_notes: Optional[str] = None
    generated_by: str = "system"
    notes: Optional[str] = None
    created_at: Any
    updated_at: Any

    model_config = {"populate_by_name": True}
