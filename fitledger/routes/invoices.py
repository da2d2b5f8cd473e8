"""
Platform Invoice API routes – generation, payment and overdue enforcement
"""
from fastapi import APIRouter, Query, status
from typing import List, Optional

from fitledger.models.invoice import (
    GenerateAllInvoicesRequest,
    InvoiceGenerateRequest,
    InvoiceResponse,
    MarkInvoicePaidRequest,
)
from fitledger.services import invoice_service, payment_tracker
from fitledger.utils.helpers import serialize_doc, serialize_docs

router = APIRouter(prefix="/invoices", tags=["Platform Invoices"])

_PERIOD_FIELDS = {"type", "month", "year", "start_date", "end_date"}


# ─── Generation ───────────────────────────────────────────────────────────────

@router.post("/generate/{partner_id}", response_model=InvoiceResponse, status_code=status.HTTP_201_CREATED)
async def generate_invoice(partner_id: str, payload: InvoiceGenerateRequest):
    invoice = await invoice_service.generate_invoice(
        partner_id,
        payload.model_dump(include=_PERIOD_FIELDS),
        generated_by=payload.generated_by or "admin",
        notes=payload.notes,
    )
    return serialize_doc(invoice)


@router.post("/generate-all")
async def generate_all_invoices(payload: GenerateAllInvoicesRequest):
    result = await invoice_service.generate_all_invoices(
        payload.model_dump(include=_PERIOD_FIELDS),
        partner_ids=payload.partner_ids,
        generated_by=payload.generated_by or "admin",
    )
    return serialize_doc(result)


# ─── Status reports ───────────────────────────────────────────────────────────

@router.get("/grace-period-status")
async def grace_period_status(warning_days: Optional[int] = Query(None, ge=0)):
    return serialize_doc(await invoice_service.grace_period_report(warning_days=warning_days))


@router.post("/enforce-overdue")
async def enforce_overdue():
    return await invoice_service.enforce_overdue_invoices()


@router.get("/unbilled/{partner_id}")
async def unbilled_summary(partner_id: str):
    return serialize_doc(await payment_tracker.get_unbilled_summary(partner_id))


@router.post("/request/{partner_id}")
async def request_invoice(partner_id: str):
    """Lab asks to be invoiced for what it currently owes."""
    return serialize_doc(await payment_tracker.request_invoice(partner_id))


# ─── List / Detail ────────────────────────────────────────────────────────────

@router.get("/", response_model=List[InvoiceResponse])
async def list_invoices(
    lab_partner_id: Optional[str] = None,
    status_filter: Optional[str] = Query(None, alias="status"),
    year: Optional[int] = None,
    skip: int = 0,
    limit: int = 20,
):
    invoices = await invoice_service.list_invoices(
        lab_partner_id=lab_partner_id, status=status_filter, year=year, skip=skip, limit=limit
    )
    return serialize_docs(invoices)


@router.get("/{invoice_id}", response_model=InvoiceResponse)
async def get_invoice(invoice_id: str):
    return serialize_doc(await invoice_service.get_invoice(invoice_id))


@router.patch("/{invoice_id}/mark-paid")
async def mark_invoice_paid(invoice_id: str, payload: MarkInvoicePaidRequest = MarkInvoicePaidRequest()):
    result = await invoice_service.mark_invoice_paid(
        invoice_id,
        method=payload.payment_method,
        reference=payload.payment_reference,
        notes=payload.payment_notes,
    )
    return serialize_doc(result)
