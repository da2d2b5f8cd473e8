"""
Partner commission settings and the manager → admin rate change workflow
"""
from fastapi import APIRouter, Query, status
from typing import Optional

from fitledger.models.partner import (
    CommissionChangeDecision,
    CommissionChangeRequestCreate,
    CommissionRateUpdate,
)
from fitledger.services import commission_service
from fitledger.utils.helpers import serialize_doc, serialize_docs

router = APIRouter(prefix="/partners", tags=["Partners"])


# ─── Commission rate ──────────────────────────────────────────────────────────

@router.get("/{partner_id}/commission-rate")
async def get_commission_rate(partner_id: str):
    rate = await commission_service.get_current_commission_rate(partner_id)
    return {"partner_id": partner_id, "commission_rate": rate}


@router.patch("/{partner_id}/commission-rate")
async def update_commission_rate(partner_id: str, payload: CommissionRateUpdate):
    return await commission_service.update_commission_rate(partner_id, payload.commission_rate)


# ─── Change requests ──────────────────────────────────────────────────────────

@router.post("/commission-requests", status_code=status.HTTP_201_CREATED)
async def create_commission_request(payload: CommissionChangeRequestCreate):
    request = await commission_service.request_rate_change(
        payload.target_user_id, payload.proposed_rate, payload.reason, payload.requested_by
    )
    return serialize_doc(request)


@router.get("/commission-requests")
async def list_commission_requests(
    status_filter: Optional[str] = Query(None, alias="status"),
    requested_by: Optional[str] = None,
):
    requests = await commission_service.list_rate_change_requests(status_filter, requested_by)
    return serialize_docs(requests)


@router.patch("/commission-requests/{request_id}")
async def decide_commission_request(request_id: str, payload: CommissionChangeDecision):
    decided = await commission_service.respond_to_rate_change(
        request_id, payload.approve, payload.admin_response, payload.responded_by
    )
    return serialize_doc(decided)
