"""
Partner commission settings and rate change request schemas
"""
from pydantic import BaseModel, Field
from typing import Optional


class CommissionRateUpdate(BaseModel):
    commission_rate: float = Field(..., ge=0, le=100)


class CommissionChangeRequestCreate(BaseModel):
    target_user_id: str
    proposed_rate: float = Field(..., ge=0, le=100)
    reason: str = Field(..., min_length=1)
    requested_by: str = Field(..., description="Manager submitting the request")


class CommissionChangeDecision(BaseModel):
    approve: bool
    admin_response: Optional[str] = None
    responded_by: Optional[str] = None
