"""Pydantic schemas for refunds, billing and internal jobs"""
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional
from pydantic import BaseModel, ConfigDict, Field


class RefundRequest(BaseModel):
    donation_id: int
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: Optional[str] = None


class RefundResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    donation_id: int
    provider: str
    provider_ref: str
    amount: Decimal
    currency: str
    status: str
    reason: Optional[str] = None
    created_at: Optional[datetime] = None


class EntitlementOut(BaseModel):
    enabled: bool
    limit: Optional[int] = None
    plan_code: str


class EntitlementsResponse(BaseModel):
    tenant_id: int
    source: str
    plan_code: Optional[str] = None
    subscription_status: Optional[str] = None
    entitlements: Dict[str, EntitlementOut]
    usage: Dict[str, int]


class AssignPlanRequest(BaseModel):
    plan_code: str
    status: str = "ACTIVE"  # 'ACTIVE', 'TRIALING'
    trial_ends_at: Optional[datetime] = None
    seat_count: Optional[int] = Field(None, ge=1)


class JobRunRequest(BaseModel):
    dry_run: bool = False
    limit: Optional[int] = Field(None, ge=1)
    provider: Optional[str] = None  # metadata backfill only


class JobRunResponse(BaseModel):
    job: str
    result: Dict[str, Any]


class PlanFeatureRequest(BaseModel):
    enabled: bool = True
    limit: Optional[int] = Field(None, ge=0)


class PlanFeatureResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    plan_id: int
    key: str
    enabled: bool
    limit: Optional[int] = None
