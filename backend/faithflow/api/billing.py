"""Tenant billing API routes and internal admin/job routes"""
import logging
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from faithflow.core.security import require_internal_token, require_tenant_id
from faithflow.db.session import get_db
from faithflow.schemas.billing import (
    AssignPlanRequest, EntitlementOut, EntitlementsResponse, JobRunRequest, JobRunResponse,
    PlanFeatureRequest, PlanFeatureResponse,
)
from faithflow.services.entitlement_service import (
    get_tenant_usage_snapshot, resolve_tenant_entitlements, resolve_tenant_plan,
)
from faithflow.services.platform_billing_service import assign_tenant_plan, upsert_plan_feature
from faithflow.tasks.scheduler import JOBS, run_job

router = APIRouter(prefix="/api/billing", tags=["billing"])
logger = logging.getLogger(__name__)


@router.get("/entitlements", response_model=EntitlementsResponse)
def get_entitlements(tenant_id: int = Depends(require_tenant_id), db: Session = Depends(get_db)):
    """Current plan, feature entitlements and usage for the tenant"""
    resolution = resolve_tenant_plan(db, tenant_id)
    entitlements = resolve_tenant_entitlements(db, tenant_id, resolution=resolution)
    return EntitlementsResponse(
        tenant_id=tenant_id,
        source=resolution.source,
        plan_code=resolution.plan.code if resolution.plan else None,
        subscription_status=resolution.subscription.status if resolution.subscription else None,
        entitlements={
            key: EntitlementOut(enabled=value.enabled, limit=value.limit, plan_code=value.plan_code)
            for key, value in entitlements.items()
        },
        usage=get_tenant_usage_snapshot(db, tenant_id),
    )


# ============================================================================
# INTERNAL ADMIN ROUTES
# ============================================================================

@router.post("/admin/tenants/{tenant_id}/plan", dependencies=[Depends(require_internal_token)])
def assign_plan(tenant_id: int, request: AssignPlanRequest, db: Session = Depends(get_db)):
    """Assign a plan to a tenant, replacing its current subscription"""
    subscription = assign_tenant_plan(
        db,
        tenant_id,
        request.plan_code,
        status=request.status,
        trial_ends_at=request.trial_ends_at,
        seat_count=request.seat_count,
        actor_id="internal",
    )
    return {
        "subscription_id": subscription.id,
        "tenant_id": subscription.tenant_id,
        "plan_code": request.plan_code,
        "status": subscription.status,
    }


@router.put(
    "/admin/plans/{plan_code}/features/{key}",
    response_model=PlanFeatureResponse,
    dependencies=[Depends(require_internal_token)]
)
def set_plan_feature(plan_code: str, key: str, request: PlanFeatureRequest, db: Session = Depends(get_db)):
    """Create or update a plan feature"""
    return upsert_plan_feature(db, plan_code, key, enabled=request.enabled, limit=request.limit)


@router.post("/admin/jobs/{job}", response_model=JobRunResponse, dependencies=[Depends(require_internal_token)])
def run_job_now(job: str, request: Optional[JobRunRequest] = None, db: Session = Depends(get_db)):
    """Run a billing job on demand"""
    if job not in JOBS:
        raise HTTPException(404, f"Unknown job {job}")
    request = request or JobRunRequest()
    logger.info(f"Running job {job} on demand (dry_run={request.dry_run})")
    result = run_job(job, db, dry_run=request.dry_run, limit=request.limit, provider=request.provider)
    return JobRunResponse(job=job, result=result)
