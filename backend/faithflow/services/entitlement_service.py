"""Tenant plan and feature entitlement resolution"""
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional
from sqlalchemy.orm import Session

from faithflow.core.errors import ForbiddenError, PreconditionFailedError
from faithflow.db.redis import get_cached_feature_keys, set_cached_feature_keys
from faithflow.models.campus import Campus
from faithflow.models.church import Church
from faithflow.models.event import Event
from faithflow.models.expense import Expense
from faithflow.models.member import Member
from faithflow.models.subscription_plan import SubscriptionPlan
from faithflow.models.subscription_plan_feature import SubscriptionPlanFeature
from faithflow.models.tenant_subscription import TenantSubscription
from faithflow.utils.dates import start_of_utc_month

logger = logging.getLogger(__name__)

# Subscription statuses that still grant their plan's features
ACTIVE_SUBSCRIPTION_STATUSES = ("TRIALING", "ACTIVE", "PAST_DUE", "PAUSED")

INACTIVE_PLAN_CODE = "inactive"


@dataclass(frozen=True)
class PlanResolution:
    source: str  # 'subscription', 'inactive_subscription', 'default_plan', 'none'
    subscription: Optional[TenantSubscription]
    plan: Optional[SubscriptionPlan]


@dataclass(frozen=True)
class Entitlement:
    enabled: bool
    limit: Optional[int]
    plan_code: str


def get_active_subscription(db: Session, tenant_id: int) -> Optional[TenantSubscription]:
    return db.query(TenantSubscription).filter(
        TenantSubscription.tenant_id == tenant_id,
        TenantSubscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES)
    ).order_by(TenantSubscription.created_at.desc(), TenantSubscription.id.desc()).first()


def get_default_plan(db: Session) -> Optional[SubscriptionPlan]:
    return db.query(SubscriptionPlan).filter(
        SubscriptionPlan.is_default.is_(True),
        SubscriptionPlan.is_active.is_(True)
    ).order_by(SubscriptionPlan.id).first()


def resolve_tenant_plan(db: Session, tenant_id: int) -> PlanResolution:
    """Which plan governs a tenant right now.

    A tenant with only ended subscriptions resolves to no plan at all, rather
    than to the default plan.
    """
    subscription = get_active_subscription(db, tenant_id)
    if subscription is not None:
        return PlanResolution(source="subscription", subscription=subscription, plan=subscription.plan)

    history = db.query(TenantSubscription.id).filter(TenantSubscription.tenant_id == tenant_id).count()
    if history > 0:
        return PlanResolution(source="inactive_subscription", subscription=None, plan=None)

    default_plan = get_default_plan(db)
    if default_plan is not None:
        return PlanResolution(source="default_plan", subscription=None, plan=default_plan)
    return PlanResolution(source="none", subscription=None, plan=None)


def list_feature_keys(db: Session) -> List[str]:
    """Distinct feature keys across all plans (Redis-cached)"""
    try:
        cached = get_cached_feature_keys()
        if cached is not None:
            return cached
    except Exception as e:
        logger.warning(f"Feature key cache read failed: {e}")

    keys = sorted(key for (key,) in db.query(SubscriptionPlanFeature.key).distinct().all())
    try:
        set_cached_feature_keys(keys)
    except Exception as e:
        logger.warning(f"Feature key cache write failed: {e}")
    return keys


def resolve_tenant_entitlements(db: Session, tenant_id: int, resolution: Optional[PlanResolution] = None) -> Dict[str, Entitlement]:
    """Per-key entitlements for the tenant's resolved plan.

    Only keys defined on some plan are known. An inactive tenant gets every known
    key locked; a key no plan defines is absent from the map, and the ensure_*
    checks treat an absent key as ungated.
    """
    resolution = resolution or resolve_tenant_plan(db, tenant_id)

    if resolution.source == "inactive_subscription":
        # Explicitly locked so limit checks fail closed
        return {
            key: Entitlement(enabled=False, limit=0, plan_code=INACTIVE_PLAN_CODE)
            for key in list_feature_keys(db)
        }

    plan = resolution.plan
    if plan is None:
        return {}
    return {
        feature.key: Entitlement(enabled=bool(feature.enabled), limit=feature.limit, plan_code=plan.code)
        for feature in plan.features
    }


def ensure_feature_enabled(db: Session, tenant_id: int, key: str, message: str) -> None:
    """Raise ForbiddenError when the tenant's plan carries the feature disabled

    A key absent from the entitlement map (defined on no plan) passes.
    """
    entitlement = resolve_tenant_entitlements(db, tenant_id).get(key)
    if entitlement is not None and not entitlement.enabled:
        raise ForbiddenError(message)


def ensure_feature_limit(
    db: Session,
    tenant_id: int,
    key: str,
    current_usage: int,
    increment: int = 1,
    message: str = "Plan limit reached"
) -> None:
    """Raise when adding increment to current_usage would exceed the plan limit

    A key absent from the entitlement map passes, as does a None limit.

    Raises:
        ForbiddenError: If the feature is disabled
        PreconditionFailedError: If the limit would be exceeded
    """
    entitlement = resolve_tenant_entitlements(db, tenant_id).get(key)
    if entitlement is None:
        return
    if not entitlement.enabled:
        raise ForbiddenError(message)
    if entitlement.limit is None:
        return
    if current_usage + increment > entitlement.limit:
        raise PreconditionFailedError(f"{message} (plan limit: {entitlement.limit})")


def get_tenant_usage_snapshot(db: Session, tenant_id: int) -> Dict[str, int]:
    church_ids = [cid for (cid,) in db.query(Church.id).filter(Church.tenant_id == tenant_id).all()]
    if not church_ids:
        return {"members": 0, "campuses": 0, "churches": 0, "events_this_month": 0, "expenses_this_month": 0}

    month_start = start_of_utc_month()
    return {
        "members": db.query(Member.id).filter(Member.church_id.in_(church_ids), Member.status == "ACTIVE").count(),
        "campuses": db.query(Campus.id).filter(Campus.church_id.in_(church_ids)).count(),
        "churches": len(church_ids),
        "events_this_month": db.query(Event.id).filter(Event.church_id.in_(church_ids), Event.created_at >= month_start).count(),
        "expenses_this_month": db.query(Expense.id).filter(Expense.church_id.in_(church_ids), Expense.created_at >= month_start).count(),
    }
