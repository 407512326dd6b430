"""Platform billing - tenant subscriptions to FaithFlow plans"""
import logging
import re
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional, Tuple
from sqlalchemy.orm import Session

from faithflow.core.config import settings
from faithflow.core.errors import BadRequestError, BillingError, NotFoundError
from faithflow.db.redis import invalidate_feature_keys_cache
from faithflow.models.church import Church
from faithflow.models.subscription_plan import SubscriptionPlan
from faithflow.models.subscription_plan_feature import SubscriptionPlanFeature
from faithflow.models.tenant import Tenant
from faithflow.models.tenant_subscription import TenantSubscription
from faithflow.services.audit_service import record_audit_log
from faithflow.services.email_service import is_email_configured, list_tenant_admin_recipients, queue_email
from faithflow.services.entitlement_service import ACTIVE_SUBSCRIPTION_STATUSES, get_active_subscription, get_default_plan
from faithflow.services.provider_events import paystack_plan_code, paystack_subscription_code
from faithflow.services.providers import ProviderClients
from faithflow.services.stripe_service import get_stripe_value, stripe_id
from faithflow.utils.dates import from_timestamp, parse_iso_datetime, utcnow
from faithflow.utils.templates import render_welcome_email

logger = logging.getLogger(__name__)

SUBSCRIPTION_STATUSES = ("TRIALING", "ACTIVE", "PAST_DUE", "PAUSED", "CANCELED", "EXPIRED")

STRIPE_STATUS_MAP = {
    "trialing": "TRIALING",
    "active": "ACTIVE",
    "past_due": "PAST_DUE",
    "unpaid": "PAST_DUE",
    "incomplete": "PAST_DUE",
    "paused": "PAUSED",
    "canceled": "CANCELED",
    "incomplete_expired": "EXPIRED",
}

PAYSTACK_STATUS_MAP = {
    "active": "ACTIVE",
    "non-renewing": "PAUSED",
    "attention": "PAST_DUE",
    "complete": "CANCELED",
    "cancelled": "CANCELED",
    "canceled": "CANCELED",
}

PAYSTACK_SYNC_EVENTS = ("subscription.create", "charge.success", "invoice.create", "invoice.update")
PAYSTACK_CANCEL_EVENTS = ("subscription.disable", "subscription.not_renew")

PAYSTACK_SUBSCRIPTION_CODE = re.compile(r"^SUB_[A-Za-z0-9]+$")


def map_stripe_status(status: Optional[str]) -> str:
    return STRIPE_STATUS_MAP.get(status or "", "ACTIVE")


def map_paystack_status(status: Optional[str]) -> str:
    return PAYSTACK_STATUS_MAP.get(status or "", "ACTIVE")


# ============================================================================
# PLANS
# ============================================================================

def get_plan_by_code(db: Session, code: str) -> Optional[SubscriptionPlan]:
    return db.query(SubscriptionPlan).filter(SubscriptionPlan.code == code).first()


def upsert_plan_feature(db: Session, plan_code: str, key: str, enabled: bool = True, limit: Optional[int] = None) -> SubscriptionPlanFeature:
    """Create or update one feature row on a plan"""
    plan = get_plan_by_code(db, plan_code)
    if not plan:
        raise NotFoundError("Plan not found")

    feature = db.query(SubscriptionPlanFeature).filter(
        SubscriptionPlanFeature.plan_id == plan.id,
        SubscriptionPlanFeature.key == key
    ).first()
    if feature is None:
        feature = SubscriptionPlanFeature(plan_id=plan.id, key=key)
        db.add(feature)
    feature.enabled = enabled
    feature.limit = limit
    db.commit()
    db.refresh(feature)

    invalidate_feature_keys_cache()
    logger.info(f"Plan {plan_code} feature {key}: enabled={enabled}, limit={limit}")
    return feature


def resolve_tenant_and_plan(
    db: Session,
    tenant_id: Any,
    plan_code: Optional[str] = None,
    stripe_price_id: Optional[str] = None,
    paystack_plan: Optional[str] = None
) -> Tuple[Optional[Tenant], Optional[SubscriptionPlan]]:
    """Tenant from metadata; plan by code, then provider price/plan id, then the default plan"""
    tenant = None
    if tenant_id not in (None, "") and str(tenant_id).isdigit():
        tenant = db.get(Tenant, int(tenant_id))
    if tenant is None:
        return None, None

    plan = get_plan_by_code(db, plan_code) if plan_code else None
    if plan is None and stripe_price_id:
        plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.stripe_price_id == stripe_price_id).first()
    if plan is None and paystack_plan:
        plan = db.query(SubscriptionPlan).filter(SubscriptionPlan.paystack_plan_code == paystack_plan).first()
    if plan is None:
        plan = get_default_plan(db)
    return tenant, plan


# ============================================================================
# SUBSCRIPTIONS
# ============================================================================

def _cancel_subscription(subscription: TenantSubscription) -> None:
    subscription.status = "CANCELED"
    subscription.canceled_at = utcnow()
    subscription.cancel_at_period_end = False


def assign_tenant_plan(
    db: Session,
    tenant_id: int,
    plan_code: str,
    status: str = "ACTIVE",
    trial_ends_at: Optional[datetime] = None,
    seat_count: Optional[int] = None,
    actor_id: Optional[str] = None
) -> TenantSubscription:
    """Put a tenant on a plan manually, canceling its current subscription in the same transaction

    Raises:
        NotFoundError: Unknown tenant or plan
        BadRequestError: Inactive plan or invalid status
    """
    tenant = db.get(Tenant, tenant_id)
    if not tenant:
        raise NotFoundError("Tenant not found")
    plan = get_plan_by_code(db, plan_code)
    if not plan:
        raise NotFoundError("Plan not found")
    if not plan.is_active:
        raise BadRequestError("Plan is inactive")
    if status not in SUBSCRIPTION_STATUSES:
        raise BadRequestError(f"Invalid subscription status {status}")

    previous = get_active_subscription(db, tenant.id)
    if previous is not None:
        _cancel_subscription(previous)

    now = utcnow()
    subscription = TenantSubscription(
        tenant_id=tenant.id,
        plan_id=plan.id,
        status=status,
        provider="MANUAL",
        starts_at=now,
        current_period_start=now,
        trial_ends_at=trial_ends_at,
        canceled_at=now if status == "CANCELED" else None,
        cancel_at_period_end=False,
        seat_count=seat_count,
    )
    db.add(subscription)
    db.flush()

    record_audit_log(
        db,
        action="platform.tenant.plan_assigned",
        target_type="TenantSubscription",
        target_id=subscription.id,
        tenant_id=tenant.id,
        actor_type="USER",
        actor_id=actor_id,
        details={
            "plan_code": plan.code,
            "status": status,
            "previous_subscription_id": previous.id if previous else None,
            "previous_plan_code": previous.plan.code if previous and previous.plan else None,
        },
    )
    db.commit()
    db.refresh(subscription)
    logger.info(f"Assigned plan {plan.code} to tenant {tenant.id} (subscription {subscription.id})")
    return subscription


@dataclass
class ProviderSubscriptionIds:
    customer_id: Optional[str] = None
    price_id: Optional[str] = None
    subscription_id: Optional[str] = None
    email_token: Optional[str] = None


def upsert_platform_subscription(
    db: Session,
    tenant_id: int,
    plan_id: int,
    provider: str,
    provider_ref: str,
    status: str,
    current_period_start: Optional[datetime] = None,
    current_period_end: Optional[datetime] = None,
    trial_ends_at: Optional[datetime] = None,
    canceled_at: Optional[datetime] = None,
    cancel_at_period_end: Optional[bool] = None,
    ids: Optional[ProviderSubscriptionIds] = None,
    extra: Optional[Dict[str, Any]] = None
) -> Tuple[TenantSubscription, bool]:
    """Insert or update by (provider, provider_ref). Returns (subscription, created).

    A newly created active row cancels the tenant's other active rows.
    """
    ids = ids or ProviderSubscriptionIds()
    record = db.query(TenantSubscription).filter(
        TenantSubscription.provider == provider,
        TenantSubscription.provider_ref == provider_ref
    ).first()
    created = record is None

    if created:
        if status in ACTIVE_SUBSCRIPTION_STATUSES:
            others = db.query(TenantSubscription).filter(
                TenantSubscription.tenant_id == tenant_id,
                TenantSubscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES)
            ).all()
            for other in others:
                logger.info(f"Canceling subscription {other.id} superseded by {provider} {provider_ref}")
                _cancel_subscription(other)
        record = TenantSubscription(
            tenant_id=tenant_id,
            provider=provider,
            provider_ref=provider_ref,
            starts_at=current_period_start or utcnow(),
            cancel_at_period_end=False,
        )
        db.add(record)

    record.plan_id = plan_id
    record.status = status
    if current_period_start is not None:
        record.current_period_start = current_period_start
    if current_period_end is not None:
        record.current_period_end = current_period_end
    if trial_ends_at is not None:
        record.trial_ends_at = trial_ends_at
    if canceled_at is not None:
        record.canceled_at = canceled_at
    if cancel_at_period_end is not None:
        record.cancel_at_period_end = cancel_at_period_end
    if ids.customer_id:
        record.provider_customer_id = ids.customer_id
    if ids.price_id:
        record.provider_price_id = ids.price_id
    if ids.subscription_id:
        record.provider_subscription_id = ids.subscription_id
    if ids.email_token:
        record.provider_email_token = ids.email_token
    if extra is not None:
        record.extra = extra
    db.flush()
    return record, created


def queue_tenant_welcome_email(db: Session, tenant_id: int) -> int:
    """Queue the welcome email to each tenant admin once. Returns the number queued."""
    if not is_email_configured() or not settings.RESEND_FROM_EMAIL:
        return 0

    queued = 0
    for church_id, email in list_tenant_admin_recipients(db, tenant_id)[:50]:
        church = db.get(Church, church_id)
        schedule = queue_email(
            db,
            church_id=church_id,
            to=email,
            subject="Welcome to FaithFlow AI",
            body=render_welcome_email(church.name if church else "your church", settings.ADMIN_URL),
            dedupe_key=f"welcome:{tenant_id}:{email}",
            extra={"tenant_id": tenant_id, "reason": "tenant_welcome"},
        )
        if schedule is not None:
            queued += 1
    if queued:
        logger.info(f"Queued {queued} welcome email(s) for tenant {tenant_id}")
    return queued


# ============================================================================
# PLATFORM WEBHOOKS
# ============================================================================

def _stripe_subscription_fields(subscription: Dict[str, Any]) -> Dict[str, Any]:
    items = get_stripe_value(get_stripe_value(subscription, "items", {}), "data", [])
    primary = items[0] if items else {}
    price_id = stripe_id(get_stripe_value(primary, "price"))
    # Period bounds live on the item in newer API versions
    period_start = get_stripe_value(primary, "current_period_start") or get_stripe_value(subscription, "current_period_start")
    period_end = get_stripe_value(primary, "current_period_end") or get_stripe_value(subscription, "current_period_end")
    return {
        "price_id": price_id,
        "customer_id": stripe_id(get_stripe_value(subscription, "customer")),
        "current_period_start": from_timestamp(period_start),
        "current_period_end": from_timestamp(period_end),
        "trial_ends_at": from_timestamp(get_stripe_value(subscription, "trial_end")),
        "canceled_at": from_timestamp(get_stripe_value(subscription, "canceled_at")),
        "cancel_at_period_end": get_stripe_value(subscription, "cancel_at_period_end"),
    }


def handle_platform_stripe_event(db: Session, event: Dict[str, Any]) -> Dict[str, Any]:
    """Sync a tenant subscription from a platform Stripe event. Flushes only."""
    event_type = event.get("type", "")
    obj = (event.get("data") or {}).get("object") or {}

    if event_type.startswith("customer.subscription."):
        metadata = get_stripe_value(obj, "metadata", {}) or {}
        fields = _stripe_subscription_fields(obj)
        tenant, plan = resolve_tenant_and_plan(
            db,
            metadata.get("tenant_id"),
            plan_code=metadata.get("plan_code"),
            stripe_price_id=fields["price_id"],
        )
        if not tenant or not plan:
            return {"event": event_type, "skipped": True, "reason": "tenant_or_plan_not_found"}

        subscription_id = get_stripe_value(obj, "id")
        record, _ = upsert_platform_subscription(
            db,
            tenant_id=tenant.id,
            plan_id=plan.id,
            provider="STRIPE",
            provider_ref=subscription_id,
            status=map_stripe_status(get_stripe_value(obj, "status")),
            current_period_start=fields["current_period_start"],
            current_period_end=fields["current_period_end"],
            trial_ends_at=fields["trial_ends_at"],
            canceled_at=fields["canceled_at"],
            cancel_at_period_end=fields["cancel_at_period_end"],
            ids=ProviderSubscriptionIds(
                customer_id=fields["customer_id"],
                price_id=fields["price_id"],
                subscription_id=subscription_id,
            ),
            extra={"event_type": event_type, "plan_code": plan.code},
        )
        record_audit_log(
            db,
            action="platform.subscription.synced_stripe",
            target_type="TenantSubscription",
            target_id=record.id,
            tenant_id=tenant.id,
            actor_type="WEBHOOK",
            details={"event_type": event_type, "stripe_subscription_id": subscription_id, "status": record.status},
        )
        if record.status in ("ACTIVE", "TRIALING"):
            queue_tenant_welcome_email(db, tenant.id)
        return {"event": event_type, "provider": "stripe", "subscription_id": record.id, "tenant_id": tenant.id}

    if event_type in ("invoice.paid", "invoice.payment_failed"):
        subscription_ref = stripe_id(get_stripe_value(obj, "subscription"))
        if not subscription_ref:
            parent = get_stripe_value(obj, "parent", {})
            subscription_ref = stripe_id(get_stripe_value(get_stripe_value(parent, "subscription_details", {}), "subscription"))
        if not subscription_ref:
            return {"event": event_type, "skipped": True, "reason": "missing_subscription"}

        record = db.query(TenantSubscription).filter(
            TenantSubscription.provider == "STRIPE",
            TenantSubscription.provider_ref == subscription_ref
        ).first()
        if record is None:
            return {"event": event_type, "skipped": True, "reason": "subscription_not_found"}

        record.status = "PAST_DUE" if event_type == "invoice.payment_failed" else "ACTIVE"
        customer_id = stripe_id(get_stripe_value(obj, "customer"))
        if customer_id:
            record.provider_customer_id = customer_id
        record.provider_subscription_id = subscription_ref
        db.flush()
        record_audit_log(
            db,
            action="platform.subscription.invoice_update",
            target_type="TenantSubscription",
            target_id=record.id,
            tenant_id=record.tenant_id,
            actor_type="WEBHOOK",
            details={"event_type": event_type, "status": record.status, "stripe_subscription_id": subscription_ref},
        )
        return {"event": event_type, "provider": "stripe", "subscription_id": record.id, "tenant_id": record.tenant_id}

    return {"event": event_type, "ignored": True}


def _paystack_ids(data: Dict[str, Any]) -> ProviderSubscriptionIds:
    customer = data.get("customer") if isinstance(data.get("customer"), dict) else {}
    subscription = data.get("subscription") if isinstance(data.get("subscription"), dict) else {}
    subscription_code = paystack_subscription_code(data)
    return ProviderSubscriptionIds(
        customer_id=customer.get("customer_code"),
        price_id=paystack_plan_code(data),
        subscription_id=subscription_code if subscription_code and PAYSTACK_SUBSCRIPTION_CODE.match(subscription_code) else None,
        email_token=data.get("email_token") if isinstance(data.get("email_token"), str) else subscription.get("email_token"),
    )


def _disable_previous_paystack_subscriptions(
    db: Session,
    previous: list,
    providers: ProviderClients,
    tenant_id: int,
    from_plan: str,
    to_plan: str
) -> None:
    """Best-effort: stop billing on the subscriptions a plan change replaced"""
    for sub in previous:
        if not sub.provider_subscription_id or not sub.provider_email_token:
            continue
        details = {"from_plan": from_plan, "to_plan": to_plan, "subscription_code": sub.provider_subscription_id}
        try:
            providers.paystack().disable_subscription(sub.provider_subscription_id, sub.provider_email_token)
            _cancel_subscription(sub)
            details["ok"] = True
        except BillingError as e:
            logger.warning(f"Failed to disable Paystack subscription {sub.provider_subscription_id}: {e.message}")
            details.update(ok=False, error=e.message)
        record_audit_log(
            db,
            action="platform.subscription.plan_change_paystack_disable_attempt",
            target_type="TenantSubscription",
            target_id=sub.id,
            tenant_id=tenant_id,
            details=details,
        )


def handle_platform_paystack_event(db: Session, event: Dict[str, Any], providers: ProviderClients) -> Dict[str, Any]:
    """Sync a tenant subscription from a platform Paystack event. Flushes only."""
    event_type = event.get("event") or ""
    data = event.get("data") or {}
    metadata = data.get("metadata") if isinstance(data.get("metadata"), dict) else {}
    subscription_code = paystack_subscription_code(data)
    plan_code = paystack_plan_code(data)

    if event_type == "charge.success" and not plan_code:
        return {"event": event_type, "ignored": True}
    if event_type not in PAYSTACK_SYNC_EVENTS + PAYSTACK_CANCEL_EVENTS + ("invoice.payment_failed",):
        return {"event": event_type, "ignored": True}
    if not subscription_code and not plan_code:
        return {"event": event_type, "skipped": True, "reason": "missing_subscription_refs"}

    tenant, plan = resolve_tenant_and_plan(
        db,
        metadata.get("tenant_id"),
        plan_code=metadata.get("plan_code"),
        paystack_plan=plan_code,
    )
    if not tenant or not plan:
        return {"event": event_type, "skipped": True, "reason": "tenant_or_plan_not_found"}

    if event_type in PAYSTACK_CANCEL_EVENTS:
        status = "CANCELED"
    elif event_type == "invoice.payment_failed":
        status = "PAST_DUE"
    else:
        raw_status = data.get("status") if isinstance(data.get("status"), str) else None
        status = map_paystack_status(raw_status)

    provider_ref = subscription_code or plan_code
    plan_change_from = (metadata.get("plan_change_from") or "").strip() if isinstance(metadata.get("plan_change_from"), str) else ""
    previous = []
    if plan_change_from and status not in ("CANCELED",):
        previous = db.query(TenantSubscription).filter(
            TenantSubscription.tenant_id == tenant.id,
            TenantSubscription.provider == "PAYSTACK",
            TenantSubscription.provider_ref != provider_ref,
            TenantSubscription.status.in_(ACTIVE_SUBSCRIPTION_STATUSES)
        ).order_by(TenantSubscription.created_at.desc()).limit(5).all()

    record, _ = upsert_platform_subscription(
        db,
        tenant_id=tenant.id,
        plan_id=plan.id,
        provider="PAYSTACK",
        provider_ref=provider_ref,
        status=status,
        current_period_end=parse_iso_datetime(data.get("next_payment_date")),
        canceled_at=utcnow() if status == "CANCELED" else None,
        ids=_paystack_ids(data),
        extra={"event_type": event_type, "plan_code": plan.code},
    )

    if previous:
        _disable_previous_paystack_subscriptions(db, previous, providers, tenant.id, plan_change_from, plan.code)

    record_audit_log(
        db,
        action="platform.subscription.synced_paystack",
        target_type="TenantSubscription",
        target_id=record.id,
        tenant_id=tenant.id,
        actor_type="WEBHOOK",
        details={"event_type": event_type, "status": record.status, "reference": record.provider_ref},
    )
    if record.status in ("ACTIVE", "TRIALING"):
        queue_tenant_welcome_email(db, tenant.id)
    return {"event": event_type, "provider": "paystack", "subscription_id": record.id, "tenant_id": tenant.id}
