"""Subscription automation sweep: quota alerts, trial reminders, past-due suspension"""
import logging
from datetime import timedelta
from typing import Any, Dict, List
from sqlalchemy.orm import Session

from faithflow.core.config import settings
from faithflow.core.logging import billing_logger
from faithflow.core.metrics import suspended_tenants_counter
from faithflow.models.tenant import Tenant
from faithflow.models.tenant_subscription import TenantSubscription
from faithflow.services.audit_service import record_audit_log
from faithflow.services.email_service import list_tenant_admin_recipients, queue_email
from faithflow.services.entitlement_service import (
    get_active_subscription, get_tenant_usage_snapshot, resolve_tenant_entitlements,
)
from faithflow.utils.dates import as_utc, utcnow
from faithflow.utils.templates import render_trial_ending_email

logger = logging.getLogger(__name__)

# Plan limit key -> usage snapshot field
MONITORED_LIMITS = (
    ("max_members", "members"),
    ("max_campuses", "campuses"),
    ("max_events_monthly", "events_this_month"),
    ("max_expenses_monthly", "expenses_this_month"),
)


def _check_quotas(db: Session, tenant: Tenant) -> List[Dict[str, Any]]:
    """Audit every monitored limit the tenant is over. Overages never suspend."""
    entitlements = resolve_tenant_entitlements(db, tenant.id)
    usage = get_tenant_usage_snapshot(db, tenant.id)

    alerts = []
    for key, usage_field in MONITORED_LIMITS:
        entitlement = entitlements.get(key)
        if entitlement is None or entitlement.limit is None or not entitlement.enabled:
            continue
        value = usage[usage_field]
        if value <= entitlement.limit:
            continue

        alert = {
            "tenant_id": tenant.id,
            "key": key,
            "usage": value,
            "limit": entitlement.limit,
            "plan_code": entitlement.plan_code,
        }
        alerts.append(alert)
        record_audit_log(
            db,
            action="subscription.quota_exceeded",
            target_type="Tenant",
            target_id=tenant.id,
            tenant_id=tenant.id,
            details={k: v for k, v in alert.items() if k != "tenant_id"},
        )
    return alerts


def _queue_trial_reminders(db: Session, tenant: Tenant, subscription: TenantSubscription, days_before_end: int) -> int:
    now = utcnow()
    trial_ends_at = as_utc(subscription.trial_ends_at)
    if trial_ends_at is None or not (now < trial_ends_at <= now + timedelta(days=days_before_end)):
        return 0

    today = now.date().isoformat()
    trial_ends_on = trial_ends_at.date().isoformat()
    plan_code = subscription.plan.code if subscription.plan else "unknown"
    queued = 0
    for church_id, email in list_tenant_admin_recipients(db, tenant.id)[:50]:
        schedule = queue_email(
            db,
            church_id=church_id,
            to=email,
            subject="Your FaithFlow trial is ending soon",
            body=render_trial_ending_email(tenant.name, plan_code, trial_ends_on, f"{settings.ADMIN_URL}/billing"),
            dedupe_key=f"trial-ending:{subscription.id}:{email}:{today}",
            dedupe_window=timedelta(hours=24),
            extra={
                "tenant_id": tenant.id,
                "subscription_id": subscription.id,
                "reason": "trial_ending",
                "trial_ends_at": trial_ends_at.isoformat(),
            },
        )
        if schedule is not None:
            queued += 1

    record_audit_log(
        db,
        action="subscription.trial_reminder_queued",
        target_type="TenantSubscription",
        target_id=subscription.id,
        tenant_id=tenant.id,
        details={"trial_ends_at": trial_ends_at.isoformat(), "days_before_end": days_before_end, "queued": queued},
    )
    return queued


def _suspend_if_past_due(db: Session, tenant: Tenant, subscription: TenantSubscription, grace_days: int):
    """Suspend an ACTIVE tenant whose PAST_DUE subscription is beyond the grace window"""
    if tenant.status != "ACTIVE" or subscription.status != "PAST_DUE":
        return None
    reference = as_utc(subscription.current_period_end or subscription.updated_at)
    if reference is None or reference >= utcnow() - timedelta(days=grace_days):
        return None

    tenant.status = "SUSPENDED"
    tenant.suspended_at = utcnow()
    tenant.suspension_reason = f"AUTO_PAST_DUE_{grace_days}D"
    db.flush()

    record_audit_log(
        db,
        action="subscription.tenant_auto_suspended",
        target_type="Tenant",
        target_id=tenant.id,
        tenant_id=tenant.id,
        details={
            "reason": "past_due_grace_expired",
            "suspend_past_due_after_days": grace_days,
            "subscription_id": subscription.id,
            "period_end": reference.isoformat(),
        },
    )
    suspended_tenants_counter.inc()
    billing_logger.warning(f"Suspended tenant {tenant.id} ({tenant.name}): past due beyond {grace_days} days")
    return {"tenant_id": tenant.id, "action": "suspended_for_past_due", "subscription_id": subscription.id}


def run_subscription_automation(
    db: Session,
    suspend_past_due_after_days: int = 14,
    trial_reminder_days_before_end: int = 3,
    limit_tenants: int = 500
) -> Dict[str, Any]:
    """Sweep ACTIVE and SUSPENDED tenants.

    Each tenant is committed on its own; a failure is rolled back, collected
    into errors, and the sweep moves on.
    """
    tenants = db.query(Tenant).filter(
        Tenant.status.in_(["ACTIVE", "SUSPENDED"])
    ).order_by(Tenant.created_at, Tenant.id).limit(limit_tenants).all()
    tenant_ids = [tenant.id for tenant in tenants]

    quota_alerts: List[Dict[str, Any]] = []
    billing_actions: List[Dict[str, Any]] = []
    errors: List[Dict[str, Any]] = []

    for tenant_id in tenant_ids:
        try:
            tenant = db.get(Tenant, tenant_id)
            subscription = get_active_subscription(db, tenant_id)

            if tenant.status == "ACTIVE" and subscription is not None and subscription.status == "TRIALING":
                _queue_trial_reminders(db, tenant, subscription, trial_reminder_days_before_end)

            quota_alerts.extend(_check_quotas(db, tenant))

            if subscription is not None:
                action = _suspend_if_past_due(db, tenant, subscription, suspend_past_due_after_days)
                if action:
                    billing_actions.append(action)

            db.commit()
        except Exception as e:
            db.rollback()
            logger.error(f"Subscription automation failed for tenant {tenant_id}: {e}", exc_info=True)
            errors.append({"tenant_id": tenant_id, "message": str(e)})

    billing_logger.info(
        f"Subscription automation: {len(tenant_ids)} tenants, {len(quota_alerts)} quota alerts, "
        f"{len(billing_actions)} billing actions, {len(errors)} errors"
    )
    return {
        "scanned_tenants": len(tenant_ids),
        "quota_alerts": quota_alerts,
        "billing_actions": billing_actions,
        "errors": errors,
    }
