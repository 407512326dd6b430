"""Dunning notices for past-due tenant subscriptions"""
import logging
from datetime import timedelta
from typing import Any, Dict, List
from sqlalchemy import or_
from sqlalchemy.orm import Session

from faithflow.core.config import settings
from faithflow.core.logging import billing_logger
from faithflow.core.metrics import dunning_notices_counter
from faithflow.models.tenant_subscription import TenantSubscription
from faithflow.services.audit_service import record_audit_log
from faithflow.services.email_service import list_tenant_admin_recipients, queue_email
from faithflow.utils.dates import utcnow
from faithflow.utils.templates import render_dunning_email

logger = logging.getLogger(__name__)

DUNNING_DEDUPE_WINDOW = timedelta(hours=24)


def run_billing_dunning(db: Session, grace_days: int = 3, limit: int = 200, dry_run: bool = False) -> Dict[str, Any]:
    """Queue payment-issue notices to the admins of PAST_DUE tenants.

    A (subscription, recipient) pair gets at most one notice per rolling 24 hours.

    Args:
        db: Database session
        grace_days: Only subscriptions whose period ended at least this long ago
        limit: Maximum subscriptions inspected
        dry_run: Report targets without queueing anything

    Returns:
        Dict with dry_run, grace_days, inspected, queued and per-subscription targets
    """
    cutoff = utcnow() - timedelta(days=grace_days)
    subscriptions = db.query(TenantSubscription).filter(
        TenantSubscription.status == "PAST_DUE",
        or_(TenantSubscription.current_period_end.is_(None), TenantSubscription.current_period_end <= cutoff)
    ).order_by(TenantSubscription.current_period_end, TenantSubscription.updated_at).limit(limit).all()

    targets: List[Dict[str, Any]] = []
    queued = 0
    errors: List[Dict[str, Any]] = []

    for subscription in subscriptions:
        plan_code = subscription.plan.code if subscription.plan else "unknown"
        recipients = list_tenant_admin_recipients(db, subscription.tenant_id)[:50]
        targets.append({
            "tenant_id": subscription.tenant_id,
            "subscription_id": subscription.id,
            "plan_code": plan_code,
            "recipient_count": len(recipients),
        })
        if dry_run:
            continue

        try:
            tenant_name = subscription.tenant.name if subscription.tenant else str(subscription.tenant_id)
            period_end = subscription.current_period_end.date().isoformat() if subscription.current_period_end else None
            body = render_dunning_email(tenant_name, plan_code, f"{settings.ADMIN_URL}/billing", period_end)

            sent_here = 0
            for church_id, email in recipients:
                schedule = queue_email(
                    db,
                    church_id=church_id,
                    to=email,
                    subject=f"Action required: {tenant_name} subscription payment issue ({plan_code})",
                    body=body,
                    dedupe_key=f"dunning:{subscription.id}:{email}",
                    dedupe_window=DUNNING_DEDUPE_WINDOW,
                    extra={
                        "tenant_id": subscription.tenant_id,
                        "subscription_id": subscription.id,
                        "reason": "subscription_past_due",
                    },
                )
                if schedule is not None:
                    sent_here += 1

            record_audit_log(
                db,
                action="billing.dunning_queued",
                target_type="TenantSubscription",
                target_id=subscription.id,
                tenant_id=subscription.tenant_id,
                details={"recipient_count": len(recipients), "queued": sent_here, "grace_days": grace_days},
            )
            db.commit()
            queued += sent_here
            dunning_notices_counter.inc(sent_here)
        except Exception as e:
            db.rollback()
            logger.error(f"Dunning failed for subscription {subscription.id}: {e}", exc_info=True)
            errors.append({"subscription_id": subscription.id, "message": str(e)})

    billing_logger.info(f"Dunning: inspected {len(subscriptions)}, queued {queued}, dry_run={dry_run}")
    return {
        "dry_run": dry_run,
        "grace_days": grace_days,
        "inspected": len(subscriptions),
        "queued": queued,
        "targets": targets,
        "errors": errors,
    }
