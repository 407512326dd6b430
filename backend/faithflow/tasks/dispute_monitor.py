"""Evidence-deadline alerts for open disputes"""
import logging
import math
from typing import Dict, Optional
from sqlalchemy.orm import Session

from faithflow.core.config import settings
from faithflow.models.church import Church
from faithflow.models.dispute import Dispute
from faithflow.services.audit_service import has_audit_log, record_audit_log
from faithflow.services.dispute_service import is_dispute_closed
from faithflow.services.email_service import list_staff_recipients, queue_email
from faithflow.utils.dates import as_utc, utcnow
from faithflow.utils.templates import render_dispute_alert_email

logger = logging.getLogger(__name__)

# (stage, max days until the deadline), checked in order
ALERT_STAGES = (
    ("overdue", 0),
    ("one_day", 1),
    ("three_days", 3),
    ("seven_days", 7),
)

STAGE_LABELS = {
    "overdue": "overdue",
    "one_day": "due within 1 day",
    "three_days": "due within 3 days",
    "seven_days": "due within 7 days",
}


def alert_stage(days_until: int) -> Optional[str]:
    for stage, max_days in ALERT_STAGES:
        if days_until <= max_days:
            return stage
    return None


def _subject(stage: str, days_until: int) -> str:
    if stage == "overdue":
        return "Action needed: dispute evidence overdue"
    label = "1 day" if days_until <= 1 else f"{days_until} days"
    return f"Dispute evidence due in {label}"


def run_dispute_alerts(db: Session, limit: int = 100) -> Dict[str, int]:
    """Queue one alert per dispute per deadline stage to the church's ADMIN/STAFF"""
    disputes = db.query(Dispute).filter(
        Dispute.evidence_due_by.isnot(None)
    ).order_by(Dispute.evidence_due_by).limit(limit).all()

    alerted = 0
    skipped = 0
    now = utcnow()

    for dispute in disputes:
        if is_dispute_closed(dispute.status) or dispute.church_id is None:
            skipped += 1
            continue

        due_by = as_utc(dispute.evidence_due_by)
        days_until = math.ceil((due_by - now).total_seconds() / 86400)
        stage = alert_stage(days_until)
        if stage is None:
            skipped += 1
            continue

        action = f"dispute.alert.{stage}"
        if has_audit_log(db, "Dispute", dispute.id, action):
            skipped += 1
            continue

        recipients = list_staff_recipients(db, [dispute.church_id], roles=("ADMIN", "STAFF"))
        if not recipients:
            skipped += 1
            continue

        try:
            church = db.get(Church, dispute.church_id)
            body = render_dispute_alert_email(
                church_name=church.name if church else "",
                provider_ref=dispute.provider_ref,
                amount=f"{dispute.amount} {dispute.currency or ''}".strip() if dispute.amount is not None else "N/A",
                status=dispute.status,
                due_on=due_by.strftime("%Y-%m-%d %H:%M UTC"),
                stage_label=STAGE_LABELS[stage],
                disputes_url=f"{settings.ADMIN_URL}/finance",
            )
            subject = _subject(stage, max(days_until, 0))
            for church_id, email in recipients:
                queue_email(
                    db,
                    church_id=church_id,
                    to=email,
                    subject=subject,
                    body=body,
                    extra={"type": "dispute.alert", "stage": stage, "dispute_id": dispute.id},
                )

            record_audit_log(
                db,
                action=action,
                target_type="Dispute",
                target_id=dispute.id,
                tenant_id=church.tenant_id if church else None,
                church_id=dispute.church_id,
                details={"stage": stage, "due_by": due_by.isoformat(), "recipients": len(recipients)},
            )
            db.commit()
            alerted += 1
        except Exception as e:
            db.rollback()
            logger.error(f"Dispute alert failed for dispute {dispute.id}: {e}", exc_info=True)
            skipped += 1

    if alerted:
        logger.info(f"Dispute alerts: {alerted} alerted, {skipped} skipped of {len(disputes)}")
    return {"scanned": len(disputes), "alerted": alerted, "skipped": skipped}
