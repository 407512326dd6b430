"""Email service - queued notifications delivered through Resend"""
import logging
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple
import resend
from sqlalchemy.orm import Session

from faithflow.core.config import settings
from faithflow.core.metrics import queued_communications_gauge
from faithflow.models.church import Church
from faithflow.models.communication_schedule import CommunicationSchedule
from faithflow.models.staff_membership import StaffMembership
from faithflow.utils.dates import utcnow

logger = logging.getLogger(__name__)

DEFAULT_FROM_EMAIL = "FaithFlow <no-reply@faithflow.ai>"


def is_email_configured() -> bool:
    return bool(settings.RESEND_API_KEY)


def _send_email(to: str, subject: str, html: str) -> Tuple[bool, Optional[str]]:
    """
    Internal helper function to send email via Resend API.

    Args:
        to: Recipient email address
        subject: Email subject
        html: HTML email content

    Returns:
        tuple: (sent, error_message)
    """
    if not settings.RESEND_API_KEY:
        logger.warning("RESEND_API_KEY is not set; skipping email")
        return False, "Email provider not configured"

    try:
        resend.api_key = settings.RESEND_API_KEY
        response = resend.Emails.send(
            {
                "from": settings.RESEND_FROM_EMAIL or DEFAULT_FROM_EMAIL,
                "to": to,
                "subject": subject,
                "html": html,
            }
        )
    except Exception as exc:
        logger.error(f"Failed to send email to {to}: {exc}", exc_info=True)
        return False, str(exc)

    # Resend returns a dict with 'id' on success
    email_id = response.get("id") if isinstance(response, dict) else getattr(response, "id", None)
    if email_id:
        logger.info(f"Email sent successfully to {to} (id: {email_id})")
        return True, None

    logger.error(f"Email send returned invalid response: {response}")
    return False, "Email provider returned no message id"


# ============================================================================
# QUEUE
# ============================================================================

def find_queued_duplicate(
    db: Session,
    dedupe_key: str,
    since: Optional[timedelta] = None
) -> Optional[CommunicationSchedule]:
    """A QUEUED or SENT schedule carrying dedupe_key (optionally within a window)"""
    query = db.query(CommunicationSchedule).filter(
        CommunicationSchedule.dedupe_key == dedupe_key,
        CommunicationSchedule.status.in_(["QUEUED", "SENT"])
    )
    if since is not None:
        query = query.filter(CommunicationSchedule.created_at >= utcnow() - since)
    return query.first()


def queue_email(
    db: Session,
    church_id: int,
    to: str,
    subject: str,
    body: str,
    dedupe_key: Optional[str] = None,
    dedupe_window: Optional[timedelta] = None,
    extra: Optional[Dict[str, Any]] = None,
    send_at=None
) -> Optional[CommunicationSchedule]:
    """Queue an email for the dispatcher.

    Returns None without writing when a QUEUED/SENT schedule with the same
    dedupe_key already exists (within dedupe_window when given).
    """
    if dedupe_key and find_queued_duplicate(db, dedupe_key, dedupe_window):
        logger.debug(f"Skipping duplicate email {dedupe_key}")
        return None

    schedule = CommunicationSchedule(
        church_id=church_id,
        channel="EMAIL",
        provider="RESEND",
        to=to,
        subject=subject,
        body=body,
        send_at=send_at or utcnow(),
        status="QUEUED",
        dedupe_key=dedupe_key,
        extra=extra,
    )
    db.add(schedule)
    db.flush()
    return schedule


def list_staff_recipients(
    db: Session,
    church_ids: Sequence[int],
    roles: Sequence[str] = ("ADMIN",)
) -> List[Tuple[int, str]]:
    """(church_id, email) pairs for staff with the given roles, unique by lower-cased email"""
    if not church_ids:
        return []
    rows = db.query(StaffMembership).filter(
        StaffMembership.church_id.in_(list(church_ids)),
        StaffMembership.role.in_(list(roles))
    ).order_by(StaffMembership.id).all()

    seen = set()
    recipients = []
    for row in rows:
        email = (row.email or "").strip().lower()
        if not email or email in seen:
            continue
        seen.add(email)
        recipients.append((row.church_id, email))
    return recipients


def list_tenant_admin_recipients(db: Session, tenant_id: int) -> List[Tuple[int, str]]:
    church_ids = [cid for (cid,) in db.query(Church.id).filter(Church.tenant_id == tenant_id).all()]
    return list_staff_recipients(db, church_ids, roles=("ADMIN",))


# ============================================================================
# DISPATCH
# ============================================================================

def dispatch_scheduled_communications(db: Session, limit: int = 50) -> Dict[str, int]:
    """Send due QUEUED email schedules.

    Each schedule is committed on its own so one provider failure does not
    hold back the rest of the batch.
    """
    now = utcnow()
    due = db.query(CommunicationSchedule).filter(
        CommunicationSchedule.status == "QUEUED",
        CommunicationSchedule.channel == "EMAIL",
        CommunicationSchedule.send_at <= now
    ).order_by(CommunicationSchedule.send_at).limit(limit).all()

    sent = 0
    failed = 0
    for schedule in due:
        ok, error = _send_email(schedule.to, schedule.subject, schedule.body or "")
        if ok:
            schedule.status = "SENT"
            schedule.sent_at = utcnow()
            schedule.error = None
            sent += 1
        else:
            schedule.status = "FAILED"
            schedule.error = error
            failed += 1
        db.commit()

    remaining = db.query(CommunicationSchedule).filter(CommunicationSchedule.status == "QUEUED").count()
    queued_communications_gauge.set(remaining)

    if due:
        logger.info(f"Dispatched communications: {sent} sent, {failed} failed, {remaining} still queued")
    return {"scanned": len(due), "sent": sent, "failed": failed}
