"""Background scheduler for billing automation jobs"""
import asyncio
import logging
from typing import Any, Callable, Dict, Optional
from sqlalchemy.orm import Session

from faithflow.core.config import settings
from faithflow.core.metrics import job_runs_counter
from faithflow.db.redis import acquire_lock, release_lock
from faithflow.db.session import SessionLocal
from faithflow.services.email_service import dispatch_scheduled_communications
from faithflow.tasks.billing_automation import run_subscription_automation
from faithflow.tasks.dispute_monitor import run_dispute_alerts
from faithflow.tasks.dunning import run_billing_dunning
from faithflow.tasks.metadata_backfill import run_subscription_metadata_backfill

logger = logging.getLogger(__name__)


def _subscription_automation(db: Session, **_) -> Dict[str, Any]:
    return run_subscription_automation(
        db,
        suspend_past_due_after_days=settings.SUSPEND_PAST_DUE_AFTER_DAYS,
        trial_reminder_days_before_end=settings.TRIAL_REMINDER_DAYS_BEFORE_END,
    )


def _dunning(db: Session, dry_run: bool = False, limit: Optional[int] = None, **_) -> Dict[str, Any]:
    return run_billing_dunning(db, grace_days=settings.DUNNING_GRACE_DAYS, limit=limit or 200, dry_run=dry_run)


def _dispute_alerts(db: Session, limit: Optional[int] = None, **_) -> Dict[str, Any]:
    return run_dispute_alerts(db, limit=limit or 100)


def _metadata_backfill(db: Session, dry_run: bool = False, limit: Optional[int] = None, provider: Optional[str] = None, **_) -> Dict[str, Any]:
    return run_subscription_metadata_backfill(db, limit=limit or 250, dry_run=dry_run, provider=provider)


def _communications(db: Session, limit: Optional[int] = None, **_) -> Dict[str, Any]:
    return dispatch_scheduled_communications(db, limit=limit or 50)


# Job name -> runner(db, dry_run=?, limit=?, provider=?)
JOBS: Dict[str, Callable[..., Dict[str, Any]]] = {
    "subscription-automation": _subscription_automation,
    "dunning": _dunning,
    "dispute-alerts": _dispute_alerts,
    "metadata-backfill": _metadata_backfill,
    "communications": _communications,
}


def run_job(job: str, db: Session, **params) -> Dict[str, Any]:
    """Run a registered job once on the given session, recording metrics"""
    runner = JOBS[job]
    try:
        result = runner(db, **params)
    except Exception:
        job_runs_counter.labels(job=job, status="failure").inc()
        raise
    job_runs_counter.labels(job=job, status="success").inc()
    return result


def run_locked_job(job: str, lock_timeout: int) -> Optional[Dict[str, Any]]:
    """Run a job in a fresh session under a Redis lock. Returns None when another worker holds it."""
    lock_key = f"lock:job:{job}"
    token = acquire_lock(lock_key, timeout=lock_timeout)
    if token is None:
        logger.debug(f"Job {job} already running elsewhere, skipping")
        job_runs_counter.labels(job=job, status="skipped").inc()
        return None

    db = SessionLocal()
    try:
        return run_job(job, db)
    finally:
        db.close()
        release_lock(lock_key, token)


async def job_loop(job: str, interval_seconds: int):
    """Run a job every interval_seconds in a worker thread"""
    logger.info(f"Starting {job} scheduler (every {interval_seconds}s)")
    while True:
        try:
            await asyncio.sleep(interval_seconds)
            result = await asyncio.to_thread(run_locked_job, job, max(interval_seconds, 60))
            if result is not None:
                logger.debug(f"Job {job} finished: {result}")
        except asyncio.CancelledError:
            logger.info(f"Stopping {job} scheduler")
            raise
        except Exception as e:
            logger.error(f"Error in {job} scheduler: {e}", exc_info=True)


def start_scheduler() -> list:
    """Create the background job tasks (called from the app lifespan)"""
    hourly = settings.BILLING_JOB_INTERVAL_SECONDS
    schedule = [
        ("subscription-automation", hourly),
        ("dunning", hourly),
        ("dispute-alerts", hourly),
        ("communications", settings.COMMUNICATION_DISPATCH_INTERVAL_SECONDS),
    ]
    return [asyncio.create_task(job_loop(job, interval)) for job, interval in schedule]
