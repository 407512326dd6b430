"""Idempotency ledger for inbound webhook deliveries.

A (provider, external_event_id) row is inserted and committed before any
business logic runs. The unique constraint makes the insert a per-event mutex:
concurrent deliveries race on it and exactly one proceeds.
"""
import hashlib
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, Optional
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from faithflow.models.webhook_event import WebhookEvent
from faithflow.utils.dates import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WebhookBegin:
    duplicate: bool
    record_id: Optional[int]
    previous_result: Optional[Dict[str, Any]] = None


def build_external_event_id(parts: Iterable[Any]) -> str:
    """Join the non-empty parts with ':', or hash them when none survive"""
    parts = list(parts)
    cleaned = [str(part).strip() for part in parts if part is not None and str(part).strip()]
    if cleaned:
        return ":".join(cleaned)
    digest = hashlib.sha256(json.dumps(parts, default=str).encode("utf-8")).hexdigest()
    return f"hash:{digest[:20]}"


def payload_sha256(raw_payload: bytes) -> str:
    return hashlib.sha256(raw_payload).hexdigest()


def begin_webhook_processing(
    db: Session,
    provider: str,
    external_event_id: str,
    event_type: Optional[str],
    raw_payload: bytes
) -> WebhookBegin:
    """Claim a delivery for processing.

    Returns duplicate=False with the row id when this delivery should run the
    business logic (first delivery, or a retry of a FAILED one), and
    duplicate=True when another delivery owns or already finished it.
    """
    payload_hash = payload_sha256(raw_payload)
    record = WebhookEvent(
        provider=provider,
        external_event_id=external_event_id,
        event_type=event_type or "unknown",
        payload_hash=payload_hash,
        status="PROCESSING",
        received_at=utcnow(),
    )
    db.add(record)
    try:
        db.commit()
        db.refresh(record)
        return WebhookBegin(duplicate=False, record_id=record.id)
    except IntegrityError:
        db.rollback()

    existing = db.query(WebhookEvent).filter(
        WebhookEvent.provider == provider,
        WebhookEvent.external_event_id == external_event_id
    ).first()
    if existing is None:
        logger.warning(f"Ledger conflict for {provider}:{external_event_id} but row not readable")
        return WebhookBegin(duplicate=True, record_id=None)

    if existing.status == "FAILED":
        # Conditional update: only one concurrent retry moves the row out of FAILED
        claimed = db.query(WebhookEvent).filter(
            WebhookEvent.id == existing.id,
            WebhookEvent.status == "FAILED"
        ).update({
            WebhookEvent.status: "PROCESSING",
            WebhookEvent.error: None,
            WebhookEvent.payload_hash: payload_hash,
            WebhookEvent.event_type: event_type or "unknown",
            WebhookEvent.received_at: utcnow(),
            WebhookEvent.processed_at: None,
        }, synchronize_session=False)
        db.commit()
        if claimed == 1:
            logger.info(f"Resuming failed webhook {provider}:{external_event_id} (record {existing.id})")
            return WebhookBegin(duplicate=False, record_id=existing.id)
        logger.info(f"Failed webhook {provider}:{external_event_id} already resumed by another delivery")
        return WebhookBegin(duplicate=True, record_id=existing.id)

    logger.info(f"Duplicate webhook {provider}:{external_event_id} ({existing.status})")
    return WebhookBegin(duplicate=True, record_id=existing.id, previous_result=existing.result)


def mark_webhook_processed(
    db: Session,
    record_id: Optional[int],
    result: Optional[Dict[str, Any]],
    tenant_id: Optional[int] = None,
    church_id: Optional[int] = None
) -> None:
    """Finalize the row and commit it together with the pending business changes"""
    if record_id is not None:
        record = db.get(WebhookEvent, record_id)
        if record is not None:
            record.status = "PROCESSED"
            record.result = result
            record.error = None
            record.tenant_id = tenant_id
            record.church_id = church_id
            record.processed_at = utcnow()
    db.commit()


def mark_webhook_failed(
    db: Session,
    record_id: Optional[int],
    error: str,
    result: Optional[Dict[str, Any]] = None
) -> None:
    """Record a processing failure so a provider retry can resume the row.

    The caller rolls back its business changes before calling this.
    """
    if record_id is None:
        return
    record = db.get(WebhookEvent, record_id)
    if record is None:
        return
    record.status = "FAILED"
    record.error = error[:2000]
    record.result = result
    record.processed_at = utcnow()
    db.commit()
