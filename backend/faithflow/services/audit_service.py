"""Audit log writer"""
import logging
from typing import Any, Dict, Optional
from sqlalchemy.orm import Session

from faithflow.models.audit_log import AuditLog

logger = logging.getLogger(__name__)


def record_audit_log(
    db: Session,
    action: str,
    target_type: str,
    target_id: Any = None,
    tenant_id: Optional[int] = None,
    church_id: Optional[int] = None,
    actor_type: str = "SYSTEM",
    actor_id: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None
) -> AuditLog:
    """Add an audit row to the current transaction (caller commits)"""
    entry = AuditLog(
        tenant_id=tenant_id,
        church_id=church_id,
        actor_type=actor_type,
        actor_id=actor_id,
        action=action,
        target_type=target_type,
        target_id=str(target_id) if target_id is not None else None,
        details=details,
    )
    db.add(entry)
    db.flush()
    return entry


def has_audit_log(db: Session, target_type: str, target_id: Any, action: str) -> bool:
    """True if an audit row exists for (target, action)"""
    return db.query(AuditLog.id).filter(
        AuditLog.target_type == target_type,
        AuditLog.target_id == str(target_id),
        AuditLog.action == action
    ).first() is not None
