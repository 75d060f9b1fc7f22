import uuid

from sqlalchemy import select
from sqlalchemy.orm import Session

from app.context import get_correlation_id
from app.models.audit import AuditLog


def write_audit_log(
    db: Session,
    *,
    event: str,
    user_id: uuid.UUID | None = None,
    details: dict | None = None,
    ip_address: str | None = None,
    user_agent: str | None = None,
) -> AuditLog:
    """Stage an audit row in the caller's unit of work; the caller commits."""
    entry = AuditLog(
        user_id=user_id,
        event=event,
        details=details or {},
        ip_address=ip_address,
        user_agent=user_agent,
        correlation_id=get_correlation_id(),
    )
    db.add(entry)
    return entry


def list_audit_logs(db: Session, user_id: uuid.UUID, limit: int = 50) -> list[AuditLog]:
    stmt = (
        select(AuditLog)
        .where(AuditLog.user_id == user_id)
        .order_by(AuditLog.created_at.desc())
        .limit(max(1, min(limit, 100)))
    )
    return list(db.scalars(stmt).all())
