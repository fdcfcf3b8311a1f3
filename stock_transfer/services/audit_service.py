from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.orm import Session

from stock_transfer.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor_id: int | None,
    action: str,
    transfer_id: int | None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_id=actor_id,
            action=action,
            transfer_id=transfer_id,
            meta=metadata or {},
        )
    )


def list_transfer_audit(db: Session, *, transfer_id: int) -> list[dict]:
    rows = db.execute(
        select(AuditLog).where(AuditLog.transfer_id == transfer_id).order_by(AuditLog.id.asc())
    ).scalars().all()
    return [
        {
            'id': row.id,
            'actor_id': row.actor_id,
            'action': row.action,
            'metadata': row.meta,
            'created_at': row.created_at,
        }
        for row in rows
    ]
