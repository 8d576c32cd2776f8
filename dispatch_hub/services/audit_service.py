from __future__ import annotations

from sqlalchemy.orm import Session

from dispatch_hub.models import AuditLog


def log_audit(
    db: Session,
    *,
    actor: str | None,
    action: str,
    invoice_id: str | None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor=actor,
            action=action,
            invoice_id=invoice_id,
            ip=ip,
            meta=metadata or {},
        )
    )
