# Overview: AuditLog implementations (SQL append-only trail and an in-memory recorder).

from __future__ import annotations

import json
from typing import Optional

from ..extensions import db
from ..models import AuditEvent
from .concurrency import commit_with_retry


class SqlAuditLog:
    """
    Append-only audit trail in the audit_events table.

    - No domain logic here.
    - No deletes/updates of existing events.
    - Called after the business commit; writes in its own commit.
    """

    def __init__(self, *, attempts: int = 3):
        self.attempts = attempts

    def record(
        self,
        *,
        action: str,
        entity_type: str,
        entity_id: int,
        tenant_id: int,
        actor_id: Optional[int] = None,
        details: Optional[dict] = None,
    ) -> AuditEvent:
        ev = AuditEvent(
            tenant_id=tenant_id,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            actor_id=actor_id,
            details=json.dumps(details, default=str, sort_keys=True) if details else None,
        )
        try:
            db.session.add(ev)
            commit_with_retry(attempts=self.attempts)
        except Exception:
            db.session.rollback()
            raise
        return ev


class MemoryAuditLog:
    def __init__(self):
        self.entries: list[dict] = []

    def record(self, **entry) -> dict:
        self.entries.append(entry)
        return entry

    def actions(self) -> list[str]:
        return [e["action"] for e in self.entries]


def list_audit_events(tenant_id: int, *, entity_type: str | None = None, entity_id: int | None = None,
                      limit: int = 100) -> list[AuditEvent]:
    q = db.session.query(AuditEvent).filter(AuditEvent.tenant_id == tenant_id)
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id is not None:
        q = q.filter(AuditEvent.entity_id == entity_id)
    return q.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit).all()
