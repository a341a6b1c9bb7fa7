# Overview: Append-only audit trail for administrator actions and reconciliation decisions.

from __future__ import annotations

import json
from datetime import datetime

from ..extensions import db
from ..models import AuditEvent
from kiosk.time_utils import utcnow


def append_audit_event(
    *,
    event_type: str,
    entity_type: str,
    entity_id: int | None = None,
    actor_id: str | None = None,
    reason_code: str | None = None,
    payload: dict | None = None,
    occurred_at: datetime | None = None,
) -> AuditEvent:
    """
    Append-only audit event, written in the caller's DB transaction.

    - No domain logic here.
    - Flushes, never commits.
    """
    event = AuditEvent(
        event_type=event_type,
        entity_type=entity_type,
        entity_id=entity_id,
        actor_id=actor_id,
        reason_code=reason_code,
        payload=json.dumps(payload, sort_keys=True) if payload is not None else None,
        occurred_at=occurred_at or utcnow(),
    )
    db.session.add(event)
    db.session.flush()
    return event


def list_audit_events(
    *,
    entity_type: str | None = None,
    entity_id: int | None = None,
    limit: int = 100,
) -> list[AuditEvent]:
    q = db.session.query(AuditEvent)
    if entity_type:
        q = q.filter(AuditEvent.entity_type == entity_type)
    if entity_id is not None:
        q = q.filter(AuditEvent.entity_id == entity_id)
    return q.order_by(AuditEvent.occurred_at.desc(), AuditEvent.id.desc()).limit(limit).all()
