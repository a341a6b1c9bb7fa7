from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from kiosk.time_utils import to_utc_z
from .inventory import ImmutableRecordError


class AuditEvent(db.Model):
    """
    Append-only audit trail of administrator actions and reconciliation
    decisions. Generic entity pointer; no domain logic here.
    """
    __tablename__ = "audit_events"
    __table_args__ = (
        db.Index("ix_audit_events_entity", "entity_type", "entity_id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    event_type = db.Column(db.String(64), nullable=False, index=True)  # e.g., inventory.manual_update, transaction.refunded
    entity_type = db.Column(db.String(64), nullable=False)  # e.g., product, transaction, config
    entity_id = db.Column(db.Integer, nullable=True)

    actor_id = db.Column(db.String(64), nullable=True, index=True)
    reason_code = db.Column(db.String(64), nullable=True)

    # Small JSON document; do not denormalize domain state
    payload = db.Column(db.Text, nullable=True)

    occurred_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "event_type": self.event_type,
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "actor_id": self.actor_id,
            "reason_code": self.reason_code,
            "payload": self.payload,
            "occurred_at": to_utc_z(self.occurred_at),
        }


@event.listens_for(AuditEvent, "before_update")
def _reject_audit_update(mapper, connection, target):
    raise ImmutableRecordError(f"audit event {target.id} is append-only")


@event.listens_for(AuditEvent, "before_delete")
def _reject_audit_delete(mapper, connection, target):
    raise ImmutableRecordError(f"audit event {target.id} is append-only")
