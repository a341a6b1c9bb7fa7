from __future__ import annotations

from ..extensions import db
from kiosk.time_utils import to_utc_z


ATTEMPT_PENDING = "pending"
ATTEMPT_SENT = "sent"
ATTEMPT_FAILED = "failed"
ATTEMPT_STATUSES = {ATTEMPT_PENDING, ATTEMPT_SENT, ATTEMPT_FAILED}

ALERT_NOTIFICATION_FAILED = "notification_failed"
ALERT_NOTIFICATION_ESCALATION = "notification_escalation"

SEVERITY_ERROR = "error"
SEVERITY_CRITICAL = "critical"


class NotificationAttempt(db.Model):
    """
    One low-stock alert episode for a product and its delivery state.

    At most one unresolved (pending, resolved_at IS NULL) attempt per product;
    the dispatcher enforces it.
    """
    __tablename__ = "notification_attempts"
    __table_args__ = (
        db.Index("ix_notification_attempts_due", "status", "next_retry_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    trigger_balance = db.Column(db.Integer, nullable=False)
    status = db.Column(db.String(16), nullable=False, default=ATTEMPT_PENDING, index=True)
    attempt_count = db.Column(db.Integer, nullable=False, default=0)

    next_retry_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_attempt_at = db.Column(db.DateTime(timezone=True), nullable=True)
    last_error = db.Column(db.String(512), nullable=True)

    # Episode ended (stock restored) before delivery finished
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    product = db.relationship("Product", lazy=True)

    @property
    def superseded(self) -> bool:
        """Failed because stock recovered, not because delivery gave up."""
        return self.status == ATTEMPT_FAILED and self.resolved_at is not None

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "product_name": self.product.name if self.product else None,
            "trigger_balance": self.trigger_balance,
            "status": self.status,
            "attempt_count": self.attempt_count,
            "next_retry_at": to_utc_z(self.next_retry_at),
            "last_attempt_at": to_utc_z(self.last_attempt_at),
            "last_error": self.last_error,
            "resolved_at": to_utc_z(self.resolved_at),
            "superseded": self.superseded,
            "created_at": to_utc_z(self.created_at),
        }


class NotificationDeliveryLog(db.Model):
    """Append-only record of each delivery attempt (success or failure)."""
    __tablename__ = "notification_delivery_log"
    __table_args__ = (
        db.Index("ix_notification_delivery_log_attempted", "attempted_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey("notification_attempts.id"), nullable=False, index=True)
    attempt_number = db.Column(db.Integer, nullable=False)
    success = db.Column(db.Boolean, nullable=False)
    error = db.Column(db.String(512), nullable=True)
    attempted_at = db.Column(db.DateTime(timezone=True), nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "attempt_id": self.attempt_id,
            "attempt_number": self.attempt_number,
            "success": self.success,
            "error": self.error,
            "attempted_at": to_utc_z(self.attempted_at),
        }


class AdminAlert(db.Model):
    """Administrator-visible alert log (permanent failures, escalations)."""
    __tablename__ = "admin_alerts"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    kind = db.Column(db.String(32), nullable=False, index=True)
    severity = db.Column(db.String(16), nullable=False)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=True)
    attempt_id = db.Column(db.Integer, db.ForeignKey("notification_attempts.id"), nullable=True)
    message = db.Column(db.String(512), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)
    acknowledged_at = db.Column(db.DateTime(timezone=True), nullable=True)
    acknowledged_by = db.Column(db.String(64), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "kind": self.kind,
            "severity": self.severity,
            "product_id": self.product_id,
            "attempt_id": self.attempt_id,
            "message": self.message,
            "created_at": to_utc_z(self.created_at),
            "acknowledged_at": to_utc_z(self.acknowledged_at),
            "acknowledged_by": self.acknowledged_by,
        }
