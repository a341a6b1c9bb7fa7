from __future__ import annotations

from ..extensions import db
from kiosk.time_utils import to_utc_z


STATUS_PENDING = "PENDING"
STATUS_COMPLETED = "COMPLETED"
STATUS_FAILED = "FAILED"
STATUS_PAYMENT_UNCERTAIN = "PAYMENT_UNCERTAIN"
STATUS_REFUNDED = "REFUNDED"

TRANSACTION_STATUSES = {
    STATUS_PENDING,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PAYMENT_UNCERTAIN,
    STATUS_REFUNDED,
}
TERMINAL_STATUSES = {STATUS_COMPLETED, STATUS_FAILED, STATUS_REFUNDED}


class Transaction(db.Model):
    """
    Kiosk purchase with self-attested payment.

    PENDING -> COMPLETED | FAILED | PAYMENT_UNCERTAIN
    PAYMENT_UNCERTAIN -> COMPLETED | REFUNDED (administrator only)
    COMPLETED, FAILED, REFUNDED are terminal.
    """
    __tablename__ = "transactions"
    __table_args__ = (
        db.Index("ix_transactions_status_created", "status", "created_at"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)

    status = db.Column(db.String(24), nullable=False, default=STATUS_PENDING, index=True)

    total_cents = db.Column(db.Integer, nullable=False, default=0)

    confirmation_method = db.Column(db.String(32), nullable=True)
    confirmed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Customer said "I paid"; confirmation may still be in flight
    payment_asserted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    confirmation_deadline_at = db.Column(db.DateTime(timezone=True), nullable=False, index=True)

    failure_reason = db.Column(db.String(64), nullable=True)

    reconciled_by = db.Column(db.String(64), nullable=True)
    reconciled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    reconciliation_note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    version_id = db.Column(db.Integer, nullable=False, default=1)

    items = db.relationship(
        "TransactionItem",
        backref="transaction",
        order_by="TransactionItem.line_number",
        lazy=True,
    )
    __mapper_args__ = {"version_id_col": version_id}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self, include_items: bool = True) -> dict:
        data = {
            "id": self.id,
            "status": self.status,
            "total_cents": self.total_cents,
            "confirmation_method": self.confirmation_method,
            "confirmed_at": to_utc_z(self.confirmed_at),
            "payment_asserted_at": to_utc_z(self.payment_asserted_at),
            "confirmation_deadline_at": to_utc_z(self.confirmation_deadline_at),
            "failure_reason": self.failure_reason,
            "reconciled_by": self.reconciled_by,
            "reconciled_at": to_utc_z(self.reconciled_at),
            "reconciliation_note": self.reconciliation_note,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
        if include_items:
            data["items"] = [item.to_dict() for item in self.items]
        return data


class TransactionItem(db.Model):
    __tablename__ = "transaction_items"
    __table_args__ = (
        db.UniqueConstraint("transaction_id", "line_number", name="uq_transaction_items_line"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=False, index=True)
    line_number = db.Column(db.Integer, nullable=False)

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)
    product_name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)

    # Snapshotted at checkout; immune to later catalog price changes
    price_at_purchase_cents = db.Column(db.Integer, nullable=False)

    def to_dict(self) -> dict:
        return {
            "line_number": self.line_number,
            "product_id": self.product_id,
            "product_name": self.product_name,
            "quantity": self.quantity,
            "price_at_purchase_cents": self.price_at_purchase_cents,
            "line_total_cents": self.price_at_purchase_cents * self.quantity,
        }
