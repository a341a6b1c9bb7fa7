from __future__ import annotations

from sqlalchemy import event

from ..extensions import db
from kiosk.time_utils import to_utc_z


REASON_SALE = "sale"
REASON_MANUAL_RESTOCK = "manual_restock"
REASON_MANUAL_CORRECTION = "manual_correction"
REASON_RECONCILIATION_CONFIRM = "reconciliation_confirm"
REASON_RECONCILIATION_REFUND_NOOP = "reconciliation_refund_noop"

ADJUSTMENT_REASONS = {
    REASON_SALE,
    REASON_MANUAL_RESTOCK,
    REASON_MANUAL_CORRECTION,
    REASON_RECONCILIATION_CONFIRM,
    REASON_RECONCILIATION_REFUND_NOOP,
}
MANUAL_REASONS = {REASON_MANUAL_RESTOCK, REASON_MANUAL_CORRECTION}
SALE_REASONS = {REASON_SALE, REASON_RECONCILIATION_CONFIRM}


class ImmutableRecordError(RuntimeError):
    """Raised when code tries to update or delete an append-only row."""


class StockAdjustment(db.Model):
    """
    Append-only signed stock change. The ledger is the source of truth:
    balance = SUM(delta) per product, ordered by (created_at, id).
    """
    __tablename__ = "stock_adjustments"
    __table_args__ = (
        db.Index("ix_stock_adjustments_product_created", "product_id", "created_at", "id"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False, index=True)

    delta = db.Column(db.Integer, nullable=False)
    reason = db.Column(db.String(32), nullable=False, index=True)

    # Null for automated sale deductions
    actor_id = db.Column(db.String(64), nullable=True)

    # Owning transaction for sale / reconciliation_confirm rows
    transaction_id = db.Column(db.Integer, db.ForeignKey("transactions.id"), nullable=True, index=True)

    note = db.Column(db.String(255), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "product_id": self.product_id,
            "delta": self.delta,
            "reason": self.reason,
            "actor_id": self.actor_id,
            "transaction_id": self.transaction_id,
            "note": self.note,
            "created_at": to_utc_z(self.created_at),
        }


@event.listens_for(StockAdjustment, "before_update")
def _reject_adjustment_update(mapper, connection, target):
    raise ImmutableRecordError(f"stock adjustment {target.id} is append-only")


@event.listens_for(StockAdjustment, "before_delete")
def _reject_adjustment_delete(mapper, connection, target):
    raise ImmutableRecordError(f"stock adjustment {target.id} is append-only")


class InventorySnapshot(db.Model):
    """
    Materialized fold of the ledger for one product.

    Never edited independently: current_balance only moves together with an
    appended StockAdjustment. version_id guards against lost updates if two
    sessions ever race past the per-product lock.
    """
    __tablename__ = "inventory_snapshots"

    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), primary_key=True)

    current_balance = db.Column(db.Integer, nullable=False, default=0)

    # True once an alert fired for the current below-threshold episode
    below_threshold_notified = db.Column(db.Boolean, nullable=False, default=False)

    last_adjustment_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version_id = db.Column(db.Integer, nullable=False, default=1)

    product = db.relationship("Product", backref=db.backref("snapshot", uselist=False, lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<InventorySnapshot product_id={self.product_id} balance={self.current_balance}>"
