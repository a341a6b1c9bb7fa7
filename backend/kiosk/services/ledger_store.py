# Overview: Ledger store for signed stock adjustments and the materialized per-product snapshot.

from __future__ import annotations

from datetime import datetime

from sqlalchemy import func

from ..extensions import db
from ..models import StockAdjustment, InventorySnapshot
from ..models.inventory import ADJUSTMENT_REASONS
from ..validation import ValidationError
from kiosk.time_utils import utcnow
from .concurrency import lock_for_update
"""
Kiosk Stock Ledger Invariants (authoritative)

- stock_adjustments is append-only. Rows are never updated or deleted
  (the ORM refuses both, see models.inventory).
- Balance for a product is SUM(delta) over its adjustments.
- inventory_snapshots caches that fold. current_balance only changes in the
  same DB transaction as the adjustment that explains it, and can always be
  rebuilt from the ledger.
- Ordering is (created_at, id); id breaks ties between same-timestamp writes.
- Functions here flush but never commit. The caller owns the transaction and
  the per-product lock.
"""


def sum_for(product_id: int) -> int:
    """Ledger balance, computed from scratch."""
    total = db.session.query(
        func.coalesce(func.sum(StockAdjustment.delta), 0)
    ).filter(StockAdjustment.product_id == product_id).scalar()
    return int(total or 0)


def list_for(product_id: int, since: datetime | None = None, limit: int | None = None) -> list[StockAdjustment]:
    """Adjustments for one product in ledger order. `since` is inclusive."""
    q = db.session.query(StockAdjustment).filter(StockAdjustment.product_id == product_id)
    if since is not None:
        q = q.filter(StockAdjustment.created_at >= since)
    q = q.order_by(StockAdjustment.created_at.asc(), StockAdjustment.id.asc())
    if limit is not None:
        q = q.limit(limit)
    return q.all()


def _last_adjustment_at(product_id: int) -> datetime | None:
    return db.session.query(func.max(StockAdjustment.created_at)).filter(
        StockAdjustment.product_id == product_id
    ).scalar()


def get_snapshot_for_update(product_id: int) -> InventorySnapshot:
    """
    Row-locked snapshot for a product, created from the ledger on first use.

    Caller must already hold the product's KeyedLock; creation is not safe
    against a second in-process writer otherwise.
    """
    snapshot = lock_for_update(
        db.session.query(InventorySnapshot).filter_by(product_id=product_id)
    ).populate_existing().first()
    if snapshot is None:
        snapshot = InventorySnapshot(
            product_id=product_id,
            current_balance=sum_for(product_id),
            below_threshold_notified=False,
            last_adjustment_at=_last_adjustment_at(product_id),
        )
        db.session.add(snapshot)
        db.session.flush()
    return snapshot


def append_adjustment(
    *,
    product_id: int,
    delta: int,
    reason: str,
    actor_id: str | None = None,
    transaction_id: int | None = None,
    note: str | None = None,
    created_at: datetime | None = None,
    snapshot: InventorySnapshot | None = None,
) -> StockAdjustment:
    """
    Append one adjustment and fold it into the snapshot.

    Both rows are flushed together; nothing is visible to other sessions
    until the caller commits. On rollback neither survives.
    """
    if reason not in ADJUSTMENT_REASONS:
        raise ValidationError(f"Invalid adjustment reason: {reason}", field="reason")
    if isinstance(delta, bool) or not isinstance(delta, int):
        raise ValidationError("delta must be an integer", field="delta")

    if snapshot is None:
        snapshot = get_snapshot_for_update(product_id)

    now = created_at or utcnow()
    adjustment = StockAdjustment(
        product_id=product_id,
        delta=delta,
        reason=reason,
        actor_id=actor_id,
        transaction_id=transaction_id,
        note=note,
        created_at=now,
    )
    db.session.add(adjustment)

    snapshot.current_balance = snapshot.current_balance + delta
    snapshot.last_adjustment_at = now

    db.session.flush()
    return adjustment


def rebuild_snapshot(product_id: int) -> tuple[int, int]:
    """
    Recompute the cached balance from the ledger.

    Returns (cached_balance_before, ledger_balance). Caller commits.
    """
    snapshot = get_snapshot_for_update(product_id)
    before = snapshot.current_balance
    ledger_balance = sum_for(product_id)
    if before != ledger_balance:
        snapshot.current_balance = ledger_balance
        snapshot.last_adjustment_at = _last_adjustment_at(product_id)
        db.session.flush()
    return before, ledger_balance


def verify_snapshots() -> list[dict]:
    """Every product whose cached balance disagrees with its ledger."""
    ledger_totals = dict(
        db.session.query(StockAdjustment.product_id, func.sum(StockAdjustment.delta))
        .group_by(StockAdjustment.product_id)
        .all()
    )
    cached = {s.product_id: s.current_balance for s in db.session.query(InventorySnapshot).all()}

    mismatches = []
    for product_id in sorted(set(ledger_totals) | set(cached)):
        ledger_balance = int(ledger_totals.get(product_id) or 0)
        cached_balance = cached.get(product_id)
        if cached_balance is None and ledger_balance == 0:
            continue
        if cached_balance != ledger_balance:
            mismatches.append({
                "product_id": product_id,
                "snapshot_balance": cached_balance,
                "ledger_balance": ledger_balance,
            })
    return mismatches
