# Overview: Inventory service: atomic per-product ledger writes, snapshots, discrepancies and the tracking toggle.

from __future__ import annotations

from datetime import datetime
from typing import Callable

from flask import current_app
from sqlalchemy import or_

from ..extensions import db
from ..models import Product, InventorySnapshot
from ..models.inventory import (
    REASON_SALE,
    MANUAL_REASONS,
    SALE_REASONS,
)
from ..validation import (
    ValidationError,
    NotFoundError,
    coerce_int,
    enforce_rules_stock_update,
    enforce_rules_target_adjustment,
)
from kiosk.time_utils import utcnow, to_utc_z
from . import ledger_store
from . import notification_service
from .audit_service import append_audit_event
from .concurrency import product_locks, begin_write, run_with_retry
from .config_service import get_config_value, set_config_value, KEY_TRACKING_ENABLED
from .events import BalanceChanged, publish_balance_changes
"""
Kiosk Inventory Invariants (authoritative)

- Every stock change is an appended StockAdjustment; the snapshot moves with it.
- Negative balances are valid: they record a discrepancy between physical and
  system stock and are listed, not rejected.
- "Read balance, compute delta, append" runs as one unit per product:
  in-process KeyedLock + row lock + snapshot version_id.
- Writers for different products never share a lock; multi-product units take
  locks in sorted product id order.
- BalanceChanged is published only after commit, outside every lock.
- With tracking disabled, sales are accepted as no-ops (nothing appended,
  balances frozen). Manual updates still append.

Time:
- All internal datetimes are UTC-naive; responses serialize with 'Z'.
"""

SNAPSHOT_SORT_FIELDS = {
    "name": Product.name,
    "sku": Product.sku,
    "product_id": Product.id,
    "current_balance": InventorySnapshot.current_balance,
    "last_adjustment_at": InventorySnapshot.last_adjustment_at,
}


# ---------------------------------------------------------------------------
# Tracking toggle
# ---------------------------------------------------------------------------

def get_tracking_enabled() -> bool:
    return bool(get_config_value(KEY_TRACKING_ENABLED, True))


def set_tracking_enabled(enabled: bool, actor_id: str | None = None) -> dict:
    """
    Toggle tracking without touching any balance.

    Re-enabling resumes from the last known balances.
    """
    if not isinstance(enabled, bool):
        raise ValidationError("enabled must be a boolean", field="enabled")

    previous = get_tracking_enabled()
    now = utcnow()
    set_config_value(KEY_TRACKING_ENABLED, enabled, description="Global inventory tracking switch")
    append_audit_event(
        event_type="inventory.tracking_changed",
        entity_type="config",
        actor_id=actor_id,
        reason_code="enabled" if enabled else "disabled",
        payload={"previous": previous, "enabled": enabled},
        occurred_at=now,
    )
    db.session.commit()

    state = {
        "tracking_enabled": enabled,
        "changed_by": actor_id,
        "changed_at": to_utc_z(now),
    }
    _notify_tracking_changed(state)
    return state


def _notify_tracking_changed(state: dict) -> None:
    # Import here: feed_service and broadcaster read through this module
    from .feed_service import invalidate_feed_cache
    from .broadcaster import get_broadcaster

    invalidate_feed_cache()
    broadcaster = get_broadcaster()
    if broadcaster is not None:
        broadcaster.broadcast("inventory:tracking", state)


# ---------------------------------------------------------------------------
# Serialization / reads
# ---------------------------------------------------------------------------

def serialize_snapshot(product: Product, snapshot: InventorySnapshot | None, tracking_enabled: bool) -> dict:
    balance = snapshot.current_balance if snapshot is not None else 0
    return {
        "product_id": product.id,
        "sku": product.sku,
        "name": product.name,
        "is_active": product.is_active,
        "current_balance": balance,
        "low_stock_threshold": product.low_stock_threshold,
        "tracking_enabled": tracking_enabled,
        "below_threshold_notified": bool(snapshot.below_threshold_notified) if snapshot is not None else False,
        "last_adjustment_at": to_utc_z(snapshot.last_adjustment_at) if snapshot is not None else None,
        "low_stock": balance <= product.low_stock_threshold,
        "discrepancy": balance < 0,
    }


def _load_product(product_id, *, require_active: bool = False) -> Product:
    product_id = coerce_int(product_id, field="product_id", minimum=1)
    product = db.session.get(Product, product_id)
    if product is None:
        raise NotFoundError(f"Product {product_id} not found")
    if require_active and not product.is_active:
        raise ValidationError(f"Product {product_id} is inactive", field="product_id")
    return product


def get_snapshot(product_id: int) -> dict:
    product = _load_product(product_id)
    snapshot = db.session.get(InventorySnapshot, product.id)
    return serialize_snapshot(product, snapshot, get_tracking_enabled())


def list_snapshots(
    *,
    search: str | None = None,
    sort_by: str = "name",
    sort_direction: str = "asc",
    limit: int | None = None,
    offset: int = 0,
    include_inactive: bool = False,
) -> tuple[list[dict], int]:
    if sort_by not in SNAPSHOT_SORT_FIELDS:
        raise ValidationError(f"Invalid sort_by: {sort_by}", field="sort_by")
    if sort_direction not in {"asc", "desc"}:
        raise ValidationError(f"Invalid sort_direction: {sort_direction}", field="sort_direction")

    q = db.session.query(Product, InventorySnapshot).outerjoin(
        InventorySnapshot, InventorySnapshot.product_id == Product.id
    )
    if not include_inactive:
        q = q.filter(Product.is_active.is_(True))
    if search:
        pattern = f"%{search.strip()}%"
        q = q.filter(or_(Product.name.ilike(pattern), Product.sku.ilike(pattern)))

    total = q.count()

    column = SNAPSHOT_SORT_FIELDS[sort_by]
    order = column.desc() if sort_direction == "desc" else column.asc()
    q = q.order_by(order, Product.id.asc())
    if offset:
        q = q.offset(offset)
    if limit is not None:
        q = q.limit(limit)

    tracking = get_tracking_enabled()
    return [serialize_snapshot(p, s, tracking) for p, s in q.all()], total


def list_discrepancies() -> list[dict]:
    """Products whose derived balance is negative, most negative first."""
    rows = (
        db.session.query(Product, InventorySnapshot)
        .join(InventorySnapshot, InventorySnapshot.product_id == Product.id)
        .filter(InventorySnapshot.current_balance < 0)
        .order_by(InventorySnapshot.current_balance.asc(), Product.id.asc())
        .all()
    )
    tracking = get_tracking_enabled()
    return [serialize_snapshot(p, s, tracking) for p, s in rows]


def list_adjustments(product_id: int, since: datetime | None = None, limit: int | None = None) -> list[dict]:
    product = _load_product(product_id)
    return [adj.to_dict() for adj in ledger_store.list_for(product.id, since=since, limit=limit)]


# ---------------------------------------------------------------------------
# Locked write units
# ---------------------------------------------------------------------------

def post_adjustments_locked(
    entries: list[tuple[Product, int]],
    *,
    reason: str,
    actor_id: str | None = None,
    transaction_id: int | None = None,
    note: str | None = None,
    tracking_enabled: bool | None = None,
    now: datetime | None = None,
) -> list[BalanceChanged]:
    """
    Append one adjustment per entry and run the low-stock decision for each.

    Caller holds the product locks and owns the DB transaction. Returns the
    events to publish once that transaction commits.
    """
    now = now or utcnow()
    if tracking_enabled is None:
        tracking_enabled = get_tracking_enabled()

    events: list[BalanceChanged] = []
    for product, delta in entries:
        snapshot = ledger_store.get_snapshot_for_update(product.id)
        previous = snapshot.current_balance
        adjustment = ledger_store.append_adjustment(
            product_id=product.id,
            delta=delta,
            reason=reason,
            actor_id=actor_id,
            transaction_id=transaction_id,
            note=note,
            created_at=now,
            snapshot=snapshot,
        )
        attempt = notification_service.evaluate_threshold(
            snapshot, product, tracking_enabled=tracking_enabled, now=now
        )
        events.append(BalanceChanged(
            product_id=product.id,
            previous_balance=previous,
            new_balance=snapshot.current_balance,
            low_stock_threshold=product.low_stock_threshold,
            reason=reason,
            adjustment_id=adjustment.id,
            occurred_at=now,
            tracking_enabled=tracking_enabled,
            transaction_id=transaction_id,
            notification_attempt_id=attempt.id if attempt is not None else None,
        ))
    db.session.flush()
    return events


def run_ledger_unit(product_ids, unit: Callable[[], tuple[object, list[BalanceChanged]]]):
    """
    Run `unit` as one committed DB transaction under the product locks.

    `unit` returns (result, events). Events are published after commit and
    after the locks are released. Any failure rolls everything back.
    """
    def _op():
        with product_locks.acquire_many(product_ids):
            begin_write()
            result, events = unit()
            db.session.commit()
            return result, events

    try:
        result, events = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise

    if events:
        publish_balance_changes(events)
    return result


# ---------------------------------------------------------------------------
# Public write operations
# ---------------------------------------------------------------------------

def record_sale(
    product_id: int,
    quantity: int,
    *,
    transaction_id: int | None = None,
    reason: str = REASON_SALE,
) -> dict:
    """
    Deduct sold units. Always accepted, even when it drives the balance negative.

    While tracking is disabled nothing is appended and applied=False.
    """
    quantity = coerce_int(quantity, field="quantity", minimum=1)
    if reason not in SALE_REASONS:
        raise ValidationError(f"Invalid sale reason: {reason}", field="reason")
    product = _load_product(product_id)

    if not get_tracking_enabled():
        current_app.logger.info(
            "Tracking disabled; sale of %s x product %s not recorded",
            quantity,
            product.id,
            extra={"product_id": product.id, "transaction_id": transaction_id},
        )
        return {"applied": False, "adjustment_id": None, "snapshot": get_snapshot(product.id)}

    def _unit():
        events = post_adjustments_locked(
            [(product, -quantity)],
            reason=reason,
            transaction_id=transaction_id,
            tracking_enabled=True,
        )
        return events[0].adjustment_id, events

    adjustment_id = run_ledger_unit([product.id], _unit)
    return {"applied": True, "adjustment_id": adjustment_id, "snapshot": get_snapshot(product.id)}


def record_manual_stock_update(
    product_id: int,
    quantity: int,
    reason: str,
    actor_id: str | None = None,
    note: str | None = None,
) -> dict:
    """Admin restock or correction: append exactly the requested signed delta."""
    delta = coerce_int(quantity, field="quantity")
    enforce_rules_stock_update({"delta": delta})
    if reason not in MANUAL_REASONS:
        raise ValidationError(f"Invalid manual adjustment reason: {reason}", field="reason")
    product = _load_product(product_id)

    def _unit():
        events = post_adjustments_locked(
            [(product, delta)],
            reason=reason,
            actor_id=actor_id,
            note=note,
        )
        event = events[0]
        append_audit_event(
            event_type="inventory.manual_update",
            entity_type="product",
            entity_id=product.id,
            actor_id=actor_id,
            reason_code=reason,
            payload={
                "delta": delta,
                "previous_balance": event.previous_balance,
                "new_balance": event.new_balance,
                "adjustment_id": event.adjustment_id,
                "note": note,
            },
            occurred_at=event.occurred_at,
        )
        return event.adjustment_id, events

    adjustment_id = run_ledger_unit([product.id], _unit)
    current_app.logger.info(
        "Manual stock update %+d for product %s by %s",
        delta,
        product.id,
        actor_id,
        extra={"product_id": product.id, "adjustment_id": adjustment_id},
    )
    return {"applied": True, "adjustment_id": adjustment_id, "delta": delta, "snapshot": get_snapshot(product.id)}


def record_adjustment_to_target(
    product_id: int,
    target_balance: int,
    reason: str,
    actor_id: str | None = None,
    note: str | None = None,
) -> dict:
    """
    "Set stock to N": delta = N - current, read and appended in one locked unit.

    A zero delta appends nothing.
    """
    target = coerce_int(target_balance, field="target_balance")
    enforce_rules_target_adjustment({"target_balance": target})
    if reason not in MANUAL_REASONS:
        raise ValidationError(f"Invalid manual adjustment reason: {reason}", field="reason")
    product = _load_product(product_id)

    def _unit():
        snapshot = ledger_store.get_snapshot_for_update(product.id)
        delta = target - snapshot.current_balance
        if delta == 0:
            return (None, 0), []
        events = post_adjustments_locked(
            [(product, delta)],
            reason=reason,
            actor_id=actor_id,
            note=note,
        )
        event = events[0]
        append_audit_event(
            event_type="inventory.adjust_to_target",
            entity_type="product",
            entity_id=product.id,
            actor_id=actor_id,
            reason_code=reason,
            payload={
                "target_balance": target,
                "delta": delta,
                "previous_balance": event.previous_balance,
                "adjustment_id": event.adjustment_id,
                "note": note,
            },
            occurred_at=event.occurred_at,
        )
        return (event.adjustment_id, delta), events

    adjustment_id, delta = run_ledger_unit([product.id], _unit)
    return {
        "applied": adjustment_id is not None,
        "adjustment_id": adjustment_id,
        "delta": delta,
        "snapshot": get_snapshot(product.id),
    }


def rebuild_snapshots(product_ids: list[int] | None = None) -> list[dict]:
    """Recompute cached balances from the ledger; returns the ones that moved."""
    if product_ids is None:
        product_ids = [row["product_id"] for row in ledger_store.verify_snapshots()]
    fixed = []
    for product_id in product_ids:
        def _unit(pid=product_id):
            before, after = ledger_store.rebuild_snapshot(pid)
            return (before, after), []

        before, after = run_ledger_unit([product_id], _unit)
        if before != after:
            fixed.append({"product_id": product_id, "snapshot_balance": before, "ledger_balance": after})
            current_app.logger.warning(
                "Snapshot for product %s rebuilt: %s -> %s",
                product_id,
                before,
                after,
                extra={"product_id": product_id},
            )
    return fixed
