"""
Transaction reconciliation: the purchase state machine and the only path
from a sale to the stock ledger.

WHY: Payment is self-attested. The ledger must only move once a purchase is
certain, exactly once, and never speculatively. Ambiguous outcomes park in
PAYMENT_UNCERTAIN until an administrator decides.

    PENDING -> COMPLETED          customer confirmation inside the window
    PENDING -> FAILED             decline, window timeout, or the assertion
                                  itself could not be stored
    PENDING -> PAYMENT_UNCERTAIN  payment asserted but confirmation not
                                  persisted in time, or kiosk-reported
    PAYMENT_UNCERTAIN -> COMPLETED (reconciliation_confirm adjustments)
    PAYMENT_UNCERTAIN -> REFUNDED  (no ledger effect, audited)

COMPLETED, FAILED and REFUNDED are terminal.
"""

from __future__ import annotations

from datetime import datetime, timedelta

from flask import current_app
from sqlalchemy.exc import SQLAlchemyError

from ..extensions import db
from ..models import Product, Transaction, TransactionItem
from ..models.inventory import REASON_SALE, REASON_RECONCILIATION_CONFIRM, REASON_RECONCILIATION_REFUND_NOOP
from ..models.transactions import (
    STATUS_PENDING,
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PAYMENT_UNCERTAIN,
    STATUS_REFUNDED,
    TRANSACTION_STATUSES,
)
from ..validation import (
    ValidationError,
    NotFoundError,
    ConflictError,
    StorageUnavailableError,
    coerce_int,
)
from kiosk.time_utils import utcnow, to_utc_z
from .audit_service import append_audit_event
from .concurrency import lock_for_update, run_with_retry
from .inventory_service import get_tracking_enabled, post_adjustments_locked, run_ledger_unit


FAILURE_DECLINED = "declined"
FAILURE_CONFIRMATION_TIMEOUT = "confirmation_timeout"
FAILURE_PERSISTENCE = "persistence_failure"
UNCERTAIN_PERSISTENCE_UNAVAILABLE = "confirmation_persistence_unavailable"
UNCERTAIN_REPORTED = "reported_uncertain"

RESOLUTION_CONFIRMED = "confirmed"
RESOLUTION_REFUNDED = "refunded"

MAX_ITEMS_PER_TRANSACTION = 50
MAX_QUANTITY_PER_LINE = 99


def _confirmation_window() -> timedelta:
    return timedelta(seconds=current_app.config.get("PAYMENT_CONFIRMATION_WINDOW_SECONDS", 60))


def _persistence_window() -> timedelta:
    return timedelta(seconds=current_app.config.get("CONFIRMATION_PERSISTENCE_WINDOW_SECONDS", 30))


def _conflict(tx: Transaction, action: str) -> ConflictError:
    return ConflictError(
        f"Transaction {tx.id} is {tx.status}; cannot {action}",
        current_status=tx.status,
    )


def _log_transition(tx: Transaction, previous: str, detail: str | None = None) -> None:
    current_app.logger.info(
        "Transaction %s %s -> %s%s",
        tx.id,
        previous,
        tx.status,
        f" ({detail})" if detail else "",
        extra={"transaction_id": tx.id, "status": tx.status},
    )


# ---------------------------------------------------------------------------
# Create / read
# ---------------------------------------------------------------------------

def create_transaction(items, *, now: datetime | None = None) -> Transaction:
    """
    Open a PENDING transaction, snapshotting each product's current price.

    Lines keep the order given.
    """
    if not isinstance(items, list) or not items:
        raise ValidationError("items must be a non-empty list", field="items")
    if len(items) > MAX_ITEMS_PER_TRANSACTION:
        raise ValidationError(f"A transaction may have at most {MAX_ITEMS_PER_TRANSACTION} lines", field="items")

    parsed = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object", field="items")
        product_id = coerce_int(raw.get("product_id"), field=f"items[{index}].product_id", minimum=1)
        quantity = coerce_int(
            raw.get("quantity"),
            field=f"items[{index}].quantity",
            minimum=1,
            maximum=MAX_QUANTITY_PER_LINE,
        )
        product = db.session.get(Product, product_id)
        if product is None:
            raise NotFoundError(f"Product {product_id} not found")
        if not product.is_active:
            raise ValidationError(f"Product {product_id} is not available", field=f"items[{index}].product_id")
        parsed.append((product, quantity))

    now = now or utcnow()
    tx = Transaction(
        status=STATUS_PENDING,
        confirmation_deadline_at=now + _confirmation_window(),
        created_at=now,
        updated_at=now,
    )
    db.session.add(tx)
    db.session.flush()

    total = 0
    for line_number, (product, quantity) in enumerate(parsed, start=1):
        db.session.add(TransactionItem(
            transaction_id=tx.id,
            line_number=line_number,
            product_id=product.id,
            product_name=product.name,
            quantity=quantity,
            price_at_purchase_cents=product.price_cents,
        ))
        total += product.price_cents * quantity
    tx.total_cents = total

    try:
        db.session.commit()
    except SQLAlchemyError as exc:
        db.session.rollback()
        raise StorageUnavailableError("Could not create transaction; please retry") from exc

    current_app.logger.info(
        "Transaction %s created with %s line(s), total %s cents, deadline %s",
        tx.id,
        len(parsed),
        total,
        to_utc_z(tx.confirmation_deadline_at),
        extra={"transaction_id": tx.id},
    )
    return tx


def get_transaction(transaction_id) -> Transaction:
    transaction_id = coerce_int(transaction_id, field="transaction_id", minimum=1)
    tx = db.session.get(Transaction, transaction_id)
    if tx is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return tx


def list_transactions(*, status: str | None = None, limit: int = 50, offset: int = 0) -> tuple[list[Transaction], int]:
    q = db.session.query(Transaction)
    if status:
        if status not in TRANSACTION_STATUSES:
            raise ValidationError(f"Invalid status: {status}", field="status")
        q = q.filter(Transaction.status == status)
    total = q.count()
    items = q.order_by(Transaction.created_at.desc(), Transaction.id.desc()).offset(offset).limit(limit).all()
    return items, total


def _load_for_update(transaction_id: int) -> Transaction:
    tx = lock_for_update(
        db.session.query(Transaction).filter_by(id=transaction_id)
    ).populate_existing().first()
    if tx is None:
        raise NotFoundError(f"Transaction {transaction_id} not found")
    return tx


def _transition(transaction_id: int, allowed: set[str], action: str, apply) -> Transaction:
    """
    Status-only transition (no ledger effect) under a row lock.

    `apply(tx)` mutates the row; it may return False to signal a no-op.
    """
    def _op():
        tx = _load_for_update(transaction_id)
        if tx.status not in allowed:
            raise _conflict(tx, action)
        previous = tx.status
        if apply(tx) is False:
            db.session.rollback()
            return tx, None
        db.session.commit()
        return tx, previous

    try:
        tx, previous = run_with_retry(_op)
    except Exception:
        db.session.rollback()
        raise
    if previous is not None:
        _log_transition(tx, previous, tx.failure_reason)
    return tx


def _fail(transaction_id: int, reason: str, now: datetime, action: str = "fail") -> Transaction:
    def apply(tx):
        tx.status = STATUS_FAILED
        tx.failure_reason = reason
        tx.updated_at = now

    return _transition(transaction_id, {STATUS_PENDING}, action, apply)


# ---------------------------------------------------------------------------
# Customer-side transitions
# ---------------------------------------------------------------------------

def assert_payment(transaction_id, *, now: datetime | None = None) -> Transaction:
    """
    Record that the customer says they paid.

    From here on the transaction can no longer silently time out to FAILED;
    if confirmation is not persisted it becomes PAYMENT_UNCERTAIN instead.
    """
    now = now or utcnow()
    tx = get_transaction(transaction_id)
    if tx.status != STATUS_PENDING:
        raise _conflict(tx, "record a payment assertion")
    if tx.payment_asserted_at is not None:
        return tx
    if now > tx.confirmation_deadline_at:
        _fail(tx.id, FAILURE_CONFIRMATION_TIMEOUT, now)
        raise ConflictError(
            f"Transaction {tx.id} confirmation window elapsed",
            current_status=STATUS_FAILED,
        )

    def apply(locked):
        if locked.payment_asserted_at is not None:
            return False
        locked.payment_asserted_at = now
        locked.updated_at = now

    try:
        return _transition(tx.id, {STATUS_PENDING}, "record a payment assertion", apply)
    except StorageUnavailableError:
        current_app.logger.error(
            "Could not record payment assertion for transaction %s",
            tx.id,
            extra={"transaction_id": tx.id},
        )
        _fail_best_effort(tx.id, now)
        raise


def _fail_best_effort(transaction_id: int, now: datetime) -> None:
    """
    Try to mark FAILED(persistence_failure) after a storage error.

    If storage is still down the row stays PENDING without an assertion and
    the sweep fails it once the window passes.
    """
    try:
        _fail(transaction_id, FAILURE_PERSISTENCE, now)
    except (StorageUnavailableError, ConflictError) as exc:
        current_app.logger.warning(
            "Transaction %s left for the timeout sweep: %s",
            transaction_id,
            exc,
            extra={"transaction_id": transaction_id},
        )


def _products_for(tx: Transaction) -> dict[int, Product]:
    ids = sorted({item.product_id for item in tx.items})
    products = db.session.query(Product).filter(Product.id.in_(ids)).all()
    return {p.id: p for p in products}


def _complete_with_ledger(
    transaction_id: int,
    *,
    from_status: str,
    reason: str,
    action: str,
    now: datetime,
    fields: dict,
    audit: dict | None = None,
) -> tuple[Transaction, list[dict], bool]:
    """
    Move to COMPLETED and append one adjustment per line, as one unit.

    Returns (transaction, negative_after, transitioned). A transaction
    already COMPLETED is returned untouched with transitioned=False.
    """
    tx = get_transaction(transaction_id)
    products = _products_for(tx)
    product_ids = list(products)
    outcome = {}

    def _unit():
        locked = _load_for_update(transaction_id)
        if locked.status == STATUS_COMPLETED:
            outcome["already"] = True
            return locked, []
        if locked.status != from_status:
            raise _conflict(locked, action)

        tracking = get_tracking_enabled()
        events = []
        if tracking:
            entries = [(products[item.product_id], -item.quantity) for item in locked.items]
            events = post_adjustments_locked(
                entries,
                reason=reason,
                actor_id=fields.get("reconciled_by"),
                transaction_id=locked.id,
                tracking_enabled=True,
                now=now,
            )
        outcome["previous"] = locked.status
        outcome["tracking"] = tracking
        locked.status = STATUS_COMPLETED
        locked.updated_at = now
        for key, value in fields.items():
            setattr(locked, key, value)
        if audit is not None:
            audit_fields = dict(audit)
            payload = dict(audit_fields.pop("payload", None) or {})
            payload["adjustment_ids"] = [e.adjustment_id for e in events]
            payload["tracking_enabled"] = tracking
            append_audit_event(
                entity_type="transaction",
                entity_id=locked.id,
                occurred_at=now,
                payload=payload,
                **audit_fields,
            )
        outcome["negative_after"] = [
            {"product_id": e.product_id, "balance": e.new_balance}
            for e in events
            if e.new_balance < 0
        ]
        return locked, events

    tx = run_ledger_unit(product_ids, _unit)
    if outcome.get("already"):
        return tx, [], False

    _log_transition(
        tx,
        outcome["previous"],
        None if outcome["tracking"] else "tracking disabled, no ledger effect",
    )
    return tx, outcome["negative_after"], True


def confirm_transaction(
    transaction_id,
    *,
    confirmation_method: str = "self_attested",
    now: datetime | None = None,
) -> dict:
    """
    Customer confirmation. Idempotent once COMPLETED.

    The payment assertion is stored first, then the status change and the
    sale adjustments commit together. If that unit fails the transaction is
    never COMPLETED; it stays PENDING for the sweep to move to
    PAYMENT_UNCERTAIN.
    """
    now = now or utcnow()
    tx = get_transaction(transaction_id)
    if tx.status == STATUS_COMPLETED:
        return {"transaction": tx, "applied": False, "already_completed": True}
    if tx.status != STATUS_PENDING:
        raise _conflict(tx, "confirm")

    if tx.payment_asserted_at is None:
        tx = assert_payment(tx.id, now=now)

    try:
        tx, _, transitioned = _complete_with_ledger(
            tx.id,
            from_status=STATUS_PENDING,
            reason=REASON_SALE,
            action="confirm",
            now=now,
            fields={"confirmed_at": now, "confirmation_method": confirmation_method},
        )
    except StorageUnavailableError:
        current_app.logger.error(
            "Ledger write failed while confirming transaction %s; held PENDING with payment asserted",
            tx.id,
            extra={"transaction_id": tx.id},
        )
        raise

    return {"transaction": tx, "applied": transitioned, "already_completed": not transitioned}


def decline_transaction(transaction_id, *, now: datetime | None = None) -> Transaction:
    now = now or utcnow()
    tx = get_transaction(transaction_id)
    return _fail(tx.id, FAILURE_DECLINED, now, action="decline")


def report_payment_uncertain(transaction_id, *, note: str | None = None, now: datetime | None = None) -> Transaction:
    """Kiosk-reported ambiguous payment signal. Repeating it is a no-op."""
    now = now or utcnow()
    tx = get_transaction(transaction_id)

    def apply(locked):
        if locked.status == STATUS_PAYMENT_UNCERTAIN:
            return False
        locked.status = STATUS_PAYMENT_UNCERTAIN
        locked.failure_reason = UNCERTAIN_REPORTED
        locked.reconciliation_note = note
        locked.updated_at = now

    return _transition(tx.id, {STATUS_PENDING, STATUS_PAYMENT_UNCERTAIN}, "mark payment uncertain", apply)


# ---------------------------------------------------------------------------
# Administrator reconciliation
# ---------------------------------------------------------------------------

def reconcile_transaction(
    transaction_id,
    resolution: str,
    actor_id: str | None,
    *,
    note: str | None = None,
    now: datetime | None = None,
) -> dict:
    """
    Resolve a PAYMENT_UNCERTAIN transaction.

    confirmed: deferred deductions are appended now, tagged
    reconciliation_confirm, without re-checking stock; products left
    negative are reported in negative_after.
    refunded: no ledger effect; an audit event with reason code
    reconciliation_refund_noop records the decision.
    """
    if resolution not in {RESOLUTION_CONFIRMED, RESOLUTION_REFUNDED}:
        raise ValidationError("resolution must be 'confirmed' or 'refunded'", field="resolution")
    if not actor_id:
        raise ValidationError("actor_id is required for reconciliation", field="actor_id")
    now = now or utcnow()
    tx = get_transaction(transaction_id)
    if tx.status != STATUS_PAYMENT_UNCERTAIN:
        raise _conflict(tx, f"reconcile as {resolution}")

    if resolution == RESOLUTION_CONFIRMED:
        tx, negative_after, _ = _complete_with_ledger(
            tx.id,
            from_status=STATUS_PAYMENT_UNCERTAIN,
            reason=REASON_RECONCILIATION_CONFIRM,
            action=f"reconcile as {resolution}",
            now=now,
            fields={
                "reconciled_by": actor_id,
                "reconciled_at": now,
                "reconciliation_note": note,
                "confirmed_at": now,
                "confirmation_method": "admin_reconciliation",
            },
            audit={
                "event_type": "transaction.reconciled",
                "actor_id": actor_id,
                "reason_code": REASON_RECONCILIATION_CONFIRM,
                "payload": {"resolution": resolution, "note": note},
            },
        )
        return {"transaction": tx, "negative_after": negative_after}

    def apply(locked):
        locked.status = STATUS_REFUNDED
        locked.reconciled_by = actor_id
        locked.reconciled_at = now
        locked.reconciliation_note = note
        locked.updated_at = now
        append_audit_event(
            event_type="transaction.reconciled",
            entity_type="transaction",
            entity_id=locked.id,
            actor_id=actor_id,
            reason_code=REASON_RECONCILIATION_REFUND_NOOP,
            payload={"resolution": resolution, "note": note, "total_cents": locked.total_cents},
            occurred_at=now,
        )

    tx = _transition(tx.id, {STATUS_PAYMENT_UNCERTAIN}, f"reconcile as {resolution}", apply)
    return {"transaction": tx, "negative_after": []}


# ---------------------------------------------------------------------------
# Background sweep
# ---------------------------------------------------------------------------

def sweep_expired_transactions(now: datetime | None = None) -> dict:
    """
    Wall-clock timeouts, owned here rather than by any request.

    - PENDING, no assertion, past the deadline -> FAILED(confirmation_timeout)
    - PENDING, assertion older than the persistence window -> PAYMENT_UNCERTAIN
    """
    now = now or utcnow()
    timed_out: list[int] = []
    uncertain: list[int] = []

    expired_ids = [
        row.id
        for row in db.session.query(Transaction.id).filter(
            Transaction.status == STATUS_PENDING,
            Transaction.payment_asserted_at.is_(None),
            Transaction.confirmation_deadline_at < now,
        ).all()
    ]
    stalled_ids = [
        row.id
        for row in db.session.query(Transaction.id).filter(
            Transaction.status == STATUS_PENDING,
            Transaction.payment_asserted_at.isnot(None),
            Transaction.payment_asserted_at <= now - _persistence_window(),
        ).all()
    ]
    db.session.rollback()

    for transaction_id in expired_ids:
        def expire(tx):
            if tx.payment_asserted_at is not None or tx.confirmation_deadline_at >= now:
                return False
            tx.status = STATUS_FAILED
            tx.failure_reason = FAILURE_CONFIRMATION_TIMEOUT
            tx.updated_at = now

        try:
            tx = _transition(transaction_id, {STATUS_PENDING}, "time out", expire)
        except ConflictError:
            continue
        if tx.status == STATUS_FAILED:
            timed_out.append(transaction_id)

    for transaction_id in stalled_ids:
        def park(tx):
            if tx.payment_asserted_at is None:
                return False
            tx.status = STATUS_PAYMENT_UNCERTAIN
            tx.failure_reason = UNCERTAIN_PERSISTENCE_UNAVAILABLE
            tx.updated_at = now

        try:
            tx = _transition(transaction_id, {STATUS_PENDING}, "mark payment uncertain", park)
        except ConflictError:
            continue
        if tx.status == STATUS_PAYMENT_UNCERTAIN:
            uncertain.append(transaction_id)

    if timed_out or uncertain:
        current_app.logger.info(
            "Transaction sweep: %s timed out, %s payment uncertain",
            len(timed_out),
            len(uncertain),
            extra={"timed_out": timed_out, "uncertain": uncertain},
        )
    return {"timed_out": timed_out, "uncertain": uncertain}
