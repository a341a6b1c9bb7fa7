# Overview: Low-stock notification dispatcher: edge-triggered decision, delivery with fixed retries, escalation.

from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta

import sqlalchemy as sa
from flask import current_app

from ..extensions import db
from ..models import (
    Product,
    InventorySnapshot,
    NotificationAttempt,
    NotificationDeliveryLog,
    AdminAlert,
)
from ..models.notifications import (
    ATTEMPT_PENDING,
    ATTEMPT_SENT,
    ATTEMPT_FAILED,
    ATTEMPT_STATUSES,
    ALERT_NOTIFICATION_FAILED,
    ALERT_NOTIFICATION_ESCALATION,
    SEVERITY_ERROR,
    SEVERITY_CRITICAL,
)
from ..validation import ConflictError, NotFoundError, ValidationError
from kiosk.time_utils import utcnow, to_utc_z
from .alert_transport import (
    AlertMessage,
    AlertDeliveryError,
    CHANNEL_NOTIFICATION,
    CHANNEL_ESCALATION,
    build_transport,
)
from .events import BalanceChanged
"""
Low-stock notification rules (authoritative)

Decision (runs inside the ledger write's DB transaction):
- An alert is owed iff tracking is enabled, balance <= threshold and the
  snapshot's below_threshold_notified flag is false.
- Firing sets the flag and inserts exactly one pending attempt, atomically.
- Rising strictly above threshold clears the flag and resolves any attempt
  still pending, so the next crossing alerts again (edge-trigger).

Delivery (runs after commit, never under the product lock):
- First delivery immediately, then retries at fixed offsets from the failed
  attempt (60s, 300s, 900s by default). The failure after the last retry
  marks the attempt failed and writes an admin alert.
- Every delivery writes a notification_delivery_log row.
- An attempt is claimed by pushing next_retry_at forward by a lease, so two
  workers never deliver the same attempt at once and a crashed delivery
  becomes due again.

Escalation:
- Deliveries failing with no success for longer than the escalation window
  produce one critical alert per failure streak on the escalation channel.
"""

DELIVERY_LEASE_SECONDS = 120


# ---------------------------------------------------------------------------
# Transports and background delivery
# ---------------------------------------------------------------------------

def get_transport(channel: str):
    transports = current_app.extensions.setdefault("kiosk_transports", {})
    transport = transports.get(channel)
    if transport is None:
        transport = build_transport(current_app.config, channel, logger=current_app.logger)
        transports[channel] = transport
    return transport


def _get_executor() -> ThreadPoolExecutor:
    executor = current_app.extensions.get("kiosk_notifier_pool")
    if executor is None:
        executor = ThreadPoolExecutor(
            max_workers=current_app.config.get("NOTIFICATION_DELIVERY_THREADS", 2),
            thread_name_prefix="kiosk-notify",
        )
        current_app.extensions["kiosk_notifier_pool"] = executor
    return executor


def _deliver_in_background(app, attempt_id: int) -> None:
    with app.app_context():
        try:
            deliver_attempt(attempt_id)
        except Exception:
            db.session.rollback()
            app.logger.exception("Background delivery failed", extra={"attempt_id": attempt_id})
        finally:
            db.session.remove()


def dispatch_attempt(attempt_id: int) -> None:
    """Deliver now (inline mode) or hand off to the delivery pool."""
    if current_app.config.get("NOTIFICATION_DELIVERY_INLINE"):
        deliver_attempt(attempt_id)
        return
    app = current_app._get_current_object()
    _get_executor().submit(_deliver_in_background, app, attempt_id)


def on_balance_changed(event: BalanceChanged) -> None:
    """Event handler: kick off delivery for an attempt opened by this write."""
    if event.notification_attempt_id is not None:
        dispatch_attempt(event.notification_attempt_id)


def shutdown_delivery_pool(app) -> None:
    executor = app.extensions.pop("kiosk_notifier_pool", None)
    if executor is not None:
        executor.shutdown(wait=False)


# ---------------------------------------------------------------------------
# Decision (inside the ledger transaction)
# ---------------------------------------------------------------------------

def _unresolved_attempts_query(product_id: int):
    return db.session.query(NotificationAttempt).filter(
        NotificationAttempt.product_id == product_id,
        NotificationAttempt.status == ATTEMPT_PENDING,
        NotificationAttempt.resolved_at.is_(None),
    )


def open_attempt(product_id: int, trigger_balance: int, now: datetime | None = None) -> NotificationAttempt:
    """
    Create the pending attempt for a new episode.

    Refuses when one is already unresolved for the product.
    """
    existing = _unresolved_attempts_query(product_id).first()
    if existing is not None:
        raise ConflictError(
            f"Product {product_id} already has unresolved notification attempt {existing.id}",
            current_status=existing.status,
        )
    now = now or utcnow()
    attempt = NotificationAttempt(
        product_id=product_id,
        trigger_balance=trigger_balance,
        status=ATTEMPT_PENDING,
        attempt_count=0,
        next_retry_at=now,
        created_at=now,
    )
    db.session.add(attempt)
    db.session.flush()
    return attempt


def _resolve_open_attempts(product_id: int, now: datetime) -> int:
    count = 0
    for attempt in _unresolved_attempts_query(product_id).all():
        attempt.status = ATTEMPT_FAILED
        attempt.resolved_at = now
        attempt.next_retry_at = None
        attempt.last_error = "Stock restored above threshold before delivery"
        count += 1
    return count


def evaluate_threshold(
    snapshot: InventorySnapshot,
    product: Product,
    *,
    tracking_enabled: bool,
    now: datetime | None = None,
) -> NotificationAttempt | None:
    """
    Edge-triggered low-stock decision for one freshly written balance.

    Must run in the same DB transaction (and under the same product lock)
    as the adjustment, so the flag and the attempt row commit together.
    Returns the attempt created by this write, if any.
    """
    now = now or utcnow()
    balance = snapshot.current_balance
    threshold = product.low_stock_threshold

    if balance <= threshold:
        if not tracking_enabled or snapshot.below_threshold_notified:
            return None
        try:
            attempt = open_attempt(product.id, balance, now)
        except ConflictError as exc:
            # Flag and attempts disagree; keep the existing attempt as this episode's alert
            current_app.logger.warning(
                "Low-stock flag was clear but an attempt is unresolved: %s",
                exc,
                extra={"product_id": product.id},
            )
            snapshot.below_threshold_notified = True
            return None
        snapshot.below_threshold_notified = True
        current_app.logger.info(
            "Low stock for product %s: balance %s <= threshold %s",
            product.id,
            balance,
            threshold,
            extra={"product_id": product.id, "attempt_id": attempt.id},
        )
        return attempt

    if snapshot.below_threshold_notified:
        snapshot.below_threshold_notified = False
        resolved = _resolve_open_attempts(product.id, now)
        current_app.logger.info(
            "Product %s back above threshold (%s > %s); %s pending attempt(s) resolved",
            product.id,
            balance,
            threshold,
            resolved,
            extra={"product_id": product.id},
        )
    return None


# ---------------------------------------------------------------------------
# Delivery
# ---------------------------------------------------------------------------

def build_low_stock_message(product: Product, attempt: NotificationAttempt) -> AlertMessage:
    body = (
        f"{product.name} (SKU {product.sku}) dropped to {attempt.trigger_balance} "
        f"unit(s); the low-stock threshold is {product.low_stock_threshold}.\n"
        f"Detected at {to_utc_z(attempt.created_at)}."
    )
    if attempt.trigger_balance < 0:
        body += "\nThe balance is negative: physical stock and system stock disagree."
    return AlertMessage(
        subject=f"Low stock: {product.name}",
        body=body,
        severity="warning",
        product_id=product.id,
        metadata={"attempt_id": attempt.id},
    )


def _claim_attempt(attempt_id: int, now: datetime) -> bool:
    result = db.session.execute(
        sa.update(NotificationAttempt)
        .where(
            NotificationAttempt.id == attempt_id,
            NotificationAttempt.status == ATTEMPT_PENDING,
            NotificationAttempt.resolved_at.is_(None),
            NotificationAttempt.next_retry_at <= now,
        )
        .values(next_retry_at=now + timedelta(seconds=DELIVERY_LEASE_SECONDS))
        .execution_options(synchronize_session=False)
    )
    db.session.commit()
    return result.rowcount == 1


def _retry_offsets() -> tuple[int, ...]:
    return tuple(current_app.config.get("NOTIFICATION_RETRY_SCHEDULE_SECONDS", (60, 300, 900)))


def deliver_attempt(attempt_id: int, now: datetime | None = None) -> NotificationAttempt:
    """
    Deliver one due attempt and record the outcome.

    Not-due, already sent, failed or resolved attempts are returned untouched.
    The transport is called with no DB transaction open.
    """
    now = now or utcnow()
    attempt = db.session.get(NotificationAttempt, attempt_id)
    if attempt is None:
        raise NotFoundError(f"Notification attempt {attempt_id} not found")

    if not _claim_attempt(attempt_id, now):
        return db.session.get(NotificationAttempt, attempt_id)

    attempt = db.session.get(NotificationAttempt, attempt_id)
    message = build_low_stock_message(attempt.product, attempt)
    attempt_number = attempt.attempt_count + 1
    db.session.commit()

    error = None
    try:
        success = bool(get_transport(CHANNEL_NOTIFICATION).send(message))
        if not success:
            error = "Transport declined the message"
    except AlertDeliveryError as exc:
        success = False
        error = str(exc)
    except Exception as exc:
        current_app.logger.exception("Alert transport raised", extra={"attempt_id": attempt_id})
        success = False
        error = f"{type(exc).__name__}: {exc}"

    attempt = db.session.get(NotificationAttempt, attempt_id)
    db.session.add(NotificationDeliveryLog(
        attempt_id=attempt_id,
        attempt_number=attempt_number,
        success=success,
        error=error[:512] if error else None,
        attempted_at=now,
    ))
    attempt.attempt_count = attempt_number
    attempt.last_attempt_at = now

    if attempt.resolved_at is not None:
        # Episode ended while this delivery was in flight; outcome is logged only
        db.session.commit()
        return attempt

    if success:
        attempt.status = ATTEMPT_SENT
        attempt.next_retry_at = None
        attempt.last_error = None
        current_app.logger.info(
            "Low-stock alert delivered (attempt #%s)",
            attempt_number,
            extra={"attempt_id": attempt_id, "product_id": attempt.product_id},
        )
    else:
        attempt.last_error = error[:512] if error else None
        offsets = _retry_offsets()
        retries_used = attempt_number - 1
        if retries_used < len(offsets):
            attempt.next_retry_at = now + timedelta(seconds=offsets[retries_used])
            current_app.logger.warning(
                "Low-stock alert delivery failed (attempt #%s), retry at %s: %s",
                attempt_number,
                to_utc_z(attempt.next_retry_at),
                error,
                extra={"attempt_id": attempt_id, "product_id": attempt.product_id},
            )
        else:
            attempt.status = ATTEMPT_FAILED
            attempt.next_retry_at = None
            db.session.add(AdminAlert(
                kind=ALERT_NOTIFICATION_FAILED,
                severity=SEVERITY_ERROR,
                product_id=attempt.product_id,
                attempt_id=attempt.id,
                message=(
                    f"Low-stock alert for {attempt.product.name} failed after "
                    f"{attempt_number} attempts: {error}"
                )[:512],
                created_at=now,
            ))
            current_app.logger.error(
                "Low-stock alert permanently failed after %s attempts: %s",
                attempt_number,
                error,
                extra={"attempt_id": attempt_id, "product_id": attempt.product_id},
            )

    db.session.commit()
    return attempt


def process_due_notifications(now: datetime | None = None, limit: int = 50) -> dict:
    """Worker entry point: deliver every pending attempt whose retry time has come."""
    now = now or utcnow()
    due_ids = [
        row.id
        for row in db.session.query(NotificationAttempt.id)
        .filter(
            NotificationAttempt.status == ATTEMPT_PENDING,
            NotificationAttempt.resolved_at.is_(None),
            NotificationAttempt.next_retry_at <= now,
        )
        .order_by(NotificationAttempt.next_retry_at.asc(), NotificationAttempt.id.asc())
        .limit(limit)
        .all()
    ]
    summary = {"processed": 0, "sent": 0, "retrying": 0, "failed": 0}
    for attempt_id in due_ids:
        attempt = deliver_attempt(attempt_id, now=now)
        summary["processed"] += 1
        if attempt.status == ATTEMPT_SENT:
            summary["sent"] += 1
        elif attempt.status == ATTEMPT_FAILED:
            summary["failed"] += 1
        else:
            summary["retrying"] += 1
    return summary


# ---------------------------------------------------------------------------
# Escalation
# ---------------------------------------------------------------------------

def current_failure_streak_start() -> datetime | None:
    """
    First failed delivery of the current streak, or None.

    Only failures of attempts that are still retrying count. Once every
    failing attempt is sent, superseded or permanently failed, the streak
    is over; the next failure starts a new one.
    """
    last_success = db.session.query(sa.func.max(NotificationDeliveryLog.attempted_at)).filter(
        NotificationDeliveryLog.success.is_(True)
    ).scalar()

    q = (
        db.session.query(sa.func.min(NotificationDeliveryLog.attempted_at))
        .join(NotificationAttempt, NotificationAttempt.id == NotificationDeliveryLog.attempt_id)
        .filter(
            NotificationDeliveryLog.success.is_(False),
            NotificationAttempt.status == ATTEMPT_PENDING,
            NotificationAttempt.resolved_at.is_(None),
        )
    )
    if last_success is not None:
        q = q.filter(NotificationDeliveryLog.attempted_at > last_success)
    return q.scalar()


def check_escalation(now: datetime | None = None) -> AdminAlert | None:
    """
    Raise one critical escalation per failure streak older than the window.

    Delivered through the escalation transport; the admin alert row is
    written even if that transport fails too.
    """
    now = now or utcnow()
    streak_start = current_failure_streak_start()
    if streak_start is None:
        return None

    window = timedelta(seconds=current_app.config.get("NOTIFICATION_ESCALATION_AFTER_SECONDS", 900))
    if now - streak_start <= window:
        return None

    already = db.session.query(AdminAlert.id).filter(
        AdminAlert.kind == ALERT_NOTIFICATION_ESCALATION,
        AdminAlert.created_at >= streak_start,
    ).first()
    if already is not None:
        return None

    failures = db.session.query(NotificationDeliveryLog).filter(
        NotificationDeliveryLog.success.is_(False),
        NotificationDeliveryLog.attempted_at >= streak_start,
    ).all()
    attempt_ids = sorted({row.attempt_id for row in failures})
    minutes = int((now - streak_start).total_seconds() // 60)

    message = AlertMessage(
        subject=f"ESCALATION: low-stock alerts failing for {minutes} minutes",
        body=(
            f"{len(failures)} delivery attempt(s) across {len(attempt_ids)} alert(s) have failed "
            f"since {to_utc_z(streak_start)} with no successful delivery.\n"
            f"Check the notification transport and the admin alert log."
        ),
        severity=SEVERITY_CRITICAL,
        metadata={"attempt_ids": attempt_ids},
    )

    delivered = False
    try:
        delivered = bool(get_transport(CHANNEL_ESCALATION).send(message))
    except Exception:
        current_app.logger.exception("Escalation transport failed")

    alert = AdminAlert(
        kind=ALERT_NOTIFICATION_ESCALATION,
        severity=SEVERITY_CRITICAL,
        product_id=None,
        attempt_id=attempt_ids[-1] if attempt_ids else None,
        message=(message.subject + (" (escalation delivered)" if delivered else " (escalation NOT delivered)"))[:512],
        created_at=now,
    )
    db.session.add(alert)
    db.session.commit()

    current_app.logger.critical(
        "Notification deliveries failing since %s; escalation %s",
        to_utc_z(streak_start),
        "sent" if delivered else "not delivered",
        extra={"attempt_ids": attempt_ids},
    )
    return alert


# ---------------------------------------------------------------------------
# Read / admin
# ---------------------------------------------------------------------------

def list_attempts(
    *,
    status: str | None = None,
    product_id: int | None = None,
    limit: int = 50,
    offset: int = 0,
    include_superseded: bool = False,
) -> tuple[list[NotificationAttempt], int]:
    """
    Attempts newest first.

    status="failed" lists delivery failures only; attempts closed because
    stock recovered are added with include_superseded=True.
    """
    q = db.session.query(NotificationAttempt)
    if status:
        if status not in ATTEMPT_STATUSES:
            raise ValidationError(f"Invalid status: {status}", field="status")
        q = q.filter(NotificationAttempt.status == status)
        if status == ATTEMPT_FAILED and not include_superseded:
            q = q.filter(NotificationAttempt.resolved_at.is_(None))
    if product_id is not None:
        q = q.filter(NotificationAttempt.product_id == product_id)
    total = q.count()
    items = q.order_by(NotificationAttempt.created_at.desc(), NotificationAttempt.id.desc()).offset(offset).limit(limit).all()
    return items, total


def list_delivery_log(attempt_id: int) -> list[NotificationDeliveryLog]:
    return db.session.query(NotificationDeliveryLog).filter_by(attempt_id=attempt_id).order_by(
        NotificationDeliveryLog.attempt_number.asc()
    ).all()


def list_admin_alerts(*, unacknowledged_only: bool = False, limit: int = 50, offset: int = 0) -> tuple[list[AdminAlert], int]:
    q = db.session.query(AdminAlert)
    if unacknowledged_only:
        q = q.filter(AdminAlert.acknowledged_at.is_(None))
    total = q.count()
    items = q.order_by(AdminAlert.created_at.desc(), AdminAlert.id.desc()).offset(offset).limit(limit).all()
    return items, total


def acknowledge_alert(alert_id: int, actor_id: str | None = None) -> AdminAlert:
    alert = db.session.get(AdminAlert, alert_id)
    if alert is None:
        raise NotFoundError(f"Admin alert {alert_id} not found")
    if alert.acknowledged_at is None:
        alert.acknowledged_at = utcnow()
        alert.acknowledged_by = actor_id
        db.session.commit()
    return alert
