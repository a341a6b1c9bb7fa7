# Overview: In-process balance-changed event bus; handlers run after the ledger commit.

from __future__ import annotations

from dataclasses import dataclass, field, asdict
from datetime import datetime
from typing import Callable

from flask import current_app

from kiosk.time_utils import to_utc_z


@dataclass(frozen=True)
class BalanceChanged:
    product_id: int
    previous_balance: int
    new_balance: int
    low_stock_threshold: int
    reason: str
    adjustment_id: int
    occurred_at: datetime
    tracking_enabled: bool = True
    transaction_id: int | None = None
    # Set when this write opened a new low-stock episode
    notification_attempt_id: int | None = None

    @property
    def low_stock(self) -> bool:
        return self.new_balance <= self.low_stock_threshold

    @property
    def discrepancy(self) -> bool:
        return self.new_balance < 0

    def to_dict(self) -> dict:
        data = asdict(self)
        data["occurred_at"] = to_utc_z(self.occurred_at)
        data["low_stock"] = self.low_stock
        data["discrepancy"] = self.discrepancy
        return data


Handler = Callable[[BalanceChanged], None]


@dataclass
class EventBus:
    """
    Synchronous fan-out to subscribers.

    A failing handler is logged and does not stop the others; the write that
    produced the event is already durable by the time publish runs.
    """
    handlers: list[Handler] = field(default_factory=list)

    def subscribe(self, handler: Handler) -> None:
        if handler not in self.handlers:
            self.handlers.append(handler)

    def publish(self, event: BalanceChanged) -> None:
        for handler in list(self.handlers):
            try:
                handler(event)
            except Exception:
                current_app.logger.exception(
                    "BalanceChanged handler %s failed",
                    getattr(handler, "__name__", repr(handler)),
                    extra={"product_id": event.product_id, "adjustment_id": event.adjustment_id},
                )


def get_event_bus(app=None) -> EventBus:
    app = app or current_app
    return app.extensions["kiosk_events"]


def publish_balance_changes(events: list[BalanceChanged]) -> None:
    bus = get_event_bus()
    for event in events:
        bus.publish(event)
