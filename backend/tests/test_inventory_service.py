"""
Inventory service tests.

Verifies:
- Sales are always accepted and may drive the balance negative
- Negative balances are listed as discrepancies
- Disabled tracking turns sales into no-ops without touching balances
- Low-stock notifications are edge-triggered (one attempt per episode)
- Manual updates and target adjustments are audited
"""

import json

import pytest
from sqlalchemy.exc import OperationalError

from kiosk.extensions import db
from kiosk.models import AuditEvent, InventorySnapshot, NotificationAttempt, StockAdjustment
from kiosk.services import inventory_service, ledger_store
from kiosk.validation import ValidationError, NotFoundError, StorageUnavailableError

from conftest import ADMIN_ID, FakeChannel, make_product


def _attempts(product_id):
    return (
        db.session.query(NotificationAttempt)
        .filter_by(product_id=product_id)
        .order_by(NotificationAttempt.id.asc())
        .all()
    )


class TestSales:
    def test_sale_appends_negative_delta(self, stocked_product):
        result = inventory_service.record_sale(stocked_product.id, 2, transaction_id=None)

        assert result["applied"] is True
        assert result["snapshot"]["current_balance"] == 4
        adj = db.session.get(StockAdjustment, result["adjustment_id"])
        assert adj.delta == -2
        assert adj.reason == "sale"
        assert adj.actor_id is None

    def test_sale_may_drive_balance_negative(self, stocked_product):
        result = inventory_service.record_sale(stocked_product.id, 10)

        assert result["snapshot"]["current_balance"] == -4
        assert result["snapshot"]["discrepancy"] is True
        discrepancies = inventory_service.list_discrepancies()
        assert [d["product_id"] for d in discrepancies] == [stocked_product.id]
        assert discrepancies[0]["current_balance"] == -4

    def test_sale_rejects_bad_quantity_before_touching_ledger(self, stocked_product):
        for bad in (0, -1, "2.5", True, None):
            with pytest.raises(ValidationError):
                inventory_service.record_sale(stocked_product.id, bad)
        assert ledger_store.sum_for(stocked_product.id) == 6

    def test_sale_of_unknown_product_is_not_found(self, db_session):
        with pytest.raises(NotFoundError):
            inventory_service.record_sale(9999, 1)


class TestFailedUnit:
    @pytest.mark.parametrize("error,raised", [
        (RuntimeError("audit store down"), RuntimeError),
        (OperationalError("INSERT", {}, Exception("database is locked")), StorageUnavailableError),
    ])
    def test_failed_unit_publishes_nothing(self, stocked_product, broadcaster, transports, monkeypatch, error, raised):
        notification, _ = transports
        channel = FakeChannel()
        broadcaster.register_client(channel)

        def fail(**kwargs):
            raise error

        monkeypatch.setattr(inventory_service, "append_audit_event", fail)
        with pytest.raises(raised):
            inventory_service.record_manual_stock_update(stocked_product.id, -2, "manual_correction", actor_id=ADMIN_ID)

        assert channel.types() == ["inventory:init"]
        assert notification.sent == []
        assert _attempts(stocked_product.id) == []
        assert ledger_store.sum_for(stocked_product.id) == 6
        snapshot = db.session.get(InventorySnapshot, stocked_product.id)
        assert snapshot.current_balance == 6
        assert snapshot.below_threshold_notified is False


class TestTrackingToggle:
    def test_tracking_defaults_to_enabled(self, db_session):
        assert inventory_service.get_tracking_enabled() is True

    def test_sale_while_disabled_is_noop(self, stocked_product):
        inventory_service.set_tracking_enabled(False, actor_id=ADMIN_ID)
        count_before = db.session.query(StockAdjustment).count()

        result = inventory_service.record_sale(stocked_product.id, 3)

        assert result["applied"] is False
        assert result["adjustment_id"] is None
        assert result["snapshot"]["current_balance"] == 6
        assert result["snapshot"]["tracking_enabled"] is False
        assert db.session.query(StockAdjustment).count() == count_before

    def test_reenabling_resumes_from_last_balance(self, stocked_product):
        inventory_service.set_tracking_enabled(False, actor_id=ADMIN_ID)
        inventory_service.record_sale(stocked_product.id, 3)
        state = inventory_service.set_tracking_enabled(True, actor_id=ADMIN_ID)

        assert state["tracking_enabled"] is True
        assert state["changed_by"] == ADMIN_ID
        result = inventory_service.record_sale(stocked_product.id, 1)
        assert result["snapshot"]["current_balance"] == 5

    def test_toggle_is_audited(self, db_session):
        inventory_service.set_tracking_enabled(False, actor_id=ADMIN_ID)
        event = db.session.query(AuditEvent).filter_by(event_type="inventory.tracking_changed").one()
        assert event.actor_id == ADMIN_ID
        assert json.loads(event.payload) == {"enabled": False, "previous": True}

    def test_toggle_rejects_non_boolean(self, db_session):
        with pytest.raises(ValidationError):
            inventory_service.set_tracking_enabled("no")

    def test_no_alert_while_disabled(self, stocked_product):
        inventory_service.set_tracking_enabled(False, actor_id=ADMIN_ID)
        inventory_service.record_manual_stock_update(stocked_product.id, -4, "manual_correction", actor_id=ADMIN_ID)

        assert inventory_service.get_snapshot(stocked_product.id)["current_balance"] == 2
        assert _attempts(stocked_product.id) == []


class TestLowStockEpisodes:
    def test_threshold_scenario(self, stocked_product, transports):
        notification, _ = transports
        pid = stocked_product.id

        inventory_service.record_sale(pid, 2)
        snap = db.session.get(InventorySnapshot, pid)
        assert snap.current_balance == 4
        assert snap.below_threshold_notified is True
        assert len(_attempts(pid)) == 1
        assert len(notification.sent) == 1

        inventory_service.record_manual_stock_update(pid, 10, "manual_restock", actor_id=ADMIN_ID)
        db.session.expire_all()
        snap = db.session.get(InventorySnapshot, pid)
        assert snap.current_balance == 14
        assert snap.below_threshold_notified is False
        assert len(_attempts(pid)) == 1

        inventory_service.record_sale(pid, 20)
        db.session.expire_all()
        snap = db.session.get(InventorySnapshot, pid)
        assert snap.current_balance == -6
        attempts = _attempts(pid)
        assert len(attempts) == 2
        assert attempts[1].trigger_balance == -6

        discrepancies = inventory_service.list_discrepancies()
        assert [(d["product_id"], d["current_balance"]) for d in discrepancies] == [(pid, -6)]

    def test_second_sale_below_threshold_creates_no_attempt(self, stocked_product):
        inventory_service.record_sale(stocked_product.id, 2)
        inventory_service.record_sale(stocked_product.id, 1)
        inventory_service.record_sale(stocked_product.id, 1)
        assert len(_attempts(stocked_product.id)) == 1

    def test_balance_equal_to_threshold_is_low(self, stocked_product):
        inventory_service.record_sale(stocked_product.id, 1)
        assert len(_attempts(stocked_product.id)) == 1

    def test_restock_resolves_undelivered_attempt(self, stocked_product, transports):
        notification, _ = transports
        notification.failing = True

        inventory_service.record_sale(stocked_product.id, 3)
        attempt = _attempts(stocked_product.id)[0]
        assert attempt.status == "pending"

        inventory_service.record_manual_stock_update(stocked_product.id, 10, "manual_restock", actor_id=ADMIN_ID)
        db.session.expire_all()
        attempt = db.session.get(NotificationAttempt, attempt.id)
        assert attempt.status == "failed"
        assert attempt.resolved_at is not None


class TestManualUpdates:
    def test_manual_update_is_audited(self, product):
        result = inventory_service.record_manual_stock_update(
            product.id, 12, "manual_restock", actor_id=ADMIN_ID, note="delivery"
        )
        assert result["delta"] == 12
        assert result["snapshot"]["current_balance"] == 12

        adj = db.session.get(StockAdjustment, result["adjustment_id"])
        assert adj.actor_id == ADMIN_ID
        assert adj.note == "delivery"

        event = db.session.query(AuditEvent).filter_by(event_type="inventory.manual_update").one()
        assert event.entity_id == product.id
        assert event.reason_code == "manual_restock"
        assert json.loads(event.payload)["new_balance"] == 12

    def test_manual_update_rejects_zero_and_sale_reason(self, product):
        with pytest.raises(ValidationError):
            inventory_service.record_manual_stock_update(product.id, 0, "manual_restock", actor_id=ADMIN_ID)
        with pytest.raises(ValidationError):
            inventory_service.record_manual_stock_update(product.id, 5, "sale", actor_id=ADMIN_ID)
        assert db.session.query(StockAdjustment).count() == 0

    def test_adjust_to_target_appends_difference(self, stocked_product):
        result = inventory_service.record_adjustment_to_target(
            stocked_product.id, 20, "manual_correction", actor_id=ADMIN_ID
        )
        assert result["applied"] is True
        assert result["delta"] == 14
        assert result["snapshot"]["current_balance"] == 20
        assert db.session.query(AuditEvent).filter_by(event_type="inventory.adjust_to_target").count() == 1

    def test_adjust_to_current_balance_appends_nothing(self, stocked_product):
        before = db.session.query(StockAdjustment).count()
        result = inventory_service.record_adjustment_to_target(
            stocked_product.id, 6, "manual_correction", actor_id=ADMIN_ID
        )
        assert result["applied"] is False
        assert result["delta"] == 0
        assert db.session.query(StockAdjustment).count() == before

    def test_adjust_to_negative_target_rejected(self, stocked_product):
        with pytest.raises(ValidationError):
            inventory_service.record_adjustment_to_target(stocked_product.id, -1, "manual_correction")


class TestReads:
    def test_list_snapshots_includes_unstocked_products(self, product):
        other = make_product(sku="WATER-500", name="Water 0.5l")
        inventory_service.record_manual_stock_update(other.id, 9, "manual_restock", actor_id=ADMIN_ID)

        items, total = inventory_service.list_snapshots()
        assert total == 2
        by_id = {item["product_id"]: item for item in items}
        assert by_id[product.id]["current_balance"] == 0
        assert by_id[other.id]["current_balance"] == 9

    def test_list_snapshots_search_and_sort(self, product):
        make_product(sku="WATER-500", name="Water 0.5l")
        items, total = inventory_service.list_snapshots(search="water")
        assert total == 1
        assert items[0]["sku"] == "WATER-500"

        items, _ = inventory_service.list_snapshots(sort_by="name", sort_direction="desc")
        assert [i["name"] for i in items] == ["Water 0.5l", "Cola 0.33l"]

        with pytest.raises(ValidationError):
            inventory_service.list_snapshots(sort_by="price")

    def test_inactive_products_hidden_by_default(self, product):
        make_product(sku="OLD-1", name="Retired", active=False)
        _, total = inventory_service.list_snapshots()
        assert total == 1
        _, total = inventory_service.list_snapshots(include_inactive=True)
        assert total == 2

    def test_rebuild_snapshots_repairs_drift(self, stocked_product):
        db.session.execute(
            InventorySnapshot.__table__.update()
            .where(InventorySnapshot.product_id == stocked_product.id)
            .values(current_balance=-40)
        )
        db.session.commit()

        fixed = inventory_service.rebuild_snapshots()
        assert fixed == [{"product_id": stocked_product.id, "snapshot_balance": -40, "ledger_balance": 6}]
        assert inventory_service.get_snapshot(stocked_product.id)["current_balance"] == 6
