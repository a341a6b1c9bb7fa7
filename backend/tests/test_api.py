"""
HTTP API tests.

Verifies:
- Administrator routes return 401 without a token
- Error taxonomy maps to 400 / 404 / 409 with actionable bodies
- The purchase lifecycle over HTTP
- Feed ETag / 304 and cache invalidation on ledger writes
"""

import pytest

from kiosk.services import feed_service, inventory_service
from kiosk.services.feed_service import FeedCache

from conftest import ADMIN_TOKEN, ADMIN_ID


# =============================================================================
# AUTHENTICATION — 401
# =============================================================================


class TestUnauthenticatedAccess:
    @pytest.mark.parametrize(
        "method,path",
        [
            ("GET", "/api/inventory"),
            ("GET", "/api/inventory/discrepancies"),
            ("GET", "/api/inventory/tracking"),
            ("PATCH", "/api/inventory/tracking"),
            ("GET", "/api/inventory/events"),
            ("GET", "/api/inventory/1"),
            ("POST", "/api/inventory/1/stock"),
            ("POST", "/api/inventory/1/adjustments"),
            ("GET", "/api/transactions"),
            ("POST", "/api/transactions/1/reconcile"),
            ("GET", "/api/notifications/attempts"),
            ("GET", "/api/notifications/alerts"),
            ("PATCH", "/api/status/maintenance"),
        ],
    )
    def test_requires_admin(self, client, method, path):
        resp = getattr(client, method.lower())(path)
        assert resp.status_code == 401, f"{method} {path} returned {resp.status_code}"

    def test_wrong_token_rejected(self, client):
        resp = client.get("/api/inventory", headers={"Authorization": "Bearer nope"})
        assert resp.status_code == 401

    def test_query_token_accepted_for_get(self, client):
        resp = client.get(f"/api/inventory?access_token={ADMIN_TOKEN}")
        assert resp.status_code == 200

    def test_query_token_ignored_for_writes(self, client):
        resp = client.patch(f"/api/inventory/tracking?access_token={ADMIN_TOKEN}", json={"enabled": False})
        assert resp.status_code == 401


# =============================================================================
# INVENTORY
# =============================================================================


class TestInventoryRoutes:
    def test_manual_restock_and_read(self, client, product, admin_headers):
        resp = client.post(f"/api/inventory/{product.id}/stock", json={"quantity": 12, "note": "delivery"}, headers=admin_headers)
        assert resp.status_code == 201
        assert resp.json["snapshot"]["current_balance"] == 12

        resp = client.get(f"/api/inventory/{product.id}", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json["current_balance"] == 12

        resp = client.get(f"/api/inventory/{product.id}/adjustments", headers=admin_headers)
        [adj] = resp.json["items"]
        assert adj["reason"] == "manual_restock"
        assert adj["actor_id"] == ADMIN_ID

    def test_negative_quantity_defaults_to_correction(self, client, stocked_product, admin_headers):
        resp = client.post(f"/api/inventory/{stocked_product.id}/stock", json={"quantity": -2}, headers=admin_headers)
        assert resp.status_code == 201
        adjustments = client.get(f"/api/inventory/{stocked_product.id}/adjustments", headers=admin_headers).json["items"]
        assert adjustments[-1]["reason"] == "manual_correction"

    @pytest.mark.parametrize("payload,field", [
        ({}, "quantity"),
        ({"quantity": 0}, "delta"),
        ({"quantity": 1.5}, "quantity"),
        ({"quantity": 3, "reason": "sale"}, "reason"),
    ])
    def test_invalid_stock_update(self, client, product, admin_headers, payload, field):
        resp = client.post(f"/api/inventory/{product.id}/stock", json=payload, headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json["field"] == field

    def test_unknown_product_is_404(self, client, product, admin_headers):
        resp = client.post("/api/inventory/9999/stock", json={"quantity": 1}, headers=admin_headers)
        assert resp.status_code == 404
        assert client.get("/api/inventory/9999", headers=admin_headers).status_code == 404

    def test_adjust_to_target(self, client, stocked_product, admin_headers):
        resp = client.post(f"/api/inventory/{stocked_product.id}/adjustments", json={"target_balance": 10}, headers=admin_headers)
        assert resp.status_code == 201
        assert resp.json["delta"] == 4

        resp = client.post(f"/api/inventory/{stocked_product.id}/adjustments", json={"target_balance": 10}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json["applied"] is False

    def test_discrepancies(self, client, stocked_product, admin_headers):
        inventory_service.record_sale(stocked_product.id, 8)
        resp = client.get("/api/inventory/discrepancies", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json["count"] == 1
        assert resp.json["items"][0]["current_balance"] == -2

    def test_list_with_pagination(self, client, stocked_product, admin_headers):
        resp = client.get("/api/inventory?limit=1&offset=0", headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json["total"] == 1
        assert resp.json["tracking_enabled"] is True
        assert client.get("/api/inventory?limit=0", headers=admin_headers).status_code == 400

    def test_bad_since_is_400(self, client, product, admin_headers):
        resp = client.get(f"/api/inventory/{product.id}/adjustments?since=yesterday", headers=admin_headers)
        assert resp.status_code == 400
        assert resp.json["field"] == "since"

    def test_tracking_toggle(self, client, db_session, admin_headers):
        resp = client.patch("/api/inventory/tracking", json={"enabled": False}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json == {
            "tracking_enabled": False,
            "changed_by": ADMIN_ID,
            "changed_at": resp.json["changed_at"],
        }
        assert client.get("/api/inventory/tracking", headers=admin_headers).json == {"tracking_enabled": False}
        assert client.patch("/api/inventory/tracking", json={}, headers=admin_headers).status_code == 400

    def test_event_stream_opens_with_init(self, client, stocked_product, admin_headers, broadcaster):
        resp = client.get("/api/inventory/events", headers=admin_headers, buffered=False)
        assert resp.status_code == 200
        assert resp.mimetype == "text/event-stream"
        assert broadcaster.client_count() == 1

        chunks = iter(resp.response)
        assert next(chunks) == b"retry: 5000\n\n"
        assert next(chunks).startswith(b"event: inventory:init\n")

        resp.close()
        assert broadcaster.client_count() == 0


# =============================================================================
# TRANSACTIONS
# =============================================================================


class TestTransactionRoutes:
    def _create(self, client, product, quantity=2):
        resp = client.post("/api/transactions", json={"items": [{"product_id": product.id, "quantity": quantity}]})
        assert resp.status_code == 201
        return resp.json["transaction"]

    def test_purchase_lifecycle(self, client, stocked_product, admin_headers):
        tx = self._create(client, stocked_product)
        assert tx["status"] == "PENDING"
        assert tx["items"][0]["line_total_cents"] == 500

        resp = client.post(f"/api/transactions/{tx['id']}/confirm")
        assert resp.status_code == 200
        assert resp.json["transaction"]["status"] == "COMPLETED"
        assert resp.json["already_completed"] is False

        resp = client.post(f"/api/transactions/{tx['id']}/confirm")
        assert resp.status_code == 200
        assert resp.json["already_completed"] is True

        balance = client.get(f"/api/inventory/{stocked_product.id}", headers=admin_headers).json["current_balance"]
        assert balance == 4

    def test_decline_completed_is_conflict(self, client, stocked_product):
        tx = self._create(client, stocked_product)
        client.post(f"/api/transactions/{tx['id']}/confirm")

        resp = client.post(f"/api/transactions/{tx['id']}/decline")
        assert resp.status_code == 409
        assert resp.json["current_status"] == "COMPLETED"

    def test_invalid_items_is_400(self, client, stocked_product):
        resp = client.post("/api/transactions", json={"items": [{"product_id": stocked_product.id, "quantity": -1}]})
        assert resp.status_code == 400
        assert resp.json["field"] == "items[0].quantity"

    def test_unknown_transaction_is_404(self, client, db_session):
        assert client.get("/api/transactions/12345").status_code == 404

    def test_uncertain_then_reconcile(self, client, stocked_product, admin_headers):
        tx = self._create(client, stocked_product, quantity=3)
        resp = client.post(f"/api/transactions/{tx['id']}/uncertain", json={"note": "reader timeout"})
        assert resp.json["transaction"]["status"] == "PAYMENT_UNCERTAIN"

        resp = client.post(f"/api/transactions/{tx['id']}/reconcile", json={"resolution": "confirmed"}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json["transaction"]["status"] == "COMPLETED"
        assert resp.json["transaction"]["reconciled_by"] == ADMIN_ID
        assert resp.json["negative_after"] == []

    def test_list_transactions_by_status(self, client, stocked_product, admin_headers):
        self._create(client, stocked_product)
        resp = client.get("/api/transactions?status=PENDING", headers=admin_headers)
        assert resp.json["total"] == 1
        assert "items" not in resp.json["items"][0]
        assert client.get("/api/transactions?status=LOST", headers=admin_headers).status_code == 400


# =============================================================================
# NOTIFICATIONS, STATUS, FEED, HEALTH
# =============================================================================


class TestNotificationRoutes:
    def test_attempt_and_delivery_log(self, client, stocked_product, admin_headers):
        inventory_service.record_sale(stocked_product.id, 2)

        resp = client.get("/api/notifications/attempts", headers=admin_headers)
        assert resp.status_code == 200
        [attempt] = resp.json["items"]
        assert attempt["status"] == "sent"

        resp = client.get(f"/api/notifications/attempts/{attempt['id']}/deliveries", headers=admin_headers)
        assert [d["success"] for d in resp.json["items"]] == [True]

    def test_acknowledge_unknown_alert_is_404(self, client, db_session, admin_headers):
        resp = client.post("/api/notifications/alerts/77/acknowledge", headers=admin_headers)
        assert resp.status_code == 404


class TestStatusRoutes:
    def test_public_status(self, client, db_session):
        resp = client.get("/api/status/kiosk")
        assert resp.status_code == 200
        assert resp.headers["Cache-Control"] == "no-store"
        assert resp.json["status"] in {"open", "closed"}

    def test_maintenance_toggle(self, client, db_session, admin_headers):
        resp = client.patch("/api/status/maintenance", json={"enabled": True, "message": "Back at 14:00"}, headers=admin_headers)
        assert resp.status_code == 200
        assert resp.json["status"] == "maintenance"
        assert client.get("/api/status/kiosk").json["message"] == "Back at 14:00"


class TestFeed:
    def test_etag_and_not_modified(self, client, stocked_product):
        first = client.get("/api/feed/state")
        assert first.status_code == 200
        etag = first.headers["ETag"]
        assert first.json["fingerprint"] == etag.strip('"')
        assert first.headers["Cache-Control"] == "no-cache"

        second = client.get("/api/feed/state", headers={"If-None-Match": etag})
        assert second.status_code == 304
        assert second.data == b""

    def test_ledger_write_changes_etag(self, client, stocked_product):
        etag = client.get("/api/feed/state").headers["ETag"]

        inventory_service.record_sale(stocked_product.id, 1)

        resp = client.get("/api/feed/state", headers={"If-None-Match": etag})
        assert resp.status_code == 200
        assert resp.headers["ETag"] != etag
        [item] = resp.json["products"]
        assert item["inventory"]["current_balance"] == 5

    def test_sale_committed_during_build_is_not_cached(self, client, stocked_product, monkeypatch):
        build = feed_service.build_init_payload

        def build_then_sell():
            state = build()
            inventory_service.record_sale(stocked_product.id, 2)
            return state

        monkeypatch.setattr(feed_service, "build_init_payload", build_then_sell)
        stale = client.get("/api/feed/state")
        assert stale.json["products"][0]["inventory"]["current_balance"] == 6
        monkeypatch.undo()

        resp = client.get("/api/feed/state", headers={"If-None-Match": stale.headers["ETag"]})
        assert resp.status_code == 200
        assert resp.json["products"][0]["inventory"]["current_balance"] == 4


class TestFeedCache:
    def test_entry_expires_after_max_age(self):
        now = [100.0]
        cache = FeedCache(max_age=5.0, clock=lambda: now[0])
        cache.put({"products": []}, "abc")

        now[0] = 105.0
        assert cache.get() == ({"products": []}, "abc")
        now[0] = 105.1
        assert cache.get() is None

    def test_put_skipped_after_clear(self):
        cache = FeedCache()
        generation = cache.generation
        cache.clear()

        assert cache.put({"products": []}, "old", generation=generation) is False
        assert cache.get() is None
        assert cache.put({"products": []}, "new", generation=cache.generation) is True
        assert cache.get()[1] == "new"


class TestHealth:
    def test_health(self, client, db_session):
        resp = client.get("/health")
        assert resp.status_code == 200
        assert resp.json["database"]["status"] == "healthy"
        assert resp.json["worker_running"] is False
