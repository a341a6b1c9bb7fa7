# Overview: Polling fallback: full kiosk state with a SHA-1 fingerprint and a short-lived cache.

from __future__ import annotations

import hashlib
import json
import threading
import time

from flask import current_app

from ..extensions import db
from ..models import Product, InventorySnapshot
from kiosk.time_utils import utcnow, to_utc_z
from .inventory_service import get_tracking_enabled, serialize_snapshot
from .status_service import get_kiosk_status, status_fingerprint


class FeedCache:
    """
    One cached (state, etag) pair.

    Entries live at most max_age seconds and are dropped on every committed
    balance change, so a poll never reflects writes older than max_age.
    Every clear() bumps the generation; a state built before the latest
    clear() is never stored.
    """

    def __init__(self, max_age: float = 5.0, clock=time.monotonic):
        self.max_age = max_age
        self._clock = clock
        self._lock = threading.Lock()
        self._entry: tuple[dict, str, float] | None = None
        self._generation = 0

    @property
    def generation(self) -> int:
        with self._lock:
            return self._generation

    def get(self) -> tuple[dict, str] | None:
        with self._lock:
            if self._entry is None:
                return None
            state, etag, built_at = self._entry
            if self._clock() - built_at > self.max_age:
                self._entry = None
                return None
            return state, etag

    def put(self, state: dict, etag: str, generation: int | None = None) -> bool:
        """Store unless a clear() happened since `generation` was read."""
        with self._lock:
            if generation is not None and generation != self._generation:
                return False
            self._entry = (state, etag, self._clock())
            return True

    def clear(self) -> None:
        with self._lock:
            self._entry = None
            self._generation += 1


def get_feed_cache(app=None) -> FeedCache:
    app = app or current_app
    cache = app.extensions.get("kiosk_feed_cache")
    if cache is None:
        cache = FeedCache(max_age=min(float(app.config.get("FEED_MAX_STALENESS_SECONDS", 5)), 5.0))
        app.extensions["kiosk_feed_cache"] = cache
    return cache


def invalidate_feed_cache(event=None) -> None:
    """Also registered as a BalanceChanged handler."""
    get_feed_cache().clear()


def build_inventory_state() -> dict:
    """Every active product with its inventory snapshot, plus the tracking flag."""
    tracking = get_tracking_enabled()
    rows = (
        db.session.query(Product, InventorySnapshot)
        .outerjoin(InventorySnapshot, InventorySnapshot.product_id == Product.id)
        .filter(Product.is_active.is_(True))
        .order_by(Product.name.asc(), Product.id.asc())
        .all()
    )
    products = []
    for product, snapshot in rows:
        item = {
            "id": product.id,
            "sku": product.sku,
            "name": product.name,
            "price_cents": product.price_cents,
            "inventory": serialize_snapshot(product, snapshot, tracking),
        }
        products.append(item)
    return {"tracking_enabled": tracking, "products": products}


def build_init_payload() -> dict:
    """Full snapshot sent to a dashboard when its push channel opens."""
    state = build_inventory_state()
    state["status"] = get_kiosk_status()
    state["generated_at"] = to_utc_z(utcnow())
    return state


def compute_fingerprint(state: dict) -> str:
    """SHA-1 over products, tracking and the rendered parts of the status."""
    material = {
        "tracking_enabled": state.get("tracking_enabled"),
        "products": state.get("products"),
        "status": status_fingerprint(state.get("status")),
    }
    encoded = json.dumps(material, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha1(encoded.encode("utf-8")).hexdigest()


def get_feed_state() -> tuple[dict, str]:
    """Current (state, etag), served from cache when fresh enough."""
    cache = get_feed_cache()
    cached = cache.get()
    if cached is not None:
        return cached

    generation = cache.generation
    state = build_init_payload()
    etag = compute_fingerprint(state)
    state["fingerprint"] = etag
    cache.put(state, etag, generation=generation)
    return state, etag
