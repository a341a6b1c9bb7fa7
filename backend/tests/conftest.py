"""
Pytest fixtures for kiosk backend tests.

Provides an in-memory database cleared per test, a test client with an
administrator token, recording alert transports and seeded products.
"""

import pytest

from kiosk import create_app
from kiosk.extensions import db
from kiosk.models import Product
from kiosk.services.alert_transport import AlertTransport, AlertDeliveryError, CHANNEL_NOTIFICATION, CHANNEL_ESCALATION
from kiosk.services.broadcaster import ChannelClosedError
from kiosk.services.feed_service import get_feed_cache


ADMIN_TOKEN = "test-admin-token"
ADMIN_ID = "admin-1"


class RecordingTransport(AlertTransport):
    """Collects sent messages; fails while `failing` is set."""
    name = "recording"

    def __init__(self):
        self.sent = []
        self.failing = False

    def send(self, message):
        if self.failing:
            raise AlertDeliveryError("transport down")
        self.sent.append(message)
        return True


class FakeChannel:
    """Push channel double; `broken` makes every send raise."""

    def __init__(self, broken: bool = False):
        self.events = []
        self.broken = broken
        self.closed = False

    def send(self, event_type, data):
        if self.broken or self.closed:
            raise ChannelClosedError("peer gone")
        self.events.append((event_type, data))

    def close(self):
        self.closed = True

    def types(self):
        return [event_type for event_type, _ in self.events]


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'ADMIN_TOKENS': {ADMIN_TOKEN: ADMIN_ID},
        'NOTIFICATION_DELIVERY_INLINE': True,
        'BACKGROUND_WORKERS_ENABLED': False,
        'KIOSK_TIMEZONE': 'Europe/Helsinki',
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Fresh data (same schema) and fresh process-level state for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        get_feed_cache(app).clear()
        app.extensions.pop("kiosk_last_status_fingerprint", None)
        app.extensions["kiosk_broadcaster"].shutdown()

        yield db.session

        # Cleanup after test
        db.session.rollback()
        db.session.remove()


@pytest.fixture(scope='function')
def client(app, db_session):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def transports(app):
    """Replace both alert channels with recording transports."""
    notification = RecordingTransport()
    escalation = RecordingTransport()
    app.extensions["kiosk_transports"] = {
        CHANNEL_NOTIFICATION: notification,
        CHANNEL_ESCALATION: escalation,
    }
    yield notification, escalation
    app.extensions.pop("kiosk_transports", None)


@pytest.fixture(scope='function')
def broadcaster(app):
    return app.extensions["kiosk_broadcaster"]


@pytest.fixture(scope='function')
def admin_headers():
    return auth_headers(ADMIN_TOKEN)


def make_product(sku="COLA-330", name="Cola 0.33l", price_cents=250, threshold=5, active=True) -> Product:
    product = Product(
        sku=sku,
        name=name,
        price_cents=price_cents,
        low_stock_threshold=threshold,
        is_active=active,
    )
    db.session.add(product)
    db.session.commit()
    return product


@pytest.fixture(scope='function')
def product(db_session, transports):
    """Cola with threshold 5 and no stock yet."""
    return make_product()


@pytest.fixture(scope='function')
def stocked_product(db_session, transports):
    """Cola with threshold 5 and an opening balance of 6."""
    from kiosk.services import inventory_service

    product = make_product()
    inventory_service.record_manual_stock_update(product.id, 6, "manual_restock", actor_id=ADMIN_ID)
    return product


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}
