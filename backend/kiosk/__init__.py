# backend/kiosk/__init__.py
import atexit
import logging

from flask import Flask, request

from .config import Config
from .extensions import db, migrate



def create_app(config_overrides: dict | None = None) -> Flask:
    app = Flask(__name__, instance_relative_config=True)
    app.config.from_object(Config)
    if config_overrides:
        app.config.update(config_overrides)

    app.logger.setLevel(getattr(logging, str(app.config.get("LOG_LEVEL", "INFO")).upper(), logging.INFO))

    # Initialize extensions
    db.init_app(app)
    migrate.init_app(app, db)

    # Import models so Alembic can discover metadata reliably
    from . import models  # noqa: F401

    # Register blueprints
    from .routes.system import system_bp
    from .routes.inventory import inventory_bp
    from .routes.transactions import transactions_bp
    from .routes.notifications import notifications_bp
    from .routes.status import status_bp
    from .routes.feed import feed_bp

    app.register_blueprint(system_bp)
    app.register_blueprint(inventory_bp)
    app.register_blueprint(transactions_bp)
    app.register_blueprint(notifications_bp)
    app.register_blueprint(status_bp)
    app.register_blueprint(feed_bp)

    _init_live_services(app)

    @app.after_request
    def add_cors_headers(response):
        origin = request.headers.get("Origin")
        allowed_origins = {
            "http://localhost:5173",
            "http://127.0.0.1:5173",
            "http://localhost:4173",
            "http://127.0.0.1:4173",
        }
        if origin in allowed_origins:
            response.headers["Access-Control-Allow-Origin"] = origin
            response.headers["Vary"] = "Origin"
            response.headers["Access-Control-Allow-Headers"] = "Authorization, Content-Type, If-None-Match"
            response.headers["Access-Control-Expose-Headers"] = "ETag"
            response.headers["Access-Control-Allow-Methods"] = "GET,POST,PATCH,OPTIONS"
        return response

    # Register CLI commands
    from .cli import register_commands
    register_commands(app)

    return app


def _init_live_services(app: Flask) -> None:
    """
    Process-lifetime wiring: event bus, broadcaster, feed cache.

    BalanceChanged subscribers run in registration order after every ledger
    commit: feed cache first, then dashboards, then notification delivery.
    """
    from .services.events import EventBus
    from .services.broadcaster import LiveStatusBroadcaster, on_balance_changed as broadcast_balance
    from .services.feed_service import FeedCache, build_init_payload, invalidate_feed_cache
    from .services.notification_service import on_balance_changed as deliver_alert, shutdown_delivery_pool

    bus = EventBus()
    bus.subscribe(invalidate_feed_cache)
    bus.subscribe(broadcast_balance)
    bus.subscribe(deliver_alert)
    app.extensions["kiosk_events"] = bus

    app.extensions["kiosk_feed_cache"] = FeedCache(
        max_age=min(float(app.config.get("FEED_MAX_STALENESS_SECONDS", 5)), 5.0)
    )

    broadcaster = LiveStatusBroadcaster(snapshot_provider=build_init_payload, logger=app.logger)
    app.extensions["kiosk_broadcaster"] = broadcaster

    def _shutdown():
        worker = app.extensions.get("kiosk_worker")
        if worker is not None:
            worker.stop(timeout=1)
        broadcaster.shutdown()
        shutdown_delivery_pool(app)

    atexit.register(_shutdown)

