# Overview: Background worker thread for wall-clock timeouts, notification retries and status polling.

from __future__ import annotations

import os
import threading
import time

from .extensions import db
from .services import notification_service, status_service, transaction_service
from .services.broadcaster import get_broadcaster


class BackgroundWorker:
    """
    One daemon thread per process.

    Each tick runs the transaction sweep, delivers due notifications and
    checks escalation. Kiosk status is re-evaluated on its own interval,
    only while at least one dashboard is connected. A failing job is
    logged and the next tick tries again.
    """

    def __init__(self, app, interval: float = 5.0, status_interval: float = 5.0):
        self.app = app
        self.interval = interval
        self.status_interval = status_interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._last_status_poll: float | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="kiosk-worker", daemon=True)
        self._thread.start()
        self.app.logger.info("Background worker started (interval %ss)", self.interval)

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            self.run_once()
            self._stop.wait(self.interval)

    def _job(self, name: str, func) -> None:
        try:
            func()
        except Exception:
            db.session.rollback()
            self.app.logger.exception("Background job %s failed", name)

    def run_once(self) -> None:
        with self.app.app_context():
            try:
                self._job("transaction_sweep", transaction_service.sweep_expired_transactions)
                self._job("notification_delivery", notification_service.process_due_notifications)
                self._job("notification_escalation", notification_service.check_escalation)

                now = time.monotonic()
                broadcaster = get_broadcaster(self.app)
                if (
                    broadcaster is not None
                    and broadcaster.has_clients()
                    and (self._last_status_poll is None or now - self._last_status_poll >= self.status_interval)
                ):
                    self._last_status_poll = now
                    self._job("status_poll", status_service.poll_status_change)
            finally:
                db.session.remove()


def start_background_worker(app) -> BackgroundWorker | None:
    """Start the worker for a serving process (not for CLI commands or tests)."""
    if not app.config.get("BACKGROUND_WORKERS_ENABLED") or app.testing:
        return None
    # Flask's debug reloader runs the app twice; only the child serves requests
    if app.debug and os.environ.get("WERKZEUG_RUN_MAIN") != "true":
        return None
    worker = app.extensions.get("kiosk_worker")
    if worker is None:
        worker = BackgroundWorker(
            app,
            interval=float(app.config.get("WORKER_INTERVAL_SECONDS", 5)),
            status_interval=float(app.config.get("STATUS_POLL_SECONDS", 5)),
        )
        app.extensions["kiosk_worker"] = worker
    worker.start()
    return worker
