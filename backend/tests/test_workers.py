"""
Background worker tests.

Verifies:
- A failing job is logged and the remaining jobs of the tick still run
- Kiosk status is polled only while a dashboard is connected, on its own interval
"""

from kiosk.services import notification_service, status_service, transaction_service
from kiosk.workers import BackgroundWorker, start_background_worker

from conftest import FakeChannel


class TestRunOnce:
    def test_failing_job_does_not_stop_the_others(self, app, db_session, monkeypatch):
        calls = []

        def broken_sweep():
            raise RuntimeError("sweep exploded")

        monkeypatch.setattr(transaction_service, "sweep_expired_transactions", broken_sweep)
        monkeypatch.setattr(notification_service, "process_due_notifications", lambda: calls.append("deliver"))
        monkeypatch.setattr(notification_service, "check_escalation", lambda: calls.append("escalate"))

        BackgroundWorker(app).run_once()

        assert calls == ["deliver", "escalate"]

    def test_status_polled_only_with_connected_clients(self, app, db_session, broadcaster, monkeypatch):
        polls = []
        monkeypatch.setattr(status_service, "poll_status_change", lambda: polls.append("poll"))
        worker = BackgroundWorker(app, status_interval=60)

        worker.run_once()
        assert polls == []

        broadcaster.register_client(FakeChannel())
        worker.run_once()
        assert polls == ["poll"]

        # Interval not yet elapsed
        worker.run_once()
        assert polls == ["poll"]

    def test_not_started_in_tests(self, app):
        assert start_background_worker(app) is None
