"""
Kiosk status tests.

Windows are evaluated in Europe/Helsinki (UTC+2 in early March 2026).
2026-03-02 is a Monday.
"""

from datetime import datetime

import pytest

from kiosk.extensions import db
from kiosk.models import AuditEvent
from kiosk.services import status_service
from kiosk.services.config_service import set_config_value, KEY_OPERATING_HOURS, KEY_MAINTENANCE_MODE
from kiosk.validation import ValidationError

from conftest import ADMIN_ID, FakeChannel


MONDAY_0900_LOCAL = datetime(2026, 3, 2, 7, 0)
SATURDAY_NOON_LOCAL = datetime(2026, 3, 7, 10, 0)


def _hours(value):
    set_config_value(KEY_OPERATING_HOURS, value)
    db.session.commit()


class TestOperatingHours:
    def test_open_inside_default_window(self, db_session):
        status = status_service.get_kiosk_status(MONDAY_0900_LOCAL)

        assert status["status"] == "open"
        assert status["reason"] == "operational"
        assert status["timezone"] == "Europe/Helsinki"
        assert status["next_close"] == "2026-03-02T16:00:00Z"
        assert status["next_open"] == "2026-03-03T06:00:00Z"
        assert status["message"] == "Open - closes at 18:00"
        assert status["operating_window"] == {"start": "08:00", "end": "18:00", "days": [1, 2, 3, 4, 5]}

    def test_closed_on_weekend(self, db_session):
        status = status_service.get_kiosk_status(SATURDAY_NOON_LOCAL)

        assert status["status"] == "closed"
        assert status["reason"] == "outside-operating-hours"
        assert status["next_open"] == "2026-03-09T06:00:00Z"
        assert status["next_close"] is None
        assert status["message"] == "Closed - opens Monday 08:00 (hours: 08:00-18:00)"

    @pytest.mark.parametrize("utc_time,expected", [
        (datetime(2026, 3, 2, 5, 59), "closed"),
        (datetime(2026, 3, 2, 6, 0), "open"),
        (datetime(2026, 3, 2, 15, 59), "open"),
        (datetime(2026, 3, 2, 16, 0), "closed"),
    ])
    def test_window_boundaries(self, db_session, utc_time, expected):
        assert status_service.get_kiosk_status(utc_time)["status"] == expected

    def test_overnight_window_belongs_to_start_day(self, db_session):
        _hours({"windows": [{"start": "22:00", "end": "02:00", "days": [5]}]})

        # Saturday 00:30 local, inside Friday's overnight window
        status = status_service.get_kiosk_status(datetime(2026, 3, 6, 22, 30))
        assert status["status"] == "open"
        assert status["next_close"] == "2026-03-07T00:00:00Z"

        # Sunday 00:30 local: Saturday is not a listed day
        assert status_service.get_kiosk_status(datetime(2026, 3, 7, 22, 30))["status"] == "closed"

    def test_invalid_config_falls_back(self, db_session):
        _hours({"timezone": "Mars/Olympus", "start": "25:00", "days": ["x", 9]})

        zone, windows = status_service.get_operating_hours()
        assert zone.key == "Europe/Helsinki"
        assert [(w.start, w.end, w.days) for w in windows] == [("08:00", "18:00", (1, 2, 3, 4, 5))]

    def test_custom_timezone(self, db_session):
        _hours({"timezone": "UTC", "start": "08:00", "end": "18:00", "days": [1]})
        assert status_service.get_kiosk_status(datetime(2026, 3, 2, 7, 0))["status"] == "closed"
        assert status_service.get_kiosk_status(datetime(2026, 3, 2, 8, 0))["status"] == "open"


class TestMaintenance:
    def test_maintenance_overrides_hours(self, db_session, broadcaster):
        channel = FakeChannel()
        broadcaster.register_client(channel)

        status = status_service.set_maintenance_mode(True, "Restocking the fridge", actor_id=ADMIN_ID)

        assert status["status"] == "maintenance"
        assert status["message"] == "Restocking the fridge"
        assert status["next_open"] is None
        assert channel.events[-1][0] == "status:update"
        assert channel.events[-1][1]["status"] == "maintenance"

        event = db.session.query(AuditEvent).filter_by(event_type="status.maintenance_changed").one()
        assert event.actor_id == ADMIN_ID
        assert event.reason_code == "enabled"

    def test_default_message_and_disable(self, db_session):
        status = status_service.set_maintenance_mode(True, None, actor_id=ADMIN_ID)
        assert status["message"] == status_service.DEFAULT_MAINTENANCE_MESSAGE

        status_service.set_maintenance_mode(False, actor_id=ADMIN_ID)
        assert status_service.get_maintenance_state()["enabled"] is False

    def test_legacy_boolean_flag(self, db_session):
        set_config_value(KEY_MAINTENANCE_MODE, True)
        db.session.commit()
        assert status_service.get_kiosk_status(MONDAY_0900_LOCAL)["status"] == "maintenance"

    def test_rejects_non_boolean(self, db_session):
        with pytest.raises(ValidationError):
            status_service.set_maintenance_mode("yes")


class TestChangeDetection:
    def test_fingerprint_ignores_generated_at(self, db_session):
        a = status_service.get_kiosk_status(MONDAY_0900_LOCAL)
        b = status_service.get_kiosk_status(datetime(2026, 3, 2, 7, 5))
        assert a["generated_at"] != b["generated_at"]
        assert status_service.status_has_changed(a, b) is False

    def test_poll_broadcasts_only_on_change(self, db_session, broadcaster):
        channel = FakeChannel()
        broadcaster.register_client(channel)

        assert status_service.poll_status_change(MONDAY_0900_LOCAL) is None
        assert status_service.poll_status_change(datetime(2026, 3, 2, 8, 0)) is None
        assert "status:update" not in channel.types()

        changed = status_service.poll_status_change(datetime(2026, 3, 2, 16, 1))
        assert changed["status"] == "closed"
        assert channel.types()[-1] == "status:update"
