# Overview: Kiosk open/closed/maintenance status from operating hours and the maintenance switch.

from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass
from datetime import datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from flask import current_app

from ..extensions import db
from ..validation import ValidationError
from kiosk.time_utils import utcnow, to_utc_z
from .audit_service import append_audit_event
from .config_service import (
    get_config_value,
    set_config_value,
    KEY_MAINTENANCE_MODE,
    KEY_OPERATING_HOURS,
)
"""
Operating hours config (system_config.operating_hours):

    {"timezone": "Europe/Helsinki",
     "start": "08:00", "end": "18:00", "days": [1, 2, 3, 4, 5],
     "windows": [{"start": "22:00", "end": "02:00", "days": [5, 6]}]}

Days are ISO weekdays (Mon=1 .. Sun=7). A window whose end is before its
start runs overnight and belongs to the day it starts on. start == end means
open all day on the listed days. Invalid entries fall back to the defaults.
"""

DEFAULT_WINDOW = {"start": "08:00", "end": "18:00", "days": [1, 2, 3, 4, 5]}
DEFAULT_MAINTENANCE_MESSAGE = "System under maintenance - check back soon"
MAX_LOOKAHEAD_DAYS = 14

_TIME_RE = re.compile(r"^([0-2]\d):([0-5]\d)$")


@dataclass(frozen=True)
class OperatingWindow:
    start: str
    end: str
    start_minutes: int
    end_minutes: int
    days: tuple[int, ...]

    def to_dict(self) -> dict:
        return {"start": self.start, "end": self.end, "days": list(self.days)}


def _sanitize_time(value, fallback: str | None) -> str | None:
    candidate = value.strip() if isinstance(value, str) and value.strip() else fallback
    if not candidate:
        return None
    match = _TIME_RE.match(candidate)
    if not match or int(match.group(1)) > 23:
        return None
    return candidate


def _minutes(value: str) -> int:
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


def _sanitize_days(value, fallback: list[int]) -> list[int]:
    days = []
    for item in value if isinstance(value, list) else []:
        try:
            day = int(item)
        except (TypeError, ValueError):
            continue
        if 1 <= day <= 7 and day not in days:
            days.append(day)
    return days or list(dict.fromkeys(fallback or DEFAULT_WINDOW["days"]))


def _zone(name) -> ZoneInfo:
    default = current_app.config.get("KIOSK_TIMEZONE", "Europe/Helsinki")
    candidate = name.strip() if isinstance(name, str) and name.strip() else default
    try:
        return ZoneInfo(candidate)
    except (ZoneInfoNotFoundError, ValueError):
        current_app.logger.warning("Invalid timezone %r, falling back to %s", candidate, default)
        return ZoneInfo(default)


def get_operating_hours() -> tuple[ZoneInfo, list[OperatingWindow]]:
    raw = get_config_value(KEY_OPERATING_HOURS) or {}
    if not isinstance(raw, dict):
        raw = {}

    default_start = _sanitize_time(raw.get("start"), DEFAULT_WINDOW["start"])
    default_end = _sanitize_time(raw.get("end"), DEFAULT_WINDOW["end"])
    default_days = _sanitize_days(raw.get("days"), DEFAULT_WINDOW["days"])

    entries = raw.get("windows") if isinstance(raw.get("windows"), list) and raw.get("windows") else [raw]
    windows = []
    for entry in entries:
        entry = entry if isinstance(entry, dict) else {}
        start = _sanitize_time(entry.get("start"), default_start)
        end = _sanitize_time(entry.get("end"), default_end)
        if not start or not end:
            continue
        windows.append(OperatingWindow(
            start=start,
            end=end,
            start_minutes=_minutes(start),
            end_minutes=_minutes(end),
            days=tuple(_sanitize_days(entry.get("days"), default_days)),
        ))

    if not windows:
        windows.append(OperatingWindow(
            start=DEFAULT_WINDOW["start"],
            end=DEFAULT_WINDOW["end"],
            start_minutes=_minutes(DEFAULT_WINDOW["start"]),
            end_minutes=_minutes(DEFAULT_WINDOW["end"]),
            days=tuple(DEFAULT_WINDOW["days"]),
        ))
    return _zone(raw.get("timezone")), windows


def get_maintenance_state() -> dict:
    stored = get_config_value(KEY_MAINTENANCE_MODE)
    if isinstance(stored, dict):
        message = stored.get("message")
        return {
            "enabled": bool(stored.get("enabled")),
            "message": message.strip() if isinstance(message, str) and message.strip() else DEFAULT_MAINTENANCE_MESSAGE,
            "since": stored.get("since"),
        }
    return {
        "enabled": stored is True or (isinstance(stored, str) and stored.lower() == "true"),
        "message": DEFAULT_MAINTENANCE_MESSAGE,
        "since": None,
    }


def _is_within(local: datetime, window: OperatingWindow) -> bool:
    weekday = local.isoweekday()
    minutes = local.hour * 60 + local.minute
    if window.start_minutes == window.end_minutes:
        return weekday in window.days
    if window.start_minutes < window.end_minutes:
        return weekday in window.days and window.start_minutes <= minutes < window.end_minutes
    if minutes >= window.start_minutes:
        return weekday in window.days
    previous = 7 if weekday == 1 else weekday - 1
    return previous in window.days and minutes < window.end_minutes


def _at(day, minutes: int, zone: ZoneInfo) -> datetime:
    return datetime.combine(day, time(minutes // 60, minutes % 60), tzinfo=zone)


def _window_close(local: datetime, window: OperatingWindow) -> datetime | None:
    if window.start_minutes == window.end_minutes:
        return None
    zone = local.tzinfo
    today = local.date()
    minutes = local.hour * 60 + local.minute
    if window.start_minutes < window.end_minutes:
        return _at(today, window.end_minutes, zone)
    if minutes >= window.start_minutes:
        return _at(today + timedelta(days=1), window.end_minutes, zone)
    return _at(today, window.end_minutes, zone)


def _next_open(local: datetime, windows: list[OperatingWindow]) -> tuple[datetime, OperatingWindow] | None:
    zone = local.tzinfo
    for offset in range(MAX_LOOKAHEAD_DAYS + 1):
        day = local.date() + timedelta(days=offset)
        candidates = []
        for window in windows:
            if day.isoweekday() not in window.days:
                continue
            opens = _at(day, window.start_minutes, zone)
            if opens > local:
                candidates.append((opens, window))
        if candidates:
            return min(candidates, key=lambda item: item[0])
    return None


def _utc_naive(dt: datetime | None) -> datetime | None:
    if dt is None:
        return None
    return dt.astimezone(timezone.utc).replace(tzinfo=None)


def get_kiosk_status(now: datetime | None = None) -> dict:
    """
    Current kiosk status.

    `now` is UTC-naive (server canonical time); windows are evaluated in the
    configured kiosk timezone.
    """
    now = now or utcnow()
    zone, windows = get_operating_hours()
    maintenance = get_maintenance_state()
    local = now.replace(tzinfo=timezone.utc).astimezone(zone)

    active = next((w for w in windows if _is_within(local, w)), None)
    in_maintenance = maintenance["enabled"]
    is_open = not in_maintenance and active is not None

    next_close = _window_close(local, active) if is_open else None
    next_open = None
    if not in_maintenance:
        found = _next_open(next_close or local, windows)
        next_open = found[0] if found else None
        next_open_window = found[1] if found else None

    if in_maintenance:
        status, reason, message = "maintenance", "maintenance", maintenance["message"]
    elif is_open:
        status, reason = "open", "operational"
        message = f"Open - closes at {next_close:%H:%M}" if next_close else "Open - serving customers"
    else:
        status, reason = "closed", "outside-operating-hours"
        if next_open is not None:
            message = (
                f"Closed - opens {next_open:%A %H:%M} "
                f"(hours: {next_open_window.start}-{next_open_window.end})"
            )
        else:
            message = "Closed - please check back during operating hours"

    return {
        "status": status,
        "reason": reason,
        "message": message,
        "timezone": zone.key,
        "maintenance": maintenance,
        "operating_window": active.to_dict() if active else None,
        "next_open": to_utc_z(_utc_naive(next_open)),
        "next_close": to_utc_z(_utc_naive(next_close)),
        "generated_at": to_utc_z(now),
        "windows": [w.to_dict() for w in windows],
    }


def status_fingerprint(status: dict | None) -> str | None:
    """Stable hash of the parts of a status that clients render."""
    if status is None:
        return None
    payload = {
        "status": status.get("status"),
        "reason": status.get("reason"),
        "message": status.get("message"),
        "next_open": status.get("next_open"),
        "next_close": status.get("next_close"),
        "maintenance_enabled": (status.get("maintenance") or {}).get("enabled"),
        "maintenance_message": (status.get("maintenance") or {}).get("message"),
    }
    return hashlib.sha1(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


def status_has_changed(previous: dict | None, current: dict | None) -> bool:
    return status_fingerprint(previous) != status_fingerprint(current)


def set_maintenance_mode(enabled: bool, message: str | None = None, actor_id: str | None = None) -> dict:
    if not isinstance(enabled, bool):
        raise ValidationError("enabled must be a boolean", field="enabled")
    if message is not None and not isinstance(message, str):
        raise ValidationError("message must be a string", field="message")

    now = utcnow()
    value = {
        "enabled": enabled,
        "message": (message or "").strip() or DEFAULT_MAINTENANCE_MESSAGE,
        "since": to_utc_z(now) if enabled else None,
    }
    set_config_value(KEY_MAINTENANCE_MODE, value, description="Kiosk maintenance switch")
    append_audit_event(
        event_type="status.maintenance_changed",
        entity_type="config",
        actor_id=actor_id,
        reason_code="enabled" if enabled else "disabled",
        payload=value,
        occurred_at=now,
    )
    db.session.commit()

    status = get_kiosk_status(now)
    publish_status(status)
    return status


def publish_status(status: dict) -> None:
    """Push a status change to dashboards and drop the cached feed."""
    from .broadcaster import get_broadcaster, EVENT_STATUS_UPDATE
    from .feed_service import invalidate_feed_cache

    invalidate_feed_cache()
    current_app.extensions["kiosk_last_status_fingerprint"] = status_fingerprint(status)
    broadcaster = get_broadcaster()
    if broadcaster is not None:
        broadcaster.broadcast(EVENT_STATUS_UPDATE, status)


def poll_status_change(now: datetime | None = None) -> dict | None:
    """
    Worker hook: recompute status and broadcast only when it changed.

    Returns the new status when a change was published.
    """
    status = get_kiosk_status(now)
    fingerprint = status_fingerprint(status)
    previous = current_app.extensions.get("kiosk_last_status_fingerprint")
    if previous is None:
        current_app.extensions["kiosk_last_status_fingerprint"] = fingerprint
        return None
    if fingerprint == previous:
        return None
    publish_status(status)
    return status
