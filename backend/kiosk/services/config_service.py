# Overview: Key/value system configuration stored as JSON in system_config.

from __future__ import annotations

import json
from typing import Any

from ..extensions import db
from ..models import SystemConfig


KEY_TRACKING_ENABLED = "inventory_tracking_enabled"
KEY_MAINTENANCE_MODE = "maintenance_mode"
KEY_OPERATING_HOURS = "operating_hours"


def get_config_value(key: str, default: Any = None) -> Any:
    row = db.session.get(SystemConfig, key)
    if row is None or row.value_json is None:
        return default
    return json.loads(row.value_json)


def set_config_value(key: str, value: Any, *, description: str | None = None) -> SystemConfig:
    """Upsert a config row. Flushes; caller commits."""
    row = db.session.get(SystemConfig, key)
    if row is None:
        row = SystemConfig(key=key)
        db.session.add(row)
    row.value_json = json.dumps(value, sort_keys=True)
    if description is not None:
        row.description = description
    db.session.flush()
    return row
