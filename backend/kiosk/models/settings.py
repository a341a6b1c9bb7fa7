from __future__ import annotations

from ..extensions import db
from kiosk.time_utils import to_utc_z


class SystemConfig(db.Model):
    """Global key/value settings stored as JSON text."""
    __tablename__ = "system_config"

    key = db.Column(db.String(64), primary_key=True)
    value_json = db.Column(db.Text, nullable=True)
    description = db.Column(db.String(255), nullable=True)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    def to_dict(self) -> dict:
        return {
            "key": self.key,
            "value_json": self.value_json,
            "description": self.description,
            "updated_at": to_utc_z(self.updated_at),
        }
