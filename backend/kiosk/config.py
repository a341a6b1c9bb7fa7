# backend/kiosk/config.py
from __future__ import annotations
import os


def _env_bool(name: str, default: bool) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int_tuple(name: str, default: tuple[int, ...]) -> tuple[int, ...]:
    raw = os.environ.get(name)
    if not raw:
        return default
    return tuple(int(part) for part in raw.split(",") if part.strip())


def _env_list(name: str) -> list[str]:
    raw = os.environ.get(name, "")
    return [item.strip() for item in raw.split(",") if item.strip()]


def parse_admin_tokens(raw: str | None) -> dict[str, str]:
    """
    Parse "token:admin_id,token2:admin_id2" into a lookup dict.

    Entries without a colon are ignored.
    """
    tokens: dict[str, str] = {}
    for entry in (raw or "").split(","):
        token, sep, admin_id = entry.strip().partition(":")
        if sep and token and admin_id:
            tokens[token] = admin_id
    return tokens


class Config:
    # Optional "SECRET_KEY", with default dev key
    SECRET_KEY = os.environ.get("SECRET_KEY", "dev-secret-key-change-me")

    # SQLite DB stored in backend/instance/kiosk.sqlite3
    SQLALCHEMY_DATABASE_URI = os.environ.get(
        "DATABASE_URL", #optional alternative location
        "sqlite:///kiosk.sqlite3", #default local location
    )
    SQLALCHEMY_TRACK_MODIFICATIONS = False

    LOG_LEVEL = os.environ.get("LOG_LEVEL", "INFO")

    # Auth collaborator: bearer token -> admin id
    ADMIN_TOKENS = parse_admin_tokens(os.environ.get("ADMIN_TOKENS"))

    # Transaction reconciliation windows
    PAYMENT_CONFIRMATION_WINDOW_SECONDS = int(os.environ.get("PAYMENT_CONFIRMATION_WINDOW_SECONDS", "60"))
    CONFIRMATION_PERSISTENCE_WINDOW_SECONDS = int(os.environ.get("CONFIRMATION_PERSISTENCE_WINDOW_SECONDS", "30"))

    # Inventory
    DEFAULT_LOW_STOCK_THRESHOLD = int(os.environ.get("DEFAULT_LOW_STOCK_THRESHOLD", "5"))

    # Notification dispatch
    NOTIFICATION_RETRY_SCHEDULE_SECONDS = _env_int_tuple("NOTIFICATION_RETRY_SCHEDULE_SECONDS", (60, 300, 900))
    NOTIFICATION_ESCALATION_AFTER_SECONDS = int(os.environ.get("NOTIFICATION_ESCALATION_AFTER_SECONDS", "900"))
    NOTIFICATION_DELIVERY_INLINE = _env_bool("NOTIFICATION_DELIVERY_INLINE", False)
    NOTIFICATION_DELIVERY_THREADS = int(os.environ.get("NOTIFICATION_DELIVERY_THREADS", "2"))
    NOTIFICATION_TRANSPORT = os.environ.get("NOTIFICATION_TRANSPORT", "log")
    ESCALATION_TRANSPORT = os.environ.get("ESCALATION_TRANSPORT", "log")
    NOTIFICATION_RECIPIENTS = _env_list("NOTIFICATION_RECIPIENTS")
    ESCALATION_RECIPIENTS = _env_list("ESCALATION_RECIPIENTS")

    SMTP_HOST = os.environ.get("SMTP_HOST")
    SMTP_PORT = int(os.environ.get("SMTP_PORT", "587"))
    SMTP_USER = os.environ.get("SMTP_USER")
    SMTP_PASSWORD = os.environ.get("SMTP_PASSWORD")
    SMTP_USE_SSL = _env_bool("SMTP_USE_SSL", False)
    SMTP_FROM = os.environ.get("SMTP_FROM", "alerts@kiosk.local")
    SMTP_TIMEOUT_SECONDS = int(os.environ.get("SMTP_TIMEOUT_SECONDS", "10"))

    # Live status broadcast and polling fallback
    FEED_MAX_STALENESS_SECONDS = min(int(os.environ.get("FEED_MAX_STALENESS_SECONDS", "5")), 5)
    SSE_KEEPALIVE_SECONDS = int(os.environ.get("SSE_KEEPALIVE_SECONDS", "15"))
    BROADCAST_QUEUE_SIZE = int(os.environ.get("BROADCAST_QUEUE_SIZE", "256"))

    # Background worker (timeout sweep, notification retries, status polling)
    BACKGROUND_WORKERS_ENABLED = _env_bool("BACKGROUND_WORKERS_ENABLED", True)
    WORKER_INTERVAL_SECONDS = float(os.environ.get("WORKER_INTERVAL_SECONDS", "5"))
    STATUS_POLL_SECONDS = float(os.environ.get("STATUS_POLL_SECONDS", "5"))

    KIOSK_TIMEZONE = os.environ.get("KIOSK_TIMEZONE", "Europe/Helsinki")
