# backend/kiosk/routes/system.py
"""
System health endpoint.

Reports database reachability, open push channels and worker state.
"""

import time
from flask import Blueprint, current_app, jsonify
from sqlalchemy import text

from ..extensions import db
from ..services.broadcaster import get_broadcaster
from kiosk.time_utils import utcnow, to_utc_z

system_bp = Blueprint("system", __name__)


def check_database_health() -> dict:
    start_time = time.time()
    try:
        db.session.execute(text("SELECT 1"))
        elapsed_ms = (time.time() - start_time) * 1000
        return {"status": "healthy", "latency_ms": round(elapsed_ms, 2)}
    except Exception:
        db.session.rollback()
        elapsed_ms = (time.time() - start_time) * 1000
        current_app.logger.exception("Database health check failed")
        return {"status": "unhealthy", "latency_ms": round(elapsed_ms, 2), "error": "Database error"}


@system_bp.get("/health")
def health():
    database = check_database_health()
    broadcaster = get_broadcaster()
    worker = current_app.extensions.get("kiosk_worker")
    body = {
        "status": "ok" if database["status"] == "healthy" else "degraded",
        "time": to_utc_z(utcnow()),
        "database": database,
        "broadcast_clients": broadcaster.client_count() if broadcaster is not None else 0,
        "worker_running": bool(worker and worker.running),
    }
    return jsonify(body), 200 if database["status"] == "healthy" else 503
