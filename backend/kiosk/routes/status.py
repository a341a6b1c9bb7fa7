# Overview: Flask API routes for kiosk open/closed/maintenance status.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import status_service
from ..validation import DomainError, ValidationError, error_response, coerce_bool
from ..decorators import require_admin


status_bp = Blueprint("status", __name__, url_prefix="/api/status")


@status_bp.get("/kiosk")
def kiosk_status_route():
    """Public: the kiosk UI polls this to show open/closed/maintenance."""
    try:
        status = status_service.get_kiosk_status()
        response = jsonify(status)
        response.headers["Cache-Control"] = "no-store"
        return response, 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to compute kiosk status")
        return jsonify({"error": "Internal server error"}), 500


@status_bp.patch("/maintenance")
@require_admin
def maintenance_route():
    """Body: {"enabled": bool, "message": str?}"""
    payload = request.get_json(silent=True) or {}
    try:
        if "enabled" not in payload:
            raise ValidationError("enabled is required", field="enabled")
        status = status_service.set_maintenance_mode(
            coerce_bool(payload["enabled"], field="enabled"),
            message=payload.get("message"),
            actor_id=g.actor_id,
        )
        return jsonify(status), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to set maintenance mode")
        return jsonify({"error": "Internal server error"}), 500
