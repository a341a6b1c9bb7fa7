# Overview: Flask API routes for the low-stock notification log and administrator alerts.

from flask import Blueprint, request, jsonify, g, current_app

from ..services import notification_service
from ..validation import DomainError, error_response, parse_pagination, coerce_bool, coerce_int
from ..decorators import require_admin


notifications_bp = Blueprint("notifications", __name__, url_prefix="/api/notifications")


@notifications_bp.get("/attempts")
@require_admin
def list_attempts_route():
    """Query: status (pending|sent|failed), product_id, include_superseded, limit, offset"""
    try:
        limit, offset = parse_pagination(request.args)
        product_id = None
        if request.args.get("product_id"):
            product_id = coerce_int(request.args["product_id"], field="product_id", minimum=1)
        include_superseded = coerce_bool(
            request.args.get("include_superseded", "false"), field="include_superseded"
        )
        items, total = notification_service.list_attempts(
            status=request.args.get("status"),
            product_id=product_id,
            limit=limit,
            offset=offset,
            include_superseded=include_superseded,
        )
        return jsonify({
            "items": [a.to_dict() for a in items],
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list notification attempts")
        return jsonify({"error": "Internal server error"}), 500


@notifications_bp.get("/attempts/<int:attempt_id>/deliveries")
@require_admin
def list_deliveries_route(attempt_id: int):
    try:
        rows = notification_service.list_delivery_log(attempt_id)
        return jsonify({"attempt_id": attempt_id, "items": [r.to_dict() for r in rows]}), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list delivery log")
        return jsonify({"error": "Internal server error"}), 500


@notifications_bp.get("/alerts")
@require_admin
def list_alerts_route():
    """Administrator-visible alert log. Query: unacknowledged, limit, offset"""
    try:
        limit, offset = parse_pagination(request.args)
        unacknowledged = coerce_bool(request.args.get("unacknowledged", "false"), field="unacknowledged")
        items, total = notification_service.list_admin_alerts(
            unacknowledged_only=unacknowledged,
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [a.to_dict() for a in items],
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list admin alerts")
        return jsonify({"error": "Internal server error"}), 500


@notifications_bp.post("/alerts/<int:alert_id>/acknowledge")
@require_admin
def acknowledge_alert_route(alert_id: int):
    try:
        alert = notification_service.acknowledge_alert(alert_id, actor_id=g.actor_id)
        return jsonify({"alert": alert.to_dict()}), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to acknowledge alert")
        return jsonify({"error": "Internal server error"}), 500
