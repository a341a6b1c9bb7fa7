# Overview: Flask API routes for inventory snapshots, stock adjustments, tracking and the live event stream.

# backend/kiosk/routes/inventory.py
"""
Inventory routes.

SECURITY: All routes require an administrator token.
- Writes record g.actor_id on the adjustment and in the audit trail.

Time semantics:
- `since` accepts ISO-8601 with Z/offsets and is inclusive.
"""
from flask import Blueprint, Response, request, jsonify, g, current_app, stream_with_context

from kiosk.time_utils import parse_iso_datetime
from ..models.inventory import REASON_MANUAL_RESTOCK, REASON_MANUAL_CORRECTION
from ..services import inventory_service
from ..services.broadcaster import QueueChannel, get_broadcaster, stream_events
from ..validation import DomainError, ValidationError, error_response, coerce_bool, parse_pagination
from ..decorators import require_admin


inventory_bp = Blueprint("inventory", __name__, url_prefix="/api/inventory")


@inventory_bp.get("")
@require_admin
def list_inventory_route():
    """
    List inventory snapshots.

    Query: search, sort_by, sort_direction, limit, offset, include_inactive
    """
    try:
        limit, offset = parse_pagination(request.args, default_limit=100)
        include_inactive = coerce_bool(request.args.get("include_inactive", "false"), field="include_inactive")
        items, total = inventory_service.list_snapshots(
            search=request.args.get("search"),
            sort_by=request.args.get("sort_by", "name"),
            sort_direction=request.args.get("sort_direction", "asc"),
            limit=limit,
            offset=offset,
            include_inactive=include_inactive,
        )
        return jsonify({
            "items": items,
            "total": total,
            "limit": limit,
            "offset": offset,
            "tracking_enabled": inventory_service.get_tracking_enabled(),
        }), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list inventory")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/discrepancies")
@require_admin
def list_discrepancies_route():
    """Products with a negative balance (physical and system stock disagree)."""
    try:
        items = inventory_service.list_discrepancies()
        return jsonify({"items": items, "count": len(items)}), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list discrepancies")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/tracking")
@require_admin
def get_tracking_route():
    return jsonify({"tracking_enabled": inventory_service.get_tracking_enabled()}), 200


@inventory_bp.patch("/tracking")
@require_admin
def set_tracking_route():
    """
    Enable or disable inventory tracking.

    Balances are kept as they are; re-enabling resumes from them.
    """
    payload = request.get_json(silent=True) or {}
    try:
        if "enabled" not in payload:
            raise ValidationError("enabled is required", field="enabled")
        enabled = coerce_bool(payload["enabled"], field="enabled")
        state = inventory_service.set_tracking_enabled(enabled, actor_id=g.actor_id)
        return jsonify(state), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to toggle inventory tracking")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/events")
@require_admin
def inventory_events_route():
    """
    Server-sent events push channel.

    Sends inventory:init on connect, then inventory:update,
    inventory:tracking and status:update as they happen.
    """
    broadcaster = get_broadcaster()
    if broadcaster is None:
        return jsonify({"error": "Live updates unavailable"}), 503

    channel = QueueChannel(maxsize=current_app.config.get("BROADCAST_QUEUE_SIZE", 256))
    try:
        client_id = broadcaster.register_client(channel, admin_id=g.actor_id)
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to open event stream")
        return jsonify({"error": "Internal server error"}), 500

    body = stream_events(
        broadcaster,
        client_id,
        channel,
        keepalive_seconds=current_app.config.get("SSE_KEEPALIVE_SECONDS", 15),
    )
    response = Response(stream_with_context(body), mimetype="text/event-stream")
    response.headers["Cache-Control"] = "no-cache"
    response.headers["X-Accel-Buffering"] = "no"
    return response


@inventory_bp.get("/<int:product_id>")
@require_admin
def get_inventory_route(product_id: int):
    try:
        return jsonify(inventory_service.get_snapshot(product_id)), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load inventory snapshot")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.get("/<int:product_id>/adjustments")
@require_admin
def list_adjustments_route(product_id: int):
    """Ledger entries for a product, oldest first. Query: since, limit."""
    try:
        since = None
        if request.args.get("since"):
            try:
                since = parse_iso_datetime(request.args["since"])
            except ValueError:
                raise ValidationError("since must be an ISO-8601 datetime", field="since")
        limit = None
        if request.args.get("limit"):
            limit, _ = parse_pagination(request.args, max_limit=1000)
        items = inventory_service.list_adjustments(product_id, since=since, limit=limit)
        return jsonify({"product_id": product_id, "items": items}), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list adjustments")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:product_id>/stock")
@require_admin
def manual_stock_update_route(product_id: int):
    """
    Manual restock or correction by a signed delta.

    Body: {"quantity": int != 0, "reason": "manual_restock"|"manual_correction", "note": str?}
    """
    payload = request.get_json(silent=True) or {}
    try:
        default_reason = REASON_MANUAL_RESTOCK
        if isinstance(payload.get("quantity"), int) and payload["quantity"] < 0:
            default_reason = REASON_MANUAL_CORRECTION
        result = inventory_service.record_manual_stock_update(
            product_id,
            payload.get("quantity"),
            payload.get("reason") or default_reason,
            actor_id=g.actor_id,
            note=payload.get("note"),
        )
        return jsonify(result), 201
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to record manual stock update")
        return jsonify({"error": "Internal server error"}), 500


@inventory_bp.post("/<int:product_id>/adjustments")
@require_admin
def adjust_to_target_route(product_id: int):
    """
    Set stock to an absolute count (e.g., after a physical count).

    Body: {"target_balance": int >= 0, "reason": "manual_correction"?, "note": str?}
    """
    payload = request.get_json(silent=True) or {}
    try:
        result = inventory_service.record_adjustment_to_target(
            product_id,
            payload.get("target_balance"),
            payload.get("reason") or REASON_MANUAL_CORRECTION,
            actor_id=g.actor_id,
            note=payload.get("note"),
        )
        return jsonify(result), 201 if result["applied"] else 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to adjust stock to target")
        return jsonify({"error": "Internal server error"}), 500
