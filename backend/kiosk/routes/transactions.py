# Overview: Flask API routes for the kiosk purchase lifecycle and administrator reconciliation.

"""
Transaction routes.

Customer-facing (kiosk) endpoints are unauthenticated: create, read,
confirm, decline, report uncertain. Listing and reconciliation require an
administrator token.
"""

from flask import Blueprint, request, jsonify, g, current_app

from ..services import transaction_service
from ..validation import DomainError, error_response, parse_pagination
from ..decorators import require_admin


transactions_bp = Blueprint("transactions", __name__, url_prefix="/api/transactions")


@transactions_bp.post("")
def create_transaction_route():
    """
    Open a PENDING transaction at checkout.

    Body: {"items": [{"product_id": int, "quantity": int}, ...]}
    """
    payload = request.get_json(silent=True) or {}
    try:
        tx = transaction_service.create_transaction(payload.get("items"))
        return jsonify({"transaction": tx.to_dict()}), 201
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to create transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("")
@require_admin
def list_transactions_route():
    """Query: status, limit, offset"""
    try:
        limit, offset = parse_pagination(request.args)
        items, total = transaction_service.list_transactions(
            status=request.args.get("status"),
            limit=limit,
            offset=offset,
        )
        return jsonify({
            "items": [tx.to_dict(include_items=False) for tx in items],
            "total": total,
            "limit": limit,
            "offset": offset,
        }), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to list transactions")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.get("/<int:transaction_id>")
def get_transaction_route(transaction_id: int):
    try:
        tx = transaction_service.get_transaction(transaction_id)
        return jsonify({"transaction": tx.to_dict()}), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to load transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/confirm")
def confirm_transaction_route(transaction_id: int):
    """
    Customer confirms payment.

    Repeating the call after success returns the same COMPLETED transaction.
    503 means nothing was deducted and the purchase is not complete.
    """
    payload = request.get_json(silent=True) or {}
    try:
        result = transaction_service.confirm_transaction(
            transaction_id,
            confirmation_method=payload.get("confirmation_method") or "self_attested",
        )
        return jsonify({
            "transaction": result["transaction"].to_dict(),
            "already_completed": result["already_completed"],
        }), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to confirm transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/decline")
def decline_transaction_route(transaction_id: int):
    try:
        tx = transaction_service.decline_transaction(transaction_id)
        return jsonify({"transaction": tx.to_dict()}), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to decline transaction")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/uncertain")
def report_uncertain_route(transaction_id: int):
    """Kiosk reports an ambiguous payment outcome; an admin must reconcile."""
    payload = request.get_json(silent=True) or {}
    try:
        tx = transaction_service.report_payment_uncertain(transaction_id, note=payload.get("note"))
        return jsonify({"transaction": tx.to_dict()}), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to mark transaction uncertain")
        return jsonify({"error": "Internal server error"}), 500


@transactions_bp.post("/<int:transaction_id>/reconcile")
@require_admin
def reconcile_transaction_route(transaction_id: int):
    """
    Resolve a PAYMENT_UNCERTAIN transaction.

    Body: {"resolution": "confirmed"|"refunded", "note": str?}
    negative_after lists products the deferred deduction left below zero.
    """
    payload = request.get_json(silent=True) or {}
    try:
        result = transaction_service.reconcile_transaction(
            transaction_id,
            payload.get("resolution"),
            g.actor_id,
            note=payload.get("note"),
        )
        return jsonify({
            "transaction": result["transaction"].to_dict(),
            "negative_after": result["negative_after"],
        }), 200
    except DomainError as e:
        return error_response(e)
    except Exception:
        current_app.logger.exception("Failed to reconcile transaction")
        return jsonify({"error": "Internal server error"}), 500
