# Overview: Polling fallback for dashboards that cannot hold a live channel.

from flask import Blueprint, request, jsonify, current_app

from ..services.feed_service import get_feed_state


feed_bp = Blueprint("feed", __name__, url_prefix="/api/feed")


@feed_bp.get("/state")
def feed_state_route():
    """
    Full product + inventory + status state with an ETag.

    If-None-Match matching the current fingerprint answers 304 with no body.
    The server cache bounds staleness to FEED_MAX_STALENESS_SECONDS;
    clients revalidate on every poll (no-cache).
    """
    try:
        state, etag = get_feed_state()
    except Exception:
        current_app.logger.exception("Failed to build feed state")
        return jsonify({"error": "Internal server error"}), 500

    if etag in request.if_none_match:
        response = current_app.response_class(status=304)
    else:
        response = jsonify(state)
    response.set_etag(etag)
    response.headers["Cache-Control"] = "no-cache"
    return response
