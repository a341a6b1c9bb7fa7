# Overview: Request decorators for API routes.

from functools import wraps
from flask import request, jsonify, g, current_app


def _resolve_actor():
    auth_header = request.headers.get("Authorization")
    if not auth_header or not auth_header.startswith("Bearer "):
        return None
    token = auth_header.split(" ", 1)[1].strip()
    return current_app.config.get("ADMIN_TOKENS", {}).get(token)


def require_admin(f):
    """
    Require an administrator bearer token.

    Identity only: the auth collaborator hands out tokens, this maps one to
    an admin id and stores it in g.actor_id for the audit trail.

    EventSource cannot send headers, so GET requests may pass the token
    as ?access_token=.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = _resolve_actor()
        if actor_id is None and request.method == "GET":
            token = request.args.get("access_token")
            if token:
                actor_id = current_app.config.get("ADMIN_TOKENS", {}).get(token)

        if actor_id is None:
            return jsonify({"error": "Administrator authentication required"}), 401

        g.actor_id = actor_id
        return f(*args, **kwargs)

    return decorated_function

