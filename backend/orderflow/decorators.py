# Overview: Request decorators for API routes (acting user, scheduler secret).

import hmac
from functools import wraps

from flask import current_app, g, jsonify, request


def _parse_actor_id(raw: str | None) -> int | None:
    if raw is None:
        return None
    raw = raw.strip()
    if not raw.isdigit():
        return None
    return int(raw)


def require_actor(f):
    """
    Require an acting user supplied by the upstream auth layer.

    Authentication and permission checks happen before requests reach this
    service; the gateway in front of it forwards the authenticated user as:
    - X-Actor-Id:   numeric user id (required)
    - X-Actor-Role: role name (optional, informational)

    Sets g.actor_id and g.actor_role for the route.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        actor_id = _parse_actor_id(request.headers.get("X-Actor-Id"))
        if actor_id is None:
            return jsonify({"error": "Acting user required", "code": "ACTOR_REQUIRED"}), 401

        g.actor_id = actor_id
        g.actor_role = (request.headers.get("X-Actor-Role") or "").strip() or None
        return f(*args, **kwargs)

    return decorated_function


def require_cron_secret(f):
    """
    Guard scheduler-triggered endpoints with a shared bearer secret.

    When CRON_SECRET is unset the endpoint is open (local development).
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        secret = current_app.config.get("CRON_SECRET")
        if secret:
            auth_header = request.headers.get("Authorization") or ""
            if not auth_header.startswith("Bearer "):
                return jsonify({"error": "Unauthorized"}), 401
            token = auth_header.split(" ", 1)[1]
            if not hmac.compare_digest(token, secret):
                return jsonify({"error": "Unauthorized"}), 401
        return f(*args, **kwargs)

    return decorated_function
