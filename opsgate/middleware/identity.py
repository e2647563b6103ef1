"""
Identity Middleware — sets ``g.current_user_id`` for every API request.

Tokens are issued upstream; this service only verifies them.

Priority order:
  1. ``Authorization: Bearer <jwt>`` (HS256, ``sub`` = user id)
  2. ``X-User-Id`` header, only when ``TRUST_USER_HEADER`` is enabled
     (development / testing, or behind a gateway that strips it)

An invalid or expired token leaves the request anonymous; the permission
decorators then answer 401.
"""

import logging

import jwt as pyjwt
from flask import current_app, g, request

logger = logging.getLogger(__name__)

ALGORITHM = "HS256"

SKIP_PREFIXES = (
    "/api/v1/health",
    "/static/",
)


def _get_secret() -> str:
    return current_app.config.get("JWT_SECRET_KEY") or current_app.config["SECRET_KEY"]


def decode_identity_token(token: str) -> dict:
    """Verify signature and expiry; return the payload."""
    return pyjwt.decode(token, _get_secret(), algorithms=[ALGORITHM])


def _as_user_id(value):
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def init_identity_middleware(app):
    """Register the identity hook as a before_request handler."""

    @app.before_request
    def _resolve_identity():
        g.current_user_id = None

        path = request.path
        if not path.startswith("/api/v1/"):
            return
        for prefix in SKIP_PREFIXES:
            if path.startswith(prefix):
                return

        auth_header = request.headers.get("Authorization", "")
        if auth_header.startswith("Bearer "):
            try:
                payload = decode_identity_token(auth_header[7:])
                g.current_user_id = _as_user_id(payload.get("sub"))
            except pyjwt.ExpiredSignatureError:
                logger.info("Expired identity token on %s", path)
            except pyjwt.InvalidTokenError:
                logger.warning("Invalid identity token on %s", path)
            return

        if app.config.get("TRUST_USER_HEADER"):
            g.current_user_id = _as_user_id(request.headers.get("X-User-Id"))
