"""
Permission Decorators — RBAC guards for route protection.

Usage:
    @bp.route("/api/v1/roles/<int:role_id>", methods=["DELETE"])
    @require_permission(Permission.DELETE_ROLE)
    def delete_role(role_id):
        ...

    @workflow_bp.route("/projects/<int:project_id>/instances", methods=["GET"])
    @require_permission(Permission.VIEW_PROJECTS, context_from={"project_id": "project_id"})
    def list_project_instances(project_id):
        ...

``context_from`` maps a resolver context key to a URL view argument, so the
context-aware branch of the resolver sees the concrete resource id.

Anonymous requests get 401; authenticated requests without the grant get 403.
"""

import functools
import logging

from flask import g, jsonify

from opsgate.services.permission_service import has_any_permission, resolve_permission

logger = logging.getLogger(__name__)


def current_user_id():
    return getattr(g, "current_user_id", None)


def _unauthenticated():
    return jsonify({"error": "Authentication required"}), 401


def require_permission(permission, context_from: dict | None = None):
    """
    Decorator: require the current user to hold ``permission``.

    Args:
        permission: Permission enum member or its string value.
        context_from: Optional ``{context_key: view_arg_name}`` mapping.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user_id = current_user_id()
            if user_id is None:
                return _unauthenticated()

            context = None
            if context_from:
                context = {key: kwargs.get(arg) for key, arg in context_from.items()}

            if not resolve_permission(user_id, permission, context):
                logger.warning(
                    "User %s denied: missing permission '%s' on %s",
                    user_id, permission, f.__name__,
                )
                return jsonify({
                    "error": "Permission denied",
                    "required": str(permission),
                }), 403

            return f(*args, **kwargs)
        return decorated
    return decorator


def require_any_permission(*permissions):
    """
    Decorator: require the current user to hold at least ONE of the permissions.
    """
    def decorator(f):
        @functools.wraps(f)
        def decorated(*args, **kwargs):
            user_id = current_user_id()
            if user_id is None:
                return _unauthenticated()

            if not has_any_permission(user_id, permissions):
                logger.warning(
                    "User %s denied: missing any of %s on %s",
                    user_id, [str(p) for p in permissions], f.__name__,
                )
                return jsonify({
                    "error": "Permission denied",
                    "required_any": [str(p) for p in permissions],
                }), 403

            return f(*args, **kwargs)
        return decorated
    return decorator


def require_authenticated(f):
    """Decorator: any identified user may call the endpoint."""
    @functools.wraps(f)
    def decorated(*args, **kwargs):
        if current_user_id() is None:
            return _unauthenticated()
        return f(*args, **kwargs)
    return decorated
