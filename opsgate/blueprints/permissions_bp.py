"""
Permissions Blueprint — catalog listing and permission checks.

Routes:
  GET  /api/v1/permissions               – catalog grouped by category
  GET  /api/v1/auth/permissions/me       – caller's roles and effective permissions
  POST /api/v1/auth/permissions/check    – resolve one permission for the caller
"""

import logging

from flask import Blueprint, jsonify, request

from opsgate.middleware.permission_required import current_user_id, require_authenticated
from opsgate.services import permission_catalog
from opsgate.services.permission_service import evaluate_permission, get_resolver
from opsgate.utils.errors import E, api_error, register_service_error_handlers

logger = logging.getLogger(__name__)

permissions_bp = Blueprint("permissions", __name__, url_prefix="/api/v1")

register_service_error_handlers(permissions_bp, logger)


@permissions_bp.route("/permissions", methods=["GET"])
@require_authenticated
def list_permissions():
    return jsonify({
        "categories": permission_catalog.permissions_by_category(),
        "overrides": [p.value for p in permission_catalog.override_permissions()],
    })


@permissions_bp.route("/auth/permissions/me", methods=["GET"])
@require_authenticated
def my_permissions():
    user_id = current_user_id()
    resolver = get_resolver()
    roles = resolver.role_store.roles_for_user(user_id)
    return jsonify({
        "user_id": user_id,
        "roles": [{"id": r.role_id, "name": r.name, "is_superadmin": r.is_superadmin} for r in roles],
        "permissions": sorted(resolver.effective_permissions(user_id)),
    })


@permissions_bp.route("/auth/permissions/check", methods=["POST"])
@require_authenticated
def check_permission():
    """Resolve a permission for the caller.

    Body: { permission, context?: {project_id?, account_id?, department_id?} }
    """
    data = request.get_json(silent=True) or {}
    permission = data.get("permission")
    if not permission:
        return api_error(E.VALIDATION_REQUIRED, "permission is required")
    context = data.get("context")
    if context is not None and not isinstance(context, dict):
        return api_error(E.VALIDATION_INVALID, "context must be an object")

    return jsonify(evaluate_permission(current_user_id(), permission, context))
