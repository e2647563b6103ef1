"""
Roles Blueprint — role membership and role deletion.

Routes:
  GET    /api/v1/roles                          – list roles with member counts
  GET    /api/v1/roles/<rid>/users              – members of a role
  POST   /api/v1/roles/<rid>/users              – assign a user to a role
  DELETE /api/v1/roles/<rid>/users/<uid>        – remove a user from a role
  DELETE /api/v1/roles/<rid>                    – delete a role
  GET    /api/v1/users/<uid>/roles              – roles held by a user

Layer contract:
    - Blueprint: parse input, call role_assignment_service, return JSON.
    - NO db.session writes here — all writes owned by the service.
    - Self-assignment and fallback rules live in the service.
"""

import logging

from flask import Blueprint, jsonify, request

from opsgate.middleware.permission_required import (
    current_user_id,
    require_any_permission,
    require_permission,
)
from opsgate.models.auth import Role
from opsgate.services import role_assignment_service
from opsgate.services.permission_catalog import Permission
from opsgate.utils.errors import E, api_error, register_service_error_handlers

logger = logging.getLogger(__name__)

roles_bp = Blueprint("roles", __name__, url_prefix="/api/v1")

register_service_error_handlers(roles_bp, logger)


@roles_bp.route("/roles", methods=["GET"])
@require_permission(Permission.VIEW_ROLES)
def list_roles():
    roles = Role.query.order_by(Role.name).all()
    return jsonify([
        {**r.to_dict(include_permissions=True), "member_count": role_assignment_service.role_member_count(r.id)}
        for r in roles
    ])


@roles_bp.route("/roles/<int:role_id>/users", methods=["GET"])
@require_permission(Permission.VIEW_ROLES)
def list_role_members(role_id):
    return jsonify(role_assignment_service.role_members(role_id))


@roles_bp.route("/roles/<int:role_id>/users", methods=["POST"])
@require_permission(Permission.ASSIGN_USERS_TO_ROLES)
def assign_user(role_id):
    """Assign a user to the role.

    Body: { user_id }
    """
    data = request.get_json(silent=True) or {}
    user_id = data.get("user_id")
    if not isinstance(user_id, int):
        return api_error(E.VALIDATION_REQUIRED, "user_id (integer) is required")

    link = role_assignment_service.assign_role(current_user_id(), user_id, role_id)
    return jsonify(link.to_dict()), 201


@roles_bp.route("/roles/<int:role_id>/users/<int:user_id>", methods=["DELETE"])
@require_permission(Permission.REMOVE_USERS_FROM_ROLES)
def remove_user(role_id, user_id):
    result = role_assignment_service.remove_role(current_user_id(), user_id, role_id)
    return jsonify(result), 200


@roles_bp.route("/roles/<int:role_id>", methods=["DELETE"])
@require_permission(Permission.DELETE_ROLE)
def delete_role(role_id):
    result = role_assignment_service.delete_role(role_id, acting_user_id=current_user_id())
    return jsonify(result), 200


@roles_bp.route("/users/<int:user_id>/roles", methods=["GET"])
@require_any_permission(Permission.VIEW_ROLES, Permission.MANAGE_USERS)
def list_user_roles(user_id):
    links = role_assignment_service.user_roles(user_id)
    return jsonify([link.to_dict() for link in links])
