"""
Role Assignment Service — role membership with the at-least-one-role rule.

Every user holds at least one role at every observable point. The system
role ``FALLBACK_ROLE_NAME`` fills the gap:

  - assigning a real role to a user who only holds the fallback inserts the
    new assignment first, then drops the fallback;
  - removing a user's last role inserts the fallback first, then deletes
    the old assignment;
  - deleting a role moves its sole-role holders to the fallback and clears
    every live workflow node that targeted it.

Each public operation runs in one transaction. Rows are flushed in the
order above and committed once, so a failure part-way leaves nothing
behind. Self-assignment is always denied and always audit-logged.
"""

from __future__ import annotations

import logging

from opsgate.core.exceptions import (
    AuthorizationError,
    FallbackAssignmentError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from opsgate.models import db
from opsgate.models.audit import write_audit
from opsgate.models.auth import FALLBACK_ROLE_NAME, Role, RolePermission, User, UserRole
from opsgate.models.workflow import UNASSIGNED, WorkflowNode
from opsgate.services.permission_catalog import Permission
from opsgate.services.stores import invalidate_cache

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _get_user(user_id: int) -> User:
    user = db.session.get(User, user_id)
    if user is None:
        raise NotFoundError(resource="User", resource_id=user_id)
    return user


def _get_role(role_id: int) -> Role:
    role = db.session.get(Role, role_id)
    if role is None:
        raise NotFoundError(resource="Role", resource_id=role_id)
    return role


def _find_fallback_role() -> Role | None:
    return Role.query.filter_by(name=FALLBACK_ROLE_NAME).first()


def _require_fallback_role() -> Role:
    fallback = _find_fallback_role()
    if fallback is None:
        logger.critical("Fallback role %r is missing", FALLBACK_ROLE_NAME)
        raise FallbackAssignmentError(
            f"Fallback role {FALLBACK_ROLE_NAME!r} does not exist; "
            "cannot leave a user without a role"
        )
    return fallback


def _assignment(user_id: int, role_id: int) -> UserRole | None:
    return UserRole.query.filter_by(user_id=user_id, role_id=role_id).first()


def _role_count(user_id: int) -> int:
    return UserRole.query.filter_by(user_id=user_id).count()


# ── Seeding ────────────────────────────────────────────────────────────────────


def ensure_fallback_role() -> Role:
    """Create the fallback role if it is missing. Idempotent; caller commits."""
    fallback = _find_fallback_role()
    if fallback is None:
        fallback = Role(
            name=FALLBACK_ROLE_NAME,
            display_name=FALLBACK_ROLE_NAME,
            description="Placeholder held by users with no other role",
            is_system=True,
        )
        db.session.add(fallback)
        db.session.flush()
        logger.info("Seeded fallback role", extra={"role_id": fallback.id})
    return fallback


def create_user(email: str, full_name: str | None = None) -> User:
    """Create a user who starts out holding only the fallback role."""
    email = (email or "").strip().lower()
    if not email:
        raise ValidationError("email is required", details={"email": "required"})
    if User.query.filter_by(email=email).first() is not None:
        raise ValidationError("email already registered", details={"email": email})

    try:
        fallback = _require_fallback_role()
        user = User(email=email, full_name=full_name)
        db.session.add(user)
        db.session.flush()
        db.session.add(UserRole(user_id=user.id, role_id=fallback.id))
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return user


# ── Read helpers ───────────────────────────────────────────────────────────────


def user_roles(user_id: int) -> list[UserRole]:
    _get_user(user_id)
    return UserRole.query.filter_by(user_id=user_id).order_by(UserRole.id).all()


def role_members(role_id: int) -> list[dict]:
    _get_role(role_id)
    links = UserRole.query.filter_by(role_id=role_id).order_by(UserRole.id).all()
    return [
        {**link.user.to_dict(), "assigned_at": link.to_dict()["assigned_at"]}
        for link in links
    ]


def role_member_count(role_id: int) -> int:
    return UserRole.query.filter_by(role_id=role_id).count()


def _audit_self_assignment(user_id, role_id) -> None:
    """Record a refused self-assignment. Never raises."""
    actor = db.session.get(User, user_id) if isinstance(user_id, int) else None
    try:
        write_audit(
            entity_type="user_role",
            entity_id=user_id,
            action="user_role.self_assign_denied",
            actor_user_id=actor.id if actor is not None else None,
            diff={"user_id": user_id, "role_id": role_id},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        logger.exception(
            "Audit write failed for self role assignment",
            extra={"user_id": user_id, "role_id": role_id},
        )


# ── Public API ─────────────────────────────────────────────────────────────────


def assign_role(acting_user_id: int, target_user_id: int, role_id: int) -> UserRole:
    """Give ``target_user_id`` the role; drops the fallback once the insert lands.

    Raises:
        AuthorizationError: acting user equals target user.
        NotFoundError: unknown user or role.
        ValidationError: the role is the fallback role.
        StateConflictError: the user already holds the role.
    """
    if acting_user_id == target_user_id:
        _audit_self_assignment(acting_user_id, role_id)
        logger.warning(
            "Self role assignment denied",
            extra={"user_id": acting_user_id, "role_id": role_id},
        )
        raise AuthorizationError(
            "Users cannot assign roles to themselves",
            permission=Permission.ASSIGN_USERS_TO_ROLES.value,
        )

    _get_user(target_user_id)
    role = _get_role(role_id)
    if role.is_fallback:
        raise ValidationError(
            "The fallback role is managed automatically and cannot be assigned",
            details={"role_id": role_id},
        )
    if _assignment(target_user_id, role_id) is not None:
        raise StateConflictError("UserRole", f"User {target_user_id} already holds role {role.name!r}")

    try:
        link = UserRole(user_id=target_user_id, role_id=role_id, assigned_by=acting_user_id)
        db.session.add(link)
        db.session.flush()

        fallback = _find_fallback_role()
        fallback_link = _assignment(target_user_id, fallback.id) if fallback else None
        if fallback_link is not None:
            db.session.delete(fallback_link)
            db.session.flush()
            write_audit(
                entity_type="user_role",
                entity_id=target_user_id,
                action="user_role.fallback_remove",
                actor_user_id=acting_user_id,
                diff={"role_id": fallback.id},
            )

        write_audit(
            entity_type="user_role",
            entity_id=target_user_id,
            action="user_role.assign",
            actor_user_id=acting_user_id,
            diff={"role_id": role_id, "role_name": role.name},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    invalidate_cache(target_user_id)
    logger.info(
        "Role assigned",
        extra={"user_id": target_user_id, "role_id": role_id, "acting_user_id": acting_user_id},
    )
    return link


def remove_role(acting_user_id: int, target_user_id: int, role_id: int) -> dict:
    """Take the role away; a user losing their last role gets the fallback.

    Self-removal is allowed and recorded as ``user_role.self_remove``.

    Raises:
        NotFoundError: unknown user or role.
        StateConflictError: the user does not hold the role, or the role is
            the fallback and the user has nothing else.
        FallbackAssignmentError: the fallback role is missing.
    """
    _get_user(target_user_id)
    role = _get_role(role_id)
    link = _assignment(target_user_id, role_id)
    if link is None:
        raise StateConflictError("UserRole", f"User {target_user_id} does not hold role {role.name!r}")

    is_last = _role_count(target_user_id) == 1
    if is_last and role.is_fallback:
        raise StateConflictError(
            "UserRole",
            "The fallback role cannot be removed from a user with no other role",
        )

    fallback_assigned = False
    try:
        if is_last:
            fallback = _require_fallback_role()
            db.session.add(UserRole(
                user_id=target_user_id, role_id=fallback.id, assigned_by=acting_user_id,
            ))
            db.session.flush()
            fallback_assigned = True
            write_audit(
                entity_type="user_role",
                entity_id=target_user_id,
                action="user_role.fallback_assign",
                actor_user_id=acting_user_id,
                diff={"role_id": fallback.id},
            )

        db.session.delete(link)
        db.session.flush()

        action = "user_role.self_remove" if acting_user_id == target_user_id else "user_role.remove"
        write_audit(
            entity_type="user_role",
            entity_id=target_user_id,
            action=action,
            actor_user_id=acting_user_id,
            diff={"role_id": role_id, "role_name": role.name},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    invalidate_cache(target_user_id)
    logger.info(
        "Role removed",
        extra={
            "user_id": target_user_id,
            "role_id": role_id,
            "acting_user_id": acting_user_id,
            "fallback_assigned": fallback_assigned,
        },
    )
    return {
        "user_id": target_user_id,
        "role_id": role_id,
        "fallback_assigned": fallback_assigned,
    }


def delete_role(role_id: int, acting_user_id: int | None = None) -> dict:
    """Delete a role, re-homing its holders and unassigning workflow nodes.

    Instance snapshots are never touched; only live template nodes change.

    Raises:
        NotFoundError: unknown role.
        AuthorizationError: the role is a protected system role.
        FallbackAssignmentError: a holder would be left without a role and
            the fallback role is missing.
    """
    role = _get_role(role_id)
    if role.is_system:
        raise AuthorizationError("System roles cannot be deleted")

    holders = UserRole.query.filter_by(role_id=role_id).order_by(UserRole.id).all()
    holder_ids = [link.user_id for link in holders]
    sole_holders = [uid for uid in holder_ids if _role_count(uid) == 1]

    try:
        if sole_holders:
            fallback = _require_fallback_role()
            for uid in sole_holders:
                db.session.add(UserRole(user_id=uid, role_id=fallback.id, assigned_by=acting_user_id))
            db.session.flush()

        nodes = WorkflowNode.query.filter_by(target_kind="role", target_id=role_id).all()
        for node in nodes:
            node.target = UNASSIGNED
        cleared_node_ids = [n.id for n in nodes]

        for link in holders:
            db.session.delete(link)
        db.session.flush()

        role_name = role.name
        RolePermission.query.filter_by(role_id=role_id).delete()
        db.session.delete(role)
        db.session.flush()

        write_audit(
            entity_type="role",
            entity_id=role_id,
            action="role.delete",
            actor_user_id=acting_user_id,
            diff={
                "role_name": role_name,
                "removed_from_users": holder_ids,
                "reassigned_to_fallback": sole_holders,
                "cleared_workflow_nodes": cleared_node_ids,
            },
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    for uid in holder_ids:
        invalidate_cache(uid)
    logger.info(
        "Role deleted",
        extra={
            "role_id": role_id,
            "acting_user_id": acting_user_id,
            "holders": len(holder_ids),
            "reassigned": len(sole_holders),
            "cleared_nodes": len(cleared_node_ids),
        },
    )
    return {
        "role_id": role_id,
        "removed_from_users": holder_ids,
        "reassigned_to_fallback": sole_holders,
        "cleared_workflow_nodes": cleared_node_ids,
    }
