"""
Role assignment tests — the at-least-one-role rule.

Tests cover:
  - New users start on the fallback role
  - Assigning a real role drops the fallback
  - Removing the last role restores the fallback
  - Self-assignment is denied and audited
  - Deleting a role re-homes holders and unassigns workflow nodes
"""

import pytest

from opsgate.core.exceptions import (
    AuthorizationError,
    FallbackAssignmentError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from opsgate.models import db
from opsgate.models.audit import AuditLog
from opsgate.models.auth import FALLBACK_ROLE_NAME, Role, UserRole
from opsgate.services import role_assignment_service as svc
from opsgate.services import workflow_service, workflow_template_service
from opsgate.services.permission_catalog import Permission
from opsgate.services.permission_service import resolve_permission


def role_names(user_id):
    return sorted(link.role.name for link in svc.user_roles(user_id))


@pytest.fixture()
def manager(make_user, make_role, grant_role):
    user = make_user("manager@opsgate.test")
    grant_role(user, make_role("role_admin", [
        Permission.ASSIGN_USERS_TO_ROLES, Permission.REMOVE_USERS_FROM_ROLES,
    ]))
    return user


# ═════════════════════════════════════════════════════════════════════════
# USERS & FALLBACK
# ═════════════════════════════════════════════════════════════════════════


class TestFallbackRole:
    def test_new_user_holds_fallback(self, make_user):
        user = make_user()
        assert role_names(user.id) == [FALLBACK_ROLE_NAME]

    def test_ensure_fallback_is_idempotent(self):
        first = svc.ensure_fallback_role()
        second = svc.ensure_fallback_role()
        assert first.id == second.id
        assert Role.query.filter_by(name=FALLBACK_ROLE_NAME).count() == 1

    def test_fallback_role_is_system(self):
        assert svc.ensure_fallback_role().is_system is True

    def test_create_user_requires_email(self):
        with pytest.raises(ValidationError):
            svc.create_user("  ")

    def test_create_user_rejects_duplicate_email(self, make_user):
        make_user("dup@opsgate.test")
        with pytest.raises(ValidationError):
            svc.create_user("DUP@opsgate.test")

    def test_fallback_grants_nothing(self, make_user):
        user = make_user()
        assert resolve_permission(user.id, Permission.VIEW_ROLES) is False


# ═════════════════════════════════════════════════════════════════════════
# ASSIGN
# ═════════════════════════════════════════════════════════════════════════


class TestAssignRole:
    def test_assign_replaces_fallback(self, manager, make_user, make_role):
        user = make_user()
        editor = make_role("editor", [Permission.CREATE_TASK])

        link = svc.assign_role(manager.id, user.id, editor.id)

        assert link.assigned_by == manager.id
        assert role_names(user.id) == ["editor"]
        actions = [a.action for a in AuditLog.query.filter_by(entity_id=str(user.id)).all()]
        assert "user_role.assign" in actions
        assert "user_role.fallback_remove" in actions

    def test_assign_second_role_keeps_first(self, manager, make_user, make_role):
        user = make_user()
        a = make_role("a")
        b = make_role("b")
        svc.assign_role(manager.id, user.id, a.id)
        svc.assign_role(manager.id, user.id, b.id)
        assert role_names(user.id) == ["a", "b"]

    def test_assign_invalidates_cached_permissions(self, manager, make_user, make_role):
        user = make_user()
        assert resolve_permission(user.id, Permission.CREATE_TASK) is False
        editor = make_role("editor", [Permission.CREATE_TASK])
        svc.assign_role(manager.id, user.id, editor.id)
        assert resolve_permission(user.id, Permission.CREATE_TASK) is True

    def test_self_assignment_denied_and_audited(self, manager, make_role):
        editor = make_role("editor")
        with pytest.raises(AuthorizationError):
            svc.assign_role(manager.id, manager.id, editor.id)

        assert "editor" not in role_names(manager.id)
        entry = AuditLog.query.filter_by(action="user_role.self_assign_denied").one()
        assert entry.actor_user_id == manager.id
        assert entry.diff == {"user_id": manager.id, "role_id": editor.id}

    def test_self_assignment_by_unknown_user_still_denied(self, make_role, make_user):
        editor = make_role("editor")
        with pytest.raises(AuthorizationError):
            svc.assign_role(4242, 4242, editor.id)

        entry = AuditLog.query.filter_by(action="user_role.self_assign_denied").one()
        assert entry.actor_user_id is None
        assert entry.diff == {"user_id": 4242, "role_id": editor.id}

        # session is still usable afterwards
        user = make_user()
        assert role_names(user.id) == [FALLBACK_ROLE_NAME]

    def test_assign_twice_conflicts(self, manager, make_user, make_role):
        user = make_user()
        editor = make_role("editor")
        svc.assign_role(manager.id, user.id, editor.id)
        with pytest.raises(StateConflictError):
            svc.assign_role(manager.id, user.id, editor.id)

    def test_fallback_cannot_be_assigned(self, manager, make_user):
        user = make_user()
        fallback = svc.ensure_fallback_role()
        with pytest.raises(ValidationError):
            svc.assign_role(manager.id, user.id, fallback.id)

    def test_unknown_user_or_role(self, manager, make_user, make_role):
        user = make_user()
        with pytest.raises(NotFoundError):
            svc.assign_role(manager.id, user.id, 9999)
        with pytest.raises(NotFoundError):
            svc.assign_role(manager.id, 9999, make_role("x").id)


# ═════════════════════════════════════════════════════════════════════════
# REMOVE
# ═════════════════════════════════════════════════════════════════════════


class TestRemoveRole:
    def test_remove_last_role_restores_fallback(self, manager, make_user, make_role):
        user = make_user()
        editor = make_role("editor")
        svc.assign_role(manager.id, user.id, editor.id)

        result = svc.remove_role(manager.id, user.id, editor.id)

        assert result["fallback_assigned"] is True
        assert role_names(user.id) == [FALLBACK_ROLE_NAME]

    def test_remove_one_of_two_roles(self, manager, make_user, make_role):
        user = make_user()
        a, b = make_role("a"), make_role("b")
        svc.assign_role(manager.id, user.id, a.id)
        svc.assign_role(manager.id, user.id, b.id)

        result = svc.remove_role(manager.id, user.id, a.id)

        assert result["fallback_assigned"] is False
        assert role_names(user.id) == ["b"]

    def test_remove_role_not_held(self, manager, make_user, make_role):
        user = make_user()
        with pytest.raises(StateConflictError):
            svc.remove_role(manager.id, user.id, make_role("a").id)

    def test_fallback_cannot_be_removed_when_alone(self, manager, make_user):
        user = make_user()
        fallback = svc.ensure_fallback_role()
        with pytest.raises(StateConflictError):
            svc.remove_role(manager.id, user.id, fallback.id)
        assert role_names(user.id) == [FALLBACK_ROLE_NAME]

    def test_self_removal_is_allowed_and_audited(self, manager, make_role, grant_role):
        extra = make_role("extra")
        grant_role(manager, extra)
        svc.remove_role(manager.id, manager.id, extra.id)
        assert AuditLog.query.filter_by(action="user_role.self_remove").count() == 1
        assert "extra" not in role_names(manager.id)

    def test_missing_fallback_aborts_removal(self, manager, make_user, make_role):
        user = make_user()
        editor = make_role("editor")
        svc.assign_role(manager.id, user.id, editor.id)
        Role.query.filter_by(name=FALLBACK_ROLE_NAME).delete()
        db.session.commit()

        with pytest.raises(FallbackAssignmentError):
            svc.remove_role(manager.id, user.id, editor.id)
        assert role_names(user.id) == ["editor"]

    def test_membership_listing(self, manager, make_user, make_role):
        user = make_user("listed@opsgate.test")
        editor = make_role("editor")
        svc.assign_role(manager.id, user.id, editor.id)
        members = svc.role_members(editor.id)
        assert [m["email"] for m in members] == ["listed@opsgate.test"]
        assert svc.role_member_count(editor.id) == 1


# ═════════════════════════════════════════════════════════════════════════
# DELETE ROLE
# ═════════════════════════════════════════════════════════════════════════


@pytest.fixture()
def approvers(manager, make_user, make_role):
    """Role "approver" held by a sole-role user and by a user with another role."""
    approver = make_role("approver")
    other = make_role("other")
    solo = make_user("solo@opsgate.test")
    multi = make_user("multi@opsgate.test")
    svc.assign_role(manager.id, solo.id, approver.id)
    svc.assign_role(manager.id, multi.id, approver.id)
    svc.assign_role(manager.id, multi.id, other.id)
    return {"role": approver, "solo": solo, "multi": multi}


class TestDeleteRole:
    def test_sole_holders_get_fallback(self, approvers):
        role_id = approvers["role"].id
        result = svc.delete_role(role_id)

        assert sorted(result["removed_from_users"]) == sorted([approvers["solo"].id, approvers["multi"].id])
        assert result["reassigned_to_fallback"] == [approvers["solo"].id]
        assert role_names(approvers["solo"].id) == [FALLBACK_ROLE_NAME]
        assert role_names(approvers["multi"].id) == ["other"]
        assert db.session.get(Role, role_id) is None
        assert UserRole.query.filter_by(role_id=role_id).count() == 0

    def test_system_role_is_protected(self):
        fallback = svc.ensure_fallback_role()
        with pytest.raises(AuthorizationError):
            svc.delete_role(fallback.id)

    def test_unknown_role(self):
        with pytest.raises(NotFoundError):
            svc.delete_role(9999)

    def test_deleted_role_is_audited(self, approvers, manager):
        svc.delete_role(approvers["role"].id, acting_user_id=manager.id)
        entry = AuditLog.query.filter_by(action="role.delete").one()
        assert entry.actor_user_id == manager.id
        assert entry.diff["role_name"] == "approver"

    def test_workflow_nodes_become_unassigned(self, approvers):
        template = workflow_template_service.create_template("Purchase")
        node = workflow_template_service.add_node(template.id, {
            "node_type": "approval", "label": "Sign-off",
            "target": {"kind": "role", "id": approvers["role"].id},
        })

        result = svc.delete_role(approvers["role"].id)

        assert result["cleared_workflow_nodes"] == [node.id]
        db.session.refresh(node)
        assert node.to_dict()["target"] is None

    def test_running_snapshot_keeps_old_target(self, approvers):
        role_id = approvers["role"].id
        template = workflow_template_service.create_template("Purchase")
        start = workflow_template_service.add_node(template.id, {"node_type": "start"})
        sign = workflow_template_service.add_node(template.id, {
            "node_type": "approval", "label": "Sign-off", "target": {"kind": "role", "id": role_id},
        })
        end = workflow_template_service.add_node(template.id, {"node_type": "end"})
        workflow_template_service.add_connection(template.id, {"from_node_id": start.id, "to_node_id": sign.id})
        workflow_template_service.add_connection(template.id, {"from_node_id": sign.id, "to_node_id": end.id})
        workflow_template_service.activate_template(template.id)
        instance = workflow_service.start_workflow(template.id, start.id)

        svc.delete_role(role_id)

        db.session.refresh(instance)
        assert instance.snapshot_node(sign.id)["target"] == {"kind": "role", "id": role_id}
