"""Permission catalog — definitions, override table, context rules."""

from opsgate.services.permission_catalog import (
    CONTEXT_RULES,
    IMPLIED_BY,
    PERMISSION_DEFINITIONS,
    Permission,
    context_rule,
    implied_by,
    override_permissions,
    parse_permission,
    permissions_by_category,
)


class TestDefinitions:
    def test_every_permission_is_defined(self):
        assert set(PERMISSION_DEFINITIONS) == set(Permission)

    def test_override_flags(self):
        overrides = set(override_permissions())
        assert Permission.VIEW_ALL_PROJECTS in overrides
        assert Permission.SKIP_WORKFLOW_NODES in overrides
        assert Permission.VIEW_PROJECTS not in overrides

    def test_str_is_wire_value(self):
        assert str(Permission.VIEW_PROJECTS) == "view_projects"
        assert Permission("manage_workflows") is Permission.MANAGE_WORKFLOWS

    def test_parse_unknown_returns_none(self):
        assert parse_permission("launch_rockets") is None
        assert parse_permission("view_roles") is Permission.VIEW_ROLES
        assert parse_permission(Permission.DELETE_ROLE) is Permission.DELETE_ROLE


class TestOverrides:
    def test_view_all_projects_implies_view_projects(self):
        assert Permission.VIEW_ALL_PROJECTS in implied_by(Permission.VIEW_PROJECTS)

    def test_view_all_accounts_implies_edit_and_delete(self):
        for narrow in (Permission.VIEW_ACCOUNTS, Permission.EDIT_ACCOUNT, Permission.DELETE_ACCOUNT):
            assert Permission.VIEW_ALL_ACCOUNTS in IMPLIED_BY[narrow]

    def test_override_does_not_imply_upwards(self):
        assert implied_by(Permission.VIEW_ALL_PROJECTS) == frozenset()

    def test_unrelated_permission_has_no_override(self):
        assert implied_by(Permission.CREATE_TASK) == frozenset()


class TestContextRules:
    def test_project_permissions_use_project_link(self):
        rule = context_rule(Permission.EDIT_PROJECT)
        assert rule.context_key == "project_id"
        assert rule.probe == "is_assigned_to_project"

    def test_team_capacity_uses_department_link(self):
        rule = context_rule(Permission.VIEW_TEAM_CAPACITY)
        assert rule.context_key == "department_id"

    def test_non_context_permission(self):
        assert context_rule(Permission.CREATE_PROJECT) is None

    def test_every_context_permission_has_an_override(self):
        for perm in CONTEXT_RULES:
            assert implied_by(perm), perm


class TestGrouping:
    def test_grouped_by_category(self):
        grouped = permissions_by_category()
        names = {item["permission"] for item in grouped["Workflows"]}
        assert names == {
            "view_workflows", "manage_workflows", "execute_workflows", "skip_workflow_nodes",
        }

    def test_override_lists_implied(self):
        grouped = permissions_by_category()
        item = next(i for i in grouped["Projects"] if i["permission"] == "view_all_projects")
        assert item["is_override"] is True
        assert item["implies"] == ["view_projects"]
