"""
Permission Catalog — the static permission table.

Holds three declarative structures, all built once at import time:

  PERMISSION_DEFINITIONS  name / category / override flag per permission
  IMPLIED_BY              permission → wider permissions that grant it
  CONTEXT_RULES           context-aware permission → (context key, probe method)

Nothing here touches the database. The resolver in
``opsgate.services.permission_service`` reads these tables to decide grants.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum


class Permission(str, Enum):
    # Roles & users
    VIEW_ROLES = "view_roles"
    CREATE_ROLE = "create_role"
    EDIT_ROLE = "edit_role"
    DELETE_ROLE = "delete_role"
    ASSIGN_USERS_TO_ROLES = "assign_users_to_roles"
    REMOVE_USERS_FROM_ROLES = "remove_users_from_roles"
    MANAGE_USERS = "manage_users"

    # Departments
    VIEW_DEPARTMENTS = "view_departments"
    CREATE_DEPARTMENT = "create_department"
    EDIT_DEPARTMENT = "edit_department"
    DELETE_DEPARTMENT = "delete_department"
    VIEW_ALL_DEPARTMENTS = "view_all_departments"

    # Accounts
    VIEW_ACCOUNTS = "view_accounts"
    CREATE_ACCOUNT = "create_account"
    EDIT_ACCOUNT = "edit_account"
    DELETE_ACCOUNT = "delete_account"
    VIEW_ALL_ACCOUNTS = "view_all_accounts"

    # Projects
    VIEW_PROJECTS = "view_projects"
    CREATE_PROJECT = "create_project"
    EDIT_PROJECT = "edit_project"
    DELETE_PROJECT = "delete_project"
    VIEW_ALL_PROJECTS = "view_all_projects"
    EDIT_ALL_PROJECTS = "edit_all_projects"
    DELETE_ALL_PROJECTS = "delete_all_projects"

    # Project updates
    VIEW_UPDATES = "view_updates"
    CREATE_UPDATE = "create_update"
    VIEW_ALL_UPDATES = "view_all_updates"

    # Tasks
    VIEW_TASKS = "view_tasks"
    CREATE_TASK = "create_task"
    EDIT_TASK = "edit_task"
    ASSIGN_TASK = "assign_task"

    # Analytics
    VIEW_ANALYTICS = "view_analytics"
    VIEW_ALL_ANALYTICS = "view_all_analytics"

    # Capacity
    VIEW_OWN_CAPACITY = "view_own_capacity"
    VIEW_TEAM_CAPACITY = "view_team_capacity"
    VIEW_ALL_CAPACITY = "view_all_capacity"

    # Workflows
    VIEW_WORKFLOWS = "view_workflows"
    MANAGE_WORKFLOWS = "manage_workflows"
    EXECUTE_WORKFLOWS = "execute_workflows"
    SKIP_WORKFLOW_NODES = "skip_workflow_nodes"

    # Profile
    VIEW_OWN_PROFILE = "view_own_profile"
    EDIT_OWN_PROFILE = "edit_own_profile"

    def __str__(self) -> str:
        return self.value


@dataclass(frozen=True)
class PermissionDefinition:
    name: str
    category: str
    is_override: bool = False


P = Permission

PERMISSION_DEFINITIONS: dict[Permission, PermissionDefinition] = {
    P.VIEW_ROLES: PermissionDefinition("View Roles", "Roles"),
    P.CREATE_ROLE: PermissionDefinition("Create Role", "Roles"),
    P.EDIT_ROLE: PermissionDefinition("Edit Role", "Roles"),
    P.DELETE_ROLE: PermissionDefinition("Delete Role", "Roles"),
    P.ASSIGN_USERS_TO_ROLES: PermissionDefinition("Assign Users to Roles", "Roles"),
    P.REMOVE_USERS_FROM_ROLES: PermissionDefinition("Remove Users from Roles", "Roles"),
    P.MANAGE_USERS: PermissionDefinition("Manage Users", "Roles"),

    P.VIEW_DEPARTMENTS: PermissionDefinition("View Departments", "Departments"),
    P.CREATE_DEPARTMENT: PermissionDefinition("Create Department", "Departments"),
    P.EDIT_DEPARTMENT: PermissionDefinition("Edit Department", "Departments"),
    P.DELETE_DEPARTMENT: PermissionDefinition("Delete Department", "Departments"),
    P.VIEW_ALL_DEPARTMENTS: PermissionDefinition("View All Departments", "Departments", True),

    P.VIEW_ACCOUNTS: PermissionDefinition("View Accounts", "Accounts"),
    P.CREATE_ACCOUNT: PermissionDefinition("Create Account", "Accounts"),
    P.EDIT_ACCOUNT: PermissionDefinition("Edit Account", "Accounts"),
    P.DELETE_ACCOUNT: PermissionDefinition("Delete Account", "Accounts"),
    P.VIEW_ALL_ACCOUNTS: PermissionDefinition("View All Accounts", "Accounts", True),

    P.VIEW_PROJECTS: PermissionDefinition("View Projects", "Projects"),
    P.CREATE_PROJECT: PermissionDefinition("Create Project", "Projects"),
    P.EDIT_PROJECT: PermissionDefinition("Edit Project", "Projects"),
    P.DELETE_PROJECT: PermissionDefinition("Delete Project", "Projects"),
    P.VIEW_ALL_PROJECTS: PermissionDefinition("View All Projects", "Projects", True),
    P.EDIT_ALL_PROJECTS: PermissionDefinition("Edit All Projects", "Projects", True),
    P.DELETE_ALL_PROJECTS: PermissionDefinition("Delete All Projects", "Projects", True),

    P.VIEW_UPDATES: PermissionDefinition("View Updates", "Updates"),
    P.CREATE_UPDATE: PermissionDefinition("Create Update", "Updates"),
    P.VIEW_ALL_UPDATES: PermissionDefinition("View All Updates", "Updates", True),

    P.VIEW_TASKS: PermissionDefinition("View Tasks", "Tasks"),
    P.CREATE_TASK: PermissionDefinition("Create Task", "Tasks"),
    P.EDIT_TASK: PermissionDefinition("Edit Task", "Tasks"),
    P.ASSIGN_TASK: PermissionDefinition("Assign Task", "Tasks"),

    P.VIEW_ANALYTICS: PermissionDefinition("View Analytics", "Analytics"),
    P.VIEW_ALL_ANALYTICS: PermissionDefinition("View All Analytics", "Analytics", True),

    P.VIEW_OWN_CAPACITY: PermissionDefinition("View Own Capacity", "Capacity"),
    P.VIEW_TEAM_CAPACITY: PermissionDefinition("View Team Capacity", "Capacity"),
    P.VIEW_ALL_CAPACITY: PermissionDefinition("View All Capacity", "Capacity", True),

    P.VIEW_WORKFLOWS: PermissionDefinition("View Workflows", "Workflows"),
    P.MANAGE_WORKFLOWS: PermissionDefinition("Manage Workflows", "Workflows"),
    P.EXECUTE_WORKFLOWS: PermissionDefinition("Execute Workflows", "Workflows"),
    P.SKIP_WORKFLOW_NODES: PermissionDefinition("Skip Workflow Nodes", "Workflows", True),

    P.VIEW_OWN_PROFILE: PermissionDefinition("View Own Profile", "Profile"),
    P.EDIT_OWN_PROFILE: PermissionDefinition("Edit Own Profile", "Profile"),
}


# ── Override table ───────────────────────────────────────────────────────────

_OVERRIDES: dict[Permission, tuple[Permission, ...]] = {
    P.VIEW_ALL_PROJECTS: (P.VIEW_PROJECTS,),
    P.EDIT_ALL_PROJECTS: (P.EDIT_PROJECT,),
    P.DELETE_ALL_PROJECTS: (P.DELETE_PROJECT,),
    P.VIEW_ALL_ACCOUNTS: (P.VIEW_ACCOUNTS, P.EDIT_ACCOUNT, P.DELETE_ACCOUNT),
    P.VIEW_ALL_DEPARTMENTS: (P.VIEW_DEPARTMENTS, P.EDIT_DEPARTMENT, P.DELETE_DEPARTMENT),
    P.VIEW_ALL_UPDATES: (P.VIEW_UPDATES,),
    P.VIEW_ALL_CAPACITY: (P.VIEW_TEAM_CAPACITY,),
    P.VIEW_ALL_ANALYTICS: (P.VIEW_ANALYTICS,),
}


def _invert(overrides):
    implied: dict[Permission, set[Permission]] = {}
    for wide, narrow_list in overrides.items():
        for narrow in narrow_list:
            implied.setdefault(narrow, set()).add(wide)
    return {k: frozenset(v) for k, v in implied.items()}


IMPLIED_BY: dict[Permission, frozenset[Permission]] = _invert(_OVERRIDES)


# ── Context-aware permissions ────────────────────────────────────────────────


@dataclass(frozen=True)
class ContextRule:
    """``context_key`` names the id the caller supplies; ``probe`` names the
    OwnershipProbe method that confirms the user is linked to it."""

    context_key: str
    probe: str


_PROJECT_RULE = ContextRule("project_id", "is_assigned_to_project")
_ACCOUNT_RULE = ContextRule("account_id", "manages_account")
_DEPARTMENT_RULE = ContextRule("department_id", "manages_department")

CONTEXT_RULES: dict[Permission, ContextRule] = {
    P.VIEW_PROJECTS: _PROJECT_RULE,
    P.EDIT_PROJECT: _PROJECT_RULE,
    P.DELETE_PROJECT: _PROJECT_RULE,
    P.VIEW_UPDATES: _PROJECT_RULE,
    P.VIEW_ACCOUNTS: _ACCOUNT_RULE,
    P.EDIT_ACCOUNT: _ACCOUNT_RULE,
    P.DELETE_ACCOUNT: _ACCOUNT_RULE,
    P.VIEW_DEPARTMENTS: _DEPARTMENT_RULE,
    P.EDIT_DEPARTMENT: _DEPARTMENT_RULE,
    P.DELETE_DEPARTMENT: _DEPARTMENT_RULE,
    P.VIEW_TEAM_CAPACITY: _DEPARTMENT_RULE,
}


# ── Lookup helpers ───────────────────────────────────────────────────────────


def parse_permission(value) -> Permission | None:
    """Coerce a string to a Permission. Unknown strings return None."""
    if isinstance(value, Permission):
        return value
    try:
        return Permission(value)
    except ValueError:
        return None


def implied_by(permission: Permission) -> frozenset[Permission]:
    return IMPLIED_BY.get(permission, frozenset())


def context_rule(permission: Permission) -> ContextRule | None:
    return CONTEXT_RULES.get(permission)


def override_permissions() -> list[Permission]:
    return [p for p, d in PERMISSION_DEFINITIONS.items() if d.is_override]


def permissions_by_category() -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {}
    for perm, definition in PERMISSION_DEFINITIONS.items():
        grouped.setdefault(definition.category, []).append({
            "permission": perm.value,
            "name": definition.name,
            "is_override": definition.is_override,
            "implies": sorted(p.value for p in _OVERRIDES.get(perm, ())),
        })
    return grouped
