"""
Permission Service — hybrid RBAC resolver.

Evaluation order for ``(user, permission, context)``, first match wins:

  1. superadmin role                    → allow_superadmin
  2. direct grant of the permission     → allow_direct_grant
       (skipped for context-aware permissions when the caller supplies the
        resource id; holding the base permission alone is then not enough)
  3. grant of a wider override          → allow_override
  4. base grant + ownership link        → allow_context_match
  5. otherwise                          → deny_by_default

Roles are OR-ed: one role granting is enough. ``granted=False`` entries never
contribute and never veto another role. A user with no roles is denied,
never an error.
"""

from __future__ import annotations

import logging
import threading

from opsgate.services.permission_catalog import (
    PERMISSION_DEFINITIONS,
    Permission,
    context_rule,
    implied_by,
    parse_permission,
)
from opsgate.services.stores import (
    OwnershipProbe,
    RoleStore,
    SqlOwnershipProbe,
    SqlRoleStore,
)

logger = logging.getLogger(__name__)


class PermissionResolver:
    def __init__(self, role_store: RoleStore, ownership_probe: OwnershipProbe) -> None:
        self.role_store = role_store
        self.ownership_probe = ownership_probe

    def evaluate(self, user_id: int | None, permission, context: dict | None = None) -> dict:
        """Resolve a permission and explain which rule decided it."""
        perm = parse_permission(permission)
        roles = self.role_store.roles_for_user(user_id) if user_id is not None else []
        role_names = [r.name for r in roles]

        def _decision(allowed: bool, decision: str, **extra) -> dict:
            result = {
                "allowed": allowed,
                "decision": decision,
                "permission": perm.value if perm else str(permission),
                "roles": role_names,
            }
            result.update(extra)
            return result

        if perm is None:
            logger.warning("Unknown permission %r requested for user %s", permission, user_id)
            return _decision(False, "deny_unknown_permission")
        if not roles:
            return _decision(False, "deny_by_default")

        if any(r.is_superadmin for r in roles):
            return _decision(True, "allow_superadmin")

        rule = context_rule(perm)
        context_id = (context or {}).get(rule.context_key) if rule else None
        scoped = context_id is not None
        holds_base = any(r.grants(perm) for r in roles)

        if holds_base and not scoped:
            return _decision(True, "allow_direct_grant")

        for wider in sorted(implied_by(perm), key=lambda p: p.value):
            if any(r.grants(wider) for r in roles):
                return _decision(True, "allow_override", matched_by=wider.value)

        if scoped and holds_base:
            probe = getattr(self.ownership_probe, rule.probe)
            if probe(user_id, context_id):
                return _decision(True, "allow_context_match", context={rule.context_key: context_id})

        return _decision(False, "deny_by_default")

    def resolve(self, user_id: int | None, permission, context: dict | None = None) -> bool:
        return self.evaluate(user_id, permission, context)["allowed"]

    def has_any_permission(self, user_id, permissions, context=None) -> bool:
        return any(self.resolve(user_id, p, context) for p in permissions)

    def has_all_permissions(self, user_id, permissions, context=None) -> bool:
        return all(self.resolve(user_id, p, context) for p in permissions)

    def effective_permissions(self, user_id: int) -> set[str]:
        """Every permission the user holds without a resource context."""
        roles = self.role_store.roles_for_user(user_id)
        if any(r.is_superadmin for r in roles):
            return {p.value for p in PERMISSION_DEFINITIONS}
        return {
            p.value
            for p in Permission
            if self.resolve(user_id, p)
        }


# ── App-wide resolver ────────────────────────────────────────────────────────

_resolver: PermissionResolver | None = None
_resolver_lock = threading.Lock()


def get_resolver() -> PermissionResolver:
    global _resolver
    with _resolver_lock:
        if _resolver is None:
            _resolver = PermissionResolver(SqlRoleStore(), SqlOwnershipProbe())
        return _resolver


def set_resolver(resolver: PermissionResolver | None) -> None:
    """Replace the app-wide resolver. ``None`` restores the SQL-backed default."""
    global _resolver
    with _resolver_lock:
        _resolver = resolver


def resolve_permission(user_id: int | None, permission, context: dict | None = None) -> bool:
    return get_resolver().resolve(user_id, permission, context)


def evaluate_permission(user_id: int | None, permission, context: dict | None = None) -> dict:
    return get_resolver().evaluate(user_id, permission, context)


def has_any_permission(user_id: int | None, permissions, context: dict | None = None) -> bool:
    return get_resolver().has_any_permission(user_id, permissions, context)


def has_all_permissions(user_id: int | None, permissions, context: dict | None = None) -> bool:
    return get_resolver().has_all_permissions(user_id, permissions, context)
