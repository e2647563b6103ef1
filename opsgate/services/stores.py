"""
Collaborator interfaces consumed by the authorization core, plus their
SQLAlchemy implementations.

  RoleStore       roles (with grants) currently held by a user
  OwnershipProbe  is the user linked to a given project / account / department
  ProjectStore    read-only project lookup
  TaskStore       read-only task lookup

The resolver and the workflow engine only see the abstract interfaces, so
tests can swap in in-memory fakes without a database.
"""

from __future__ import annotations

import logging
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field

from flask import current_app, has_app_context
from sqlalchemy import exists, select

from opsgate.models import db
from opsgate.models.auth import Role, RolePermission, UserRole
from opsgate.models.org import Account, AccountMember, Project, ProjectAssignment, Task

logger = logging.getLogger(__name__)

CACHE_TTL = 300  # 5 minutes

# user_id → (cached_at, roles)
_role_cache: dict[int, tuple[float, list["RoleGrant"]]] = {}
_cache_lock = threading.Lock()


# ── Value objects ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class RoleGrant:
    """A role as the resolver sees it: flags plus the granted=true permissions."""

    role_id: int
    name: str
    is_superadmin: bool = False
    granted: frozenset[str] = field(default_factory=frozenset)
    department_id: int | None = None

    def grants(self, permission) -> bool:
        return str(permission) in self.granted


# ── Interfaces ────────────────────────────────────────────────────────────────


class RoleStore(ABC):
    @abstractmethod
    def roles_for_user(self, user_id: int) -> list[RoleGrant]:
        """Return every role the user currently holds. Empty list if none."""


class OwnershipProbe(ABC):
    @abstractmethod
    def is_assigned_to_project(self, user_id: int, project_id: int) -> bool: ...

    @abstractmethod
    def manages_account(self, user_id: int, account_id: int) -> bool: ...

    @abstractmethod
    def manages_department(self, user_id: int, department_id: int) -> bool: ...


class ProjectStore(ABC):
    @abstractmethod
    def get_project(self, project_id: int) -> dict | None: ...


class TaskStore(ABC):
    @abstractmethod
    def get_task(self, task_id: int) -> dict | None: ...


# ── Role cache ───────────────────────────────────────────────────────────────


def _configured_ttl() -> float:
    if has_app_context():
        return current_app.config.get("PERMISSION_CACHE_TTL", CACHE_TTL)
    return CACHE_TTL


def _get_cached(user_id: int, ttl: float) -> list[RoleGrant] | None:
    with _cache_lock:
        entry = _role_cache.get(user_id)
        if entry is None:
            return None
        cached_at, roles = entry
        if time.time() - cached_at > ttl:
            del _role_cache[user_id]
            return None
        return roles


def _set_cached(user_id: int, roles: list[RoleGrant]) -> None:
    with _cache_lock:
        _role_cache[user_id] = (time.time(), roles)


def invalidate_cache(user_id: int) -> None:
    with _cache_lock:
        _role_cache.pop(user_id, None)


def invalidate_all_cache() -> None:
    with _cache_lock:
        _role_cache.clear()


# ── SQL implementations ──────────────────────────────────────────────────────


class SqlRoleStore(RoleStore):
    """Reads ``user_roles`` / ``role_permissions``; caches per user for ``ttl`` seconds."""

    def __init__(self, ttl: float | None = None) -> None:
        self._ttl = ttl

    @property
    def ttl(self) -> float:
        return self._ttl if self._ttl is not None else _configured_ttl()

    def roles_for_user(self, user_id: int) -> list[RoleGrant]:
        ttl = self.ttl
        if ttl > 0:
            cached = _get_cached(user_id, ttl)
            if cached is not None:
                return cached

        roles = (
            db.session.query(Role)
            .join(UserRole, UserRole.role_id == Role.id)
            .filter(UserRole.user_id == user_id)
            .order_by(Role.id)
            .all()
        )
        role_ids = [r.id for r in roles]
        granted: dict[int, set[str]] = {rid: set() for rid in role_ids}
        if role_ids:
            rows = (
                db.session.query(RolePermission.role_id, RolePermission.permission)
                .filter(
                    RolePermission.role_id.in_(role_ids),
                    RolePermission.granted.is_(True),
                )
                .all()
            )
            for role_id, permission in rows:
                granted[role_id].add(permission)

        result = [
            RoleGrant(
                role_id=r.id,
                name=r.name,
                is_superadmin=bool(r.is_superadmin),
                granted=frozenset(granted[r.id]),
                department_id=r.department_id,
            )
            for r in roles
        ]
        if ttl > 0:
            _set_cached(user_id, result)
        logger.debug("Loaded %d role(s) for user %s", len(result), user_id)
        return result


class SqlOwnershipProbe(OwnershipProbe):
    """Follows project / account / department links in the organisation tables."""

    def is_assigned_to_project(self, user_id: int, project_id: int) -> bool:
        project = db.session.get(Project, project_id)
        if project is None:
            return False
        if user_id in (project.created_by, project.assigned_user_id):
            return True

        on_team = db.session.scalar(
            select(
                exists().where(
                    ProjectAssignment.project_id == project_id,
                    ProjectAssignment.user_id == user_id,
                    ProjectAssignment.removed_at.is_(None),
                )
            )
        )
        if on_team:
            return True

        return bool(db.session.scalar(
            select(
                exists().where(
                    Task.project_id == project_id,
                    Task.assigned_to == user_id,
                )
            )
        ))

    def manages_account(self, user_id: int, account_id: int) -> bool:
        account = db.session.get(Account, account_id)
        if account is None:
            return False
        if account.account_manager_id == user_id:
            return True

        is_member = db.session.scalar(
            select(
                exists().where(
                    AccountMember.account_id == account_id,
                    AccountMember.user_id == user_id,
                )
            )
        )
        if is_member:
            return True

        project_ids = db.session.scalars(
            select(Project.id).where(Project.account_id == account_id)
        ).all()
        return any(self.is_assigned_to_project(user_id, pid) for pid in project_ids)

    def manages_department(self, user_id: int, department_id: int) -> bool:
        return bool(db.session.scalar(
            select(
                exists()
                .where(UserRole.user_id == user_id)
                .where(UserRole.role_id == Role.id)
                .where(Role.department_id == department_id)
            )
        ))


class SqlProjectStore(ProjectStore):
    def get_project(self, project_id: int) -> dict | None:
        project = db.session.get(Project, project_id)
        return project.to_dict() if project else None


class SqlTaskStore(TaskStore):
    def get_task(self, task_id: int) -> dict | None:
        task = db.session.get(Task, task_id)
        return task.to_dict() if task else None

