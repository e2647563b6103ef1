"""
Shared pytest fixtures for the OpsGate test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - make_user / make_role: factories for users and roles with grants
    - auth_headers: identity header for a user id
"""

import pytest

from opsgate import create_app
from opsgate.models import db as _db
from opsgate.models.auth import Role, RolePermission, UserRole
from opsgate.services.permission_service import set_resolver
from opsgate.services.role_assignment_service import create_user, ensure_fallback_role
from opsgate.services.stores import invalidate_all_cache


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    application = create_app("testing")
    return application


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        # Ids are reused across tests; a cached role list would leak.
        invalidate_all_cache()
        set_resolver(None)
        ensure_fallback_role()
        _db.session.commit()
        yield
        invalidate_all_cache()
        set_resolver(None)
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Factories ────────────────────────────────────────────────────────────


def add_role(name, permissions=(), *, denied=(), is_superadmin=False, is_system=False, department_id=None):
    """Create a role granting ``permissions`` (and explicit ``denied`` rows)."""
    role = Role(
        name=name,
        display_name=name.replace("_", " ").title(),
        is_superadmin=is_superadmin,
        is_system=is_system,
        department_id=department_id,
    )
    _db.session.add(role)
    _db.session.flush()
    for perm in permissions:
        _db.session.add(RolePermission(role_id=role.id, permission=str(perm), granted=True))
    for perm in denied:
        _db.session.add(RolePermission(role_id=role.id, permission=str(perm), granted=False))
    _db.session.commit()
    return role


def grant(user, role):
    """Attach ``role`` directly, bypassing the assignment rules."""
    _db.session.add(UserRole(user_id=user.id, role_id=role.id))
    _db.session.commit()
    invalidate_all_cache()


def headers_for(user_or_id):
    user_id = getattr(user_or_id, "id", user_or_id)
    return {"X-User-Id": str(user_id)}


@pytest.fixture()
def make_user():
    counter = {"n": 0}

    def _make(email=None, full_name=None):
        counter["n"] += 1
        return create_user(email or f"user{counter['n']}@opsgate.test", full_name or f"User {counter['n']}")

    return _make


@pytest.fixture()
def make_role():
    return add_role


@pytest.fixture()
def grant_role():
    return grant


@pytest.fixture()
def admin(make_user):
    """A superadmin user."""
    user = make_user("admin@opsgate.test", "Admin")
    grant(user, add_role("superadmin", is_superadmin=True))
    return user


@pytest.fixture()
def auth_headers():
    return headers_for
