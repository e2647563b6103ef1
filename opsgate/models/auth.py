"""
Auth Models — users, roles, role permissions, user role assignments.

Every user holds at least one role at all times. The system role named
``FALLBACK_ROLE_NAME`` stands in whenever a user would otherwise have none;
see ``opsgate.services.role_assignment_service``.
"""

from datetime import datetime, timezone

from opsgate.models import db

FALLBACK_ROLE_NAME = "No Assigned Role"


# ═══════════════════════════════════════════════════════════════
# 1. USERS
# ═══════════════════════════════════════════════════════════════
class User(db.Model):
    __tablename__ = "users"

    id = db.Column(db.Integer, primary_key=True)
    email = db.Column(db.String(200), nullable=False, unique=True)
    full_name = db.Column(db.String(200))
    status = db.Column(db.String(20), default="active")  # active, inactive
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.Index("ix_users_email", "email"),
    )

    user_roles = db.relationship(
        "UserRole", back_populates="user", lazy="dynamic",
        cascade="all, delete-orphan", foreign_keys="UserRole.user_id",
    )

    def to_dict(self, include_roles=False):
        d = {
            "id": self.id,
            "email": self.email,
            "full_name": self.full_name,
            "status": self.status,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
        if include_roles:
            d["roles"] = self.role_names
        return d

    @property
    def role_names(self):
        """List of role names for this user."""
        return [ur.role.name for ur in self.user_roles.all()]


# ═══════════════════════════════════════════════════════════════
# 2. ROLES
# ═══════════════════════════════════════════════════════════════
class Role(db.Model):
    __tablename__ = "roles"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(100), nullable=False, unique=True)
    display_name = db.Column(db.String(200))
    description = db.Column(db.Text)
    is_superadmin = db.Column(db.Boolean, default=False, nullable=False)
    is_system = db.Column(db.Boolean, default=False, nullable=False)  # protected from deletion
    department_id = db.Column(
        db.Integer, db.ForeignKey("departments.id", ondelete="SET NULL"), nullable=True
    )
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    role_permissions = db.relationship(
        "RolePermission", back_populates="role", lazy="dynamic", cascade="all, delete-orphan"
    )
    user_roles = db.relationship("UserRole", back_populates="role", lazy="dynamic")
    department = db.relationship("Department")

    @property
    def is_fallback(self) -> bool:
        return self.name == FALLBACK_ROLE_NAME

    def to_dict(self, include_permissions=False):
        d = {
            "id": self.id,
            "name": self.name,
            "display_name": self.display_name,
            "description": self.description,
            "is_superadmin": self.is_superadmin,
            "is_system": self.is_system,
            "department_id": self.department_id,
        }
        if include_permissions:
            d["permissions"] = {
                rp.permission: rp.granted for rp in self.role_permissions.all()
            }
        return d

    def __repr__(self):
        return f"<Role {self.id}: {self.name}>"


# ═══════════════════════════════════════════════════════════════
# 3. ROLE_PERMISSIONS
# ═══════════════════════════════════════════════════════════════
class RolePermission(db.Model):
    """One ``(permission, granted)`` entry of a role.

    ``granted=False`` rows are kept so the role editor can show an explicit
    "off" state; they never contribute a grant.
    """

    __tablename__ = "role_permissions"

    id = db.Column(db.Integer, primary_key=True)
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    permission = db.Column(db.String(60), nullable=False)
    granted = db.Column(db.Boolean, default=True, nullable=False)

    __table_args__ = (
        db.UniqueConstraint("role_id", "permission", name="uq_role_permission"),
    )

    role = db.relationship("Role", back_populates="role_permissions")


# ═══════════════════════════════════════════════════════════════
# 4. USER_ROLES (Junction table)
# ═══════════════════════════════════════════════════════════════
class UserRole(db.Model):
    __tablename__ = "user_roles"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role_id = db.Column(
        db.Integer, db.ForeignKey("roles.id", ondelete="CASCADE"), nullable=False
    )
    assigned_by = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=True)
    assigned_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        db.UniqueConstraint("user_id", "role_id", name="uq_user_role"),
    )

    user = db.relationship("User", back_populates="user_roles", foreign_keys=[user_id])
    role = db.relationship("Role", back_populates="user_roles")

    def to_dict(self):
        return {
            "id": self.id,
            "user_id": self.user_id,
            "role_id": self.role_id,
            "role_name": self.role.name if self.role else None,
            "assigned_by": self.assigned_by,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
        }
