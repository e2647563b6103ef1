"""
Organisation Models — departments, accounts, projects, tasks.

These entities are owned by the wider platform. The authorization core only
reads them: the ownership probe follows their links to decide whether a user
is connected to a specific project, account or department, and workflow
instances may be attached to a project or a task.
"""

from datetime import datetime, timezone

from opsgate.models import db


class Department(db.Model):
    __tablename__ = "departments"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(150), nullable=False, unique=True)
    description = db.Column(db.Text)
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    def to_dict(self):
        return {"id": self.id, "name": self.name, "description": self.description}


class Account(db.Model):
    __tablename__ = "accounts"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    account_manager_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"), nullable=True
    )
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    members = db.relationship(
        "AccountMember", back_populates="account", lazy="dynamic", cascade="all, delete-orphan"
    )
    projects = db.relationship("Project", back_populates="account", lazy="dynamic")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "account_manager_id": self.account_manager_id,
        }


class AccountMember(db.Model):
    __tablename__ = "account_members"

    id = db.Column(db.Integer, primary_key=True)
    account_id = db.Column(
        db.Integer, db.ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )

    __table_args__ = (
        db.UniqueConstraint("account_id", "user_id", name="uq_account_member"),
    )

    account = db.relationship("Account", back_populates="members")


class Project(db.Model):
    __tablename__ = "projects"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    account_id = db.Column(
        db.Integer, db.ForeignKey("accounts.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    assigned_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    status = db.Column(db.String(30), default="active")
    created_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))

    account = db.relationship("Account", back_populates="projects")
    assignments = db.relationship(
        "ProjectAssignment", back_populates="project", lazy="dynamic", cascade="all, delete-orphan"
    )
    tasks = db.relationship("Task", back_populates="project", lazy="dynamic", cascade="all, delete-orphan")

    def to_dict(self):
        return {
            "id": self.id,
            "name": self.name,
            "account_id": self.account_id,
            "created_by": self.created_by,
            "assigned_user_id": self.assigned_user_id,
            "status": self.status,
        }


class ProjectAssignment(db.Model):
    """Team membership of a project. ``removed_at`` set means no longer on it."""

    __tablename__ = "project_assignments"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False
    )
    user_id = db.Column(
        db.Integer, db.ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    role_label = db.Column(db.String(100))
    assigned_at = db.Column(db.DateTime, default=lambda: datetime.now(timezone.utc))
    removed_at = db.Column(db.DateTime, nullable=True)

    project = db.relationship("Project", back_populates="assignments")


class Task(db.Model):
    __tablename__ = "tasks"

    id = db.Column(db.Integer, primary_key=True)
    project_id = db.Column(
        db.Integer, db.ForeignKey("projects.id", ondelete="CASCADE"), nullable=False, index=True
    )
    name = db.Column(db.String(300), nullable=False)
    assigned_to = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    status = db.Column(db.String(30), default="todo")

    project = db.relationship("Project", back_populates="tasks")

    def to_dict(self):
        return {
            "id": self.id,
            "project_id": self.project_id,
            "name": self.name,
            "assigned_to": self.assigned_to,
            "status": self.status,
        }
