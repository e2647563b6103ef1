"""
Workflow domain models — templates, nodes, connections, instances, steps.

Models:
    - WorkflowTemplate:   editable approval-graph definition
    - WorkflowNode:       one vertex of a template graph
    - WorkflowConnection: directed edge, optionally conditioned
    - WorkflowInstance:   one execution; carries an immutable snapshot
    - WorkflowActiveStep: a step that is (or was) waiting on a node
    - WorkflowHistory:    append-only transition log of an instance

Once an instance starts, its ``snapshot`` is the only source of truth for
its structure. Editing or deleting the template never changes a running
instance.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from opsgate.models import db

# ── Constants ────────────────────────────────────────────────────────────────

NODE_TYPES = ("start", "approval", "role", "department", "form", "conditional", "end")

# Node types that wait on a person; their target decides who may act.
ACTIONABLE_NODE_TYPES = frozenset({"approval", "role", "department", "form"})

# Node types whose target must have members before a template can go live.
STAFFED_NODE_TYPES = frozenset({"approval", "role", "department"})

TARGET_KINDS = ("role", "department")

INSTANCE_STATUSES = ("active", "completed", "cancelled")
STEP_STATUSES = ("active", "completed")

INSTANCE_TRANSITIONS = {
    "active":    ["completed", "cancelled"],
    "completed": [],
    "cancelled": [],
}

STEP_TRANSITIONS = {
    "active":    ["completed"],
    "completed": [],
}

DECISIONS = ("approved", "rejected")


def validate_instance_transition(old_status, new_status):
    """Return True if WorkflowInstance status transition is valid."""
    return new_status in INSTANCE_TRANSITIONS.get(old_status, [])


def validate_step_transition(old_status, new_status):
    """Return True if WorkflowActiveStep status transition is valid."""
    return new_status in STEP_TRANSITIONS.get(old_status, [])


# ── Node target variant ──────────────────────────────────────────────────────


@dataclass(frozen=True)
class RoleTarget:
    role_id: int
    kind: str = "role"


@dataclass(frozen=True)
class DepartmentTarget:
    department_id: int
    kind: str = "department"


@dataclass(frozen=True)
class UnassignedTarget:
    kind: str = "unassigned"


UNASSIGNED = UnassignedTarget()


def make_target(kind: str | None, target_id: int | None):
    """Build the target variant from its stored ``(kind, id)`` columns."""
    if target_id is None or kind is None:
        return UNASSIGNED
    if kind == "role":
        return RoleTarget(int(target_id))
    if kind == "department":
        return DepartmentTarget(int(target_id))
    return UNASSIGNED


def target_to_dict(target) -> dict | None:
    if isinstance(target, RoleTarget):
        return {"kind": "role", "id": target.role_id}
    if isinstance(target, DepartmentTarget):
        return {"kind": "department", "id": target.department_id}
    return None


def target_from_dict(data: dict | None):
    if not data:
        return UNASSIGNED
    return make_target(data.get("kind"), data.get("id"))


# ═════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowTemplate(db.Model):
    __tablename__ = "workflow_templates"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(200), nullable=False)
    description = db.Column(db.Text)
    is_active = db.Column(db.Boolean, default=False, nullable=False)
    created_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    updated_at = db.Column(
        db.DateTime(timezone=True),
        default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc),
    )

    nodes = db.relationship(
        "WorkflowNode", back_populates="template", lazy="dynamic",
        cascade="all, delete-orphan", order_by="WorkflowNode.id",
    )
    connections = db.relationship(
        "WorkflowConnection", back_populates="template", lazy="dynamic",
        cascade="all, delete-orphan", order_by="WorkflowConnection.id",
    )

    def to_dict(self, include_graph=False):
        d = {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "is_active": self.is_active,
            "created_by": self.created_by,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }
        if include_graph:
            d["nodes"] = [n.to_dict() for n in self.nodes.all()]
            d["connections"] = [c.to_dict() for c in self.connections.all()]
        return d

    def __repr__(self):
        return f"<WorkflowTemplate {self.id}: {self.name}>"


class WorkflowNode(db.Model):
    __tablename__ = "workflow_nodes"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    node_type = db.Column(db.String(20), nullable=False, comment="start | approval | role | ... | end")
    label = db.Column(db.String(200), nullable=False)
    target_kind = db.Column(db.String(20), nullable=True, comment="role | department | NULL")
    target_id = db.Column(db.Integer, nullable=True)
    position_x = db.Column(db.Float, default=0)
    position_y = db.Column(db.Float, default=0)
    settings = db.Column(db.JSON, default=dict)

    template = db.relationship("WorkflowTemplate", back_populates="nodes")

    @property
    def target(self):
        return make_target(self.target_kind, self.target_id)

    @target.setter
    def target(self, value):
        data = target_to_dict(value)
        self.target_kind = data["kind"] if data else None
        self.target_id = data["id"] if data else None

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "node_type": self.node_type,
            "label": self.label,
            "target": target_to_dict(self.target),
            "position": {"x": self.position_x, "y": self.position_y},
            "settings": self.settings or {},
        }


class WorkflowConnection(db.Model):
    """Directed edge between two nodes of the same template.

    ``condition`` is either ``{"decision": "approved"|"rejected"}`` or a
    form-field predicate ``{"field": ..., "operator": ..., "value": ...}``.
    ``{"is_default": true}`` marks the fallback edge of a conditional node.
    """

    __tablename__ = "workflow_connections"

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    from_node_id = db.Column(
        db.Integer, db.ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False
    )
    to_node_id = db.Column(
        db.Integer, db.ForeignKey("workflow_nodes.id", ondelete="CASCADE"), nullable=False
    )
    condition = db.Column(db.JSON, nullable=True)
    label = db.Column(db.String(100))

    template = db.relationship("WorkflowTemplate", back_populates="connections")

    def to_dict(self):
        return {
            "id": self.id,
            "template_id": self.template_id,
            "from_node_id": self.from_node_id,
            "to_node_id": self.to_node_id,
            "condition": self.condition,
            "label": self.label,
        }


# ═════════════════════════════════════════════════════════════════════════════
# INSTANCES
# ═════════════════════════════════════════════════════════════════════════════


class WorkflowInstance(db.Model):
    __tablename__ = "workflow_instances"
    __table_args__ = (
        db.Index("idx_wf_instance_status", "status"),
        db.Index("idx_wf_instance_project", "project_id"),
        db.Index("idx_wf_instance_task", "task_id"),
    )

    id = db.Column(db.Integer, primary_key=True)
    template_id = db.Column(
        db.Integer, db.ForeignKey("workflow_templates.id", ondelete="SET NULL"), nullable=True
    )
    project_id = db.Column(db.Integer, db.ForeignKey("projects.id", ondelete="SET NULL"), nullable=True)
    task_id = db.Column(db.Integer, db.ForeignKey("tasks.id", ondelete="SET NULL"), nullable=True)
    snapshot = db.Column(db.JSON, nullable=False)
    status = db.Column(db.String(20), nullable=False, default="active")
    started_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    started_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    steps = db.relationship(
        "WorkflowActiveStep", back_populates="instance", lazy="dynamic",
        cascade="all, delete-orphan", order_by="WorkflowActiveStep.id",
    )
    history = db.relationship(
        "WorkflowHistory", back_populates="instance", lazy="dynamic",
        cascade="all, delete-orphan", order_by="WorkflowHistory.id",
    )

    # ── Snapshot accessors ───────────────────────────────────────────────

    @property
    def snapshot_nodes(self) -> list[dict]:
        return list((self.snapshot or {}).get("nodes", []))

    @property
    def snapshot_connections(self) -> list[dict]:
        return list((self.snapshot or {}).get("connections", []))

    def snapshot_node(self, node_id) -> dict | None:
        for node in self.snapshot_nodes:
            if node["id"] == node_id:
                return node
        return None

    def to_dict(self, include_steps=False):
        d = {
            "id": self.id,
            "template_id": self.template_id,
            "template_name": (self.snapshot or {}).get("template_name"),
            "project_id": self.project_id,
            "task_id": self.task_id,
            "status": self.status,
            "started_by": self.started_by,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
        }
        if include_steps:
            d["active_steps"] = [s.to_dict() for s in self.steps.filter_by(status="active").all()]
        return d

    def __repr__(self):
        return f"<WorkflowInstance {self.id}: {self.status}>"


class WorkflowActiveStep(db.Model):
    __tablename__ = "workflow_active_steps"
    __table_args__ = (
        db.Index("idx_wf_step_instance_status", "instance_id", "status"),
    )

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False
    )
    node_id = db.Column(db.Integer, nullable=False, comment="Snapshot node id, not an FK")
    status = db.Column(db.String(20), nullable=False, default="active")
    assigned_user_id = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    decision = db.Column(db.String(20))
    activated_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))

    instance = db.relationship("WorkflowInstance", back_populates="steps")

    def to_dict(self):
        node = self.instance.snapshot_node(self.node_id) if self.instance else None
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "node_id": self.node_id,
            "node_label": node["label"] if node else None,
            "node_type": node["node_type"] if node else None,
            "status": self.status,
            "assigned_user_id": self.assigned_user_id,
            "decision": self.decision,
            "activated_at": self.activated_at.isoformat() if self.activated_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "completed_by": self.completed_by,
        }


class WorkflowHistory(db.Model):
    """Append-only record of every transition taken by an instance."""

    __tablename__ = "workflow_history"

    id = db.Column(db.Integer, primary_key=True)
    instance_id = db.Column(
        db.Integer, db.ForeignKey("workflow_instances.id", ondelete="CASCADE"), nullable=False, index=True
    )
    step_id = db.Column(db.Integer, nullable=True)
    from_node_id = db.Column(db.Integer, nullable=True)
    to_node_id = db.Column(db.Integer, nullable=True)
    action = db.Column(db.String(30), nullable=False, comment="started | advanced | routed | completed | cancelled")
    decision = db.Column(db.String(20))
    acted_by = db.Column(db.Integer, db.ForeignKey("users.id", ondelete="SET NULL"))
    notes = db.Column(db.Text)
    created_at = db.Column(db.DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    instance = db.relationship("WorkflowInstance", back_populates="history")

    def to_dict(self):
        return {
            "id": self.id,
            "instance_id": self.instance_id,
            "step_id": self.step_id,
            "from_node_id": self.from_node_id,
            "to_node_id": self.to_node_id,
            "action": self.action,
            "decision": self.decision,
            "acted_by": self.acted_by,
            "notes": self.notes,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }
