"""
Active Step Tracker — live view of who may act on which running step.

Node type and position come from the instance snapshot; the people behind
a node's target are always read from current role membership, so a role
change made after an instance started takes effect on the next lookup.
"""

from __future__ import annotations

import logging

from sqlalchemy import select

from opsgate.models import db
from opsgate.models.auth import Role, UserRole
from opsgate.models.workflow import (
    ACTIONABLE_NODE_TYPES,
    DepartmentTarget,
    RoleTarget,
    WorkflowActiveStep,
    WorkflowInstance,
    target_from_dict,
)

logger = logging.getLogger(__name__)


def eligible_user_ids(target) -> set[int]:
    """User ids currently behind a node target. Unassigned targets have none."""
    if isinstance(target, RoleTarget):
        stmt = select(UserRole.user_id).where(UserRole.role_id == target.role_id)
    elif isinstance(target, DepartmentTarget):
        stmt = (
            select(UserRole.user_id)
            .join(Role, Role.id == UserRole.role_id)
            .where(Role.department_id == target.department_id)
        )
    else:
        return set()
    return set(db.session.scalars(stmt).all())


def eligible_for_node(node: dict) -> set[int]:
    return eligible_user_ids(target_from_dict(node.get("target")))


def resolve_assignee(node: dict) -> int | None:
    """The single eligible user of a node, or None when zero or several."""
    candidates = eligible_for_node(node)
    if len(candidates) == 1:
        return next(iter(candidates))
    return None


def can_act_on(user_id: int, step: WorkflowActiveStep, node: dict) -> bool:
    if step.assigned_user_id is not None and step.assigned_user_id == user_id:
        return True
    return user_id in eligible_for_node(node)


def active_steps(instance_id: int) -> list[WorkflowActiveStep]:
    return (
        WorkflowActiveStep.query
        .filter_by(instance_id=instance_id, status="active")
        .order_by(WorkflowActiveStep.id)
        .all()
    )


def list_pending_for_user(user_id: int) -> list[dict]:
    """Every active step of every active instance that ``user_id`` may act on."""
    rows = (
        db.session.query(WorkflowActiveStep, WorkflowInstance)
        .join(WorkflowInstance, WorkflowInstance.id == WorkflowActiveStep.instance_id)
        .filter(
            WorkflowInstance.status == "active",
            WorkflowActiveStep.status == "active",
        )
        .order_by(WorkflowActiveStep.activated_at, WorkflowActiveStep.id)
        .all()
    )

    # Eligible sets are shared by every step that targets the same thing.
    eligible_cache: dict = {}
    pending = []
    for step, instance in rows:
        node = instance.snapshot_node(step.node_id)
        if node is None or node["node_type"] not in ACTIONABLE_NODE_TYPES:
            continue
        if step.assigned_user_id != user_id:
            target = target_from_dict(node.get("target"))
            if target not in eligible_cache:
                eligible_cache[target] = eligible_user_ids(target)
            if user_id not in eligible_cache[target]:
                continue
        pending.append({
            "instance_id": instance.id,
            "step_id": step.id,
            "node_id": step.node_id,
            "node_label": node.get("label"),
            "node_type": node["node_type"],
            "project_id": instance.project_id,
            "task_id": instance.task_id,
            "template_name": (instance.snapshot or {}).get("template_name"),
            "activated_at": step.activated_at.isoformat() if step.activated_at else None,
        })

    logger.debug("Pending approvals for user %s: %d", user_id, len(pending))
    return pending
