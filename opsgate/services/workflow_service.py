"""
Workflow Instance Service — start, advance and cancel running workflows.

Instance lifecycle:
    active → completed   (no active step left)
    active → cancelled   (explicit cancel)

Design decisions:
    - ``start`` deep-copies the template's nodes, connections and name into
      ``WorkflowInstance.snapshot``; from then on routing reads only the
      snapshot, so template edits or deletion never reach a running instance.
    - Routing is resolved before anything is written, and completing a step
      is a guarded ``UPDATE ... WHERE status='active'``. A concurrent second
      advance of the same step matches zero rows and is refused.
    - Branches join with AND semantics: the instance completes only when the
      last active step is gone, whichever branch reached ``end`` first.
      ``advance`` and ``cancel`` take a row lock on the instance
      (``SELECT ... FOR UPDATE``) before reading step state, so sibling
      steps advanced in parallel serialize and the last one sees zero
      remaining steps.
    - Assignees of new steps are resolved from live role membership.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime, timezone

from opsgate.core.exceptions import (
    AuthorizationError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from opsgate.models import db
from opsgate.models.audit import write_audit
from opsgate.models.workflow import (
    ACTIONABLE_NODE_TYPES,
    DECISIONS,
    WorkflowActiveStep,
    WorkflowHistory,
    WorkflowInstance,
    WorkflowNode,
    validate_instance_transition,
    validate_step_transition,
)
from opsgate.services import active_step_tracker, workflow_graph
from opsgate.services.permission_catalog import Permission
from opsgate.services.permission_service import resolve_permission
from opsgate.services.stores import ProjectStore, SqlProjectStore, SqlTaskStore, TaskStore
from opsgate.services.workflow_routing import choose_conditional_edge, next_edges
from opsgate.services.workflow_template_service import get_template, template_graph

logger = logging.getLogger(__name__)

_project_store: ProjectStore = SqlProjectStore()
_task_store: TaskStore = SqlTaskStore()


def _now():
    return datetime.now(timezone.utc)


def _history(instance_id, action, *, step_id=None, from_node_id=None, to_node_id=None,
             decision=None, acted_by=None, notes=None):
    entry = WorkflowHistory(
        instance_id=instance_id,
        step_id=step_id,
        from_node_id=from_node_id,
        to_node_id=to_node_id,
        action=action,
        decision=decision,
        acted_by=acted_by,
        notes=notes,
    )
    db.session.add(entry)
    return entry


def capture_snapshot(template) -> dict:
    """Immutable copy of a template's structure at this moment."""
    nodes, connections = template_graph(template)
    return {
        "template_id": template.id,
        "template_name": template.name,
        "captured_at": _now().isoformat(),
        "nodes": copy.deepcopy(nodes),
        "connections": copy.deepcopy(connections),
    }


# ── Queries ────────────────────────────────────────────────────────────────────


def get_instance(instance_id: int) -> WorkflowInstance:
    instance = db.session.get(WorkflowInstance, instance_id)
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return instance


def _lock_instance(instance_id: int) -> WorkflowInstance:
    """Load the instance with a row lock held until commit or rollback."""
    instance = (
        db.session.query(WorkflowInstance)
        .filter_by(id=instance_id)
        .populate_existing()
        .with_for_update()
        .one_or_none()
    )
    if instance is None:
        raise NotFoundError(resource="WorkflowInstance", resource_id=instance_id)
    return instance


def instance_timeline(instance: WorkflowInstance) -> list[dict]:
    """Display order of the instance's steps, read from its snapshot."""
    return workflow_graph.ordered_steps(instance.snapshot_nodes, instance.snapshot_connections)


def instance_history(instance_id: int) -> list[WorkflowHistory]:
    get_instance(instance_id)
    return (
        WorkflowHistory.query
        .filter_by(instance_id=instance_id)
        .order_by(WorkflowHistory.id)
        .all()
    )


def instances_for_entity(project_id: int | None = None, task_id: int | None = None) -> list[WorkflowInstance]:
    q = WorkflowInstance.query
    if project_id is not None:
        q = q.filter_by(project_id=project_id)
    if task_id is not None:
        q = q.filter_by(task_id=task_id)
    return q.order_by(WorkflowInstance.id.desc()).all()


# ── Start ──────────────────────────────────────────────────────────────────────


def start_workflow(
    template_id: int,
    start_node_id: int,
    project_id: int | None = None,
    task_id: int | None = None,
    started_by: int | None = None,
) -> WorkflowInstance:
    """Start an instance of an active template at its start node.

    Raises:
        NotFoundError: unknown template, project or task.
        ValidationError: template inactive, bad start node, or both a
            project and a task given.
    """
    template = get_template(template_id)
    if not template.is_active:
        raise ValidationError(
            f"Workflow \"{template.name}\" is not active",
            details={"template_id": template_id},
        )
    if project_id is not None and task_id is not None:
        raise ValidationError(
            "A workflow is attached to a project or a task, not both",
            details={"project_id": project_id, "task_id": task_id},
        )
    if project_id is not None and _project_store.get_project(project_id) is None:
        raise NotFoundError(resource="Project", resource_id=project_id)
    if task_id is not None and _task_store.get_task(task_id) is None:
        raise NotFoundError(resource="Task", resource_id=task_id)

    start_node = db.session.get(WorkflowNode, start_node_id) if start_node_id is not None else None
    if start_node is None or start_node.template_id != template.id:
        raise ValidationError(
            "start_node_id is not a node of this workflow",
            details={"start_node_id": start_node_id},
        )
    if start_node.node_type != "start":
        raise ValidationError(
            f"Node \"{start_node.label}\" is not a start node",
            details={"start_node_id": start_node_id, "node_type": start_node.node_type},
        )

    try:
        instance = WorkflowInstance(
            template_id=template.id,
            project_id=project_id,
            task_id=task_id,
            snapshot=capture_snapshot(template),
            status="active",
            started_by=started_by,
        )
        db.session.add(instance)
        db.session.flush()

        step = WorkflowActiveStep(instance_id=instance.id, node_id=start_node.id, status="active")
        db.session.add(step)
        db.session.flush()

        _history(instance.id, "started", step_id=step.id, to_node_id=start_node.id, acted_by=started_by)
        write_audit(
            entity_type="workflow_instance",
            entity_id=instance.id,
            action="workflow_instance.start",
            actor_user_id=started_by,
            diff={"template_id": template.id, "project_id": project_id, "task_id": task_id},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Workflow started",
        extra={"instance_id": instance.id, "template_id": template.id, "project_id": project_id},
    )
    return instance


# ── Advance ────────────────────────────────────────────────────────────────────


def _follow_conditionals(instance, node, decision, form_data) -> dict | None:
    """Walk through conditional nodes until a real node (or a dead end)."""
    connections = instance.snapshot_connections
    hops = 0
    limit = len(instance.snapshot_nodes)
    while node is not None and node["node_type"] == "conditional":
        hops += 1
        if hops > limit:
            raise ValidationError(
                "Conditional routing loops without reaching a step",
                details={"node_id": node["id"]},
            )
        edge = choose_conditional_edge(
            workflow_graph.outgoing(connections, node["id"]), decision, form_data,
        )
        if edge is None:
            return None
        node = instance.snapshot_node(edge["to_node_id"])
    return node


def resolve_next_nodes(instance: WorkflowInstance, node: dict, decision=None, form_data=None) -> list[dict]:
    """Nodes that become reachable when a step at ``node`` completes.

    Conditional nodes are routed through and never returned. An empty list
    means the branch ends here.
    """
    edges = workflow_graph.outgoing(instance.snapshot_connections, node["id"])
    if node["node_type"] == "conditional":
        chosen = choose_conditional_edge(edges, decision, form_data)
        edges = [chosen] if chosen else []
    else:
        edges = next_edges(node, edges, decision, form_data)

    result = []
    seen = set()
    for edge in edges:
        target = _follow_conditionals(
            instance, instance.snapshot_node(edge["to_node_id"]), decision, form_data,
        )
        if target is None or target["id"] in seen:
            continue
        seen.add(target["id"])
        result.append(target)
    return result


def advance_workflow(
    instance_id: int,
    step_id: int,
    decision: str | None = None,
    *,
    acting_user_id: int | None = None,
    form_data: dict | None = None,
    notes: str | None = None,
) -> dict:
    """Complete an active step and activate whatever comes next.

    When ``acting_user_id`` is given, the actor must be eligible for the
    step's node (assignee or current holder of its role / department) or
    hold ``skip_workflow_nodes``.

    Returns ``{"instance", "completed_step", "new_steps"}``.

    Raises:
        NotFoundError: unknown instance, or the step is not part of it.
        StateConflictError: instance or step no longer active.
        AuthorizationError: actor may not act on this step.
        ValidationError: unknown decision, or no outgoing path matches it.
    """
    instance = _lock_instance(instance_id)
    step = db.session.get(WorkflowActiveStep, step_id)
    if step is None or step.instance_id != instance.id:
        raise NotFoundError(resource="WorkflowActiveStep", resource_id=step_id)
    if not validate_instance_transition(instance.status, "completed"):
        raise StateConflictError("WorkflowInstance", f"Workflow instance is {instance.status}", instance.status)
    if not validate_step_transition(step.status, "completed"):
        raise StateConflictError("WorkflowActiveStep", f"Step is already {step.status}", step.status)
    if decision is not None and decision not in DECISIONS:
        raise ValidationError(
            f"decision must be one of {list(DECISIONS)}",
            details={"decision": decision},
        )

    node = instance.snapshot_node(step.node_id)
    if node is None:
        raise ValidationError(
            "Step refers to a node missing from the workflow snapshot",
            details={"node_id": step.node_id},
        )

    if acting_user_id is not None and node["node_type"] in ACTIONABLE_NODE_TYPES:
        if not active_step_tracker.can_act_on(acting_user_id, step, node) and not resolve_permission(
            acting_user_id, Permission.SKIP_WORKFLOW_NODES,
        ):
            logger.warning(
                "Workflow step action denied",
                extra={"instance_id": instance.id, "step_id": step.id, "user_id": acting_user_id},
            )
            raise AuthorizationError(
                f"User is not an approver of \"{node.get('label')}\"",
                permission=Permission.SKIP_WORKFLOW_NODES.value,
            )

    next_nodes = resolve_next_nodes(instance, node, decision, form_data)

    try:
        now = _now()
        updated = (
            WorkflowActiveStep.query
            .filter_by(id=step.id, status="active")
            .update(
                {
                    "status": "completed",
                    "decision": decision,
                    "completed_at": now,
                    "completed_by": acting_user_id,
                },
                synchronize_session="fetch",
            )
        )
        if updated == 0:
            raise StateConflictError("WorkflowActiveStep", "Step was completed concurrently", "completed")

        _history(
            instance.id, "advanced", step_id=step.id, from_node_id=node["id"],
            decision=decision, acted_by=acting_user_id, notes=notes,
        )

        new_steps = []
        for target in next_nodes:
            if target["node_type"] == "end":
                _history(instance.id, "routed", from_node_id=node["id"], to_node_id=target["id"],
                         decision=decision, acted_by=acting_user_id)
                continue
            duplicate = WorkflowActiveStep.query.filter_by(
                instance_id=instance.id, node_id=target["id"], status="active",
            ).first()
            if duplicate is not None:
                continue
            new_step = WorkflowActiveStep(
                instance_id=instance.id,
                node_id=target["id"],
                status="active",
                assigned_user_id=active_step_tracker.resolve_assignee(target),
            )
            db.session.add(new_step)
            db.session.flush()
            new_steps.append(new_step)
            _history(instance.id, "routed", step_id=new_step.id, from_node_id=node["id"],
                     to_node_id=target["id"], decision=decision, acted_by=acting_user_id)

        remaining = WorkflowActiveStep.query.filter_by(instance_id=instance.id, status="active").count()
        if remaining == 0:
            instance.status = "completed"
            instance.completed_at = now
            _history(instance.id, "completed", from_node_id=node["id"], acted_by=acting_user_id)
            write_audit(
                entity_type="workflow_instance",
                entity_id=instance.id,
                action="workflow_instance.complete",
                actor_user_id=acting_user_id,
            )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info(
        "Workflow advanced",
        extra={
            "instance_id": instance.id,
            "step_id": step.id,
            "decision": decision,
            "new_steps": [s.id for s in new_steps],
            "status": instance.status,
        },
    )
    return {"instance": instance, "completed_step": step, "new_steps": new_steps}


# ── Cancel ─────────────────────────────────────────────────────────────────────


def cancel_workflow(instance_id: int, acting_user_id: int | None = None, reason: str | None = None) -> WorkflowInstance:
    """Cancel an active instance and close its open steps without routing."""
    instance = _lock_instance(instance_id)
    if not validate_instance_transition(instance.status, "cancelled"):
        raise StateConflictError("WorkflowInstance", f"Workflow instance is {instance.status}", instance.status)

    try:
        now = _now()
        closed = []
        for step in active_step_tracker.active_steps(instance.id):
            step.status = "completed"
            step.completed_at = now
            step.completed_by = acting_user_id
            closed.append(step.id)
        instance.status = "cancelled"
        instance.completed_at = now
        _history(instance.id, "cancelled", acted_by=acting_user_id, notes=reason)
        write_audit(
            entity_type="workflow_instance",
            entity_id=instance.id,
            action="workflow_instance.cancel",
            actor_user_id=acting_user_id,
            diff={"closed_steps": closed, "reason": reason},
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise

    logger.info("Workflow cancelled", extra={"instance_id": instance.id, "closed_steps": len(closed)})
    return instance
