"""
Workflow Template Service — authoring and activation of approval graphs.

Templates stay freely editable; running instances never notice because
they execute from their own snapshot. A connection that would close a
loop is rejected when it is saved, unless it is a ``rejected`` decision
edge pointing back to an earlier step.
"""

from __future__ import annotations

import logging

from opsgate.core.exceptions import NotFoundError, ValidationError
from opsgate.models import db
from opsgate.models.audit import write_audit
from opsgate.models.auth import Role
from opsgate.models.org import Department
from opsgate.models.workflow import (
    NODE_TYPES,
    TARGET_KINDS,
    UNASSIGNED,
    WorkflowConnection,
    WorkflowInstance,
    WorkflowNode,
    WorkflowTemplate,
    make_target,
)
from opsgate.services import workflow_graph
from opsgate.services.role_assignment_service import role_member_count

logger = logging.getLogger(__name__)


# ── Private helpers ────────────────────────────────────────────────────────────


def _commit():
    try:
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


def _get_node(node_id: int) -> WorkflowNode:
    node = db.session.get(WorkflowNode, node_id)
    if node is None:
        raise NotFoundError(resource="WorkflowNode", resource_id=node_id)
    return node


def _get_connection(connection_id: int) -> WorkflowConnection:
    conn = db.session.get(WorkflowConnection, connection_id)
    if conn is None:
        raise NotFoundError(resource="WorkflowConnection", resource_id=connection_id)
    return conn


def _parse_target(data: dict | None):
    """Validate a ``{"kind", "id"}`` payload and return the target variant."""
    if not data:
        return UNASSIGNED
    kind = data.get("kind")
    target_id = data.get("id")
    if kind not in TARGET_KINDS:
        raise ValidationError(
            f"target kind must be one of {list(TARGET_KINDS)}",
            details={"target": data},
        )
    model = Role if kind == "role" else Department
    if target_id is None or db.session.get(model, target_id) is None:
        raise NotFoundError(resource=model.__name__, resource_id=target_id)
    return make_target(kind, target_id)


def _validate_condition(condition):
    if condition is None:
        return None
    if not isinstance(condition, dict):
        raise ValidationError("condition must be an object", details={"condition": condition})
    decision = condition.get("decision")
    if decision is not None and decision not in ("approved", "rejected"):
        raise ValidationError(
            "condition.decision must be 'approved' or 'rejected'",
            details={"condition": condition},
        )
    if condition.get("field") and not condition.get("operator"):
        raise ValidationError(
            "condition.operator is required with condition.field",
            details={"condition": condition},
        )
    return condition


def template_graph(template: WorkflowTemplate) -> tuple[list[dict], list[dict]]:
    """Current nodes and connections as plain dicts."""
    nodes = [n.to_dict() for n in template.nodes.all()]
    connections = [c.to_dict() for c in template.connections.all()]
    return nodes, connections


# ── Templates ──────────────────────────────────────────────────────────────────


def get_template(template_id: int) -> WorkflowTemplate:
    template = db.session.get(WorkflowTemplate, template_id)
    if template is None:
        raise NotFoundError(resource="WorkflowTemplate", resource_id=template_id)
    return template


def list_templates(active_only: bool = False) -> list[WorkflowTemplate]:
    q = WorkflowTemplate.query
    if active_only:
        q = q.filter_by(is_active=True)
    return q.order_by(WorkflowTemplate.id).all()


def create_template(name: str, description: str | None = None, created_by: int | None = None) -> WorkflowTemplate:
    name = (name or "").strip()
    if not name:
        raise ValidationError("name is required", details={"name": "required"})
    template = WorkflowTemplate(name=name, description=description, created_by=created_by)
    db.session.add(template)
    _commit()
    logger.info("Workflow template created", extra={"template_id": template.id})
    return template


def update_template(template_id: int, data: dict) -> WorkflowTemplate:
    template = get_template(template_id)
    if "name" in data:
        name = (data["name"] or "").strip()
        if not name:
            raise ValidationError("name cannot be empty", details={"name": "required"})
        template.name = name
    if "description" in data:
        template.description = data["description"]
    _commit()
    return template


def delete_template(template_id: int, acting_user_id: int | None = None) -> None:
    """Delete a template. Instances keep running from their snapshots."""
    template = get_template(template_id)
    try:
        WorkflowInstance.query.filter_by(template_id=template_id).update(
            {"template_id": None}, synchronize_session=False,
        )
        WorkflowConnection.query.filter_by(template_id=template_id).delete()
        WorkflowNode.query.filter_by(template_id=template_id).delete()
        db.session.delete(template)
        write_audit(
            entity_type="workflow_template",
            entity_id=template_id,
            action="workflow_template.delete",
            actor_user_id=acting_user_id,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Workflow template deleted", extra={"template_id": template_id})


# ── Nodes ──────────────────────────────────────────────────────────────────────


def add_node(template_id: int, data: dict) -> WorkflowNode:
    template = get_template(template_id)
    node_type = data.get("node_type")
    if node_type not in NODE_TYPES:
        raise ValidationError(
            f"node_type must be one of {list(NODE_TYPES)}",
            details={"node_type": node_type},
        )
    label = (data.get("label") or "").strip() or node_type.title()
    position = data.get("position") or {}

    node = WorkflowNode(
        template_id=template.id,
        node_type=node_type,
        label=label,
        position_x=position.get("x", 0),
        position_y=position.get("y", 0),
        settings=data.get("settings") or {},
    )
    node.target = _parse_target(data.get("target"))
    db.session.add(node)
    _commit()
    return node


def update_node(node_id: int, data: dict) -> WorkflowNode:
    node = _get_node(node_id)
    if "label" in data:
        node.label = (data["label"] or "").strip() or node.label
    if "target" in data:
        node.target = _parse_target(data["target"])
    if "position" in data:
        position = data["position"] or {}
        node.position_x = position.get("x", node.position_x)
        node.position_y = position.get("y", node.position_y)
    if "settings" in data:
        node.settings = data["settings"] or {}
    _commit()
    return node


def delete_node(node_id: int) -> None:
    node = _get_node(node_id)
    try:
        WorkflowConnection.query.filter(
            (WorkflowConnection.from_node_id == node_id) | (WorkflowConnection.to_node_id == node_id)
        ).delete(synchronize_session=False)
        db.session.delete(node)
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise


# ── Connections ────────────────────────────────────────────────────────────────


def add_connection(template_id: int, data: dict) -> WorkflowConnection:
    template = get_template(template_id)
    from_id = data.get("from_node_id")
    to_id = data.get("to_node_id")
    condition = _validate_condition(data.get("condition"))

    for node_id in (from_id, to_id):
        node = db.session.get(WorkflowNode, node_id) if node_id is not None else None
        if node is None or node.template_id != template.id:
            raise ValidationError(
                "Connection endpoints must be nodes of this template",
                details={"from_node_id": from_id, "to_node_id": to_id},
            )

    _, connections = template_graph(template)
    if workflow_graph.would_create_cycle(connections, from_id, to_id, condition):
        raise ValidationError(
            "Connection would create a cycle; only 'rejected' paths may loop back",
            details={"from_node_id": from_id, "to_node_id": to_id},
        )

    conn = WorkflowConnection(
        template_id=template.id,
        from_node_id=from_id,
        to_node_id=to_id,
        condition=condition,
        label=data.get("label"),
    )
    db.session.add(conn)
    _commit()
    return conn


def delete_connection(connection_id: int) -> None:
    conn = _get_connection(connection_id)
    db.session.delete(conn)
    _commit()


# ── Validation & activation ────────────────────────────────────────────────────


def _role_name(role_id: int) -> str | None:
    role = db.session.get(Role, role_id)
    return role.name if role else None


def validate_template(template_id: int) -> dict:
    """Structural checks plus live staffing checks, without changing anything."""
    template = get_template(template_id)
    nodes, connections = template_graph(template)
    result = workflow_graph.validate_graph(nodes, connections)
    violations = workflow_graph.staffing_violations(nodes, role_member_count, _role_name)
    result["errors"].extend(violations)
    result["valid"] = not result["errors"]
    return result


def activate_template(template_id: int, acting_user_id: int | None = None) -> WorkflowTemplate:
    """Make a template startable.

    Raises:
        ValidationError: the template has no nodes, is structurally broken,
            or has staffed nodes whose role nobody holds. Every violation is
            listed in ``details["violations"]``.
    """
    template = get_template(template_id)
    result = validate_template(template_id)
    if not result["valid"]:
        logger.info(
            "Workflow template activation refused",
            extra={"template_id": template_id, "violations": len(result["errors"])},
        )
        raise ValidationError(
            f"Workflow \"{template.name}\" cannot be activated",
            details={"violations": result["errors"], "warnings": result["warnings"]},
        )

    try:
        template.is_active = True
        write_audit(
            entity_type="workflow_template",
            entity_id=template_id,
            action="workflow_template.activate",
            actor_user_id=acting_user_id,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    logger.info("Workflow template activated", extra={"template_id": template_id})
    return template


def deactivate_template(template_id: int, acting_user_id: int | None = None) -> WorkflowTemplate:
    template = get_template(template_id)
    try:
        template.is_active = False
        write_audit(
            entity_type="workflow_template",
            entity_id=template_id,
            action="workflow_template.deactivate",
            actor_user_id=acting_user_id,
        )
        db.session.commit()
    except Exception:
        db.session.rollback()
        raise
    return template
