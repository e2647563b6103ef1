"""
Workflow Blueprint — template authoring and instance execution.

Templates:
  GET    /api/v1/workflows/templates                       – list (?active=1)
  POST   /api/v1/workflows/templates                       – create
  GET    /api/v1/workflows/templates/<tid>                 – detail with nodes/connections
  PUT    /api/v1/workflows/templates/<tid>                 – rename / describe
  DELETE /api/v1/workflows/templates/<tid>                 – delete (instances survive)
  POST   /api/v1/workflows/templates/<tid>/nodes           – add node
  PUT    /api/v1/workflows/nodes/<nid>                     – update node
  DELETE /api/v1/workflows/nodes/<nid>                     – delete node
  POST   /api/v1/workflows/templates/<tid>/connections     – add connection
  DELETE /api/v1/workflows/connections/<cid>               – delete connection
  GET    /api/v1/workflows/templates/<tid>/validate        – dry-run validation
  POST   /api/v1/workflows/templates/<tid>/activate        – activate
  POST   /api/v1/workflows/templates/<tid>/deactivate      – deactivate

Instances:
  POST   /api/v1/workflows/instances                       – start
  GET    /api/v1/workflows/instances                       – list (?project_id= / ?task_id=)
  GET    /api/v1/workflows/instances/<iid>                 – detail + active steps + timeline
  POST   /api/v1/workflows/instances/<iid>/advance         – complete a step
  POST   /api/v1/workflows/instances/<iid>/cancel          – cancel
  GET    /api/v1/workflows/instances/<iid>/history         – transition log
  GET    /api/v1/workflows/projects/<pid>/instances         – instances of a project the caller can see
  GET    /api/v1/workflows/my-approvals                    – steps waiting on the caller
"""

import logging

from flask import Blueprint, jsonify, request

from opsgate.middleware.permission_required import (
    current_user_id,
    require_authenticated,
    require_permission,
)
from opsgate.services import active_step_tracker, workflow_service, workflow_template_service
from opsgate.services.permission_catalog import Permission
from opsgate.utils.errors import E, api_error, register_service_error_handlers

logger = logging.getLogger(__name__)

workflow_bp = Blueprint("workflows", __name__, url_prefix="/api/v1/workflows")

register_service_error_handlers(workflow_bp, logger)


def _optional_int(name):
    value = request.args.get(name)
    if value is None:
        return None
    try:
        return int(value)
    except ValueError:
        return False


# ═════════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/templates", methods=["GET"])
@require_permission(Permission.VIEW_WORKFLOWS)
def list_templates():
    active_only = request.args.get("active", "").lower() in ("1", "true", "yes")
    templates = workflow_template_service.list_templates(active_only=active_only)
    return jsonify([t.to_dict() for t in templates])


@workflow_bp.route("/templates", methods=["POST"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def create_template():
    data = request.get_json(silent=True) or {}
    if not (data.get("name") or "").strip():
        return api_error(E.VALIDATION_REQUIRED, "name is required")
    template = workflow_template_service.create_template(
        data["name"], data.get("description"), created_by=current_user_id(),
    )
    return jsonify(template.to_dict(include_graph=True)), 201


@workflow_bp.route("/templates/<int:template_id>", methods=["GET"])
@require_permission(Permission.VIEW_WORKFLOWS)
def get_template(template_id):
    template = workflow_template_service.get_template(template_id)
    return jsonify(template.to_dict(include_graph=True))


@workflow_bp.route("/templates/<int:template_id>", methods=["PUT"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def update_template(template_id):
    data = request.get_json(silent=True) or {}
    template = workflow_template_service.update_template(template_id, data)
    return jsonify(template.to_dict())


@workflow_bp.route("/templates/<int:template_id>", methods=["DELETE"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def delete_template(template_id):
    workflow_template_service.delete_template(template_id, acting_user_id=current_user_id())
    return jsonify({"message": "Workflow deleted"}), 200


# ── Nodes ────────────────────────────────────────────────────────────────────


@workflow_bp.route("/templates/<int:template_id>/nodes", methods=["POST"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def add_node(template_id):
    """Add a node.

    Body: { node_type, label?, target?: {kind, id}, position?: {x, y}, settings? }
    """
    data = request.get_json(silent=True) or {}
    if not data.get("node_type"):
        return api_error(E.VALIDATION_REQUIRED, "node_type is required")
    node = workflow_template_service.add_node(template_id, data)
    return jsonify(node.to_dict()), 201


@workflow_bp.route("/nodes/<int:node_id>", methods=["PUT"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def update_node(node_id):
    data = request.get_json(silent=True) or {}
    node = workflow_template_service.update_node(node_id, data)
    return jsonify(node.to_dict())


@workflow_bp.route("/nodes/<int:node_id>", methods=["DELETE"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def delete_node(node_id):
    workflow_template_service.delete_node(node_id)
    return jsonify({"message": "Node deleted"}), 200


# ── Connections ──────────────────────────────────────────────────────────────


@workflow_bp.route("/templates/<int:template_id>/connections", methods=["POST"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def add_connection(template_id):
    """Connect two nodes.

    Body: { from_node_id, to_node_id, condition?, label? }
    """
    data = request.get_json(silent=True) or {}
    if data.get("from_node_id") is None or data.get("to_node_id") is None:
        return api_error(E.VALIDATION_REQUIRED, "from_node_id and to_node_id are required")
    conn = workflow_template_service.add_connection(template_id, data)
    return jsonify(conn.to_dict()), 201


@workflow_bp.route("/connections/<int:connection_id>", methods=["DELETE"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def delete_connection(connection_id):
    workflow_template_service.delete_connection(connection_id)
    return jsonify({"message": "Connection deleted"}), 200


# ── Validation & activation ──────────────────────────────────────────────────


@workflow_bp.route("/templates/<int:template_id>/validate", methods=["GET"])
@require_permission(Permission.VIEW_WORKFLOWS)
def validate_template(template_id):
    return jsonify(workflow_template_service.validate_template(template_id))


@workflow_bp.route("/templates/<int:template_id>/activate", methods=["POST"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def activate_template(template_id):
    template = workflow_template_service.activate_template(template_id, acting_user_id=current_user_id())
    return jsonify(template.to_dict())


@workflow_bp.route("/templates/<int:template_id>/deactivate", methods=["POST"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def deactivate_template(template_id):
    template = workflow_template_service.deactivate_template(template_id, acting_user_id=current_user_id())
    return jsonify(template.to_dict())


# ═════════════════════════════════════════════════════════════════════════════
# INSTANCES
# ═════════════════════════════════════════════════════════════════════════════


@workflow_bp.route("/instances", methods=["POST"])
@require_permission(Permission.EXECUTE_WORKFLOWS)
def start_instance():
    """Start a workflow.

    Body: { template_id, start_node_id, project_id? | task_id? }
    """
    data = request.get_json(silent=True) or {}
    missing = [k for k in ("template_id", "start_node_id") if data.get(k) is None]
    if missing:
        return api_error(
            E.VALIDATION_REQUIRED,
            f"Missing required fields: {', '.join(missing)}",
            details={k: "required" for k in missing},
        )
    instance = workflow_service.start_workflow(
        data["template_id"],
        data["start_node_id"],
        project_id=data.get("project_id"),
        task_id=data.get("task_id"),
        started_by=current_user_id(),
    )
    return jsonify(instance.to_dict(include_steps=True)), 201


@workflow_bp.route("/instances", methods=["GET"])
@require_permission(Permission.VIEW_WORKFLOWS)
def list_instances():
    project_id = _optional_int("project_id")
    task_id = _optional_int("task_id")
    if project_id is False or task_id is False:
        return api_error(E.VALIDATION_INVALID, "project_id and task_id must be integers")
    instances = workflow_service.instances_for_entity(project_id=project_id, task_id=task_id)
    return jsonify([i.to_dict() for i in instances])


@workflow_bp.route("/projects/<int:project_id>/instances", methods=["GET"])
@require_permission(Permission.VIEW_PROJECTS, context_from={"project_id": "project_id"})
def list_project_instances(project_id):
    """Instances attached to a project, for users linked to that project."""
    instances = workflow_service.instances_for_entity(project_id=project_id)
    return jsonify([i.to_dict() for i in instances])


@workflow_bp.route("/instances/<int:instance_id>", methods=["GET"])
@require_permission(Permission.VIEW_WORKFLOWS)
def get_instance(instance_id):
    instance = workflow_service.get_instance(instance_id)
    result = instance.to_dict(include_steps=True)
    result["timeline"] = workflow_service.instance_timeline(instance)
    return jsonify(result)


@workflow_bp.route("/instances/<int:instance_id>/advance", methods=["POST"])
@require_authenticated
def advance_instance(instance_id):
    """Complete an active step.

    Body: { step_id, decision?: "approved"|"rejected", form_data?, notes? }

    Step eligibility is checked by the engine, so any identified user may
    call this; non-approvers get 403 from the service.
    """
    data = request.get_json(silent=True) or {}
    step_id = data.get("step_id")
    if not isinstance(step_id, int):
        return api_error(E.VALIDATION_REQUIRED, "step_id (integer) is required")
    form_data = data.get("form_data")
    if form_data is not None and not isinstance(form_data, dict):
        return api_error(E.VALIDATION_INVALID, "form_data must be an object")

    result = workflow_service.advance_workflow(
        instance_id,
        step_id,
        data.get("decision"),
        acting_user_id=current_user_id(),
        form_data=form_data,
        notes=data.get("notes"),
    )
    return jsonify({
        "instance": result["instance"].to_dict(),
        "completed_step": result["completed_step"].to_dict(),
        "new_steps": [s.to_dict() for s in result["new_steps"]],
    })


@workflow_bp.route("/instances/<int:instance_id>/cancel", methods=["POST"])
@require_permission(Permission.MANAGE_WORKFLOWS)
def cancel_instance(instance_id):
    data = request.get_json(silent=True) or {}
    instance = workflow_service.cancel_workflow(
        instance_id, acting_user_id=current_user_id(), reason=data.get("reason"),
    )
    return jsonify(instance.to_dict())


@workflow_bp.route("/instances/<int:instance_id>/history", methods=["GET"])
@require_permission(Permission.VIEW_WORKFLOWS)
def instance_history(instance_id):
    entries = workflow_service.instance_history(instance_id)
    return jsonify([h.to_dict() for h in entries])


@workflow_bp.route("/my-approvals", methods=["GET"])
@require_authenticated
def my_approvals():
    return jsonify(active_step_tracker.list_pending_for_user(current_user_id()))
