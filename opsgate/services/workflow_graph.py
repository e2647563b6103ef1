"""
Workflow graph algorithms.

Operates on plain node / connection dicts (the shape produced by
``WorkflowNode.to_dict()`` and stored in instance snapshots), so the same
code validates a live template and walks a frozen snapshot.

  validate_graph       structural errors and warnings
  staffing_violations  staffed nodes whose role has nobody in it
  would_create_cycle   save-time check for a new connection
  ordered_steps        canonical display order (timeline)
"""

from __future__ import annotations

import logging

from opsgate.models.workflow import STAFFED_NODE_TYPES, RoleTarget, target_from_dict

logger = logging.getLogger(__name__)

REJECTED = "rejected"
APPROVED = "approved"


# ── Edge helpers ─────────────────────────────────────────────────────────────


def edge_decision(connection: dict) -> str | None:
    condition = connection.get("condition") or {}
    return condition.get("decision")


def is_rejection_edge(connection: dict) -> bool:
    return edge_decision(connection) == REJECTED


def is_unconditioned(connection: dict) -> bool:
    condition = connection.get("condition") or {}
    return not condition.get("decision") and not condition.get("field")


def outgoing(connections: list[dict], node_id) -> list[dict]:
    return [c for c in connections if c["from_node_id"] == node_id]


def _issue(code: str, message: str, node: dict | None = None, **extra) -> dict:
    item = {"code": code, "message": message}
    if node is not None:
        item["node_id"] = node["id"]
        item["node_label"] = node.get("label")
    item.update(extra)
    return item


# ── Cycle detection ──────────────────────────────────────────────────────────


def find_cycle(nodes: list[dict], connections: list[dict]) -> list | None:
    """Return the node ids of one cycle, or None.

    Iterative DFS with an explicit stack. Connections whose decision is
    ``rejected`` are intentional loops back to an earlier step and are
    not followed.
    """
    adjacency: dict = {n["id"]: [] for n in nodes}
    for conn in connections:
        if is_rejection_edge(conn):
            continue
        adjacency.setdefault(conn["from_node_id"], []).append(conn["to_node_id"])

    visited = set()
    for root in adjacency:
        if root in visited:
            continue
        path = [root]
        on_path = {root}
        stack = [iter(adjacency.get(root, []))]
        visited.add(root)
        while stack:
            child = next(stack[-1], None)
            if child is None:
                stack.pop()
                on_path.discard(path.pop())
                continue
            if child in on_path:
                return path[path.index(child):]
            if child in visited:
                continue
            visited.add(child)
            path.append(child)
            on_path.add(child)
            stack.append(iter(adjacency.get(child, [])))
    return None


def would_create_cycle(connections: list[dict], from_node_id, to_node_id, condition: dict | None = None) -> bool:
    """Check that adding ``from_node_id → to_node_id`` keeps the graph acyclic.

    Walks forward from the new target; reaching the new source means the
    edge would close a loop. Rejection edges are always accepted.
    """
    if (condition or {}).get("decision") == REJECTED:
        return False
    if from_node_id == to_node_id:
        return True

    visited = set()
    stack = [to_node_id]
    while stack:
        current = stack.pop()
        if current == from_node_id:
            return True
        if current in visited:
            continue
        visited.add(current)
        for conn in outgoing(connections, current):
            if not is_rejection_edge(conn):
                stack.append(conn["to_node_id"])
    return False


# ── Structural validation ────────────────────────────────────────────────────


def validate_graph(nodes: list[dict], connections: list[dict]) -> dict:
    """Structural validation. Returns ``{"valid", "errors", "warnings"}``."""
    errors: list[dict] = []
    warnings: list[dict] = []

    if not nodes:
        errors.append(_issue("NO_NODES", "Workflow has no nodes"))
        return {"valid": False, "errors": errors, "warnings": warnings}

    node_ids = {n["id"] for n in nodes}
    by_id = {n["id"]: n for n in nodes}

    starts = [n for n in nodes if n["node_type"] == "start"]
    if not starts:
        errors.append(_issue("NO_START", "Workflow must have a start node"))
    elif len(starts) > 1:
        errors.append(_issue(
            "MULTIPLE_STARTS", "Workflow has more than one start node",
            node_ids=[n["id"] for n in starts],
        ))
    if not any(n["node_type"] == "end" for n in nodes):
        warnings.append(_issue("NO_END", "Workflow has no end node"))

    for conn in connections:
        if conn["from_node_id"] not in node_ids or conn["to_node_id"] not in node_ids:
            errors.append(_issue(
                "DANGLING_CONNECTION", "Connection references a node outside the workflow",
                connection_id=conn.get("id"),
            ))
        elif conn["from_node_id"] == conn["to_node_id"]:
            errors.append(_issue(
                "SELF_LOOP", "Node is connected to itself",
                by_id[conn["from_node_id"]], connection_id=conn.get("id"),
            ))

    cycle = find_cycle(nodes, [
        c for c in connections
        if c["from_node_id"] in node_ids and c["to_node_id"] in node_ids
        and c["from_node_id"] != c["to_node_id"]
    ])
    if cycle:
        labels = [by_id[nid].get("label") or str(nid) for nid in cycle]
        errors.append(_issue(
            "CYCLE_DETECTED",
            f"Workflow contains a cycle: {' → '.join(labels)} → {labels[0]}. "
            "Cycles are only allowed via rejection paths.",
            by_id[cycle[0]], cycle=cycle,
        ))

    for node in nodes:
        out = outgoing(connections, node["id"])
        node_type = node["node_type"]
        if node_type == "approval" and len(out) > 1:
            if not any(edge_decision(c) == APPROVED for c in out):
                errors.append(_issue(
                    "APPROVAL_NO_APPROVED_PATH",
                    f"Approval node \"{node.get('label')}\" has no \"approved\" path",
                    node,
                ))
        if node_type == "conditional" and not out:
            warnings.append(_issue(
                "CONDITIONAL_NO_OUTPUT",
                f"Conditional node \"{node.get('label')}\" has no outgoing connections",
                node,
            ))
        if node_type not in ("start", "end"):
            has_in = any(c["to_node_id"] == node["id"] for c in connections)
            if not has_in and not out:
                warnings.append(_issue(
                    "ORPHANED_NODE",
                    f"Node \"{node.get('label')}\" is not connected to the workflow",
                    node,
                ))

    return {"valid": not errors, "errors": errors, "warnings": warnings}


def staffing_violations(nodes: list[dict], member_count, role_name=None) -> list[dict]:
    """Every staffed node whose role target has zero members.

    ``member_count(role_id)`` reads live membership; ``role_name(role_id)``
    is optional and only used for the message.
    """
    violations = []
    for node in nodes:
        if node["node_type"] not in STAFFED_NODE_TYPES:
            continue
        target = target_from_dict(node.get("target"))
        if not isinstance(target, RoleTarget):
            continue
        if member_count(target.role_id) > 0:
            continue
        name = role_name(target.role_id) if role_name else None
        code = "APPROVAL_ROLE_NO_USERS" if node["node_type"] == "approval" else "ROLE_NO_USERS"
        violations.append(_issue(
            code,
            f"No users have the \"{name or target.role_id}\" role needed by \"{node.get('label')}\"",
            node,
            role_id=target.role_id,
            role_name=name,
        ))
    return violations


# ── Timeline ─────────────────────────────────────────────────────────────────


def _preferred_edge(edges: list[dict]) -> dict:
    for conn in edges:
        if is_unconditioned(conn):
            return conn
    for conn in edges:
        if edge_decision(conn) == APPROVED:
            return conn
    return edges[0]


def ordered_steps(nodes: list[dict], connections: list[dict]) -> list[dict]:
    """Canonical display order of a workflow, start first.

    Follows one outgoing connection per node (unconditioned, else
    ``approved``, else the first). Conditional nodes are walked through but
    never listed. Stops after the first end node, at a node with no way
    out, on a revisit, or after ``2 × len(nodes)`` hops.
    """
    by_id = {n["id"]: n for n in nodes}
    start = next((n for n in nodes if n["node_type"] == "start"), None)
    if start is None:
        return []

    ordered: list[dict] = []
    visited = set()
    current = start
    max_iterations = len(nodes) * 2
    iterations = 0

    while current is not None and iterations < max_iterations:
        iterations += 1
        if current["id"] in visited:
            break
        visited.add(current["id"])

        if current["node_type"] != "conditional":
            ordered.append(current)
        if current["node_type"] == "end":
            break

        edges = outgoing(connections, current["id"])
        if not edges:
            break
        current = by_id.get(_preferred_edge(edges)["to_node_id"])

    return ordered
