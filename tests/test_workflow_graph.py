"""Workflow graph algorithms — validation, cycles, staffing, timeline."""

from opsgate.services.workflow_graph import (
    find_cycle,
    ordered_steps,
    staffing_violations,
    validate_graph,
    would_create_cycle,
)


def node(node_id, node_type, label=None, target=None):
    return {
        "id": node_id,
        "node_type": node_type,
        "label": label or f"{node_type}-{node_id}",
        "target": target,
    }


def conn(from_id, to_id, condition=None, conn_id=None):
    return {
        "id": conn_id,
        "from_node_id": from_id,
        "to_node_id": to_id,
        "condition": condition,
    }


APPROVED = {"decision": "approved"}
REJECTED = {"decision": "rejected"}


def codes(items):
    return [i["code"] for i in items]


# ═════════════════════════════════════════════════════════════════════════
# STRUCTURAL VALIDATION
# ═════════════════════════════════════════════════════════════════════════


class TestValidateGraph:
    def test_linear_graph_is_valid(self):
        nodes = [node(1, "start"), node(2, "approval"), node(3, "end")]
        result = validate_graph(nodes, [conn(1, 2), conn(2, 3)])
        assert result == {"valid": True, "errors": [], "warnings": []}

    def test_empty_graph(self):
        result = validate_graph([], [])
        assert result["valid"] is False
        assert codes(result["errors"]) == ["NO_NODES"]

    def test_missing_start(self):
        result = validate_graph([node(1, "approval"), node(2, "end")], [conn(1, 2)])
        assert "NO_START" in codes(result["errors"])

    def test_multiple_starts(self):
        nodes = [node(1, "start"), node(2, "start"), node(3, "end")]
        result = validate_graph(nodes, [conn(1, 3), conn(2, 3)])
        assert "MULTIPLE_STARTS" in codes(result["errors"])

    def test_missing_end_is_a_warning(self):
        result = validate_graph([node(1, "start"), node(2, "form")], [conn(1, 2)])
        assert result["valid"] is True
        assert codes(result["warnings"]) == ["NO_END"]

    def test_dangling_connection(self):
        nodes = [node(1, "start"), node(2, "end")]
        result = validate_graph(nodes, [conn(1, 2), conn(1, 99, conn_id=7)])
        dangling = [e for e in result["errors"] if e["code"] == "DANGLING_CONNECTION"]
        assert dangling[0]["connection_id"] == 7

    def test_self_loop(self):
        nodes = [node(1, "start"), node(2, "form"), node(3, "end")]
        result = validate_graph(nodes, [conn(1, 2), conn(2, 2), conn(2, 3)])
        assert "SELF_LOOP" in codes(result["errors"])

    def test_cycle_detected(self):
        nodes = [node(1, "start"), node(2, "form", "A"), node(3, "form", "B"), node(4, "end")]
        result = validate_graph(nodes, [conn(1, 2), conn(2, 3), conn(3, 2), conn(3, 4)])
        cycle = next(e for e in result["errors"] if e["code"] == "CYCLE_DETECTED")
        assert set(cycle["cycle"]) == {2, 3}
        assert "A" in cycle["message"] and "B" in cycle["message"]

    def test_rejection_loop_is_allowed(self):
        nodes = [node(1, "start"), node(2, "form"), node(3, "approval"), node(4, "end")]
        connections = [
            conn(1, 2), conn(2, 3),
            conn(3, 4, APPROVED), conn(3, 2, REJECTED),
        ]
        assert validate_graph(nodes, connections)["valid"] is True

    def test_branching_approval_needs_approved_path(self):
        nodes = [node(1, "start"), node(2, "approval"), node(3, "end"), node(4, "end")]
        connections = [conn(1, 2), conn(2, 3, REJECTED), conn(2, 4, {"field": "x", "operator": "is_empty"})]
        result = validate_graph(nodes, connections)
        assert "APPROVAL_NO_APPROVED_PATH" in codes(result["errors"])

    def test_conditional_without_output_and_orphan(self):
        nodes = [node(1, "start"), node(2, "conditional"), node(3, "form"), node(4, "end")]
        result = validate_graph(nodes, [conn(1, 2)])
        assert set(codes(result["warnings"])) == {"CONDITIONAL_NO_OUTPUT", "ORPHANED_NODE"}
        orphan = next(w for w in result["warnings"] if w["code"] == "ORPHANED_NODE")
        assert orphan["node_id"] == 3


class TestCycles:
    def test_find_cycle_none(self):
        nodes = [node(i, "form") for i in (1, 2, 3)]
        assert find_cycle(nodes, [conn(1, 2), conn(2, 3), conn(1, 3)]) is None

    def test_find_cycle_ignores_rejections(self):
        nodes = [node(i, "form") for i in (1, 2)]
        assert find_cycle(nodes, [conn(1, 2), conn(2, 1, REJECTED)]) is None

    def test_would_create_cycle(self):
        existing = [conn(1, 2), conn(2, 3)]
        assert would_create_cycle(existing, 3, 1) is True
        assert would_create_cycle(existing, 1, 3) is False
        assert would_create_cycle(existing, 2, 2) is True

    def test_rejection_edge_may_close_loop(self):
        assert would_create_cycle([conn(1, 2), conn(2, 3)], 3, 1, REJECTED) is False

    def test_existing_rejection_edges_are_not_followed(self):
        existing = [conn(1, 2), conn(2, 1, REJECTED)]
        assert would_create_cycle(existing, 2, 3) is False
        assert would_create_cycle(existing + [conn(3, 1)], 2, 3) is True


# ═════════════════════════════════════════════════════════════════════════
# STAFFING
# ═════════════════════════════════════════════════════════════════════════


class TestStaffing:
    def test_empty_role_on_approval_and_role_nodes(self):
        nodes = [
            node(1, "start"),
            node(2, "approval", "Sign", target={"kind": "role", "id": 10}),
            node(3, "role", "Do", target={"kind": "role", "id": 11}),
            node(4, "form", "Fill", target={"kind": "role", "id": 10}),
            node(5, "end"),
        ]
        counts = {10: 0, 11: 0}
        violations = staffing_violations(nodes, counts.get, {10: "Finance", 11: "Ops"}.get)
        assert [(v["code"], v["node_id"], v["role_name"]) for v in violations] == [
            ("APPROVAL_ROLE_NO_USERS", 2, "Finance"),
            ("ROLE_NO_USERS", 3, "Ops"),
        ]

    def test_staffed_and_unassigned_nodes_pass(self):
        nodes = [
            node(1, "approval", target={"kind": "role", "id": 10}),
            node(2, "approval", target=None),
            node(3, "department", target={"kind": "department", "id": 4}),
        ]
        assert staffing_violations(nodes, lambda rid: 2) == []


# ═════════════════════════════════════════════════════════════════════════
# TIMELINE
# ═════════════════════════════════════════════════════════════════════════


class TestOrderedSteps:
    def test_linear(self):
        nodes = [node(3, "end"), node(1, "start"), node(2, "approval")]
        steps = ordered_steps(nodes, [conn(1, 2), conn(2, 3)])
        assert [s["id"] for s in steps] == [1, 2, 3]

    def test_prefers_approved_path_and_skips_conditionals(self):
        nodes = [
            node(1, "start"), node(2, "approval"), node(3, "conditional"),
            node(4, "form"), node(5, "end"), node(6, "end"),
        ]
        connections = [
            conn(1, 2),
            conn(2, 6, REJECTED),
            conn(2, 3, APPROVED),
            conn(3, 4),
            conn(4, 5),
        ]
        assert [s["id"] for s in ordered_steps(nodes, connections)] == [1, 2, 4, 5]

    def test_prefers_unconditioned_edge(self):
        nodes = [node(1, "start"), node(2, "form"), node(3, "form"), node(4, "end")]
        connections = [conn(1, 2, {"field": "x", "operator": "is_empty"}), conn(1, 3), conn(3, 4)]
        assert [s["id"] for s in ordered_steps(nodes, connections)] == [1, 3, 4]

    def test_stops_on_loop(self):
        nodes = [node(1, "start"), node(2, "form"), node(3, "form")]
        steps = ordered_steps(nodes, [conn(1, 2), conn(2, 3), conn(3, 2)])
        assert [s["id"] for s in steps] == [1, 2, 3]

    def test_no_start(self):
        assert ordered_steps([node(1, "form")], []) == []
