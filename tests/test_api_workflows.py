"""
Workflow API tests.

Tests cover:
  - Template authoring over HTTP, activation violations (422)
  - Starting, advancing and cancelling instances
  - Step eligibility (403) and double advance (409)
  - My approvals inbox
"""

import pytest

from opsgate.models import db
from opsgate.models.org import Project, ProjectAssignment
from opsgate.services.permission_catalog import Permission


@pytest.fixture()
def designer(make_user, make_role, grant_role):
    user = make_user("designer@opsgate.test")
    grant_role(user, make_role("workflow_admin", [
        Permission.VIEW_WORKFLOWS,
        Permission.MANAGE_WORKFLOWS,
        Permission.EXECUTE_WORKFLOWS,
    ]))
    return user


@pytest.fixture()
def approver_role(make_role):
    return make_role("approver", [Permission.VIEW_WORKFLOWS])


@pytest.fixture()
def approver(make_user, grant_role, approver_role):
    user = make_user("approver@opsgate.test")
    grant_role(user, approver_role)
    return user


@pytest.fixture()
def api(client, designer, auth_headers):
    """Small JSON helper acting as the designer."""

    class _Api:
        def post(self, url, body=None, as_user=None, expect=None):
            res = client.post(url, json=body or {}, headers=auth_headers(as_user or designer))
            if expect is not None:
                assert res.status_code == expect, res.get_json()
            return res

        def get(self, url, as_user=None):
            return client.get(url, headers=auth_headers(as_user or designer))

        def put(self, url, body):
            return client.put(url, json=body, headers=auth_headers(designer))

        def delete(self, url):
            return client.delete(url, headers=auth_headers(designer))

    return _Api()


@pytest.fixture()
def published(api, approver, approver_role):
    """Active start → approval → end template."""
    template = api.post("/api/v1/workflows/templates", {"name": "Expense claim"}, expect=201).get_json()
    tid = template["id"]
    start = api.post(f"/api/v1/workflows/templates/{tid}/nodes", {"node_type": "start"}, expect=201).get_json()
    sign = api.post(f"/api/v1/workflows/templates/{tid}/nodes", {
        "node_type": "approval", "label": "Manager sign-off",
        "target": {"kind": "role", "id": approver_role.id},
    }, expect=201).get_json()
    end = api.post(f"/api/v1/workflows/templates/{tid}/nodes", {"node_type": "end"}, expect=201).get_json()
    api.post(f"/api/v1/workflows/templates/{tid}/connections",
             {"from_node_id": start["id"], "to_node_id": sign["id"]}, expect=201)
    api.post(f"/api/v1/workflows/templates/{tid}/connections",
             {"from_node_id": sign["id"], "to_node_id": end["id"], "condition": {"decision": "approved"}},
             expect=201)
    api.post(f"/api/v1/workflows/templates/{tid}/activate", expect=200)
    return {"id": tid, "start": start["id"], "sign": sign["id"], "end": end["id"]}


def start_and_pass_start_node(api, published):
    instance = api.post("/api/v1/workflows/instances", {
        "template_id": published["id"], "start_node_id": published["start"],
    }, expect=201).get_json()
    (start_step,) = instance["active_steps"]
    api.post(f"/api/v1/workflows/instances/{instance['id']}/advance", {"step_id": start_step["id"]}, expect=200)
    return instance


# ═════════════════════════════════════════════════════════════════════════
# TEMPLATES
# ═════════════════════════════════════════════════════════════════════════


class TestTemplates:
    def test_create_requires_name(self, api):
        res = api.post("/api/v1/workflows/templates", {})
        assert res.status_code == 400

    def test_create_requires_manage_permission(self, api, approver):
        res = api.post("/api/v1/workflows/templates", {"name": "x"}, as_user=approver)
        assert res.status_code == 403

    def test_get_template_with_graph(self, api, published):
        data = api.get(f"/api/v1/workflows/templates/{published['id']}").get_json()
        assert data["is_active"] is True
        assert len(data["nodes"]) == 3
        assert len(data["connections"]) == 2

    def test_list_active_only(self, api, published):
        api.post("/api/v1/workflows/templates", {"name": "Draft"}, expect=201)
        names = [t["name"] for t in api.get("/api/v1/workflows/templates?active=1").get_json()]
        assert names == ["Expense claim"]

    def test_update_and_delete(self, api):
        tid = api.post("/api/v1/workflows/templates", {"name": "Old"}, expect=201).get_json()["id"]
        res = api.put(f"/api/v1/workflows/templates/{tid}", {"name": "New", "description": "d"})
        assert res.status_code == 200
        assert res.get_json()["name"] == "New"

        res = api.delete(f"/api/v1/workflows/templates/{tid}")
        assert res.status_code == 200
        assert api.get(f"/api/v1/workflows/templates/{tid}").status_code == 404

    def test_activation_violations_are_422(self, api, make_role):
        nobody = make_role("ghost_team")
        tid = api.post("/api/v1/workflows/templates", {"name": "Broken"}, expect=201).get_json()["id"]
        api.post(f"/api/v1/workflows/templates/{tid}/nodes", {"node_type": "start"}, expect=201)
        api.post(f"/api/v1/workflows/templates/{tid}/nodes", {
            "node_type": "role", "target": {"kind": "role", "id": nobody.id},
        }, expect=201)

        res = api.post(f"/api/v1/workflows/templates/{tid}/activate")
        assert res.status_code == 422
        body = res.get_json()
        assert body["code"] == "ERR_VALIDATION_RULE"
        assert "ROLE_NO_USERS" in [v["code"] for v in body["details"]["violations"]]

    def test_validate_endpoint(self, api, published):
        data = api.get(f"/api/v1/workflows/templates/{published['id']}/validate").get_json()
        assert data["valid"] is True

    def test_cycle_connection_is_422(self, api, published):
        res = api.post(f"/api/v1/workflows/templates/{published['id']}/connections", {
            "from_node_id": published["end"], "to_node_id": published["start"],
        })
        assert res.status_code == 422


# ═════════════════════════════════════════════════════════════════════════
# INSTANCES
# ═════════════════════════════════════════════════════════════════════════


class TestInstances:
    def test_start_requires_fields(self, api):
        res = api.post("/api/v1/workflows/instances", {"template_id": 1})
        assert res.status_code == 400
        assert res.get_json()["details"] == {"start_node_id": "required"}

    def test_start_requires_execute_permission(self, api, published, approver):
        res = api.post("/api/v1/workflows/instances", {
            "template_id": published["id"], "start_node_id": published["start"],
        }, as_user=approver)
        assert res.status_code == 403

    def test_full_approval_cycle(self, api, published, approver):
        instance = start_and_pass_start_node(api, published)
        iid = instance["id"]

        inbox = api.get("/api/v1/workflows/my-approvals", as_user=approver).get_json()
        assert [i["node_label"] for i in inbox] == ["Manager sign-off"]

        res = api.post(f"/api/v1/workflows/instances/{iid}/advance", {
            "step_id": inbox[0]["step_id"], "decision": "approved", "notes": "fine",
        }, as_user=approver)
        assert res.status_code == 200
        body = res.get_json()
        assert body["instance"]["status"] == "completed"
        assert body["completed_step"]["decision"] == "approved"
        assert body["new_steps"] == []

        detail = api.get(f"/api/v1/workflows/instances/{iid}").get_json()
        assert detail["active_steps"] == []
        assert [n["label"] for n in detail["timeline"]] == ["Start", "Manager sign-off", "End"]

        history = api.get(f"/api/v1/workflows/instances/{iid}/history").get_json()
        assert history[0]["action"] == "started"
        assert history[-1]["action"] == "completed"

    def test_non_approver_gets_403(self, api, published, designer):
        instance = start_and_pass_start_node(api, published)
        detail = api.get(f"/api/v1/workflows/instances/{instance['id']}").get_json()
        (step,) = detail["active_steps"]
        res = api.post(f"/api/v1/workflows/instances/{instance['id']}/advance", {
            "step_id": step["id"], "decision": "approved",
        }, as_user=designer)
        assert res.status_code == 403
        assert res.get_json()["details"] == {"required": "skip_workflow_nodes"}

    def test_double_advance_is_409(self, api, published, approver):
        instance = start_and_pass_start_node(api, published)
        step = api.get("/api/v1/workflows/my-approvals", as_user=approver).get_json()[0]
        url = f"/api/v1/workflows/instances/{instance['id']}/advance"
        body = {"step_id": step["step_id"], "decision": "approved"}
        api.post(url, body, as_user=approver, expect=200)
        res = api.post(url, body, as_user=approver)
        assert res.status_code == 409
        assert res.get_json()["code"] == "ERR_CONFLICT_STATE"

    def test_missing_decision_is_422(self, api, published, approver):
        instance = start_and_pass_start_node(api, published)
        step = api.get("/api/v1/workflows/my-approvals", as_user=approver).get_json()[0]
        res = api.post(f"/api/v1/workflows/instances/{instance['id']}/advance",
                       {"step_id": step["step_id"]}, as_user=approver)
        assert res.status_code == 422
        assert res.get_json()["details"]["expected"] == ["approved"]

    def test_cancel(self, api, published, approver):
        instance = start_and_pass_start_node(api, published)
        res = api.post(f"/api/v1/workflows/instances/{instance['id']}/cancel", {"reason": "withdrawn"})
        assert res.status_code == 200
        assert res.get_json()["status"] == "cancelled"
        assert api.get("/api/v1/workflows/my-approvals", as_user=approver).get_json() == []

        res = api.post(f"/api/v1/workflows/instances/{instance['id']}/cancel")
        assert res.status_code == 409

    def test_unknown_instance_is_404(self, api):
        res = api.get("/api/v1/workflows/instances/999")
        assert res.status_code == 404

    def test_advance_requires_identity(self, client, published):
        res = client.post("/api/v1/workflows/instances/1/advance", json={"step_id": 1})
        assert res.status_code == 401


# ═════════════════════════════════════════════════════════════════════════
# PROJECT-SCOPED LISTING
# ═════════════════════════════════════════════════════════════════════════


class TestProjectInstances:
    @pytest.fixture()
    def project_setup(self, api, published, make_user, make_role, grant_role):
        owner = make_user("owner@opsgate.test")
        member = make_user("member@opsgate.test")
        stranger = make_user("stranger@opsgate.test")
        auditor = make_user("auditor@opsgate.test")

        project = Project(name="Rollout", created_by=owner.id)
        db.session.add(project)
        db.session.flush()
        db.session.add(ProjectAssignment(project_id=project.id, user_id=member.id))
        db.session.commit()

        contributor = make_role("contributor", [Permission.VIEW_PROJECTS])
        grant_role(member, contributor)
        grant_role(stranger, contributor)
        grant_role(auditor, make_role("auditor", [Permission.VIEW_ALL_PROJECTS]))

        instance = api.post("/api/v1/workflows/instances", {
            "template_id": published["id"], "start_node_id": published["start"], "project_id": project.id,
        }, expect=201).get_json()
        return {
            "project": project, "instance": instance,
            "member": member, "stranger": stranger, "auditor": auditor,
        }

    def test_linked_member_sees_instances(self, api, project_setup):
        url = f"/api/v1/workflows/projects/{project_setup['project'].id}/instances"
        res = api.get(url, as_user=project_setup["member"])
        assert res.status_code == 200
        assert [i["id"] for i in res.get_json()] == [project_setup["instance"]["id"]]

    def test_base_grant_without_link_is_403(self, api, project_setup):
        url = f"/api/v1/workflows/projects/{project_setup['project'].id}/instances"
        res = api.get(url, as_user=project_setup["stranger"])
        assert res.status_code == 403
        assert res.get_json()["required"] == "view_projects"

    def test_view_all_override_passes(self, api, project_setup):
        url = f"/api/v1/workflows/projects/{project_setup['project'].id}/instances"
        res = api.get(url, as_user=project_setup["auditor"])
        assert res.status_code == 200
