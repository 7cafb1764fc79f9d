"""HTTP API tests: routing, identity header and error mapping."""
from uuid import uuid4

import pytest
from fastapi.testclient import TestClient

from planner_core.api.main import app
from planner_core.database import get_db


@pytest.fixture
def client(db):
    def override_get_db():
        yield db

    app.dependency_overrides[get_db] = override_get_db
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


def _as(user):
    return {"X-User-Id": str(user.id)}


class TestHealth:

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    def test_root(self, client):
        assert client.get("/").json()["name"] == "Planner Core API"


class TestPlansApi:
    """Plan endpoints."""

    def test_create_plan_returns_owner_role(self, client, owner):
        response = client.post("/api/v1/plans/", json={"title": "Website"}, headers=_as(owner))

        assert response.status_code == 201
        body = response.json()
        assert body["title"] == "Website"
        assert body["role"] == "owner"
        assert body["owner_id"] == str(owner.id)

        tree = client.get(f"/api/v1/plans/{body['id']}/nodes/", headers=_as(owner)).json()
        assert len(tree) == 1
        assert tree[0]["node_type"] == "root"

    def test_create_requires_identity(self, client):
        response = client.post("/api/v1/plans/", json={"title": "Anonymous"})
        assert response.status_code == 401

    def test_malformed_identity(self, client):
        response = client.get("/api/v1/plans/", headers={"X-User-Id": "not-a-uuid"})
        assert response.status_code == 400

    def test_get_plan_reports_role(self, client, plan, editor):
        response = client.get(f"/api/v1/plans/{plan.id}", headers=_as(editor))
        assert response.status_code == 200
        assert response.json()["role"] == "editor"

    def test_private_plan_is_forbidden(self, client, plan, outsider):
        response = client.get(f"/api/v1/plans/{plan.id}", headers=_as(outsider))

        assert response.status_code == 403
        assert response.json()["detail"]["code"] == "forbidden"

    def test_missing_plan(self, client, owner):
        response = client.get(f"/api/v1/plans/{uuid4()}", headers=_as(owner))

        assert response.status_code == 404
        assert response.json()["detail"]["code"] == "not_found"

    def test_list_plans(self, client, plan, viewer):
        body = client.get("/api/v1/plans/", headers=_as(viewer)).json()

        assert body["total"] == 1
        assert body["items"][0]["id"] == str(plan.id)
        assert body["items"][0]["role"] == "viewer"

    def test_progress(self, client, plan, owner):
        body = client.get(f"/api/v1/plans/{plan.id}/progress", headers=_as(owner)).json()
        assert body["total"] == 1
        assert body["percent_complete"] == 0

    def test_public_plans_need_no_identity(self, client, plan, owner):
        client.post("/api/v1/plans/", json={"title": "Open roadmap", "visibility": "public"}, headers=_as(owner))

        response = client.get("/api/v1/plans/public")

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert [item["title"] for item in body["items"]] == ["Open roadmap"]

    def test_delete_plan(self, client, plan, owner, editor):
        assert client.delete(f"/api/v1/plans/{plan.id}", headers=_as(editor)).status_code == 403
        assert client.delete(f"/api/v1/plans/{plan.id}", headers=_as(owner)).status_code == 204
        assert client.get(f"/api/v1/plans/{plan.id}", headers=_as(owner)).status_code == 404


class TestNodesApi:
    """Node endpoints."""

    def test_create_and_read_tree(self, client, plan, root, editor):
        response = client.post(
            f"/api/v1/plans/{plan.id}/nodes/",
            json={"node_type": "phase", "title": "Design", "metadata": {"owner": "ux"}},
            headers=_as(editor),
        )
        assert response.status_code == 201
        node = response.json()
        assert node["parent_id"] == str(root.id)
        assert node["metadata"] == {"owner": "ux"}

        tree = client.get(f"/api/v1/plans/{plan.id}/nodes/", headers=_as(editor)).json()
        assert [child["title"] for child in tree[0]["children"]] == ["Design"]

    def test_viewer_cannot_create(self, client, plan, viewer):
        response = client.post(
            f"/api/v1/plans/{plan.id}/nodes/",
            json={"node_type": "task", "title": "Nope"},
            headers=_as(viewer),
        )
        assert response.status_code == 403

    def test_duplicate_sibling_is_conflict(self, client, plan, owner):
        url = f"/api/v1/plans/{plan.id}/nodes/"
        body = {"node_type": "task", "title": "Same"}

        assert client.post(url, json=body, headers=_as(owner)).status_code == 201
        response = client.post(url, json=body, headers=_as(owner))

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "conflict"

    def test_deleting_root_is_conflict(self, client, plan, root, owner):
        response = client.delete(f"/api/v1/plans/{plan.id}/nodes/{root.id}", headers=_as(owner))

        assert response.status_code == 409
        assert response.json()["detail"]["code"] == "invalid_state"

    def test_move_into_descendant_is_bad_request(self, client, plan, owner):
        headers = _as(owner)
        phase = client.post(
            f"/api/v1/plans/{plan.id}/nodes/", json={"node_type": "phase", "title": "P"}, headers=headers
        ).json()
        task = client.post(
            f"/api/v1/plans/{plan.id}/nodes/",
            json={"node_type": "task", "title": "T", "parent_id": phase["id"]},
            headers=headers,
        ).json()

        response = client.post(
            f"/api/v1/plans/{plan.id}/nodes/{phase['id']}/move",
            json={"parent_id": task["id"]},
            headers=headers,
        )
        assert response.status_code == 400
        assert response.json()["detail"]["code"] == "invalid_input"

    def test_status_and_ancestry(self, client, plan, root, owner):
        headers = _as(owner)
        node = client.post(
            f"/api/v1/plans/{plan.id}/nodes/", json={"node_type": "task", "title": "T"}, headers=headers
        ).json()

        updated = client.put(
            f"/api/v1/plans/{plan.id}/nodes/{node['id']}/status", json={"status": "completed"}, headers=headers
        ).json()
        assert updated["status"] == "completed"

        ancestry = client.get(f"/api/v1/plans/{plan.id}/nodes/{node['id']}/ancestry", headers=headers).json()
        assert [n["id"] for n in ancestry] == [str(root.id), node["id"]]


class TestDecisionsApi:
    """Decision request endpoints."""

    def _create(self, client, plan, user):
        return client.post(
            f"/api/v1/plans/{plan.id}/decisions/",
            json={
                "title": "Framework?",
                "context": "Pick a web framework",
                "options": [{"option": "FastAPI"}, {"label": "Django"}],
                "urgency": "blocking",
            },
            headers=_as(user),
        )

    def test_create_and_list(self, client, plan, editor, viewer):
        response = self._create(client, plan, editor)
        assert response.status_code == 201
        created = response.json()
        assert created["status"] == "pending"
        assert [o["label"] for o in created["options"]] == ["FastAPI", "Django"]

        body = client.get(f"/api/v1/plans/{plan.id}/decisions/?status=pending", headers=_as(viewer)).json()
        assert body["total"] == 1
        assert body["limit"] == 50

        count = client.get(f"/api/v1/plans/{plan.id}/decisions/pending-count", headers=_as(viewer)).json()
        assert count["pending"] == 1

    def test_resolve_twice_is_conflict(self, client, plan, owner, editor):
        decision_id = self._create(client, plan, editor).json()["id"]
        url = f"/api/v1/plans/{plan.id}/decisions/{decision_id}/resolve"

        first = client.post(url, json={"decision": "FastAPI", "rationale": "async"}, headers=_as(owner))
        assert first.status_code == 200
        assert first.json()["status"] == "decided"

        second = client.post(url, json={"decision": "Django"}, headers=_as(editor))
        assert second.status_code == 409
        assert second.json()["detail"]["code"] == "invalid_state"

        current = client.get(f"/api/v1/plans/{plan.id}/decisions/{decision_id}", headers=_as(owner)).json()
        assert current["decision"] == "FastAPI"

    def test_viewer_cannot_resolve(self, client, plan, editor, viewer):
        decision_id = self._create(client, plan, editor).json()["id"]

        response = client.post(
            f"/api/v1/plans/{plan.id}/decisions/{decision_id}/resolve",
            json={"decision": "Django"},
            headers=_as(viewer),
        )
        assert response.status_code == 403

    def test_cancel(self, client, plan, editor):
        decision_id = self._create(client, plan, editor).json()["id"]

        response = client.post(
            f"/api/v1/plans/{plan.id}/decisions/{decision_id}/cancel",
            json={"reason": "out of scope"},
            headers=_as(editor),
        )
        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["metadata"]["cancellation_reason"] == "out of scope"

    def test_unknown_decision(self, client, plan, owner):
        response = client.get(f"/api/v1/plans/{plan.id}/decisions/{uuid4()}", headers=_as(owner))
        assert response.status_code == 404


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
