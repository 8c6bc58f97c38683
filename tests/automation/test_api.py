"""HTTP API tests against the app with the service swapped for the test one."""

import httpx
import pytest

from core.container import container
from main import create_app

from builders import WORKSPACE, definition, delay_node, email_node, trigger_node


@pytest.fixture
async def client(service, scheduler):
    container.automation_service.override(service)
    container.scheduler.override(scheduler)
    app = create_app(lifespan_handler=None)
    transport = httpx.ASGITransport(app=app)
    try:
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as c:
            yield c
    finally:
        container.automation_service.reset_override()
        container.scheduler.reset_override()


def welcome():
    return definition([
        trigger_node("welcome"),
        email_node("welcome", next_node_id="wait"),
        delay_node("wait", 1, unit="hours"),
    ])


async def create(client, data=None):
    response = await client.post(f"/api/workspaces/{WORKSPACE}/automations", json=data or welcome())
    assert response.status_code == 201, response.text
    return response.json()


async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["scheduler_running"] is False


async def test_create_get_list(client):
    created = await create(client)
    assert created["status"] == "draft"
    assert set(created["nodes"]) == {"start", "welcome", "wait"}

    fetched = await client.get(f"/api/automations/{created['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["name"] == "Welcome"

    listed = await client.get(f"/api/workspaces/{WORKSPACE}/automations")
    assert [a["id"] for a in listed.json()] == [created["id"]]
    assert listed.json()[0]["stats"]["enrolled"] == 0


async def test_invalid_definitions_are_422(client):
    bad_root = welcome()
    bad_root["root_node_id"] = "welcome"
    response = await client.post(f"/api/workspaces/{WORKSPACE}/automations", json=bad_root)
    assert response.status_code == 422
    assert response.json()["error"] == "GraphError"

    bad_node = definition([trigger_node("x"), {"id": "x", "type": "sms", "config": {}}])
    response = await client.post(f"/api/workspaces/{WORKSPACE}/automations", json=bad_node)
    assert response.status_code == 422
    assert response.json()["error"] == "ValidationError"


async def test_unknown_ids_are_404(client):
    assert (await client.get("/api/automations/missing")).status_code == 404
    assert (await client.post("/api/automations/missing/activate")).status_code == 404
    assert (await client.get("/api/runs/missing")).status_code == 404


async def test_pause_draft_is_409(client):
    created = await create(client)
    response = await client.post(f"/api/automations/{created['id']}/pause")
    assert response.status_code == 409
    assert response.json()["error"] == "InvalidTransition"


async def test_event_enrolls_and_run_history(client, sender):
    created = await create(client)
    activated = await client.post(f"/api/automations/{created['id']}/activate")
    assert activated.json()["status"] == "live"

    response = await client.post("/api/events", json={
        "workspace_id": WORKSPACE,
        "contact_email": "alice@example.com",
        "kind": "contact.created",
        "contact": {"first_name": "Alice"},
    })
    assert response.status_code == 202
    body = response.json()
    assert body["event"]["kind"] == "contact.created"
    run = body["runs"][0]
    assert run["status"] == "active"
    assert run["current_node_id"] is None
    assert len(sender.sent) == 1

    history = (await client.get(f"/api/runs/{run['id']}")).json()
    assert [e["action"] for e in history["executions"]] == ["entered", "processed", "processed", "delayed"]

    runs = (await client.get(f"/api/automations/{created['id']}/runs")).json()
    assert [r["id"] for r in runs] == [run["id"]]
    contact_runs = (await client.get(f"/api/workspaces/{WORKSPACE}/contacts/alice@example.com/runs")).json()
    assert [r["id"] for r in contact_runs] == [run["id"]]

    timeline = (await client.get(
        f"/api/workspaces/{WORKSPACE}/contacts/alice@example.com/timeline",
        params={"kind": "automation.start"},
    )).json()
    assert len(timeline) == 1

    deleted = await client.delete(f"/api/automations/{created['id']}")
    assert deleted.json() == {"id": created["id"], "deleted": True, "runs_exited": 1}


async def test_recompute_stats(client):
    await create(client)
    response = await client.post("/api/automations/stats/recompute")
    assert response.json() == {"automations": 1}


async def test_bad_event_is_rejected(client):
    response = await client.post("/api/events", json={"workspace_id": WORKSPACE, "kind": "contact.created"})
    assert response.status_code == 422
