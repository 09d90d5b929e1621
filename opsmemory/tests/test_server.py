"""Tests for the FastAPI surface (HTTP endpoints and the observe WebSocket)."""

import json

import pytest
from fastapi.testclient import TestClient

from opsmemory.common.config import ObserverConfig, OpsMemoryConfig, StoreConfig
from opsmemory.observer import server
from opsmemory.observer.document_store import DocumentStore

from conftest import FakeLLM

MEETING = "m-100"

ANALYSIS = (
    "ACTION: Clicked the Leads tab | app=Salesforce\n"
    "ACTION: Pressed the Convert button | app=Salesforce\n"
    "QUESTION: [approval] Does a manager approve large deals?"
)
PROCEDURE = json.dumps({"goal": "Convert a lead", "mainFlow": ["Open Leads", "Press Convert"]})


@pytest.fixture
def llm():
    return FakeLLM(vision=[ANALYSIS], text=[PROCEDURE, "## Roles Involved\n- SDR", PROCEDURE])


@pytest.fixture
def client(llm, clock):
    cfg = OpsMemoryConfig(
        observer=ObserverConfig(templates_dir="", deferred_synthesis=False),
        store=StoreConfig(path=""),
    )
    server.init_components(cfg, llm=llm, store=DocumentStore(), clock=clock)
    yield TestClient(server.app)
    server.engine = None
    server.config = None


def _post_event(client, body):
    response = client.post(f"/meetings/{MEETING}/events", json=body)
    assert response.status_code == 200
    return response.json()["replies"]


def _seed_document(client):
    _post_event(client, {"kind": "control", "command": "start", "payload": "Lead intake"})
    _post_event(client, {"kind": "capture", "payload": "iVBORw0KGgo" * 20})


class TestHealth:
    def test_health(self, client):
        body = client.get("/health").json()
        assert body["status"] == "healthy"
        assert body["initialized"] is True
        assert body["llm_available"] is True

    def test_stats(self, client):
        _seed_document(client)
        stats = client.get("/stats").json()
        assert stats["store"]["documents"] == 2
        assert stats["store"]["pending_clarifications"] == 1

    def test_uninitialized_engine(self):
        server.engine = None
        assert TestClient(server.app).get(f"/meetings/{MEETING}/documents/procedure").status_code == 503


class TestEvents:
    def test_ping(self, client):
        assert _post_event(client, {"kind": "control", "command": "ping"}) == [
            {"kind": "status", "content": "pong"}
        ]

    def test_capture_creates_documents(self, client):
        _post_event(client, {"kind": "control", "command": "start", "payload": "Lead intake"})
        replies = _post_event(client, {"kind": "capture", "payload": "iVBORw0KGgo" * 20})
        assert replies[0] == {"kind": "status", "content": "analyzed", "observationCount": 2}

        doc = client.get(f"/meetings/{MEETING}/documents/procedure").json()
        assert doc["title"] == "Procedure: Lead intake"
        assert doc["version"] == 1
        assert doc["sections"]["goal"] == "Convert a lead"

        observations = client.get(f"/meetings/{MEETING}/observations").json()
        assert observations["count"] == 2

    def test_invalid_event_rejected(self, client):
        response = client.post(f"/meetings/{MEETING}/events", json={"kind": "dance"})
        assert response.status_code == 422


class TestDocuments:
    def test_missing_document_404(self, client):
        assert client.get(f"/meetings/{MEETING}/documents/procedure").status_code == 404

    def test_unknown_kind_404(self, client):
        assert client.get(f"/meetings/{MEETING}/documents/essay").status_code == 404

    def test_versions_and_rollback(self, client):
        _seed_document(client)
        analyzed = client.post(f"/meetings/{MEETING}/documents/procedure/analyze").json()
        assert analyzed["version"] == 2

        versions = client.get(f"/meetings/{MEETING}/documents/procedure/versions").json()
        assert [v["version"] for v in versions["versions"]] == [2, 1]

        rolled = client.post(f"/meetings/{MEETING}/documents/procedure/rollback", json={"version": 1}).json()
        assert rolled["version"] == 1
        assert rolled["latest_version"] == 2

        assert client.get(f"/meetings/{MEETING}/documents/procedure/versions/9").status_code == 404

    def test_status(self, client):
        _seed_document(client)
        response = client.post(f"/meetings/{MEETING}/documents/role/status", json={"status": "reviewed"})
        assert response.json()["status"] == "reviewed"


class TestWorkflow:
    def test_advance_to_instruct_forces_version(self, client):
        _seed_document(client)
        assert client.post(f"/meetings/{MEETING}/session/advance").json()["phase"] == "structure"
        body = client.post(f"/meetings/{MEETING}/session/advance").json()
        assert body["phase"] == "instruct"
        assert body["document_version"] == 2

    def test_complete_without_document_conflicts(self, client):
        _post_event(client, {"kind": "control", "command": "start"})
        assert client.post(f"/meetings/{MEETING}/session/complete").status_code == 409

    def test_pause_and_complete(self, client):
        _seed_document(client)
        assert client.post(f"/meetings/{MEETING}/session/pause").json()["status"] == "paused"
        assert _post_event(client, {"kind": "capture", "payload": "other"}) == [
            {"kind": "status", "content": "paused"}
        ]
        assert client.post(f"/meetings/{MEETING}/session/complete").json()["status"] == "completed"
        assert client.get(f"/meetings/{MEETING}/documents/procedure").json()["status"] == "approved"

    def test_unknown_action(self, client):
        _post_event(client, {"kind": "control", "command": "start"})
        assert client.post(f"/meetings/{MEETING}/session/explode").status_code == 404

    def test_session_missing(self, client):
        assert client.get(f"/meetings/{MEETING}/session").status_code == 404


class TestClarifications:
    def test_answer_then_conflict(self, client):
        _seed_document(client)
        items = client.get(f"/meetings/{MEETING}/clarifications", params={"status": "pending"}).json()["items"]
        assert len(items) == 1
        clarification_id = items[0]["id"]

        answered = client.post(f"/clarifications/{clarification_id}/answer", json={"answer": "Above 50k"}).json()
        assert answered["status"] == "answered"
        assert client.post(f"/clarifications/{clarification_id}/skip").status_code == 409

    def test_unknown_clarification(self, client):
        assert client.post("/clarifications/clr_nope/skip").status_code == 404


class TestDelete:
    def test_cascade(self, client):
        _seed_document(client)
        body = client.delete(f"/meetings/{MEETING}").json()
        assert body["removed"]["documents"] == 2
        assert client.get(f"/meetings/{MEETING}/documents/procedure").status_code == 404


class TestWebSocket:
    def test_ping_pong(self, client):
        with client.websocket_connect(f"/ws/observe?meetingId={MEETING}") as ws:
            ws.send_text(json.dumps({"kind": "control", "command": "ping"}))
            assert ws.receive_json() == {"kind": "status", "content": "pong"}
            assert server.engine.connections.count(MEETING) == 1
        assert server.engine.connections.count(MEETING) == 0

    def test_invalid_message(self, client):
        with client.websocket_connect(f"/ws/observe?meetingId={MEETING}") as ws:
            ws.send_text("not json")
            assert ws.receive_json()["kind"] == "error"

    def test_meeting_id_required(self, client):
        with client.websocket_connect("/ws/observe") as ws:
            assert ws.receive_json() == {"kind": "error", "content": "meetingId is required"}
