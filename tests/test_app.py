"""HTTP surface tests — routed through in-memory fakes."""

import json

import pytest
from fastapi.testclient import TestClient

import app as api
from features.orchestration import OrchestrationManager
from features.verification import VerificationOrchestrator
from tests.fakes import FakeBackend, FakeSpawner, claude_result, claude_text
from utils.agent_adapter import AgentDescriptor


@pytest.fixture
def backend():
    fake = FakeBackend()
    fake.add("bd-1", "Login form", labels=["commit:abc"], priority=1)
    fake.add("bd-2", "Signup flow")
    fake.edges.append(("bd-2", "bd-1"))
    return fake


@pytest.fixture
def client(monkeypatch, backend):
    agent = lambda: AgentDescriptor(command="claude")
    manager = OrchestrationManager(
        backend_factory=lambda: backend, spawner=FakeSpawner(), agent_factory=agent,
        drain_delay=0, cleanup_delay=60,
    )
    verifier = FakeSpawner({"lines": [claude_text("VERIFICATION_RESULT:pass"), claude_result()], "returncode": 0})
    orchestrator = VerificationOrchestrator(
        backend_factory=lambda: backend, spawner=verifier, agent_factory=agent, enabled=True,
    )
    monkeypatch.setattr(api, "get_backend", lambda: backend)
    monkeypatch.setattr(api, "get_manager", lambda: manager)
    monkeypatch.setattr(api, "get_orchestrator", lambda: orchestrator)
    with TestClient(api.app) as test_client:
        yield test_client


def test_health(client):
    body = client.get("/health").json()
    assert body["status"] == "ok"
    assert body["service"] == "beat-pilot"


def test_list_and_search_beats(client, repo):
    listed = client.get("/beats", params={"repo_path": repo}).json()
    assert listed["count"] == 2

    found = client.get("/beats", params={"repo_path": repo, "q": "signup"}).json()
    assert [b["id"] for b in found["beats"]] == ["bd-2"]


def test_get_beat_includes_dependencies(client, repo):
    body = client.get("/beats/bd-1", params={"repo_path": repo}).json()
    assert body["title"] == "Login form"
    assert [d["source"] for d in body["dependencies"]] == ["bd-2"]


def test_backend_errors_map_to_status_codes(client, repo):
    response = client.get("/beats/bd-404", params={"repo_path": repo})
    assert response.status_code == 404
    assert response.json()["detail"]["code"] == "NOT_FOUND"


def test_missing_repository_is_rejected(client, tmp_path):
    response = client.get("/beats", params={"repo_path": str(tmp_path / "nope")})
    assert response.status_code == 400


def test_workflows(client, repo):
    ids = [w["id"] for w in client.get("/workflows", params={"repo_path": repo}).json()["workflows"]]
    assert "autopilot" in ids


def test_unknown_session_routes(client):
    assert client.get("/orchestration/sessions/orch-missing").status_code == 404
    assert client.get("/orchestration/sessions/orch-missing/events").status_code == 404
    assert client.post("/orchestration/sessions/orch-missing/abort").status_code == 404
    assert client.post("/orchestration/sessions/orch-missing/apply", json={}).status_code == 404


def test_restage_stream_and_apply(client, backend, repo):
    restaged = client.post("/orchestration/restage", json={
        "repo_path": repo,
        "plan": {"waves": [{"wave_index": 1, "name": "Auth", "beats": [{"id": "bd-1"}]}]},
    })
    assert restaged.status_code == 200
    session = restaged.json()
    assert session["status"] == "completed"
    assert [s["id"] for s in client.get("/orchestration/sessions").json()["sessions"]] == [session["id"]]

    stream = client.get(f"/orchestration/sessions/{session['id']}/events")
    events = [json.loads(line[len("data: "):]) for line in stream.text.splitlines() if line.startswith("data: ")]
    assert events[-1]["type"] == "exit"

    applied = client.post(f"/orchestration/sessions/{session['id']}/apply", json={
        "repo_path": repo, "wave_names": {"1": "Login"},
    }).json()
    assert applied["applied"][0]["wave_title"].endswith(": Login")
    assert backend.beats["bd-1"].parent == applied["applied"][0]["wave_id"]


def test_restage_without_eligible_beats(client, repo):
    response = client.post("/orchestration/restage", json={
        "repo_path": repo, "plan": {"waves": [{"beats": [{"id": "gone-1"}]}]},
    })
    assert response.status_code == 400


def test_agent_complete_runs_verification(client, backend, repo):
    response = client.post("/verification/agent-complete", json={
        "bead_ids": ["bd-1"], "action": "take", "repo_path": repo,
    })
    assert response.status_code == 200
    assert response.json()["events"][-1]["type"] == "closed"
    assert backend.beats["bd-1"].status == "closed"
    assert client.get("/verification/events", params={"limit": 1}).json()["events"][0]["type"] == "closed"


def test_cache_clear(client, monkeypatch):
    cleared = []
    monkeypatch.setattr(api, "clear_repo_cache", cleared.append)
    assert client.post("/backends/cache/clear", json={}).json() == {"cleared": "all"}
    assert cleared == [None]
