import pytest
import yaml
from fastapi.testclient import TestClient

from app.core.security import create_operator_token
from app.main import app
from engine.scheduler.types import PipelineStatus
from engine.services.run_submitter import RunSubmitter
from engine.services.runtime import RunRegistry, get_runtime
from tests.helpers import PY, wait_until


@pytest.fixture
def definition(tmp_path):
    workdir = tmp_path / "src"
    workdir.mkdir()
    data = {
        "name": "convoy",
        "defaults": {"timeout": 30, "working_dir": str(workdir)},
        "stages": [
            {"name": "build", "tasks": [{"name": "compile", "command": [PY, "-c", "print('built')"]}]},
            {
                "name": "deploy",
                "needs": ["build"],
                "approval": True,
                "tasks": [{"name": "ship", "command": [PY, "-c", "print('shipped')"]}],
            },
        ],
    }
    path = tmp_path / "convoy.yml"
    path.write_text(yaml.safe_dump(data))
    return str(path)


@pytest.fixture
def registry(settings):
    registry = RunRegistry(RunSubmitter(settings=settings))
    app.dependency_overrides[get_runtime] = lambda: registry
    yield registry
    app.dependency_overrides.clear()
    registry.cancel_all()


@pytest.fixture
def client(registry):
    return TestClient(app)


@pytest.fixture
def headers():
    return {"Authorization": f"Bearer {create_operator_token('alice')}"}


def start(client, headers, definition):
    body = {"definition_path": definition, "version": "v1.0.0", "branch": "main", "revision": "abc"}
    response = client.post("/api/v1/runs/", json=body, headers=headers)
    assert response.status_code == 202
    return response.json()["run_id"]


def run_status(client, headers, run_id):
    return client.get(f"/api/v1/runs/{run_id}", headers=headers).json()["status"]


def test_requires_a_token(client):
    assert client.get("/api/v1/runs/").status_code == 401
    assert client.get("/api/v1/runs/", headers={"Authorization": "Bearer nope"}).status_code == 401


def test_whoami(client, headers):
    response = client.get("/api/v1/auth/me", headers=headers)
    assert response.json() == {"name": "alice"}


def test_start_approve_and_finish(client, headers, definition):
    run_id = start(client, headers, definition)

    assert wait_until(lambda: run_status(client, headers, run_id) == "AWAITING_APPROVAL")
    approvals = client.get(f"/api/v1/runs/{run_id}/approvals", headers=headers).json()
    assert [a["stage"] for a in approvals] == ["deploy"]

    response = client.post(f"/api/v1/runs/{run_id}/approvals/deploy", json={"approve": True}, headers=headers)
    assert response.status_code == 200
    assert response.json()["actor"] == "alice"

    assert wait_until(lambda: run_status(client, headers, run_id) == "SUCCEEDED", timeout=20)

    again = client.post(f"/api/v1/runs/{run_id}/approvals/deploy", json={"approve": False}, headers=headers)
    assert again.status_code == 409

    history = client.get("/api/v1/runs/", headers=headers).json()
    assert [r["run_id"] for r in history] == [run_id]


def test_detached_run_is_resumed_on_approval(client, headers, registry, definition):
    pipeline = registry.submitter.submit(definition, version="v1.0.0", branch="main", revision="abc", run_id="run-detached")
    try:
        pipeline.run(detach_on_approval=True)
    finally:
        pipeline.coordinator.shutdown()
    assert registry.get("run-detached") is None

    response = client.post("/api/v1/runs/run-detached/approvals/deploy", json={"approve": True}, headers=headers)
    assert response.status_code == 200

    assert wait_until(lambda: run_status(client, headers, "run-detached") == "SUCCEEDED", timeout=20)
    snapshot = registry.store.load("run-detached")
    assert snapshot.gates[0].actor == "alice"


def test_cancel_detached_run(client, headers, registry, definition):
    pipeline = registry.submitter.submit(definition, version="v1.0.0", branch="main", revision="abc", run_id="run-idle")
    try:
        pipeline.run(detach_on_approval=True)
    finally:
        pipeline.coordinator.shutdown()

    response = client.post("/api/v1/runs/run-idle/cancel", headers=headers)
    assert response.status_code == 200
    assert response.json()["status"] == "CANCELLED"

    assert client.post("/api/v1/runs/run-idle/cancel", headers=headers).status_code == 409


def test_cancel_refuses_a_run_executing_elsewhere(client, headers, registry, definition):
    pipeline = registry.submitter.submit(definition, version="v1.0.0", branch="main", revision="abc", run_id="run-busy")
    try:
        pipeline.run(detach_on_approval=True)
    finally:
        pipeline.coordinator.shutdown()
    snapshot = registry.store.load("run-busy")
    snapshot.status = PipelineStatus.RUNNING
    registry.store.save(snapshot)

    assert client.post("/api/v1/runs/run-busy/cancel", headers=headers).status_code == 409
    assert registry.store.load("run-busy").status == "RUNNING"


def test_unknown_run_and_gate(client, headers, definition):
    assert client.get("/api/v1/runs/run-nope", headers=headers).status_code == 404

    run_id = start(client, headers, definition)
    assert wait_until(lambda: run_status(client, headers, run_id) == "AWAITING_APPROVAL")
    response = client.post(f"/api/v1/runs/{run_id}/approvals/build", json={"approve": True}, headers=headers)
    assert response.status_code == 404


def test_bad_definition_is_rejected(client, headers, tmp_path):
    body = {"definition_path": str(tmp_path / "missing.yml"), "version": "v1", "branch": "main", "revision": "abc"}
    assert client.post("/api/v1/runs/", json=body, headers=headers).status_code == 400
