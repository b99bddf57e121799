from types import SimpleNamespace

import pytest
from conftest import make_task
from fastapi.testclient import TestClient

from ingest_orchestrator.core.exceptions import StorageError, TransientWorkerError, WorkerRejectedError
from ingest_orchestrator.dependencies import get_task_orchestrator
from ingest_orchestrator.domain.models import TaskStatus
from ingest_orchestrator.main import app

HEADERS = {"X-User-ID": "owner-1"}


@pytest.fixture
def client(orchestrator):
    # no context manager: the lifespan would connect to real backends
    app.dependency_overrides[get_task_orchestrator] = lambda: orchestrator
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def stored_file(object_store):
    object_store.files["owner-1/col-1/file.pdf"] = b"%PDF-1.4"
    return "owner-1/col-1/file.pdf"


def test_submit_returns_accepted_task(client, stored_file, worker):
    response = client.post(
        "/api/v1/tasks",
        json={"collection_id": "col-1", "file_path": stored_file, "options": {"convert_do_ocr": True, "secret": 1}},
        headers=HEADERS,
    )

    assert response.status_code == 202
    body = response.json()
    assert body["status"] == "pending"
    assert body["worker_job_id"] == "job-1"
    assert body["filename"] == "file.pdf"
    assert body["options"] == {"convert_do_ocr": True}
    assert "X-Request-ID" in response.headers


def test_requests_without_owner_are_unauthorized(client):
    response = client.get("/api/v1/tasks", params={"collection_id": "col-1"})
    assert response.status_code == 401


def test_submit_missing_file_is_404(client):
    response = client.post(
        "/api/v1/tasks",
        json={"collection_id": "col-1", "file_path": "owner-1/col-1/nope.pdf"},
        headers=HEADERS,
    )
    assert response.status_code == 404


@pytest.mark.parametrize("error, expected_status", [
    (WorkerRejectedError("Worker rejected submit with HTTP 415", status_code=415), 422),
    (TransientWorkerError("Worker submit timed out"), 503),
])
def test_submit_worker_errors_are_mapped(client, stored_file, worker, task_store, error, expected_status):
    worker.submit_error = error
    response = client.post(
        "/api/v1/tasks",
        json={"collection_id": "col-1", "file_path": stored_file},
        headers=HEADERS,
    )
    assert response.status_code == expected_status
    [task] = task_store.tasks.values()
    assert task.status == TaskStatus.FAILED


def test_list_only_returns_callers_tasks(client, task_store):
    mine = task_store.put(make_task())
    task_store.put(make_task().model_copy(update={"owner_id": "owner-2"}))

    response = client.get("/api/v1/tasks", params={"collection_id": "col-1"}, headers=HEADERS)

    assert response.status_code == 200
    body = response.json()
    assert body["total"] == 1
    assert body["tasks"][0]["task_id"] == mine.task_id


def test_get_and_delete_task(client, task_store):
    task = task_store.put(make_task())

    response = client.get(f"/api/v1/tasks/{task.task_id}", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["task_id"] == task.task_id

    assert client.get(f"/api/v1/tasks/{task.task_id}", headers={"X-User-ID": "intruder"}).status_code == 404
    assert client.delete(f"/api/v1/tasks/{task.task_id}", headers=HEADERS).status_code == 204
    assert client.get(f"/api/v1/tasks/{task.task_id}", headers=HEADERS).status_code == 404


def test_list_storage_failure_is_500(client, task_store, monkeypatch):
    async def broken(collection_id):
        raise StorageError("database is gone")

    monkeypatch.setattr(task_store, "list_by_collection", broken)
    response = client.get("/api/v1/tasks", params={"collection_id": "col-1"}, headers=HEADERS)
    assert response.status_code == 500


def test_manual_reconcile_reports_outcomes(client, task_store, worker):
    task_store.put(make_task(job_id="job-1"))
    worker.script("job-1", "running")

    response = client.post("/api/v1/tasks/reconcile", headers=HEADERS)

    assert response.status_code == 202
    assert response.json() == {"outcomes": {"advanced": 1}}


def test_admin_actions_report_success(client, worker):
    response = client.post("/api/v1/tasks/admin/cancel-all", headers=HEADERS)
    assert response.json()["success"] is True

    worker.admin_error = TransientWorkerError("worker down")
    response = client.post("/api/v1/tasks/admin/clear-results", headers=HEADERS)
    assert response.status_code == 200
    assert response.json()["success"] is False


def test_conversion_settings_endpoints(client):
    assert client.get("/api/v1/settings/conversion", headers=HEADERS).json() == {"options": {}}

    response = client.put(
        "/api/v1/settings/conversion",
        json={"options": {"chunking_max_tokens": 256}},
        headers=HEADERS,
    )
    assert response.status_code == 200
    assert client.get("/api/v1/settings/conversion", headers=HEADERS).json() == {"options": {"chunking_max_tokens": 256}}


@pytest.fixture
def health_client(monkeypatch):
    state = {"db": True, "worker": True}

    async def db_check():
        return state["db"]

    async def worker_check():
        return state["worker"]

    monkeypatch.setattr("ingest_orchestrator.main.check_db_connection", db_check)
    app.state.container = SimpleNamespace(
        worker=SimpleNamespace(health_check=worker_check),
        scheduler=SimpleNamespace(is_running=True),
    )
    yield TestClient(app), state
    del app.state.container


def test_health_reports_dependency_state(health_client):
    client, state = health_client

    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["dependencies"]["scheduler"] == "running"

    state["worker"] = False
    assert client.get("/health").json()["status"] == "degraded"

    state["db"] = False
    response = client.get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


def test_health_before_startup_is_503():
    assert TestClient(app).get("/health").status_code == 503
