"""Tests for the HTTP API.

Tests cover:
- Task submission and polling through the approval gate
- Caller identity and ownership enforcement
- Error mapping (status codes, error names, Retry-After)
- Ad hoc validation, audit and health endpoints
"""

from __future__ import annotations

import time

import pytest
from fastapi.testclient import TestClient

from autopilot.api.server import create_app
from autopilot.core.errors import RateLimitExceeded
from autopilot.core.models import AuditLogEntry, Task, TaskStatus

from conftest import HEALTH_CONTENT, HEALTH_SUBTASK

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}

SETTLED = {"awaiting_approval", "completed", "failed"}


@pytest.fixture
def client(orchestrator, scripted_ai):
    scripted_ai.plan(HEALTH_SUBTASK).file("src/health.py", HEALTH_CONTENT)
    with TestClient(create_app(orchestrator)) as client:
        yield client


def wait_for(client: TestClient, task_id: str, timeout: float = 15.0) -> dict:
    """Poll a task until the pipeline settles."""
    deadline = time.monotonic() + timeout
    while True:
        task = client.get(f"/tasks/{task_id}", headers=ALICE).json()
        if task["status"] in SETTLED or time.monotonic() > deadline:
            return task
        time.sleep(0.05)


def submit(client: TestClient, **body) -> dict:
    response = client.post("/tasks", json={"prompt": "Add a health check endpoint", **body}, headers=ALICE)
    assert response.status_code == 202
    return wait_for(client, response.json()["taskId"])


# =============================================================================
# Task Lifecycle
# =============================================================================


class TestTaskEndpoints:
    """Tests for submission and the approval gate over HTTP."""

    def test_submit_returns_accepted(self, client):
        response = client.post("/tasks", json={"prompt": "Add a health check endpoint"}, headers=ALICE)
        assert response.status_code == 202
        body = response.json()
        assert body["taskId"].startswith("task-")
        assert body["status"] == "pending"
        assert wait_for(client, body["taskId"])["status"] == "awaiting_approval"

    def test_submit_then_approve_then_rollback(self, client, temp_repo):
        task = submit(client)
        assert task["status"] == "awaiting_approval"
        assert task["validation_report"]["safety"] is True
        assert task["generated_files"][0]["path"] == "src/health.py"
        assert task["generated_files"][0]["diff"].startswith("--- /dev/null")

        approved = client.post(f"/tasks/{task['id']}/approve", headers=ALICE)
        assert approved.status_code == 200
        assert approved.json()["status"] == "completed"
        assert (temp_repo / "src" / "health.py").exists()

        rolled_back = client.post(f"/tasks/{task['id']}/rollback", headers=ALICE)
        assert rolled_back.json()["rolled_back"] is True
        assert not (temp_repo / "src" / "health.py").exists()

        again = client.post(f"/tasks/{task['id']}/rollback", headers=ALICE)
        assert again.status_code == 409
        assert again.json()["detail"]["error"] == "RollbackUnavailable"

    def test_approve_from_wrong_state_is_conflict(self, client, test_db):
        test_db.create_task(Task(id="task-p", owner="alice", prompt="x"))
        response = client.post("/tasks/task-p/approve", headers=ALICE)
        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "ApprovalStateError"
        assert test_db.get_task("task-p").status == TaskStatus.PENDING

    def test_reject_with_reason(self, client):
        task = submit(client)
        response = client.post(f"/tasks/{task['id']}/reject", json={"reason": "too broad"}, headers=ALICE)
        assert response.json()["status"] == "failed"
        assert response.json()["error"] == "Rejected: too broad"

    def test_reject_without_body(self, client):
        task = submit(client)
        response = client.post(f"/tasks/{task['id']}/reject", headers=ALICE)
        assert response.json()["error"] == "Rejected"

    def test_cancel(self, client):
        task = submit(client)
        response = client.post(f"/tasks/{task['id']}/cancel", headers=ALICE)
        assert response.json()["error"] == "Cancelled"

    def test_list_and_events(self, client):
        task = submit(client)
        listed = client.get("/tasks", headers=ALICE).json()
        assert [t["id"] for t in listed] == [task["id"]]
        assert client.get("/tasks", headers=BOB).json() == []

        events = client.get(f"/tasks/{task['id']}/events", headers=ALICE).json()
        assert events[0]["event_type"] == "task_created"
        assert events[-1]["to_status"] == "awaiting_approval"

    def test_auto_approve_alias(self, client, temp_repo):
        task = submit(client, autoApprove=True)
        assert task["status"] == "completed"
        assert (temp_repo / "src" / "health.py").exists()


# =============================================================================
# Identity and Errors
# =============================================================================


class TestIdentityAndErrors:
    """Tests for caller identity and error mapping."""

    def test_missing_user_header(self, client):
        response = client.get("/tasks")
        assert response.status_code == 400
        assert response.json()["detail"] == "X-User-Id header is required"

    def test_blank_user_header(self, client):
        assert client.get("/tasks", headers={"X-User-Id": "  "}).status_code == 400

    def test_other_users_task_is_forbidden(self, client):
        task = submit(client)
        response = client.post(f"/tasks/{task['id']}/approve", headers=BOB)
        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "TaskOwnershipError"
        assert client.get(f"/tasks/{task['id']}", headers=ALICE).json()["status"] == "awaiting_approval"

    def test_unknown_task(self, client):
        response = client.get("/tasks/task-missing", headers=ALICE)
        assert response.status_code == 404
        assert response.json()["detail"]["error"] == "TaskNotFound"

    @pytest.mark.parametrize("body", [{}, {"prompt": 5}, {"prompt": "x", "autoApprove": "maybe"}])
    def test_malformed_body(self, client, body):
        assert client.post("/tasks", json=body, headers=ALICE).status_code == 400

    def test_empty_prompt(self, client):
        response = client.post("/tasks", json={"prompt": "  "}, headers=ALICE)
        assert response.status_code == 400
        assert response.json()["detail"]["error"] == "ValidationError"

    def test_rate_limit_sets_retry_after(self, client, orchestrator, mocker):
        mocker.patch.object(
            orchestrator, "validate_files", side_effect=RateLimitExceeded("Rate limit exceeded", retry_after=12.4)
        )
        response = client.post("/validate", json={"files": ["src/main.py"]})
        assert response.status_code == 429
        assert response.headers["Retry-After"] == "12"

    def test_unexpected_error_is_500(self, orchestrator, mocker):
        mocker.patch.object(orchestrator, "list_tasks", side_effect=RuntimeError("boom"))
        with TestClient(create_app(orchestrator), raise_server_exceptions=False) as client:
            response = client.get("/tasks", headers=ALICE)
        assert response.status_code == 500
        assert response.json() == {"detail": "Internal server error"}


# =============================================================================
# Validation, Audit, Health
# =============================================================================


class TestUtilityEndpoints:
    """Tests for /validate, /audit and /health."""

    def test_validate_clean_file(self, client):
        response = client.post("/validate", json={"files": ["src/main.py"]})
        assert response.status_code == 200
        assert response.json()["safety"] is True

    def test_validate_broken_file(self, client, temp_repo):
        (temp_repo / "src" / "bad.py").write_text("BROKEN = 1\n")
        report = client.post("/validate", json={"files": ["src/bad.py"]}).json()
        assert report["safety"] is False
        assert report["diagnostics"]["total_errors"] == 1

    def test_validate_requires_files(self, client):
        assert client.post("/validate", json={"files": []}).status_code == 400

    def test_validate_rejects_traversal(self, client):
        response = client.post("/validate", json={"files": ["../outside.py"]})
        assert response.status_code == 403
        assert response.json()["detail"]["error"] == "PathSecurityError"

    def test_audit_limit_and_filter(self, client, test_db):
        for i in range(3):
            test_db.record_audit(AuditLogEntry(operation="readFile", details=f"Read {i}"))
        test_db.record_audit(AuditLogEntry(operation="writeFile", details="Wrote"))

        assert len(client.get("/audit", params={"limit": 2}).json()) == 2
        writes = client.get("/audit", params={"operation": "writeFile"}).json()
        assert [e["details"] for e in writes] == ["Wrote"]
        assert client.get("/audit", params={"limit": 0}).status_code == 400

    def test_health(self, client, tools):
        body = client.get("/health").json()
        assert body["status"] == "ok"
        assert body["version"] == "0.1.0"
        assert body["remaining_operations"] == tools.get_remaining_operations()
