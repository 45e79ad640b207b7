"""
Tests for task CRUD, lifecycle endpoints and the response envelope.
"""

import logging
from datetime import timedelta

from fastapi.testclient import TestClient

import config
from tests.conftest import API, create_task, future
from time_utils import utc_now

logger = logging.getLogger(__name__)


# ============== Create ==============


def test_create_task_with_defaults(client: TestClient):
    response = client.post(f"{API}/tasks", json={"title": "Write report"})

    assert response.status_code == 201, f"Expected 201, got {response.status_code}: {response.json()}"
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "Task created successfully"
    assert "timestamp" in body

    task = body["data"]
    assert task["id"] > 0
    assert task["title"] == "Write report"
    assert task["status"] == "pending"
    assert task["priority"] == "medium"
    assert task["completed_at"] is None
    assert task["deleted_at"] is None
    assert task["is_overdue"] is False
    logger.info("✓ Task created with default status and priority")


def test_create_task_with_all_fields(client: TestClient):
    due = future(3)
    task = create_task(
        client,
        title="  Prepare release  ",
        description="Cut the branch",
        priority="urgent",
        assigned_to=4,
        created_by=2,
        due_date=due.isoformat(),
    )

    assert task["title"] == "Prepare release", "Title should be stripped"
    assert task["description"] == "Cut the branch"
    assert task["priority"] == "urgent"
    assert task["assigned_to"] == 4
    assert task["created_by"] == 2
    assert task["due_date"] is not None


def test_create_completed_task_sets_completed_at(client: TestClient):
    task = create_task(client, title="Already done", status="completed")
    assert task["status"] == "completed"
    assert task["completed_at"] is not None


def test_created_by_defaults_to_acting_user(client: TestClient):
    task = create_task(client, headers={"X-User-ID": "12"})
    assert task["created_by"] == 12


def test_create_task_rejects_blank_title(client: TestClient):
    response = client.post(f"{API}/tasks", json={"title": "   "})

    assert response.status_code == 422, response.json()
    body = response.json()
    assert body["success"] is False
    assert body["code"] == "VALIDATION_FAILED"
    assert "title" in body["details"]["failed_fields"]


def test_create_task_requires_title(client: TestClient):
    response = client.post(f"{API}/tasks", json={"description": "No title"})
    assert response.status_code == 422
    assert "title" in response.json()["details"]["errors"]


def test_create_task_rejects_long_fields(client: TestClient):
    response = client.post(f"{API}/tasks", json={"title": "x" * 256})
    assert response.status_code == 422

    response = client.post(f"{API}/tasks", json={"title": "ok", "description": "d" * 1001})
    assert response.status_code == 422


def test_create_task_rejects_past_due_date(client: TestClient):
    past = (utc_now() - timedelta(days=1)).isoformat()
    response = client.post(f"{API}/tasks", json={"title": "Late", "due_date": past})

    assert response.status_code == 422
    assert "due_date" in response.json()["details"]["failed_fields"]


def test_create_task_rejects_due_date_beyond_ten_years(client: TestClient):
    far = (utc_now() + timedelta(days=365 * 11)).isoformat()
    response = client.post(f"{API}/tasks", json={"title": "Someday", "due_date": far})
    assert response.status_code == 422


def test_create_task_rejects_non_positive_user_ids(client: TestClient):
    response = client.post(f"{API}/tasks", json={"title": "Bad", "assigned_to": 0})
    assert response.status_code == 422

    response = client.post(f"{API}/tasks", json={"title": "Bad", "created_by": -3})
    assert response.status_code == 422


def test_user_ids_beyond_integer_column_range_are_rejected(client: TestClient):
    too_big = 10**20

    response = client.post(f"{API}/tasks", json={"title": "Big", "assigned_to": too_big})
    assert response.status_code == 422
    assert response.json()["details"]["failed_fields"] == ["assigned_to"]

    response = client.post(f"{API}/tasks", json={"title": "Big", "created_by": config.MAX_ID + 1})
    assert response.status_code == 422

    response = client.post(f"{API}/tasks", json={"title": "Big"}, headers={"X-User-ID": str(too_big)})
    assert response.status_code == 400

    task = create_task(client, assigned_to=config.MAX_ID)
    assert task["assigned_to"] == config.MAX_ID


def test_create_task_rejects_unknown_enum_values(client: TestClient):
    response = client.post(f"{API}/tasks", json={"title": "Bad", "status": "archived"})
    assert response.status_code == 422

    response = client.post(f"{API}/tasks", json={"title": "Bad", "priority": "critical"})
    assert response.status_code == 422


# ============== Read ==============


def test_get_task(client: TestClient):
    created = create_task(client, title="Find me")

    response = client.get(f"{API}/tasks/{created['id']}")

    assert response.status_code == 200
    assert response.json()["data"]["title"] == "Find me"


def test_get_missing_task_returns_404(client: TestClient):
    response = client.get(f"{API}/tasks/9999")

    assert response.status_code == 404
    body = response.json()
    assert body["code"] == "TASK_NOT_FOUND"
    assert body["details"]["task_id"] == 9999


def test_malformed_task_id_is_a_bad_request(client: TestClient):
    response = client.get(f"{API}/tasks/abc")
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_PARAMETERS"

    response = client.get(f"{API}/tasks/0")
    assert response.status_code == 400

    response = client.get(f"{API}/tasks/100000000000000000000")
    assert response.status_code == 400
    assert client.post(f"{API}/tasks/100000000000000000000/restore").status_code == 400
    assert client.get(f"{API}/tasks", params={"assigned_to": 10**20}).status_code == 400


def test_unknown_route_uses_error_envelope(client: TestClient):
    response = client.get(f"{API}/projects")
    assert response.status_code == 404
    assert response.json()["code"] == "ROUTE_NOT_FOUND"


def test_invalid_user_header_is_a_bad_request(client: TestClient):
    response = client.post(f"{API}/tasks", json={"title": "x"}, headers={"X-User-ID": "abc"})
    assert response.status_code == 400


# ============== Lifecycle ==============


def test_end_to_end_lifecycle(client: TestClient):
    """Create, complete, trash and restore a task."""
    task = create_task(client, title="Write report")
    assert task["status"] == "pending"
    task_id = task["id"]

    response = client.patch(f"{API}/tasks/{task_id}", json={"status": "completed"})
    assert response.status_code == 200, response.json()
    assert response.json()["data"]["completed_at"] is not None

    response = client.delete(f"{API}/tasks/{task_id}")
    assert response.status_code == 200
    assert client.get(f"{API}/tasks/{task_id}").status_code == 404
    trashed_ids = [t["id"] for t in client.get(f"{API}/tasks/trashed").json()["data"]]
    assert task_id in trashed_ids

    response = client.post(f"{API}/tasks/{task_id}/restore")
    assert response.status_code == 200
    restored = client.get(f"{API}/tasks/{task_id}").json()["data"]
    assert restored["status"] == "completed"
    assert restored["completed_at"] is not None
    logger.info("✓ End-to-end lifecycle works")


def test_start_complete_flow(client: TestClient):
    task = create_task(client)

    response = client.post(f"{API}/tasks/{task['id']}/start")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "in_progress"
    assert response.json()["meta"]["changed_fields"] == ["status"]

    response = client.post(f"{API}/tasks/{task['id']}/complete")
    assert response.status_code == 200
    data = response.json()["data"]
    assert data["status"] == "completed"
    assert data["completed_at"] is not None
    assert response.json()["meta"]["changed_fields"] == ["status", "completed_at"]


def test_completed_task_cannot_be_restarted(client: TestClient):
    task = create_task(client)
    client.post(f"{API}/tasks/{task['id']}/complete")

    response = client.post(f"{API}/tasks/{task['id']}/start")

    assert response.status_code == 422
    body = response.json()
    assert body["code"] == "INVALID_STATUS_TRANSITION"
    assert body["details"]["from"] == "completed"
    assert body["details"]["to"] == "in_progress"

    response = client.patch(f"{API}/tasks/{task['id']}", json={"status": "pending"})
    assert response.status_code == 422
    logger.info("✓ Completed is terminal")


def test_cancel_and_reopen(client: TestClient):
    task = create_task(client)

    response = client.post(f"{API}/tasks/{task['id']}/cancel")
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "cancelled"

    response = client.patch(f"{API}/tasks/{task['id']}", json={"status": "pending"})
    assert response.status_code == 200
    assert response.json()["data"]["status"] == "pending"


def test_completing_twice_reports_no_changes(client: TestClient):
    task = create_task(client)
    client.post(f"{API}/tasks/{task['id']}/complete")

    response = client.post(f"{API}/tasks/{task['id']}/complete")

    assert response.status_code == 200
    assert response.json()["message"] == "No changes detected"


def test_status_actions_on_missing_task(client: TestClient):
    for action in ("start", "complete", "cancel"):
        response = client.post(f"{API}/tasks/4242/{action}")
        assert response.status_code == 404, f"{action}: {response.json()}"


def test_assign_and_unassign(client: TestClient):
    task = create_task(client)

    response = client.post(f"{API}/tasks/{task['id']}/assign", json={"assigned_to": 5})
    assert response.status_code == 200
    assert response.json()["data"]["assigned_to"] == 5
    assert response.json()["meta"]["changed_fields"] == ["assigned_to"]

    response = client.delete(f"{API}/tasks/{task['id']}/assign")
    assert response.status_code == 200
    assert response.json()["data"]["assigned_to"] is None


def test_assign_requires_positive_user(client: TestClient):
    task = create_task(client)
    response = client.post(f"{API}/tasks/{task['id']}/assign", json={"assigned_to": 0})
    assert response.status_code == 422


# ============== Stats ==============


def test_task_stats(client: TestClient):
    create_task(client, title="a")
    create_task(client, title="b", status="in_progress")
    create_task(client, title="c", status="completed")
    trashed = create_task(client, title="d")
    client.delete(f"{API}/tasks/{trashed['id']}")

    response = client.get(f"{API}/tasks/stats")

    assert response.status_code == 200
    stats = response.json()["data"]
    assert stats["total"] == 3
    assert stats["pending"] == 1
    assert stats["in_progress"] == 1
    assert stats["completed"] == 1
    assert stats["cancelled"] == 0
    assert stats["overdue"] == 0
    assert stats["trashed"] == 1
