"""
Tests for bulk create, update and delete.

Each element is processed on its own: failures are reported next to the
successes and never roll back the rest of the batch.
"""

import logging

from fastapi.testclient import TestClient

from repositories.task_repository import TaskRepository
from tests.conftest import API, create_task

logger = logging.getLogger(__name__)


# ============== Bulk create ==============


def test_bulk_create_reports_partial_success(client: TestClient):
    payload = {"tasks": [
        {"title": "one"},
        {"title": "two", "priority": "high"},
        {"title": "three", "status": "completed"},
        {"title": "   "},
    ]}

    response = client.post(f"{API}/tasks/bulk", json=payload)

    assert response.status_code == 200, response.json()
    result = response.json()["data"]
    assert result["success"] is False
    assert result["processed_count"] == 3
    assert result["failed_count"] == 1
    assert len(result["task_ids"]) == 3
    assert result["errors"][0]["index"] == 3
    assert result["errors"][0]["error_code"] == "VALIDATION_FAILED"
    assert "title" in result["errors"][0]["error"]

    listed = client.get(f"{API}/tasks").json()["meta"]["pagination"]["total"]
    assert listed == 3, "Valid items must be persisted despite the bad one"
    logger.info("✓ Bulk create isolates per-item failures")


def test_bulk_create_all_valid(client: TestClient):
    response = client.post(f"{API}/tasks/bulk", json={"tasks": [{"title": "a"}, {"title": "b"}]})

    result = response.json()["data"]
    assert result["success"] is True
    assert result["processed_count"] == 2
    assert result["errors"] == []


def test_bulk_create_empty_list(client: TestClient):
    response = client.post(f"{API}/tasks/bulk", json={"tasks": []})
    assert response.status_code == 200
    assert response.json()["data"]["processed_count"] == 0


def test_bulk_create_rejects_oversized_batch(client: TestClient):
    response = client.post(f"{API}/tasks/bulk", json={"tasks": [{"title": "x"}] * 501})

    assert response.status_code == 400
    assert response.json()["details"]["max_items"] == 500
    assert client.get(f"{API}/tasks").json()["meta"]["pagination"]["total"] == 0


# ============== Bulk update ==============


def test_bulk_update_with_missing_task(client: TestClient):
    a = create_task(client, title="a")
    b = create_task(client, title="b")

    response = client.put(
        f"{API}/tasks/bulk",
        json={"task_ids": [a["id"], b["id"], 9999], "updates": {"priority": "urgent"}},
    )

    assert response.status_code == 200
    result = response.json()["data"]
    assert result["processed_count"] == 2
    assert result["failed_count"] == 1
    assert result["task_ids"] == [a["id"], b["id"]]
    assert result["errors"][0]["task_id"] == 9999
    assert result["errors"][0]["error_code"] == "TASK_NOT_FOUND"

    assert client.get(f"{API}/tasks/{a['id']}").json()["data"]["priority"] == "urgent"


def test_bulk_update_checks_transitions_per_task(client: TestClient):
    done = create_task(client, title="done", status="completed")
    fresh = create_task(client, title="fresh")

    response = client.put(
        f"{API}/tasks/bulk",
        json={"task_ids": [done["id"], fresh["id"]], "updates": {"status": "in_progress"}},
    )

    result = response.json()["data"]
    assert result["task_ids"] == [fresh["id"]]
    assert result["errors"][0]["task_id"] == done["id"]
    assert result["errors"][0]["error_code"] == "INVALID_STATUS_TRANSITION"


def test_bulk_update_deduplicates_ids(client: TestClient):
    task = create_task(client)
    response = client.put(
        f"{API}/tasks/bulk",
        json={"task_ids": [task["id"], task["id"]], "updates": {"title": "renamed"}},
    )
    assert response.json()["data"]["processed_count"] == 1


def test_bulk_update_requires_fields(client: TestClient):
    task = create_task(client)
    response = client.put(f"{API}/tasks/bulk", json={"task_ids": [task["id"]], "updates": {}})
    assert response.status_code == 400


def test_bulk_update_validates_payload(client: TestClient):
    task = create_task(client)
    response = client.put(f"{API}/tasks/bulk", json={"task_ids": [task["id"]], "updates": {"priority": "extreme"}})
    assert response.status_code == 422


# ============== Bulk delete ==============


def test_bulk_soft_delete(client: TestClient):
    ids = [create_task(client, title=f"t{i}")["id"] for i in range(3)]

    response = client.request("DELETE", f"{API}/tasks/bulk", json={"task_ids": ids[:2] + [8888]})

    assert response.status_code == 200
    result = response.json()["data"]
    assert result["task_ids"] == ids[:2]
    assert result["errors"][0]["task_id"] == 8888

    trashed = [t["id"] for t in client.get(f"{API}/tasks/trashed").json()["data"]]
    assert sorted(trashed) == sorted(ids[:2])
    assert client.get(f"{API}/tasks/{ids[2]}").status_code == 200


def test_bulk_force_delete(client: TestClient):
    ids = [create_task(client, title=f"t{i}")["id"] for i in range(2)]
    client.delete(f"{API}/tasks/{ids[0]}")

    response = client.request("DELETE", f"{API}/tasks/bulk", json={"task_ids": ids, "force": True})

    result = response.json()["data"]
    assert result["success"] is True
    assert result["processed_count"] == 2
    assert client.get(f"{API}/tasks/trashed").json()["data"] == []
    assert client.get(f"{API}/tasks").json()["data"] == []
    logger.info("✓ Bulk force delete removes active and trashed tasks")


# ============== Out-of-range values and unexpected failures ==============


def test_bulk_create_isolates_out_of_range_user_id(client: TestClient):
    payload = {"tasks": [{"title": "a"}, {"title": "b", "assigned_to": 10**20}, {"title": "c"}]}

    response = client.post(f"{API}/tasks/bulk", json=payload)

    assert response.status_code == 200, response.json()
    result = response.json()["data"]
    assert result["processed_count"] == 2
    assert result["errors"][0]["index"] == 1
    assert result["errors"][0]["error_code"] == "VALIDATION_FAILED"
    assert [t["title"] for t in client.get(f"{API}/tasks", params={"sort_by": "id", "sort_order": "asc"}).json()["data"]] == ["a", "c"]


def test_bulk_ids_beyond_integer_range_are_rejected(client: TestClient):
    response = client.request("DELETE", f"{API}/tasks/bulk", json={"task_ids": [1, 10**20]})
    assert response.status_code == 422


def test_bulk_create_records_unexpected_item_failure(client: TestClient, monkeypatch):
    original_create = TaskRepository.create

    def create(self, data):
        if data["title"] == "explode":
            raise RuntimeError("driver blew up")
        return original_create(self, data)

    monkeypatch.setattr(TaskRepository, "create", create)
    payload = {"tasks": [{"title": "before"}, {"title": "explode"}, {"title": "after"}]}

    response = client.post(f"{API}/tasks/bulk", json=payload)

    assert response.status_code == 200
    result = response.json()["data"]
    assert result["success"] is False
    assert result["processed_count"] == 2
    assert result["errors"] == [{
        "index": 1,
        "task_id": None,
        "error": "Unexpected error while processing this item",
        "error_code": "OPERATION_FAILED",
    }]
    logger.info("✓ Unexpected per-item error is reported, batch continues")


def test_bulk_update_records_unexpected_item_failure(client: TestClient, monkeypatch):
    ids = [create_task(client, title=f"t{i}")["id"] for i in range(3)]
    original_update = TaskRepository.update

    def update(self, task_id, data):
        if task_id == ids[1]:
            raise RuntimeError("driver blew up")
        return original_update(self, task_id, data)

    monkeypatch.setattr(TaskRepository, "update", update)

    response = client.put(f"{API}/tasks/bulk", json={"task_ids": ids, "updates": {"priority": "urgent"}})

    result = response.json()["data"]
    assert result["task_ids"] == [ids[0], ids[2]]
    assert result["errors"][0]["task_id"] == ids[1]
    assert result["errors"][0]["error_code"] == "OPERATION_FAILED"
    assert client.get(f"{API}/tasks/{ids[2]}").json()["data"]["priority"] == "urgent"
