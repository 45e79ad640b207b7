"""
Tests for soft delete, restore and force delete.

Soft-deleted tasks disappear from normal reads and show up in the trash;
restore reverses that exactly; force delete removes a task for good.
"""

import logging

from fastapi.testclient import TestClient

from tests.conftest import API, create_task

logger = logging.getLogger(__name__)


def _trashed_ids(client: TestClient):
    return [t["id"] for t in client.get(f"{API}/tasks/trashed").json()["data"]]


def _active_ids(client: TestClient):
    return [t["id"] for t in client.get(f"{API}/tasks").json()["data"]]


# ============== Soft delete ==============


def test_soft_delete_moves_task_to_trash(client: TestClient):
    task = create_task(client, title="Trash me")

    response = client.delete(f"{API}/tasks/{task['id']}")

    assert response.status_code == 200, response.json()
    data = response.json()["data"]
    assert data["id"] == task["id"]
    assert data["deleted_at"] is not None
    assert data["restore"]["url"].endswith(f"/tasks/{task['id']}/restore")
    assert data["force_delete"]["url"].endswith(f"/tasks/{task['id']}/force")

    assert client.get(f"{API}/tasks/{task['id']}").status_code == 404
    assert task["id"] not in _active_ids(client)
    assert task["id"] in _trashed_ids(client)
    logger.info("✓ Soft-deleted task hidden from reads and listed in trash")


def test_trashed_listing_is_paginated(client: TestClient):
    for i in range(3):
        task = create_task(client, title=f"t{i}")
        client.delete(f"{API}/tasks/{task['id']}")

    response = client.get(f"{API}/tasks/trashed", params={"limit": 2})

    assert response.status_code == 200
    body = response.json()
    assert len(body["data"]) == 2
    assert body["meta"]["pagination"]["total"] == 3
    assert body["meta"]["pagination"]["total_pages"] == 2
    assert all(t["deleted_at"] is not None for t in body["data"])


def test_deleting_trashed_task_returns_404(client: TestClient):
    task = create_task(client)
    client.delete(f"{API}/tasks/{task['id']}")

    response = client.delete(f"{API}/tasks/{task['id']}")
    assert response.status_code == 404


def test_deleting_missing_task_returns_404(client: TestClient):
    response = client.delete(f"{API}/tasks/777")
    assert response.status_code == 404
    assert response.json()["code"] == "TASK_NOT_FOUND"


# ============== Restore ==============


def test_restore_reverses_soft_delete(client: TestClient):
    task = create_task(client, title="Comeback", status="in_progress", priority="high")
    client.delete(f"{API}/tasks/{task['id']}")

    response = client.post(f"{API}/tasks/{task['id']}/restore")

    assert response.status_code == 200, response.json()
    restored = response.json()["data"]
    assert restored["deleted_at"] is None
    assert restored["status"] == "in_progress"
    assert restored["priority"] == "high"
    assert client.get(f"{API}/tasks/{task['id']}").status_code == 200
    assert task["id"] in _active_ids(client)
    assert task["id"] not in _trashed_ids(client)
    logger.info("✓ Restore reverses both visibilities")


def test_restore_active_task_is_a_conflict(client: TestClient):
    task = create_task(client)

    response = client.post(f"{API}/tasks/{task['id']}/restore")

    assert response.status_code == 409
    body = response.json()
    assert body["code"] == "RESTORE_NOT_APPLICABLE"
    assert body["details"]["reason"] == "already_restored"
    assert body["details"]["operation"] == "restore"
    assert body["details"]["suggestions"], "Conflict should carry suggestions"


def test_restore_missing_task_is_a_conflict(client: TestClient):
    response = client.post(f"{API}/tasks/555/restore")

    assert response.status_code == 409
    assert response.json()["details"]["reason"] == "not_found"


def test_restore_twice_is_a_conflict(client: TestClient):
    task = create_task(client)
    client.delete(f"{API}/tasks/{task['id']}")
    assert client.post(f"{API}/tasks/{task['id']}/restore").status_code == 200

    response = client.post(f"{API}/tasks/{task['id']}/restore")
    assert response.status_code == 409
    assert response.json()["details"]["reason"] == "already_restored"


# ============== Force delete ==============


def test_force_delete_active_task(client: TestClient):
    task = create_task(client)

    response = client.delete(f"{API}/tasks/{task['id']}/force")

    assert response.status_code == 200, response.json()
    assert response.json()["data"] == {"id": task["id"], "permanently_deleted": True}
    assert client.get(f"{API}/tasks/{task['id']}").status_code == 404
    assert task["id"] not in _trashed_ids(client)


def test_force_delete_trashed_task(client: TestClient):
    task = create_task(client)
    client.delete(f"{API}/tasks/{task['id']}")

    response = client.delete(f"{API}/tasks/{task['id']}/force")

    assert response.status_code == 200
    assert task["id"] not in _trashed_ids(client)
    assert task["id"] not in _active_ids(client)


def test_second_force_delete_returns_404(client: TestClient):
    task = create_task(client)
    assert client.delete(f"{API}/tasks/{task['id']}/force").status_code == 200

    response = client.delete(f"{API}/tasks/{task['id']}/force")

    assert response.status_code == 404
    assert response.json()["code"] == "TASK_NOT_FOUND"


def test_force_deleted_task_cannot_be_restored(client: TestClient):
    task = create_task(client)
    client.delete(f"{API}/tasks/{task['id']}")
    client.delete(f"{API}/tasks/{task['id']}/force")

    response = client.post(f"{API}/tasks/{task['id']}/restore")
    assert response.status_code == 409
    assert response.json()["details"]["reason"] == "not_found"
