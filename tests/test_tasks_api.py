from __future__ import annotations

import base64
from collections.abc import Generator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from sqlmodel import Session, SQLModel, create_engine, select

from app import main as app_main
from app.domain.models import AuditLog
from app.infra import audit, db, events, redis_state


class FakeRedis:
    def __init__(self) -> None:
        self._lists: dict[str, list[str]] = {}

    def lpush(self, key: str, *values: str) -> int:
        items = self._lists.setdefault(key, [])
        for value in values:
            items.insert(0, value)
        return len(items)

    def ltrim(self, key: str, start: int, end: int) -> bool:
        items = self._lists.get(key, [])
        self._lists[key] = items[start:] if end == -1 else items[start : end + 1]
        return True

    def lrange(self, key: str, start: int, end: int) -> list[str]:
        items = self._lists.get(key, [])
        return items[start:] if end == -1 else items[start : end + 1]

    def ping(self) -> bool:
        return True


@pytest.fixture()
def tasks_client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> Generator[TestClient, None, None]:
    db_path = tmp_path / "tasks_test.db"
    test_engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    SQLModel.metadata.create_all(test_engine)
    fake_redis = FakeRedis()

    monkeypatch.setattr(db, "engine", test_engine)
    monkeypatch.setattr(audit, "engine", test_engine)
    monkeypatch.setattr(events, "engine", test_engine)
    monkeypatch.setattr(redis_state, "get_redis", lambda: fake_redis)
    monkeypatch.setenv("FILE_STORAGE_BACKEND", "local")
    monkeypatch.setenv("FILE_STORAGE_ROOT", str(tmp_path / "files"))

    client = TestClient(app_main.app)
    yield client
    client.close()


def _auth_header(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


def _login(client: TestClient, username: str, password: str) -> str:
    response = client.post("/api/identity/dev-login", json={"username": username, "password": password})
    assert response.status_code == 200
    return response.json()["access_token"]


def _bootstrap_admin(client: TestClient) -> str:
    response = client.post(
        "/api/identity/bootstrap-admin",
        json={"username": "admin", "password": "admin-pass"},
    )
    assert response.status_code == 201
    return _login(client, "admin", "admin-pass")


def _create_employee(client: TestClient, admin_token: str, username: str) -> tuple[str, str]:
    response = client.post(
        "/api/identity/users",
        json={"username": username, "password": f"{username}-pass", "role": "employee"},
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 201
    return response.json()["id"], _login(client, username, f"{username}-pass")


def _create_task(client: TestClient, token: str, assignee_id: str, **extra: object) -> dict:
    response = client.post(
        "/api/tasks",
        json={"name": "landing page copy", "assigned_to": [assignee_id], **extra},
        headers=_auth_header(token),
    )
    assert response.status_code == 201
    return response.json()


def _latest_audit(action: str) -> AuditLog:
    with Session(db.get_engine(), expire_on_commit=False) as session:
        rows = list(session.exec(select(AuditLog).where(AuditLog.action == action)).all())
    assert rows
    return sorted(rows, key=lambda item: item.ts)[-1]


def test_submit_then_approve_flow(tasks_client: TestClient) -> None:
    admin_token = _bootstrap_admin(tasks_client)
    employee_id, employee_token = _create_employee(tasks_client, admin_token, "erin")
    task = _create_task(tasks_client, admin_token, employee_id, task_rate=15.5)
    assert task["status"] == "backlog"
    assert task["approval_status"] is None
    task_id = task["id"]

    employee_view = tasks_client.get(f"/api/tasks/{task_id}", headers=_auth_header(employee_token))
    assert employee_view.status_code == 200
    assert employee_view.json()["available_transitions"] == ["in_progress"]

    start_resp = tasks_client.post(f"/api/tasks/{task_id}/start", headers=_auth_header(employee_token))
    assert start_resp.status_code == 200

    submit_resp = tasks_client.post(
        f"/api/tasks/{task_id}/submit",
        json={"comment": "copy is final"},
        headers=_auth_header(employee_token),
    )
    assert submit_resp.status_code == 200
    assert submit_resp.json()["approval_status"] == "pending"
    assert submit_resp.json()["employee_comment"] == "copy is final"

    admin_view = tasks_client.get(f"/api/tasks/{task_id}", headers=_auth_header(admin_token))
    assert admin_view.json()["available_transitions"] == ["done", "revision"]

    approve_resp = tasks_client.post(
        f"/api/tasks/{task_id}/approve",
        json={"comment": "great work"},
        headers=_auth_header(admin_token),
    )
    assert approve_resp.status_code == 200
    body = approve_resp.json()
    assert body["status"] == "done"
    assert body["approval_status"] == "approved"
    assert body["available_transitions"] == []

    again_resp = tasks_client.post(
        f"/api/tasks/{task_id}/transition",
        json={"target_status": "revision", "comment": "one more thing"},
        headers=_auth_header(admin_token),
    )
    assert again_resp.status_code == 409
    assert again_resp.json()["detail"]["code"] == "invalid_transition"
    assert again_resp.json()["detail"]["reason"] == "illegal_transition"

    earnings_resp = tasks_client.get("/api/earnings", headers=_auth_header(employee_token))
    assert earnings_resp.status_code == 200
    assert [(item["task_id"], item["amount"]) for item in earnings_resp.json()] == [(task_id, 15.5)]

    approve_audit = _latest_audit("task.approve")
    assert approve_audit.status_code == 200
    assert approve_audit.actor_role == "admin"
    assert approve_audit.resource == f"task:{task_id}"

    rejected_audit = _latest_audit("task.transition")
    assert rejected_audit.status_code == 409
    assert rejected_audit.detail["result"]["outcome"] == "conflict"


def test_revision_flow_with_feedback(tasks_client: TestClient) -> None:
    admin_token = _bootstrap_admin(tasks_client)
    employee_id, employee_token = _create_employee(tasks_client, admin_token, "erin")
    task_id = _create_task(tasks_client, admin_token, employee_id)["id"]
    tasks_client.post(f"/api/tasks/{task_id}/start", headers=_auth_header(employee_token))
    tasks_client.post(f"/api/tasks/{task_id}/submit", json={}, headers=_auth_header(employee_token))

    missing_resp = tasks_client.post(
        f"/api/tasks/{task_id}/revision",
        json={"comment": ""},
        headers=_auth_header(admin_token),
    )
    assert missing_resp.status_code == 422
    assert missing_resp.json()["detail"]["code"] == "missing_required_comment"

    revision_resp = tasks_client.post(
        f"/api/tasks/{task_id}/revision",
        json={
            "comment": "shorten the intro",
            "feedback_files": [
                {
                    "file_name": "markup.txt",
                    "content_type": "text/plain",
                    "content_base64": base64.b64encode(b"cut paragraph two").decode(),
                }
            ],
        },
        headers=_auth_header(admin_token),
    )
    assert revision_resp.status_code == 200
    body = revision_resp.json()
    assert body["status"] == "revision"
    assert body["approval_status"] == "rejected"
    assert body["review_comment"] == "shorten the intro"
    assert [(item["attachment_type"], item["file_name"]) for item in body["attachments"]] == [
        ("feedback", "markup.txt")
    ]

    employee_view = tasks_client.get(f"/api/tasks/{task_id}", headers=_auth_header(employee_token)).json()
    assert [item["file_name"] for item in employee_view["attachments"]] == ["markup.txt"]
    assert employee_view["attachments"][0]["can_delete"] is False

    resume_resp = tasks_client.post(f"/api/tasks/{task_id}/resume", headers=_auth_header(employee_token))
    assert resume_resp.status_code == 200
    assert resume_resp.json()["status"] == "in_progress"

    inbox_resp = tasks_client.get("/api/notifications", headers=_auth_header(employee_token))
    assert inbox_resp.status_code == 200
    assert [item["kind"] for item in inbox_resp.json()] == ["task_revision_requested"]


def test_invalid_feedback_encoding_is_rejected(tasks_client: TestClient) -> None:
    admin_token = _bootstrap_admin(tasks_client)
    employee_id, employee_token = _create_employee(tasks_client, admin_token, "erin")
    task_id = _create_task(tasks_client, admin_token, employee_id)["id"]
    tasks_client.post(f"/api/tasks/{task_id}/start", headers=_auth_header(employee_token))
    tasks_client.post(f"/api/tasks/{task_id}/submit", json={}, headers=_auth_header(employee_token))

    response = tasks_client.post(
        f"/api/tasks/{task_id}/approve",
        json={"feedback_files": [{"file_name": "x.txt", "content_base64": "***"}]},
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "validation_error"
    status_resp = tasks_client.get(f"/api/tasks/{task_id}", headers=_auth_header(admin_token))
    assert status_resp.json()["status"] == "completed"


def test_admin_drag_signals_role_not_allowed(tasks_client: TestClient) -> None:
    admin_token = _bootstrap_admin(tasks_client)
    employee_id, employee_token = _create_employee(tasks_client, admin_token, "erin")
    task_id = _create_task(tasks_client, admin_token, employee_id)["id"]

    for _ in range(2):
        response = tasks_client.post(
            f"/api/tasks/{task_id}/transition",
            json={"target_status": "in_progress"},
            headers=_auth_header(admin_token),
        )
        assert response.status_code == 409
        assert response.json()["detail"]["reason"] == "role_not_allowed"

    employee_resp = tasks_client.post(
        f"/api/tasks/{task_id}/transition",
        json={"target_status": "in_progress"},
        headers=_auth_header(employee_token),
    )
    assert employee_resp.status_code == 200
    assert employee_resp.json()["status"] == "in_progress"


def test_employee_cannot_review_own_work(tasks_client: TestClient) -> None:
    admin_token = _bootstrap_admin(tasks_client)
    employee_id, employee_token = _create_employee(tasks_client, admin_token, "erin")
    task_id = _create_task(tasks_client, admin_token, employee_id)["id"]
    tasks_client.post(f"/api/tasks/{task_id}/start", headers=_auth_header(employee_token))
    tasks_client.post(f"/api/tasks/{task_id}/submit", json={}, headers=_auth_header(employee_token))

    response = tasks_client.post(
        f"/api/tasks/{task_id}/approve",
        json={},
        headers=_auth_header(employee_token),
    )
    assert response.status_code == 409
    assert response.json()["detail"]["reason"] == "role_not_allowed"


def test_task_visibility_and_admin_only_edits(tasks_client: TestClient) -> None:
    admin_token = _bootstrap_admin(tasks_client)
    erin_id, erin_token = _create_employee(tasks_client, admin_token, "erin")
    _omar_id, omar_token = _create_employee(tasks_client, admin_token, "omar")
    task_id = _create_task(tasks_client, admin_token, erin_id)["id"]

    omar_list = tasks_client.get("/api/tasks", headers=_auth_header(omar_token))
    assert omar_list.status_code == 200
    assert omar_list.json() == []
    assert tasks_client.get(f"/api/tasks/{task_id}", headers=_auth_header(omar_token)).status_code == 404

    erin_patch = tasks_client.patch(
        f"/api/tasks/{task_id}",
        json={"name": "renamed"},
        headers=_auth_header(erin_token),
    )
    assert erin_patch.status_code == 403
    assert erin_patch.json()["detail"]["code"] == "permission_denied"

    admin_patch = tasks_client.patch(
        f"/api/tasks/{task_id}",
        json={"name": "renamed", "priority": "high"},
        headers=_auth_header(admin_token),
    )
    assert admin_patch.status_code == 200
    assert admin_patch.json()["name"] == "renamed"
    assert admin_patch.json()["status"] == "backlog"

    filtered = tasks_client.get(
        "/api/tasks",
        params={"status": "backlog", "search": "RENAMED"},
        headers=_auth_header(erin_token),
    )
    assert [item["id"] for item in filtered.json()] == [task_id]
    empty = tasks_client.get("/api/tasks", params={"status": "done"}, headers=_auth_header(erin_token))
    assert empty.json() == []

    assert tasks_client.delete(f"/api/tasks/{task_id}", headers=_auth_header(erin_token)).status_code == 403
    assert tasks_client.delete(f"/api/tasks/{task_id}", headers=_auth_header(admin_token)).status_code == 204
    assert tasks_client.get(f"/api/tasks/{task_id}", headers=_auth_header(admin_token)).status_code == 404


def test_board_comments_and_activity(tasks_client: TestClient) -> None:
    admin_token = _bootstrap_admin(tasks_client)
    employee_id, employee_token = _create_employee(tasks_client, admin_token, "erin")
    task_id = _create_task(tasks_client, admin_token, employee_id)["id"]
    tasks_client.post(f"/api/tasks/{task_id}/start", headers=_auth_header(employee_token))

    board_resp = tasks_client.get("/api/tasks/board", headers=_auth_header(employee_token))
    assert board_resp.status_code == 200
    columns = board_resp.json()["columns"]
    assert set(columns) == {"backlog", "in_progress", "completed", "revision", "done", "rejected"}
    assert [item["id"] for item in columns["in_progress"]] == [task_id]

    comment_resp = tasks_client.post(
        f"/api/tasks/{task_id}/comments",
        json={"content": "halfway there"},
        headers=_auth_header(employee_token),
    )
    assert comment_resp.status_code == 201
    assert comment_resp.json()["user_name"] == "erin"

    comments = tasks_client.get(f"/api/tasks/{task_id}/comments", headers=_auth_header(admin_token)).json()
    assert [item["content"] for item in comments] == ["halfway there"]

    activity = tasks_client.get(f"/api/tasks/{task_id}/activity", headers=_auth_header(admin_token)).json()
    assert [item["action"] for item in activity] == ["task_created", "task_status_changed", "comment_added"]
    assert activity[1]["from_status"] == "backlog"
    assert activity[1]["to_status"] == "in_progress"


def test_unknown_assignee_and_missing_token(tasks_client: TestClient) -> None:
    admin_token = _bootstrap_admin(tasks_client)
    response = tasks_client.post(
        "/api/tasks",
        json={"name": "ghost work", "assigned_to": ["nobody"]},
        headers=_auth_header(admin_token),
    )
    assert response.status_code == 422
    assert response.json()["detail"]["code"] == "validation_error"

    assert tasks_client.get("/api/tasks").status_code == 401
    assert tasks_client.get("/api/tasks", headers=_auth_header("not-a-token")).status_code == 401


def test_employee_cannot_read_other_earnings(tasks_client: TestClient) -> None:
    admin_token = _bootstrap_admin(tasks_client)
    erin_id, erin_token = _create_employee(tasks_client, admin_token, "erin")
    omar_id, _omar_token = _create_employee(tasks_client, admin_token, "omar")

    denied = tasks_client.get("/api/earnings", params={"user_id": omar_id}, headers=_auth_header(erin_token))
    assert denied.status_code == 403
    allowed = tasks_client.get("/api/earnings", params={"user_id": erin_id}, headers=_auth_header(admin_token))
    assert allowed.status_code == 200
    assert allowed.json() == []
