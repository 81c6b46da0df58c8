from __future__ import annotations

import asyncio
import base64
import os
import time
from uuid import uuid4

import httpx


def assert_status(response: httpx.Response, expected: int | tuple[int, ...]) -> None:
    expected_codes = (expected,) if isinstance(expected, int) else expected
    if response.status_code not in expected_codes:
        raise RuntimeError(
            f"{response.request.method} {response.request.url} expected {expected_codes}, "
            f"got {response.status_code}: {response.text}"
        )


def auth_headers(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"}


async def wait_ok(client: httpx.AsyncClient, path: str, timeout_seconds: float = 60.0) -> None:
    deadline = time.monotonic() + timeout_seconds
    while time.monotonic() < deadline:
        try:
            response = await client.get(path)
            if response.status_code == 200:
                return
        except httpx.HTTPError:
            pass
        await asyncio.sleep(1.0)
    raise RuntimeError(f"timeout waiting for {path}")


async def login(client: httpx.AsyncClient, username: str, password: str) -> str:
    login_resp = await client.post(
        "/api/identity/dev-login",
        json={"username": username, "password": password},
    )
    assert_status(login_resp, 200)
    return login_resp.json()["access_token"]


async def admin_token(client: httpx.AsyncClient) -> str:
    username = os.getenv("DEMO_ADMIN_USERNAME", "admin")
    password = os.getenv("DEMO_ADMIN_PASSWORD", "admin-pass")
    bootstrap_resp = await client.post(
        "/api/identity/bootstrap-admin",
        json={"username": username, "password": password},
    )
    # 409 means the workspace already has users; reuse the configured admin.
    assert_status(bootstrap_resp, (201, 409))
    return await login(client, username, password)


async def create_employee(client: httpx.AsyncClient, token: str, prefix: str) -> tuple[str, str]:
    run_id = uuid4().hex[:8]
    username = f"{prefix}-employee-{run_id}"
    password = f"pass-{run_id}"
    user_resp = await client.post(
        "/api/identity/users",
        json={"username": username, "password": password, "role": "employee"},
        headers=auth_headers(token),
    )
    assert_status(user_resp, 201)
    return user_resp.json()["id"], await login(client, username, password)


async def create_task(
    client: httpx.AsyncClient,
    token: str,
    assignee_id: str,
    *,
    name: str = "demo-task",
    task_rate: float | None = None,
) -> str:
    task_resp = await client.post(
        "/api/tasks",
        json={"name": name, "assigned_to": [assignee_id], "task_rate": task_rate},
        headers=auth_headers(token),
    )
    assert_status(task_resp, 201)
    return task_resp.json()["id"]


def feedback_file(file_name: str, content: bytes, content_type: str = "text/plain") -> dict[str, str]:
    return {
        "file_name": file_name,
        "content_type": content_type,
        "content_base64": base64.b64encode(content).decode(),
    }
