from __future__ import annotations

import asyncio
import os

import httpx

from demo_common import (
    admin_token,
    assert_status,
    auth_headers,
    create_employee,
    create_task,
    feedback_file,
    wait_ok,
)


async def _approve_flow(client: httpx.AsyncClient, admin: str) -> None:
    employee_id, employee = await create_employee(client, admin, "approve")
    task_id = await create_task(client, admin, employee_id, name="approve-flow", task_rate=25.0)

    start_resp = await client.post(f"/api/tasks/{task_id}/start", headers=auth_headers(employee))
    assert_status(start_resp, 200)

    result_resp = await client.post(
        f"/api/tasks/{task_id}/attachments",
        params={"attachment_type": "result"},
        content=b"deliverable",
        headers={**auth_headers(employee), "X-File-Name": "result.txt", "Content-Type": "text/plain"},
    )
    assert_status(result_resp, 201)

    submit_resp = await client.post(
        f"/api/tasks/{task_id}/submit",
        json={"comment": "ready for review"},
        headers=auth_headers(employee),
    )
    assert_status(submit_resp, 200)
    if submit_resp.json()["approval_status"] != "pending":
        raise RuntimeError("submitted task should be pending approval")

    approve_resp = await client.post(f"/api/tasks/{task_id}/approve", json={}, headers=auth_headers(admin))
    assert_status(approve_resp, 200)
    if approve_resp.json()["approval_status"] != "approved":
        raise RuntimeError("approved task should report approved")

    again_resp = await client.post(
        f"/api/tasks/{task_id}/revision",
        json={"comment": "too late"},
        headers=auth_headers(admin),
    )
    assert_status(again_resp, 409)

    earnings_resp = await client.get("/api/earnings", headers=auth_headers(employee))
    assert_status(earnings_resp, 200)
    if not any(item["task_id"] == task_id for item in earnings_resp.json()):
        raise RuntimeError("approval did not create an earning")


async def _revision_flow(client: httpx.AsyncClient, admin: str) -> None:
    employee_id, employee = await create_employee(client, admin, "revision")
    task_id = await create_task(client, admin, employee_id, name="revision-flow")

    assert_status(await client.post(f"/api/tasks/{task_id}/start", headers=auth_headers(employee)), 200)
    assert_status(
        await client.post(f"/api/tasks/{task_id}/submit", json={}, headers=auth_headers(employee)),
        200,
    )

    missing_comment_resp = await client.post(
        f"/api/tasks/{task_id}/revision",
        json={"comment": "  "},
        headers=auth_headers(admin),
    )
    assert_status(missing_comment_resp, 422)

    revision_resp = await client.post(
        f"/api/tasks/{task_id}/revision",
        json={
            "comment": "fix the header",
            "feedback_files": [feedback_file("notes.txt", b"see line 3")],
        },
        headers=auth_headers(admin),
    )
    assert_status(revision_resp, 200)
    body = revision_resp.json()
    if body["status"] != "revision" or body["review_comment"] != "fix the header":
        raise RuntimeError(f"unexpected revision state: {body}")

    assert_status(await client.post(f"/api/tasks/{task_id}/resume", headers=auth_headers(employee)), 200)

    inbox_resp = await client.get("/api/notifications", headers=auth_headers(employee))
    assert_status(inbox_resp, 200)


async def _run() -> None:
    base_url = os.getenv("APP_BASE_URL", "http://app:8000").rstrip("/")
    timeout = httpx.Timeout(20.0)
    async with httpx.AsyncClient(base_url=base_url, timeout=timeout) as client:
        await wait_ok(client, "/healthz")
        await wait_ok(client, "/readyz")
        admin = await admin_token(client)
        await _approve_flow(client, admin)
        await _revision_flow(client, admin)
    print("demo_review_flow: approve and revision flows ok")


def main() -> None:
    asyncio.run(_run())


if __name__ == "__main__":
    main()
