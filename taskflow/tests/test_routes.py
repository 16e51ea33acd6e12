"""Integration tests for the HTTP and WebSocket surface, on the in-memory store."""

from __future__ import annotations

import time
from unittest.mock import AsyncMock

import pytest
from factories import message_row, person_row, sub_row, task_row
from fastapi.testclient import TestClient

from taskflow.config import settings
from taskflow.errors import StoreError
from taskflow.main import app


@pytest.fixture
def client(monkeypatch):
    """TestClient with the lifespan running against a seeded MemoryStore."""
    monkeypatch.setattr(settings, "DATABASE_URL", "")
    with TestClient(app) as c:
        store = c.app.state.store
        store.seed("users", [person_row("p1", "u1", "Alice")])
        store.seed("tasks", [task_row("t1", "Launch")])
        store.seed("subtasks", [sub_row("s1", "t1", "Copy review")])
        store.seed("messages", [message_row("m1", "u1", "Kickoff")])
        for family in ("users", "tasks", "messages"):
            assert c.post(f"/api/{family}/refetch").status_code == 200
        yield c


def wait_for(client, path, predicate, timeout=2.0):
    """Poll a GET endpoint until predicate(json) holds."""
    deadline = time.monotonic() + timeout
    while True:
        body = client.get(path).json()
        if predicate(body):
            return body
        if time.monotonic() > deadline:
            raise AssertionError(f"{path} never matched: {body}")
        time.sleep(0.01)


class TestReadRoutes:
    def test_health(self, client):
        res = client.get("/health")
        assert res.status_code == 200
        assert res.json() == {"status": "ok", "loading": False}

    def test_list_tasks(self, client):
        body = client.get("/api/tasks").json()
        assert body["loading"] is False
        [task] = body["items"]
        assert task["title"] == "Launch"
        assert [s["id"] for s in task["sub_items"]] == ["s1"]

    def test_get_task_not_found(self, client):
        assert client.get("/api/tasks/ghost").status_code == 404

    def test_list_messages_with_sender(self, client):
        items = client.get("/api/messages", params={"channel": "team"}).json()["items"]
        assert [(m["id"], m["sender_name"]) for m in items] == [("m1", "Alice")]

    def test_list_users(self, client):
        [person] = client.get("/api/users").json()["items"]
        assert person["role"] == "client"

    def test_refetch_unknown_family(self, client):
        assert client.post("/api/invoices/refetch").status_code == 404


class TestMutationRoutes:
    def test_create_task_is_accepted_then_visible(self, client):
        res = client.post("/api/tasks", json={"title": "Ship it", "priority": "high"})
        assert res.status_code == 202
        assert res.json()["status"] == "accepted"
        wait_for(client, "/api/tasks", lambda b: any(t["title"] == "Ship it" for t in b["items"]))

    def test_create_task_validation(self, client):
        assert client.post("/api/tasks", json={"title": ""}).status_code == 422
        assert client.post("/api/tasks", json={"title": "x", "bogus": 1}).status_code == 422

    def test_store_failure_is_502(self, client):
        client.app.state.store.insert = AsyncMock(side_effect=StoreError("down"))
        assert client.post("/api/tasks", json={"title": "x"}).status_code == 502

    def test_sub_item_flow(self, client):
        res = client.post("/api/tasks/t1/subtasks", json={"title": "DNS"})
        assert res.status_code == 202
        sub_id = res.json()["record"]["id"]

        assert client.post(f"/api/subtasks/{sub_id}/toggle", json={"completed": False}).status_code == 202
        wait_for(
            client,
            "/api/tasks/t1",
            lambda t: any(s["id"] == sub_id and s["completed"] for s in t.get("sub_items", [])),
        )

        assert client.delete(f"/api/subtasks/{sub_id}").status_code == 202
        wait_for(client, "/api/tasks/t1", lambda t: [s["id"] for s in t.get("sub_items", [])] == ["s1"])

    def test_update_missing_task_is_502(self, client):
        assert client.patch("/api/tasks/ghost", json={"title": "x"}).status_code == 502

    def test_delete_task_cascades(self, client):
        assert client.delete("/api/tasks/t1").status_code == 202
        wait_for(client, "/api/tasks", lambda b: b["items"] == [])

    def test_send_message(self, client):
        res = client.post("/api/messages", json={"content": "hello", "sender_id": "u1"})
        assert res.status_code == 202
        wait_for(client, "/api/messages", lambda b: [m["content"] for m in b["items"]] == ["Kickoff", "hello"])


class TestChangesSocket:
    def test_ready_then_changed(self, client):
        with client.websocket_connect("/ws") as ws:
            assert ws.receive_json() == {"type": "ready", "loading": False}
            client.post("/api/tasks", json={"title": "Notify me"})
            assert ws.receive_json() == {"type": "changed", "family": "tasks"}
