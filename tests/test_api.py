"""
End-to-end tests for the HTTP routes using FastAPI's TestClient
"""

import asyncio
import inspect
import json

from fastapi.routing import APIRoute

from securechat import realtime
from securechat.main import app

CONTENT = {"data": "Y2lwaGVy", "nonce": "bm9uY2U="}


class Inbox:
    """Stands in for a connected socket and records what was pushed."""

    def __init__(self):
        self.events = []

    async def accept(self):
        pass

    async def send_text(self, text):
        self.events.append(json.loads(text))


def create_group(client, headers, **extra):
    body = {"name": "Team", "participantIds": ["bob", "carol"], "groupKey": "k1"}
    body.update(extra)
    r = client.post("/conversations/group", json=body, headers=headers("alice"))
    assert r.status_code == 201, r.text
    return r.json()["conversation"]


def send(client, headers, conversation_id, sender="alice"):
    r = client.post(
        "/messages",
        json={"conversationId": conversation_id, "encryptedContent": CONTENT},
        headers=headers(sender),
    )
    assert r.status_code == 201, r.text
    return r.json()["message"]


class TestConversationRoutes:
    """/conversations"""

    def test_requires_auth(self, client):
        assert client.get("/conversations").status_code in (401, 403)
        r = client.get("/conversations", headers={"Authorization": "Bearer garbage"})
        assert r.status_code == 401

    def test_direct_is_created_once(self, client, headers):
        r = client.post("/conversations/direct", json={"recipient": "bob"}, headers=headers("alice"))
        assert r.status_code == 201
        first = r.json()
        assert first["isNew"] is True
        assert first["conversation"]["participants"] == ["alice", "bob"]
        assert first["conversation"]["type"] == "direct"
        assert "version" not in first["conversation"]

        r = client.post("/conversations/direct", json={"recipient": "alice"}, headers=headers("bob"))
        assert r.status_code == 200
        assert r.json()["isNew"] is False
        assert r.json()["conversation"]["id"] == first["conversation"]["id"]

    def test_direct_errors(self, client, headers):
        r = client.post("/conversations/direct", json={"recipient": "mallory"}, headers=headers("alice"))
        assert r.status_code == 404
        r = client.post("/conversations/direct", json={"recipient": "alice"}, headers=headers("alice"))
        assert r.status_code == 400

    def test_group_lifecycle(self, client, headers):
        group = create_group(client, headers, securityLevel="medium", messageRetention=7)
        assert group["participants"] == ["bob", "carol", "alice"]
        assert group["admins"] == ["alice"]
        assert group["securityLevel"] == "medium"
        assert group["settings"]["messageRetention"] == 7
        assert group["encryptionKeys"]["groupKey"] == "k1"
        url = f"/conversations/{group['id']}"

        r = client.post(f"{url}/participants", json={"username": "dave"}, headers=headers("bob"))
        assert r.status_code == 403
        r = client.post(f"{url}/participants", json={"username": "dave"}, headers=headers("alice"))
        assert r.status_code == 200
        assert r.json()["conversation"]["participants"][-1] == "dave"
        r = client.post(f"{url}/participants", json={"username": "dave"}, headers=headers("alice"))
        assert r.status_code == 409

        r = client.delete(f"{url}/participants/alice", headers=headers("alice"))
        assert r.status_code == 200
        assert r.json()["conversation"]["admins"] == ["bob"]

        r = client.get(url, headers=headers("alice"))
        assert r.status_code == 403
        r = client.get(url, headers=headers("bob"))
        assert r.status_code == 200
        assert r.json()["conversation"]["participants"] == ["bob", "carol", "dave"]

    def test_group_validation(self, client, headers):
        r = client.post("/conversations/group", json={"name": "", "participantIds": ["bob"]}, headers=headers("alice"))
        assert r.status_code == 400
        r = client.post("/conversations/group", json={"name": "X", "participantIds": ["mallory"]}, headers=headers("alice"))
        assert r.status_code == 404
        r = client.post(
            "/conversations/group",
            json={"name": "X", "participantIds": ["bob"], "securityLevel": "extreme"},
            headers=headers("alice"),
        )
        assert r.status_code == 422

    def test_update_and_list(self, client, headers):
        group = create_group(client, headers)
        url = f"/conversations/{group['id']}"
        r = client.patch(url, json={"name": "Ops", "isScreenshotAllowed": True}, headers=headers("alice"))
        assert r.status_code == 200
        assert r.json()["conversation"]["name"] == "Ops"
        assert r.json()["conversation"]["settings"]["isScreenshotAllowed"] is True

        assert client.patch(url, json={"name": "Mine"}, headers=headers("bob")).status_code == 403
        assert client.patch(url, json={"isArchived": True}, headers=headers("bob")).status_code == 200

        r = client.get("/conversations", params={"archived": "true"}, headers=headers("carol"))
        assert [c["id"] for c in r.json()["conversations"]] == [group["id"]]
        r = client.get("/conversations", params={"archived": "false"}, headers=headers("carol"))
        assert r.json()["conversations"] == []

    def test_rotate_key(self, client, headers):
        group = create_group(client, headers)
        url = f"/conversations/{group['id']}/rotate-key"
        assert client.post(url, json={"groupKey": "k2"}, headers=headers("bob")).status_code == 403
        r = client.post(url, json={"groupKey": "k2"}, headers=headers("alice"))
        assert r.status_code == 200
        assert r.json()["conversation"]["encryptionKeys"]["groupKey"] == "k2"

    def test_delete_conversation(self, client, headers, db):
        group = create_group(client, headers)
        send(client, headers, group["id"])
        url = f"/conversations/{group['id']}"
        assert client.delete(url, headers=headers("bob")).status_code == 403
        r = client.delete(url, headers=headers("alice"))
        assert r.json()["deletedMessages"] == 1
        assert client.get(url, headers=headers("alice")).status_code == 404

    def test_malformed_id(self, client, headers):
        assert client.get("/conversations/nope", headers=headers("alice")).status_code == 404


class TestMessageRoutes:
    """/messages"""

    def test_send_list_read_delete(self, client, headers):
        r = client.post("/conversations/direct", json={"recipient": "bob"}, headers=headers("alice"))
        conversation_id = r.json()["conversation"]["id"]

        first = send(client, headers, conversation_id)
        second = send(client, headers, conversation_id, sender="bob")
        assert first["status"] == "sent"
        assert first["securityMetadata"]["securityLevel"] == "high"
        assert [r["user"] for r in first["readBy"]] == ["alice"]

        r = client.get(f"/conversations/{conversation_id}", headers=headers("alice"))
        assert r.json()["conversation"]["lastMessage"]["id"] == second["id"]

        r = client.get(f"/messages/conversation/{conversation_id}", params={"limit": 1}, headers=headers("bob"))
        body = r.json()
        assert [m["id"] for m in body["messages"]] == [second["id"]]
        assert body["hasMore"] is True

        r = client.get(f"/messages/conversation/{conversation_id}", headers=headers("bob"))
        assert [m["id"] for m in r.json()["messages"]] == [first["id"], second["id"]]
        assert r.json()["hasMore"] is False

        r = client.patch(f"/messages/{first['id']}/read", headers=headers("bob"))
        assert r.status_code == 200
        assert r.json()["status"] == "read"

        assert client.delete(f"/messages/{second['id']}", headers=headers("alice")).status_code == 403
        assert client.delete(f"/messages/{second['id']}", headers=headers("bob")).status_code == 200
        r = client.get(f"/conversations/{conversation_id}", headers=headers("alice"))
        assert r.json()["conversation"]["lastMessage"]["id"] == first["id"]

    def test_outsider_is_rejected(self, client, headers):
        r = client.post("/conversations/direct", json={"recipient": "bob"}, headers=headers("alice"))
        conversation_id = r.json()["conversation"]["id"]
        r = client.post(
            "/messages",
            json={"conversationId": conversation_id, "encryptedContent": CONTENT},
            headers=headers("carol"),
        )
        assert r.status_code == 403
        r = client.get(f"/messages/conversation/{conversation_id}", headers=headers("carol"))
        assert r.status_code == 403

    def test_limit_bounds(self, client, headers):
        r = client.post("/conversations/direct", json={"recipient": "bob"}, headers=headers("alice"))
        conversation_id = r.json()["conversation"]["id"]
        r = client.get(f"/messages/conversation/{conversation_id}", params={"limit": 0}, headers=headers("alice"))
        assert r.status_code == 422


class TestUserRoutes:
    def test_list_users(self, client, headers):
        r = client.get("/users", headers=headers("alice"))
        assert r.json() == [{"username": "bob"}, {"username": "carol"}, {"username": "dave"}]

    def test_status(self, client, headers):
        r = client.get("/users/bob/status", headers=headers("alice"))
        assert r.json() == {"username": "bob", "online": False}

    def test_health(self, client):
        assert client.get("/health").json() == {"ok": True}


class TestHandlersAndPushes:
    def test_http_handlers_run_in_threadpool(self):
        routes = [r for r in app.routes if isinstance(r, APIRoute)]
        assert routes
        assert [r.path for r in routes if inspect.iscoroutinefunction(r.endpoint)] == []

    def test_send_pushes_after_response(self, client, headers):
        r = client.post("/conversations/direct", json={"recipient": "bob"}, headers=headers("alice"))
        conversation_id = r.json()["conversation"]["id"]
        inbox = Inbox()
        asyncio.run(realtime.manager.connect("bob", inbox))
        try:
            message = send(client, headers, conversation_id)
        finally:
            realtime.manager.disconnect("bob", inbox)
        assert [(e["type"], e["message"]["id"]) for e in inbox.events] == [("new_message", message["id"])]
