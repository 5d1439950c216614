"""End-to-end HTTP and WebSocket flows through the FastAPI app."""

import pytest
from fastapi.testclient import TestClient
from fastapi.websockets import WebSocketDisconnect

from conftest import signed_login
from messenger.main import create_app


@pytest.fixture
def client(settings):
    with TestClient(create_app(settings)) as client:
        yield client


def login(client, telegram_id, username):
    payload = signed_login(id=telegram_id, username=username, first_name=username.title())
    response = client.post("/api/v1/auth/login", json=payload.model_dump())
    assert response.status_code == 200, response.text
    token = response.json()["access_token"]
    me = client.get("/api/v1/auth/me", headers=auth(token)).json()
    return token, me


def auth(token):
    return {"Authorization": f"Bearer {token}"}


def ready(ws):
    """Round-trip a bad frame so the server-side subscription is known to be live."""
    ws.send_text("not json")
    envelope = ws.receive_json()
    assert envelope["destination"] == "/user/queue/errors"
    assert envelope["event"] == "Error"
    assert envelope["payload"]["code"] == 110


def test_login_refresh_and_me(client):
    payload = signed_login(id=11, username="alice")
    tokens = client.post("/api/v1/auth/login", json=payload.model_dump()).json()

    refreshed = client.post("/api/v1/auth/refresh", json={"refresh_token": tokens["refresh_token"]})
    assert refreshed.status_code == 200

    me = client.get("/api/v1/auth/me", headers=auth(refreshed.json()["access_token"]))
    assert me.json()["username"] == "alice"


def test_bad_login_signature(client):
    payload = signed_login(id=12).model_dump()
    payload["hash"] = "f" * 64
    response = client.post("/api/v1/auth/login", json=payload)
    assert response.status_code == 401
    assert response.json()["code"] == 101


def test_missing_token_is_rejected(client):
    response = client.get("/api/v1/chats")
    assert response.status_code == 401
    assert response.json()["code"] == 108


def test_errors_are_localized(client):
    token, _ = login(client, 13, "alice")

    english = client.get("/api/v1/chats/999", headers=auth(token))
    assert english.status_code == 404
    assert english.json() == {"code": 103, "message": "Chat 999 not found"}

    russian = client.get("/api/v1/chats/999", headers={**auth(token), "Accept-Language": "ru-RU,ru;q=0.9"})
    assert russian.json() == {"code": 103, "message": "Чат 999 не найден"}


def test_group_rest_flow(client):
    alice_token, alice = login(client, 21, "alice")
    bob_token, bob = login(client, 22, "bob")

    created = client.post("/api/v1/chats", headers=auth(alice_token),
                          json={"name": "team", "member_ids": [bob["id"]]})
    assert created.status_code == 201
    chat_id = created.json()["id"]

    details = client.get(f"/api/v1/chats/{chat_id}", headers=auth(bob_token)).json()
    assert [m["username"] for m in details["members"]] == ["alice", "bob"]

    chats = client.get("/api/v1/chats", headers=auth(bob_token), params={"chat_type": "GROUP"}).json()
    assert chats["total"] == 1
    assert chats["items"][0]["chat_name"] == "team"

    denied = client.post(f"/api/v1/chats/{chat_id}/members", headers=auth(bob_token),
                         json={"member_ids": [alice["id"]]})
    assert denied.status_code == 403
    assert denied.json()["code"] == 104


def test_user_search_and_profile(client):
    alice_token, alice = login(client, 31, "alice")
    login(client, 32, "bob")

    found = client.get("/api/v1/users", headers=auth(alice_token), params={"search": "bo"}).json()
    assert [u["username"] for u in found["items"]] == ["bob"]

    updated = client.put(f"/api/v1/users/{alice['id']}", headers=auth(alice_token), json={"bio": "hello"})
    assert updated.json()["bio"] == "hello"

    taken = client.put(f"/api/v1/users/{alice['id']}", headers=auth(alice_token), json={"username": "bob"})
    assert taken.status_code == 409
    assert taken.json()["code"] == 111


def test_file_upload(client):
    token, _ = login(client, 41, "alice")
    response = client.post("/api/v1/files", headers=auth(token),
                           files={"file": ("cat.png", b"\x89PNG fake", "image/png")})
    assert response.status_code == 201
    body = response.json()
    assert body["message_type"] == "IMAGE"
    assert body["original_name"] == "cat.png"


def test_websocket_requires_token(client):
    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws"):
            pass
    assert exc.value.code == 1008

    with pytest.raises(WebSocketDisconnect) as exc:
        with client.websocket_connect("/ws?token=garbage"):
            pass
    assert exc.value.code == 1008


def test_private_messages_over_websocket(client):
    alice_token, alice = login(client, 51, "alice")
    bob_token, bob = login(client, 52, "bob")

    with client.websocket_connect(f"/ws?token={bob_token}") as bob_ws, \
            client.websocket_connect("/ws", headers=auth(alice_token)) as alice_ws:
        ready(bob_ws)
        ready(alice_ws)

        status = client.get(f"/api/v1/users/{bob['id']}/status", headers=auth(alice_token)).json()
        assert status["status"] == "ONLINE"

        alice_ws.send_json({"type": "send_message", "receiver_id": bob["id"], "content": "hi bob"})

        created = bob_ws.receive_json()
        assert created["destination"] == "/user/queue/messages"
        assert created["event"] == "MessageCreated"
        assert created["payload"]["message"]["content"] == "hi bob"
        message_id = created["payload"]["message"]["id"]
        chat_id = created["payload"]["message"]["chat_id"]

        listed = bob_ws.receive_json()
        assert listed["destination"] == "/user/queue/chat-list"
        assert listed["payload"]["unread_count"] == 1
        assert listed["payload"]["counterpart"]["username"] == "alice"

        assert alice_ws.receive_json()["event"] == "MessageCreated"
        assert alice_ws.receive_json()["event"] == "ChatListChanged"

        bob_ws.send_json({"type": "mark_read", "chat_id": chat_id, "message_ids": [message_id]})
        unread = bob_ws.receive_json()
        assert unread["destination"] == "/user/queue/unread"
        assert unread["payload"] == {"chat_id": chat_id, "unread_count": 0}

        receipt = alice_ws.receive_json()
        assert receipt["event"] == "MessagesRead"
        assert receipt["payload"]["message_ids"] == [message_id]

        bob_ws.send_json({"type": "edit_message", "chat_id": chat_id, "message_id": message_id, "content": "x"})
        denied = bob_ws.receive_json()
        assert denied["destination"] == "/user/queue/errors"
        assert denied["payload"]["code"] == 104

    history = client.get(f"/api/v1/chats/{chat_id}/messages", headers=auth(alice_token)).json()
    assert [m["content"] for m in history["items"]] == ["hi bob"]


def test_group_topic_subscription_follows_chat_list(client):
    alice_token, alice = login(client, 61, "alice")
    bob_token, bob = login(client, 62, "bob")

    with client.websocket_connect(f"/ws?token={bob_token}") as bob_ws:
        ready(bob_ws)
        chat_id = client.post("/api/v1/chats", headers=auth(alice_token),
                              json={"name": "team", "member_ids": [bob["id"]]}).json()["id"]

        announced = bob_ws.receive_json()
        assert announced["event"] == "ChatListChanged"
        assert announced["payload"]["chat_id"] == chat_id

        with client.websocket_connect(f"/ws?token={alice_token}") as alice_ws:
            ready(alice_ws)
            alice_ws.send_json({"type": "send_message", "chat_id": chat_id, "content": "hello team"})

            created = bob_ws.receive_json()
            assert created["destination"] == f"/topic/chat.{chat_id}"
            assert created["payload"]["message"]["content"] == "hello team"
            assert bob_ws.receive_json()["event"] == "ChatListChanged"

            topic_copy = alice_ws.receive_json()
            assert topic_copy["destination"] == f"/topic/chat.{chat_id}"


def test_subscribe_frame_checks_membership(client):
    alice_token, _ = login(client, 71, "alice")
    bob_token, _ = login(client, 72, "bob")
    chat_id = client.post("/api/v1/chats", headers=auth(alice_token), json={"name": "private club"}).json()["id"]

    with client.websocket_connect(f"/ws?token={bob_token}") as bob_ws:
        ready(bob_ws)
        bob_ws.send_json({"type": "subscribe", "chat_id": chat_id})
        error = bob_ws.receive_json()
        assert error["event"] == "Error"
        assert error["payload"]["code"] == 104


def test_anonymous_socket_when_allowed(settings):
    lenient = settings.model_copy(update={"ws_allow_anonymous": True})
    with TestClient(create_app(lenient)) as client:
        with client.websocket_connect("/ws") as ws:
            ws.send_json({"type": "mark_read", "chat_id": 1})
            error = ws.receive_json()
            assert error["event"] == "Error"
            assert error["payload"]["code"] == 108


def test_file_download(client):
    token, _ = login(client, 81, "alice")
    digest = client.post("/api/v1/files", headers=auth(token),
                         files={"file": ("notes.txt", b"remember the milk", "text/plain")}).json()["hash"]

    response = client.get(f"/api/v1/files/{digest}", headers=auth(token))
    assert response.status_code == 200
    assert response.content == b"remember the milk"
    assert response.headers["content-type"].startswith("text/plain")

    missing = client.get("/api/v1/files/nope", headers=auth(token))
    assert missing.status_code == 404
    assert missing.json()["code"] == 109
