"""测试后端接口（TestClient + 临时 sqlite）"""
import asyncio
import sqlite3
import uuid

import httpx
import pytest
from fastapi import HTTPException
from fastapi.testclient import TestClient

from rovoxa import auth, main
from rovoxa.api import chat as chat_api
from rovoxa.auth import AuthenticatedUser, extract_token, get_current_user, verify_token
from rovoxa.client.errors import ErrorKind, classify_response
from rovoxa.client.models import Role
from rovoxa.client.normalizer import normalize_history
from rovoxa.config import config
from rovoxa.db import database
from rovoxa.llm import GenerationResult

REPLY = "Hi there! 你好"


def login_as(user_id: str):
    main.app.dependency_overrides[get_current_user] = lambda: AuthenticatedUser(id=user_id, email=f"{user_id}@example.com")


@pytest.fixture
def prompts():
    return []


@pytest.fixture
def client(tmp_path, monkeypatch, prompts):
    monkeypatch.setattr(database, "DB_PATH", tmp_path / "rovoxa.db")
    monkeypatch.setattr(main, "setup_structured_logging", lambda **kwargs: None)
    monkeypatch.setattr(chat_api, "should_trigger_weather_search", lambda message: False)
    monkeypatch.setattr(chat_api, "should_trigger_web_search", lambda message: False)

    async def fake_generate(prompt):
        prompts.append(prompt)
        return GenerationResult(success=True, reply=REPLY)

    monkeypatch.setattr(chat_api, "generate_response", fake_generate)
    login_as("user-1")

    with TestClient(main.app) as test_client:
        yield test_client

    main.app.dependency_overrides.clear()


def send(client, message, chat_id=None):
    body = {"message": message}
    if chat_id is not None:
        body["chatId"] = chat_id
    return client.post("/api/chat", json=body)


def test_health(client):
    response = client.get("/api/health")

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["database"] == "connected"


def test_send_streams_reply_and_persists(client):
    response = send(client, "Hello!! How's the weather today???")

    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert response.text == f'0:"{REPLY}"\n'
    chat_id = response.headers["x-chat-id"]
    uuid.UUID(chat_id)

    history = client.get("/api/chat/history").json()
    assert history["userId"] == "user-1"
    assert history["source"] == "sqlite"
    assert len(history["chats"]) == 1

    chat = history["chats"][0]
    assert chat["chatId"] == chat_id
    assert chat["title"] == "Hello Hows the weather today"
    assert [m["sender"] for m in chat["messages"]] == ["user", "ai"]
    assert [m["chatId"] for m in history["messages"]] == [chat_id, chat_id]

    snapshot = normalize_history(history)
    assert [m.role for m in snapshot.chats[0].messages] == [Role.USER, Role.ASSISTANT]
    assert snapshot.chats[0].messages[1].content == REPLY


def test_follow_up_includes_conversation_context(client, prompts):
    chat_id = send(client, "My name is Ada").headers["x-chat-id"]
    send(client, "What is my name?", chat_id=chat_id)

    assert prompts[0] == "My name is Ada"
    assert "Previous conversation context:" in prompts[1]
    assert "User: My name is Ada" in prompts[1]
    assert f"Assistant: {REPLY}" in prompts[1]

    history = client.get("/api/chat/history").json()
    assert len(history["chats"]) == 1
    assert len(history["chats"][0]["messages"]) == 4


def test_invalid_chat_id_gets_new_uuid(client):
    response = send(client, "hello", chat_id="not-a-uuid")

    chat_id = response.headers["x-chat-id"]
    assert chat_id != "not-a-uuid"
    uuid.UUID(chat_id)


@pytest.mark.parametrize("body", [{}, {"message": ""}, {"message": "   "}, {"message": 42}])
def test_send_rejects_empty_message(client, body):
    response = client.post("/api/chat", json=body)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_MESSAGE"
    assert classify_response(400, response.json()).kind == ErrorKind.VALIDATION_ERROR


def test_send_rejects_invalid_json(client):
    response = client.post("/api/chat", content=b"{not json", headers={"content-type": "application/json"})

    assert response.status_code == 400
    assert response.json() == {"error": "Invalid JSON in request body", "code": "INVALID_JSON"}


def test_generation_failure_returns_502(client, monkeypatch):
    async def failing(prompt):
        return GenerationResult(success=False, error="quota exceeded")

    monkeypatch.setattr(chat_api, "generate_response", failing)

    response = send(client, "hello")

    assert response.status_code == 502
    data = response.json()
    assert data["code"] == "GENERATION_FAILED"
    assert data["details"] == "quota exceeded"
    assert client.get("/api/chat/history").json()["chats"] == []


def test_multipart_send_with_file(client, prompts):
    response = client.post(
        "/api/chat",
        data={"message": "Summarize this", "chatId": ""},
        files=[("files", ("notes.txt", b"remember the milk", "text/plain"))],
    )

    assert response.status_code == 200
    data = response.json()
    assert data["reply"] == REPLY
    assert data["webSearch"] == {"triggered": False}
    uuid.UUID(data["chatId"])
    assert "[Text File: notes.txt]" in prompts[-1]
    assert "remember the milk" in prompts[-1]


def test_multipart_too_many_files(client):
    files = [("files", (f"f{i}.txt", b"x", "text/plain")) for i in range(config.MAX_UPLOAD_FILES + 1)]

    response = client.post("/api/chat", data={"message": "many"}, files=files)

    assert response.status_code == 400
    assert response.json()["code"] == "TOO_MANY_FILES"


def test_multipart_file_too_large(client, monkeypatch, prompts):
    monkeypatch.setattr(config, "MAX_UPLOAD_BYTES", 16)

    response = client.post(
        "/api/chat",
        data={"message": "read this"},
        files=[("files", ("big.txt", b"x" * 17, "text/plain"))],
    )

    assert response.status_code == 400
    assert response.json()["code"] == "FILE_TOO_LARGE"
    assert "big.txt" in response.json()["error"]
    assert classify_response(400, response.json()).kind == ErrorKind.VALIDATION_ERROR
    assert prompts == []

    exact = client.post(
        "/api/chat",
        data={"message": "read this"},
        files=[("files", ("small.txt", b"x" * 16, "text/plain"))],
    )
    assert exact.status_code == 200


@pytest.mark.parametrize("filename, content_type", [
    ("payload.exe", "application/octet-stream"),
    ("script.sh", "text/x-shellscript"),
    ("notes.txt", "application/x-msdownload"),
])
def test_multipart_rejects_file_type(client, prompts, filename, content_type):
    response = client.post(
        "/api/chat",
        data={"message": "look"},
        files=[
            ("files", ("ok.txt", b"fine", "text/plain")),
            ("files", (filename, b"MZ", content_type)),
        ],
    )

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_FILE_TYPE"
    assert filename in response.json()["error"]
    assert prompts == []
    assert client.get("/api/chat/history").json()["chats"] == []


def test_create_chat(client):
    chat_id = str(uuid.uuid4())

    created = client.post("/api/chat/create", json={"chatId": chat_id, "message": "Plan a trip to Kyoto!"})
    again = client.post("/api/chat/create", json={"chatId": chat_id})

    assert created.status_code == 200
    assert created.json()["chat"]["title"] == "Plan a trip to Kyoto"
    assert again.json()["message"] == "Chat already exists"

    history = client.get("/api/chat/history").json()
    assert [c["chatId"] for c in history["chats"]] == [chat_id]
    assert history["chats"][0]["messages"] == []


def test_create_chat_requires_chat_id(client):
    response = client.post("/api/chat/create", json={"message": "hi"})

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_CHAT_ID"


def test_delete_chat_cascades(client):
    chat_id = send(client, "delete me").headers["x-chat-id"]

    deleted = client.delete(f"/api/chat/{chat_id}")
    missing = client.delete(f"/api/chat/{chat_id}")

    assert deleted.status_code == 200
    assert missing.status_code == 404
    assert missing.json()["code"] == "CHAT_NOT_FOUND"

    with sqlite3.connect(database.DB_PATH) as db:
        count = db.execute("SELECT COUNT(*) FROM messages WHERE chat_id = ?", (chat_id,)).fetchone()[0]
    assert count == 0


def test_clear_history(client):
    send(client, "first chat")
    send(client, "second chat")

    response = client.delete("/api/chat/history")

    assert response.status_code == 200
    assert response.json()["deleted"] == 2
    history = client.get("/api/chat/history").json()
    assert history["chats"] == []
    assert history["message"] == "No chat history found"


def test_history_is_per_user(client):
    send(client, "private question")

    login_as("user-2")
    history = client.get("/api/chat/history").json()

    assert history["chats"] == []
    assert history["userId"] == "user-2"


def test_missing_tables_report_table_not_found(client):
    with sqlite3.connect(database.DB_PATH) as db:
        db.execute("DROP TABLE messages")
        db.execute("DROP TABLE chats")

    response = client.get("/api/chat/history")

    assert response.status_code == 503
    assert response.json()["code"] == "TABLE_NOT_FOUND"
    assert classify_response(503, response.json()).kind == ErrorKind.TABLE_NOT_FOUND


def test_requests_without_token_are_rejected(client):
    main.app.dependency_overrides.clear()

    response = client.get("/api/chat/history")

    assert response.status_code == 401
    assert response.json() == {"error": "Access token required", "code": "NO_TOKEN"}
    assert classify_response(401, response.json()).kind == ErrorKind.UNAUTHORIZED


def test_extract_token():
    assert extract_token("Bearer abc") == "abc"

    with pytest.raises(HTTPException) as exc_info:
        extract_token("Bearer   ")
    assert exc_info.value.status_code == 401
    assert exc_info.value.detail["code"] == "INVALID_HEADER"


def test_verify_token_without_configuration(monkeypatch):
    monkeypatch.setattr(config, "SUPABASE_URL", None)

    with pytest.raises(HTTPException) as exc_info:
        asyncio.run(verify_token("abc"))

    assert exc_info.value.status_code == 503
    assert exc_info.value.detail["code"] == "AUTH_SERVICE_UNAVAILABLE"


@pytest.mark.parametrize("status, payload, expected", [
    (200, {"id": "user-9", "email": "nine@example.com"}, "user-9"),
    (401, {"msg": "invalid JWT"}, None),
    (200, {"email": "no-id@example.com"}, None),
])
def test_verify_token_against_auth_service(monkeypatch, status, payload, expected):
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(status, json=payload)

    real_client = httpx.AsyncClient
    monkeypatch.setattr(config, "SUPABASE_URL", "https://project.supabase.co/")
    monkeypatch.setattr(config, "SUPABASE_API_KEY", "service-key")
    monkeypatch.setattr(auth.httpx, "AsyncClient",
                        lambda **kwargs: real_client(transport=httpx.MockTransport(handler), **kwargs))

    if expected is None:
        with pytest.raises(HTTPException) as exc_info:
            asyncio.run(verify_token("abc"))
        assert exc_info.value.status_code == 401
        assert exc_info.value.detail["code"] == "INVALID_TOKEN"
    else:
        user = asyncio.run(verify_token("abc"))
        assert user.id == expected
        assert user.email == "nine@example.com"

    assert str(seen[0].url) == "https://project.supabase.co/auth/v1/user"
    assert seen[0].headers["authorization"] == "Bearer abc"
    assert seen[0].headers["apikey"] == "service-key"


def test_history_query_with_many_chats(client):
    # 超过 SQLite 绑定参数上限的对话数
    chat_ids = [f"chat-{i:05d}" for i in range(33000)]
    stamp = "2024-05-01T10:00:00+00:00"
    with sqlite3.connect(database.DB_PATH) as db:
        db.executemany(
            "INSERT INTO chats (id, user_id, title, created_at, updated_at) VALUES (?, ?, 'New Chat', ?, ?)",
            [(chat_id, "user-1", stamp, stamp) for chat_id in chat_ids] + [("other-chat", "user-2", stamp, stamp)],
        )
        db.executemany(
            "INSERT INTO messages (id, chat_id, role, content, created_at) VALUES (?, ?, ?, ?, ?)",
            [
                ("m1", "chat-00001", "user", "first", "2024-05-01T10:00:01+00:00"),
                ("m2", "chat-32999", "assistant", "second", "2024-05-01T10:00:02+00:00"),
                ("m3", "other-chat", "user", "not yours", "2024-05-01T10:00:03+00:00"),
            ],
        )

    chats, grouped = asyncio.run(database.list_chats_with_messages("user-1"))

    assert len(chats) == 33000
    assert [m.id for m in grouped["chat-00001"]] == ["m1"]
    assert [m.id for m in grouped["chat-32999"]] == ["m2"]
    assert "other-chat" not in grouped
    assert [m.content for m in asyncio.run(database.list_messages("user-1"))] == ["first", "second"]
