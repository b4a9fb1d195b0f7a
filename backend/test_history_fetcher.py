"""测试历史记录拉取"""
import asyncio

import httpx
import pytest

from conftest import BASE_URL, history_chat
from rovoxa.client import ChatApi, ChatClientError, ErrorKind, HistoryFetcher, Role, Session


def make_fetcher(backend, token="token-1", **session_kwargs):
    session = Session(base_url=BASE_URL, token=token, user_id="user-1", **session_kwargs)
    client = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
    return HistoryFetcher(ChatApi(session, client=client))


def test_no_token_fails_without_request(backend):
    fetcher = make_fetcher(backend, token=None)

    with pytest.raises(ChatClientError) as exc_info:
        asyncio.run(fetcher.fetch())

    assert exc_info.value.kind == ErrorKind.NO_TOKEN
    assert exc_info.value.requires_login is True
    assert backend.requests == []


def test_fetch_normalizes_payload(backend):
    backend.history = {
        "userId": "user-1",
        "source": "sqlite",
        "chats": [
            history_chat("c1", "Hello!! How's the weather today???", "Sunny."),
            {"_id": "c2", "messages": None},
        ],
        "messages": [{"id": "c1-m0", "chatId": "c1", "sender": "user", "text": "Hello!! How's the weather today???"}],
    }

    snapshot = asyncio.run(make_fetcher(backend).fetch())

    assert [chat.id for chat in snapshot.chats] == ["c1", "c2"]
    first = snapshot.chats[0]
    assert first.title == "Hello Hows the weather today"
    assert [m.role for m in first.messages] == [Role.USER, Role.ASSISTANT]
    assert snapshot.chats[1].messages == []

    request = backend.requests[0]
    assert request.headers["authorization"] == "Bearer token-1"


def test_fetch_times_out(backend):
    backend.history_delay = 1.0
    fetcher = make_fetcher(backend, history_timeout=0.05)

    with pytest.raises(ChatClientError) as exc_info:
        asyncio.run(fetcher.fetch())

    assert exc_info.value.kind == ErrorKind.TIMEOUT


@pytest.mark.parametrize("status, body, kind", [
    (401, {"error": "Invalid or expired token", "code": "INVALID_TOKEN"}, ErrorKind.UNAUTHORIZED),
    (503, {"error": "Database table does not exist", "code": "TABLE_NOT_FOUND"}, ErrorKind.TABLE_NOT_FOUND),
    (503, {"error": "Database service unavailable", "code": "DB_UNAVAILABLE"}, ErrorKind.SERVICE_UNAVAILABLE),
    (500, {"error": "Failed to fetch chats", "code": "DB_QUERY_ERROR"}, ErrorKind.SERVER_ERROR),
])
def test_fetch_classifies_server_errors(backend, status, body, kind):
    backend.history_status = status
    backend.history_error = body

    with pytest.raises(ChatClientError) as exc_info:
        asyncio.run(make_fetcher(backend).fetch())

    assert exc_info.value.kind == kind


def test_fetch_unreachable_server():
    async def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    session = Session(base_url=BASE_URL, token="token-1")
    client = httpx.AsyncClient(transport=httpx.MockTransport(refuse))
    fetcher = HistoryFetcher(ChatApi(session, client=client))

    with pytest.raises(ChatClientError) as exc_info:
        asyncio.run(fetcher.fetch())

    assert exc_info.value.kind == ErrorKind.NETWORK_UNREACHABLE
    assert BASE_URL in exc_info.value.message
