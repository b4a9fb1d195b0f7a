"""测试公共夹具：MockTransport 假后端 + ChatStore 工厂"""
import asyncio
from typing import Any, Dict, List, Optional

import httpx
import pytest

from rovoxa.client import ChatApi, ChatStore, Session
from rovoxa.client.stream import encode_text_part

BASE_URL = "http://testserver"


class FakeBackend:
    """按路由返回预设响应的假后端，记录收到的每个请求"""

    def __init__(self):
        self.requests: List[httpx.Request] = []
        self.history: Dict[str, Any] = {"chats": [], "messages": [], "userId": "user-1", "source": "sqlite"}
        self.history_status = 200
        self.history_error: Dict[str, Any] = {"error": "Failed to fetch chats", "code": "DB_QUERY_ERROR"}
        self.history_delay = 0.0
        self.history_gate: Optional[asyncio.Event] = None

        self.reply_parts = ["Hello", " there!"]
        self.chat_status = 200
        self.chat_error: Dict[str, Any] = {"error": "Failed to generate response", "code": "GENERATION_FAILED"}
        self.chat_delay = 0.0
        self.chat_gate: Optional[asyncio.Event] = None
        self.file_reply = "I read your file."

        self.create_status = 200
        self.delete_status = 200

    def calls(self, method: str, path: str) -> List[httpx.Request]:
        return [r for r in self.requests if r.method == method and r.url.path == path]

    async def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        method, path = request.method, request.url.path

        if path == "/api/chat/history" and method == "GET":
            if self.history_gate is not None:
                await self.history_gate.wait()
            if self.history_delay:
                await asyncio.sleep(self.history_delay)
            if self.history_status != 200:
                return httpx.Response(self.history_status, json=self.history_error)
            return httpx.Response(200, json=self.history)

        if path == "/api/chat/history" and method == "DELETE":
            return httpx.Response(200, json={"message": "Chat history cleared"})

        if path == "/api/chat/create" and method == "POST":
            if self.create_status != 200:
                return httpx.Response(self.create_status, json={"error": "Failed to create chat"})
            return httpx.Response(200, json={"message": "Chat created successfully"})

        if path == "/api/chat" and method == "POST":
            if self.chat_gate is not None:
                await self.chat_gate.wait()
            if self.chat_delay:
                await asyncio.sleep(self.chat_delay)
            if self.chat_status != 200:
                return httpx.Response(self.chat_status, json=self.chat_error)
            if request.headers.get("content-type", "").startswith("multipart/form-data"):
                return httpx.Response(200, json={"reply": self.file_reply, "chatId": "chat-1", "webSearch": {"triggered": False}})
            body = "".join(encode_text_part(part) for part in self.reply_parts)
            return httpx.Response(200, text=body, headers={"content-type": "text/plain; charset=utf-8"})

        if path.startswith("/api/chat/") and method == "DELETE":
            if self.delete_status != 200:
                return httpx.Response(self.delete_status, json={"error": "Chat not found", "code": "CHAT_NOT_FOUND"})
            return httpx.Response(200, json={"message": "Chat deleted successfully"})

        return httpx.Response(404, json={"detail": "Not Found"})


def history_chat(chat_id: str, *texts: str, title: Optional[str] = None) -> Dict[str, Any]:
    """构造历史接口里的一个对话：texts 依次是 user / ai 交替的消息"""
    messages = []
    for index, text in enumerate(texts):
        messages.append({
            "id": f"{chat_id}-m{index}",
            "sender": "user" if index % 2 == 0 else "ai",
            "text": text,
            "timestamp": f"2024-05-01T10:00:{index:02d}Z",
        })
    chat = {
        "chatId": chat_id,
        "userId": "user-1",
        "messages": messages,
        "createdAt": "2024-05-01T10:00:00Z",
        "updatedAt": "2024-05-01T10:05:00Z",
    }
    if title is not None:
        chat["title"] = title
    return chat


@pytest.fixture
def backend():
    return FakeBackend()


@pytest.fixture
def make_store(backend):
    """ChatStore 工厂；所有请求都打到 backend"""

    def factory(token: Optional[str] = "token-1", chat_id: str = "chat-1", **session_kwargs) -> ChatStore:
        session = Session(base_url=BASE_URL, token=token, user_id="user-1", **session_kwargs)
        client = httpx.AsyncClient(transport=httpx.MockTransport(backend.handler))
        return ChatStore(ChatApi(session, client=client), chat_id=chat_id)

    return factory
