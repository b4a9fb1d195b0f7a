"""聊天后端 HTTP 客户端（httpx）

所有失败都转换为 ChatClientError，调用方只需要处理一种异常。
"""
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence

import httpx

from .errors import ChatClientError, ErrorKind, classify_exception, classify_response
from .session import Session
from .stream import decode_stream_line
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

HISTORY_ENDPOINT = "/api/chat/history"
CHAT_ENDPOINT = "/api/chat"
CREATE_CHAT_ENDPOINT = "/api/chat/create"


@dataclass
class Attachment:
    """随消息上传的文件"""
    filename: str
    content: bytes
    content_type: str = "application/octet-stream"


def _json_or_none(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return None


def error_from_response(response: httpx.Response) -> ChatClientError:
    return classify_response(response.status_code, _json_or_none(response), response.reason_phrase)


class ChatApi:
    """后端接口封装

    Args:
        session: 会话（base_url / token）
        client: 可注入的 httpx.AsyncClient（测试用 MockTransport）
    """

    def __init__(self, session: Session, client: Optional[httpx.AsyncClient] = None):
        self.session = session
        self._owns_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(
                connect=10.0,
                read=session.send_timeout,
                write=10.0,
                pool=10.0,
            )
        )

    async def aclose(self):
        if self._owns_client:
            await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def _request(self, method: str, endpoint: str, **kwargs) -> Any:
        """发送请求，返回解析后的JSON；失败抛 ChatClientError"""
        headers = {**self.session.auth_headers(), **kwargs.pop("headers", {})}
        try:
            response = await self.client.request(method, self.session.url(endpoint), headers=headers, **kwargs)
        except httpx.HTTPError as e:
            raise classify_exception(e, self.session.base_url) from e

        if response.status_code >= 400:
            error = error_from_response(response)
            logger.warning(f"{method} {endpoint} 失败: HTTP {response.status_code} ({error.kind.value})")
            raise error
        return _json_or_none(response)

    async def get_history(self) -> Dict[str, Any]:
        payload = await self._request("GET", HISTORY_ENDPOINT)
        if not isinstance(payload, dict):
            raise ChatClientError(ErrorKind.SERVER_ERROR, details="history response is not a JSON object")
        return payload

    async def create_chat(self, chat_id: str, message: Optional[str] = None) -> Dict[str, Any]:
        body = {"chatId": chat_id}
        if message:
            body["message"] = message
        return await self._request("POST", CREATE_CHAT_ENDPOINT, json=body) or {}

    async def delete_chat(self, chat_id: str) -> Dict[str, Any]:
        return await self._request("DELETE", f"{CHAT_ENDPOINT}/{chat_id}") or {}

    async def clear_history(self) -> Dict[str, Any]:
        return await self._request("DELETE", HISTORY_ENDPOINT) or {}

    async def stream_message(self, message: str, chat_id: Optional[str] = None) -> AsyncIterator[str]:
        """
        发送消息并按段产出回复文本（每次产出的是新增的一段）

        Raises:
            ChatClientError: 网络错误或服务端返回错误JSON
        """
        headers = self.session.auth_headers()
        body = {"message": message}
        if chat_id:
            body["chatId"] = chat_id

        try:
            async with self.client.stream(
                "POST", self.session.url(CHAT_ENDPOINT), json=body, headers=headers
            ) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise error_from_response(response)

                async for line in response.aiter_lines():
                    part = decode_stream_line(line)
                    if part is not None:
                        yield part
        except httpx.HTTPError as e:
            raise classify_exception(e, self.session.base_url) from e

    async def send_with_files(
        self,
        message: str,
        attachments: Sequence[Attachment],
        chat_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """multipart 上传，一次性返回 {reply, chatId, webSearch}"""
        data = {"message": message, "chatId": chat_id or ""}
        if self.session.user_id:
            data["userId"] = self.session.user_id
        files: List[tuple] = [
            ("files", (item.filename, item.content, item.content_type)) for item in attachments
        ]
        payload = await self._request("POST", CHAT_ENDPOINT, data=data, files=files)
        if not isinstance(payload, dict):
            raise ChatClientError(ErrorKind.SERVER_ERROR, details="chat response is not a JSON object")
        return payload
