"""客户端错误分类

每种错误对应一条面向用户的提示；UI 根据 kind 决定显示重新登录还是重试按钮。
"""
import asyncio
from collections.abc import Mapping
from enum import Enum
from typing import Any, Optional

import httpx


class ErrorKind(str, Enum):
    NO_TOKEN = "no_token"
    TIMEOUT = "timeout"
    NETWORK_UNREACHABLE = "network_unreachable"
    UNAUTHORIZED = "unauthorized"
    SERVICE_UNAVAILABLE = "service_unavailable"
    TABLE_NOT_FOUND = "table_not_found"
    SERVER_ERROR = "server_error"
    VALIDATION_ERROR = "validation_error"
    UNKNOWN = "unknown"


USER_MESSAGES = {
    ErrorKind.NO_TOKEN: "Authentication token not found. Please log in again.",
    ErrorKind.TIMEOUT: "Request timed out - server may be slow",
    ErrorKind.NETWORK_UNREACHABLE: "Cannot connect to the backend server. Please ensure the server is running.",
    ErrorKind.UNAUTHORIZED: "Authentication failed - please log in again",
    ErrorKind.SERVICE_UNAVAILABLE: "Database service unavailable - please check backend configuration",
    ErrorKind.TABLE_NOT_FOUND: "Database tables not found - please run the database schema migration",
    ErrorKind.SERVER_ERROR: "Server error - please check backend logs",
    ErrorKind.VALIDATION_ERROR: "Message is required and must be a non-empty string",
    ErrorKind.UNKNOWN: "Request failed",
}

_UNAUTHORIZED_CODES = {"NO_TOKEN", "INVALID_TOKEN", "INVALID_HEADER"}
_SERVICE_CODES = {
    "DB_UNAVAILABLE",
    "DB_CONNECTION_ERROR",
    "DB_CONNECTION_TEST_FAILED",
    "RLS_PERMISSION_ERROR",
    "AUTH_SERVICE_UNAVAILABLE",
}
_NOT_RETRYABLE = {ErrorKind.NO_TOKEN, ErrorKind.UNAUTHORIZED, ErrorKind.VALIDATION_ERROR}


class ChatClientError(Exception):
    """客户端可见的错误"""

    def __init__(
        self,
        kind: ErrorKind,
        message: Optional[str] = None,
        status: Optional[int] = None,
        code: Optional[str] = None,
        details: Optional[str] = None,
    ):
        self.kind = kind
        self.message = message or USER_MESSAGES[kind]
        self.status = status
        self.code = code
        self.details = details
        super().__init__(self.message)

    @property
    def requires_login(self) -> bool:
        return self.kind in (ErrorKind.NO_TOKEN, ErrorKind.UNAUTHORIZED)

    @property
    def retryable(self) -> bool:
        return self.kind not in _NOT_RETRYABLE

    def __repr__(self):
        return f"ChatClientError(kind={self.kind.value!r}, status={self.status!r}, code={self.code!r})"


def classify_response(status: int, body: Any = None, reason: str = "") -> ChatClientError:
    """
    把失败的HTTP响应映射为 ChatClientError

    Args:
        status: HTTP状态码
        body: 解析后的JSON（{error, code, details}），非JSON时为None
        reason: 状态描述，body中没有错误信息时使用
    """
    if not isinstance(body, Mapping):
        body = {}
    code = body.get("code") if isinstance(body.get("code"), str) else None
    error = body.get("error") if isinstance(body.get("error"), str) else None
    details = body.get("details") if isinstance(body.get("details"), str) else None
    detail_text = error or details or reason or f"HTTP {status}"

    if status == 401 or code in _UNAUTHORIZED_CODES:
        kind = ErrorKind.UNAUTHORIZED
    elif code == "TABLE_NOT_FOUND" or "does not exist" in (details or "") or "no such table" in (details or ""):
        kind = ErrorKind.TABLE_NOT_FOUND
    elif status == 503 or code in _SERVICE_CODES:
        kind = ErrorKind.SERVICE_UNAVAILABLE
    elif status == 400:
        kind = ErrorKind.VALIDATION_ERROR
    elif status >= 500:
        kind = ErrorKind.SERVER_ERROR
    else:
        kind = ErrorKind.UNKNOWN

    message = None
    if kind == ErrorKind.UNKNOWN:
        message = f"{USER_MESSAGES[kind]}: {detail_text}"
    elif kind == ErrorKind.VALIDATION_ERROR and error:
        message = error

    return ChatClientError(kind, message=message, status=status, code=code, details=details or error)


def classify_exception(exc: BaseException, base_url: str = "") -> ChatClientError:
    """把任意异常映射为 ChatClientError（已经分类过的原样返回）"""
    if isinstance(exc, ChatClientError):
        return exc
    if isinstance(exc, (httpx.TimeoutException, asyncio.TimeoutError, TimeoutError)):
        return ChatClientError(ErrorKind.TIMEOUT, details=str(exc) or None)
    if isinstance(exc, httpx.TransportError):
        message = None
        if base_url:
            message = f"Cannot connect to backend server at {base_url}. Please ensure the server is running."
        return ChatClientError(ErrorKind.NETWORK_UNREACHABLE, message=message, details=str(exc) or None)
    if isinstance(exc, httpx.HTTPStatusError):
        return classify_response(exc.response.status_code, None, exc.response.reason_phrase)
    return ChatClientError(
        ErrorKind.UNKNOWN,
        message=f"{USER_MESSAGES[ErrorKind.UNKNOWN]}: {exc}",
        details=type(exc).__name__,
    )
