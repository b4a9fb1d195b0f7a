"""测试错误分类、会话和回复流解析"""
import asyncio

import httpx
import pytest

from rovoxa.client.errors import ChatClientError, ErrorKind, classify_exception, classify_response
from rovoxa.client.session import Session
from rovoxa.client.stream import accumulate, decode_stream_line, encode_text_part


@pytest.mark.parametrize("status, body, kind", [
    (401, {"error": "Invalid or expired token", "code": "INVALID_TOKEN"}, ErrorKind.UNAUTHORIZED),
    (401, None, ErrorKind.UNAUTHORIZED),
    (503, {"error": "Database table does not exist", "code": "TABLE_NOT_FOUND"}, ErrorKind.TABLE_NOT_FOUND),
    (500, {"error": "x", "details": "relation \"chats\" does not exist"}, ErrorKind.TABLE_NOT_FOUND),
    (503, {"error": "Database service unavailable", "code": "DB_UNAVAILABLE"}, ErrorKind.SERVICE_UNAVAILABLE),
    (503, None, ErrorKind.SERVICE_UNAVAILABLE),
    (400, {"error": "Message is required and must be a non-empty string"}, ErrorKind.VALIDATION_ERROR),
    (502, {"error": "Failed to generate response", "code": "GENERATION_FAILED"}, ErrorKind.SERVER_ERROR),
    (500, "not json", ErrorKind.SERVER_ERROR),
    (418, None, ErrorKind.UNKNOWN),
])
def test_classify_response(status, body, kind):
    error = classify_response(status, body, "Reason")
    assert error.kind == kind
    assert error.status == status


def test_unknown_error_message_includes_detail():
    error = classify_response(404, {"error": "Chat not found", "code": "CHAT_NOT_FOUND"})
    assert error.message == "Request failed: Chat not found"
    assert error.code == "CHAT_NOT_FOUND"


def test_validation_error_uses_server_message():
    error = classify_response(400, {"error": "Too many files. Maximum is 5 files.", "code": "TOO_MANY_FILES"})
    assert error.message == "Too many files. Maximum is 5 files."
    assert error.retryable is False


def test_classify_exception():
    request = httpx.Request("GET", "http://localhost:8000/api/chat/history")

    timeout = classify_exception(httpx.ReadTimeout("slow", request=request))
    assert timeout.kind == ErrorKind.TIMEOUT
    assert timeout.retryable is True

    assert classify_exception(asyncio.TimeoutError()).kind == ErrorKind.TIMEOUT

    unreachable = classify_exception(httpx.ConnectError("refused", request=request), "http://localhost:8000")
    assert unreachable.kind == ErrorKind.NETWORK_UNREACHABLE
    assert "http://localhost:8000" in unreachable.message

    same = ChatClientError(ErrorKind.UNAUTHORIZED)
    assert classify_exception(same) is same
    assert same.requires_login is True

    other = classify_exception(ValueError("bad"))
    assert other.kind == ErrorKind.UNKNOWN
    assert "bad" in other.message


def test_session_requires_token():
    session = Session(base_url="http://localhost:8000/", token="  ")

    assert session.has_token is False
    with pytest.raises(ChatClientError) as exc_info:
        session.auth_headers()
    assert exc_info.value.kind == ErrorKind.NO_TOKEN

    logged_in = session.with_token("abc", user_id="u1")
    assert logged_in.auth_headers() == {"Authorization": "Bearer abc"}
    assert logged_in.user_id == "u1"
    assert logged_in.url("api/chat") == "http://localhost:8000/api/chat"
    assert session.token == "  "


def test_stream_line_decoding():
    assert decode_stream_line(encode_text_part('He said "hi"\n')) == 'He said "hi"\n'
    assert decode_stream_line('0:"你好"') == "你好"
    assert decode_stream_line('d:{"finishReason":"stop"}') is None
    assert decode_stream_line("0:not-json") is None
    assert decode_stream_line("0:42") is None
    assert decode_stream_line("") is None


def test_accumulate_yields_running_text():
    lines = ['0:"Hel"', "", 'e:{"x":1}', '0:"lo"']
    assert list(accumulate(lines)) == ["Hel", "Hello"]
