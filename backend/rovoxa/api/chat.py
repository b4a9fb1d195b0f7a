"""Chat API 接口"""
import uuid
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import StreamingResponse
from pydantic import ValidationError

from ..auth import AuthenticatedUser, get_current_user
from ..client.normalizer import derive_title
from ..client.stream import encode_text_part
from ..config import config
from ..db import database
from ..db.database import DatabaseError, TableNotFoundError
from ..db.models import ChatCreate, ChatRecord, MessageRecord
from ..files import FileContext, UploadRejected, process_uploaded_files
from ..llm import MODEL_NAME, generate_response
from ..prompts import build_enhanced_prompt, format_context
from ..tools.search_tools import format_search_results, search_web, should_trigger_web_search
from ..tools.weather_tools import (
    extract_location_from_message,
    format_weather_results,
    get_weather_data,
    should_trigger_weather_search,
)
from ..utils.structured_logger import LogContext, get_logger

logger = get_logger(__name__)

router = APIRouter()


def api_error(status_code: int, error: str, code: str, details: Optional[str] = None, **extra) -> HTTPException:
    detail: Dict[str, Any] = {"error": error, "code": code}
    if details:
        detail["details"] = details
    detail.update(extra)
    return HTTPException(status_code=status_code, detail=detail)


def db_error(e: DatabaseError, action: str) -> HTTPException:
    """数据库异常 -> HTTP 错误"""
    if isinstance(e, TableNotFoundError):
        return api_error(503, "Database table does not exist", "TABLE_NOT_FOUND",
                         f"{e}. Run the schema migration (init_db) first")
    if "unable to open" in str(e):
        return api_error(503, "Database service unavailable", "DB_UNAVAILABLE", str(e))
    return api_error(500, f"Failed to {action}", "DB_QUERY_ERROR", str(e))


def is_valid_uuid(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    try:
        uuid.UUID(value)
    except ValueError:
        return False
    return True


def _request_id() -> str:
    return uuid.uuid4().hex[:8]


# ==================== 发送消息 ====================

async def _read_chat_request(request: Request):
    """
    解析 JSON 或 multipart 请求体

    Returns:
        (message, chat_id, uploads, is_multipart)
    """
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        uploads = [item for item in form.getlist("files") if not isinstance(item, str)]
        if len(uploads) > config.MAX_UPLOAD_FILES:
            raise api_error(400, f"Too many files. Maximum is {config.MAX_UPLOAD_FILES} files.", "TOO_MANY_FILES")
        return form.get("message"), form.get("chatId") or None, uploads, True

    try:
        body = await request.json()
    except ValueError:
        raise api_error(400, "Invalid JSON in request body", "INVALID_JSON")
    if not isinstance(body, dict):
        raise api_error(400, "Invalid JSON in request body", "INVALID_JSON")
    return body.get("message"), body.get("chatId"), [], False


async def _load_context(chat_id: Optional[str], user_id: str):
    """已存在的对话 -> (对话, 最近消息拼成的上下文)；查询失败不影响回复"""
    if not is_valid_uuid(chat_id):
        return None, ""
    try:
        chat = await database.get_chat(chat_id, user_id)
        if chat is None:
            return None, ""
        recent = await database.recent_messages(chat.id, config.CONTEXT_MESSAGE_LIMIT)
    except DatabaseError as e:
        logger.error(f"读取对话上下文失败: {e}")
        return None, ""
    return chat, format_context(recent)


async def _persist_exchange(
    existing: Optional[ChatRecord],
    chat_id: Optional[str],
    user_id: str,
    message: str,
    reply: str,
) -> str:
    """保存一问一答，返回实际使用的对话ID；保存失败只记日志"""
    saved_chat_id = chat_id if is_valid_uuid(chat_id) else str(uuid.uuid4())
    if chat_id and saved_chat_id != chat_id:
        logger.warning(f"chatId 不是合法的 UUID，已生成新的: {saved_chat_id}")

    try:
        if existing is None:
            existing = await database.create_chat(saved_chat_id, user_id, derive_title(message))
            logger.info(f"新对话已创建: {saved_chat_id}")
        await database.append_message(existing.id, "user", message)
        await database.append_message(existing.id, "assistant", reply)
        await database.touch_chat(existing.id)
    except DatabaseError as e:
        logger.error(f"保存消息失败（回复照常返回）: {e}")
    return saved_chat_id


@router.post("/chat")
async def send_message(request: Request, user: AuthenticatedUser = Depends(get_current_user)):
    """发送消息：JSON 请求返回 `0:"..."` 文本流，multipart 请求返回 JSON"""
    message, chat_id, uploads, is_multipart = await _read_chat_request(request)

    if not isinstance(message, str) or not message.strip():
        raise api_error(400, "Message is required and must be a non-empty string", "INVALID_MESSAGE")

    with LogContext(request_id=_request_id(), chat_id=chat_id, user_id=user.id):
        logger.info(f"收到消息: {len(message)} 字符, {len(uploads)} 个附件")

        try:
            file_context = await process_uploaded_files(uploads) if uploads else FileContext()
        except UploadRejected as e:
            logger.warning(f"拒绝上传文件: {e.code} - {e.message}")
            raise api_error(400, e.message, e.code)

        existing, context = await _load_context(chat_id, user.id)

        # 天气优先；没有天气数据才搜索
        weather_location = None
        weather_text = None
        if should_trigger_weather_search(message):
            weather_location = extract_location_from_message(message)
            if weather_location:
                weather = await run_in_threadpool(get_weather_data, weather_location)
                if weather.get("success"):
                    weather_text = format_weather_results(weather)

        search = None
        search_text = None
        if weather_text is None and should_trigger_web_search(message):
            search = await run_in_threadpool(search_web, message)
            if search.get("success") and search.get("results"):
                search_text = format_search_results(search)

        prompt = build_enhanced_prompt(
            message,
            context=context,
            weather_location=weather_location,
            weather_text=weather_text,
            search_query=message,
            search_text=search_text,
            file_text=file_context.content,
        )

        result = await generate_response(prompt)
        if not result.success:
            logger.error(f"生成回复失败: {result.error}")
            raise api_error(502, "Failed to generate response", "GENERATION_FAILED", result.error, model=MODEL_NAME)

        reply = result.reply
        saved_chat_id = await _persist_exchange(existing, chat_id, user.id, message, reply)
        logger.info(f"回复已生成: {len(reply)} 字符")

    if is_multipart:
        web_search = {"triggered": False}
        if search is not None:
            web_search = {
                "triggered": True,
                "query": message,
                "resultsCount": len(search.get("results") or []),
                "success": bool(search.get("success")),
            }
        return {"reply": reply, "chatId": saved_chat_id, "webSearch": web_search}

    return StreamingResponse(
        iter([encode_text_part(reply)]),
        media_type="text/plain; charset=utf-8",
        headers={"Cache-Control": "no-cache", "X-Chat-Id": saved_chat_id},
    )


# ==================== 对话管理 ====================

def _chat_json(chat: ChatRecord, messages: List[MessageRecord]) -> Dict[str, Any]:
    return {
        "chatId": chat.id,
        "userId": chat.user_id,
        "title": chat.title,
        "messages": [
            {
                "id": m.id,
                "sender": "ai" if m.role == "assistant" else "user",
                "text": m.content,
                "timestamp": m.created_at.isoformat(),
            }
            for m in messages
        ],
        "createdAt": chat.created_at.isoformat(),
        "updatedAt": chat.updated_at.isoformat(),
    }


@router.post("/chat/create")
async def create_chat(request: Request, user: AuthenticatedUser = Depends(get_current_user)):
    """登记新对话；已存在时直接返回"""
    try:
        body = await request.json()
    except ValueError:
        raise api_error(400, "Invalid JSON in request body", "INVALID_JSON")
    try:
        payload = ChatCreate.model_validate(body)
    except ValidationError:
        raise api_error(400, "chatId is required and must be a non-empty string", "INVALID_CHAT_ID")

    with LogContext(request_id=_request_id(), chat_id=payload.chat_id, user_id=user.id):
        try:
            chat = await database.get_chat(payload.chat_id, user.id)
            if chat is not None:
                logger.info("对话已存在")
                return {"message": "Chat already exists", "chat": _chat_json(chat, []), "chatId": chat.id}

            chat = await database.create_chat(payload.chat_id, user.id, derive_title(payload.message))
        except DatabaseError as e:
            logger.error(f"创建对话失败: {e}")
            raise db_error(e, "create chat")

        logger.info("新对话已创建")
        return {"message": "Chat created successfully", "chat": _chat_json(chat, []), "chatId": chat.id}


@router.get("/chat/history")
async def get_history(user: AuthenticatedUser = Depends(get_current_user)):
    """当前用户的全部对话（最近更新的在前）及其消息"""
    with LogContext(request_id=_request_id(), user_id=user.id):
        try:
            await database.check_tables()
            chats, grouped = await database.list_chats_with_messages(user.id)
        except DatabaseError as e:
            logger.error(f"读取历史记录失败: {e}")
            raise db_error(e, "fetch chat history")

        messages = []
        for chat in chats:
            for m in grouped[chat.id]:
                messages.append({
                    "id": m.id,
                    "chatId": chat.id,
                    "sender": "ai" if m.role == "assistant" else "user",
                    "text": m.content,
                    "timestamp": m.created_at.isoformat(),
                })

        logger.info(f"历史记录: {len(chats)} 个对话, {len(messages)} 条消息")
        return {
            "messages": messages,
            "chats": [_chat_json(chat, grouped[chat.id]) for chat in chats],
            "userId": user.id,
            "source": "sqlite",
            "message": "No chat history found" if not chats else f"Loaded {len(chats)} chats",
        }


@router.delete("/chat/history")
async def clear_history(user: AuthenticatedUser = Depends(get_current_user)):
    """删除当前用户的全部对话"""
    with LogContext(request_id=_request_id(), user_id=user.id):
        try:
            deleted = await database.delete_user_chats(user.id)
        except DatabaseError as e:
            logger.error(f"清空历史记录失败: {e}")
            raise db_error(e, "clear chat history")

        logger.info(f"已删除 {deleted} 个对话")
        return {"message": "Chat history cleared", "deleted": deleted}


@router.delete("/chat/{chat_id}")
async def delete_chat(chat_id: str, user: AuthenticatedUser = Depends(get_current_user)):
    """删除单个对话（消息级联删除）"""
    with LogContext(request_id=_request_id(), chat_id=chat_id, user_id=user.id):
        try:
            deleted = await database.delete_chat(chat_id, user.id)
        except DatabaseError as e:
            logger.error(f"删除对话失败: {e}")
            raise db_error(e, "delete chat")

        if not deleted:
            raise api_error(404, "Chat not found", "CHAT_NOT_FOUND")

        logger.info("对话已删除")
        return {"message": "Chat deleted successfully", "chatId": chat_id}
