"""消息/对话规范化

服务端不同版本返回的字段名不一致：
- 消息：id/_id，role/sender（'ai' 代表助手），content/text，timestamp/created_at
- 对话：id/_id/chatId，userId/user_id，createdAt/created_at 等

这里是唯一的解析边界：输入任意记录，输出 models 里的封闭类型，从不抛异常。
"""
import re
import uuid
from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

from .models import Chat, HistorySnapshot, Message, Role, utc_now
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

DEFAULT_TITLE = "New Chat"
TITLE_MAX_LENGTH = 35

_VALID_ROLES = {Role.USER.value, Role.ASSISTANT.value}

# 标题清洗：先去掉词内撇号（How's -> Hows），其余标点换成空格再合并空白
_APOSTROPHES = re.compile(r"['’]")
_NON_WORD = re.compile(r"[^\w\s]")
_WHITESPACE = re.compile(r"\s+")

# 大于这个值的数字时间戳按毫秒处理（JS Date.now()）
_EPOCH_MILLIS_THRESHOLD = 1e11


def _field(record: Any, *names: str) -> Any:
    """按优先级取第一个非None字段，兼容 dict 和普通对象"""
    for name in names:
        if isinstance(record, Mapping):
            value = record.get(name)
        else:
            value = getattr(record, name, None)
        if value is not None:
            return value
    return None


def parse_timestamp(value: Any, default: Optional[datetime] = None) -> datetime:
    """
    把 datetime / ISO字符串 / epoch数字 统一成带时区的UTC时间

    无法解析时返回 default（默认当前时间），不会抛异常。
    """
    fallback = default or utc_now()

    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    if isinstance(value, bool):
        return fallback

    if isinstance(value, (int, float)):
        return _from_epoch(value, fallback)

    if isinstance(value, str):
        text = value.strip()
        if not text:
            return fallback
        try:
            return _from_epoch(float(text), fallback)
        except ValueError:
            pass
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            return parse_timestamp(datetime.fromisoformat(text), fallback)
        except ValueError:
            logger.debug(f"无法解析时间戳: {value!r}")
            return fallback

    return fallback


def _from_epoch(value: float, fallback: datetime) -> datetime:
    try:
        seconds = value / 1000 if abs(value) >= _EPOCH_MILLIS_THRESHOLD else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return fallback


def normalize_role(role: Any, sender: Any = None) -> Role:
    """role 合法就用 role，否则看 sender：'ai' 是助手，其余都算用户"""
    if isinstance(role, Role):
        return role
    if isinstance(role, str) and role in _VALID_ROLES:
        return Role(role)
    if sender == "ai":
        return Role.ASSISTANT
    return Role.USER


def _flatten_content(value: Any) -> str:
    """多模态内容（[{type: text, text: ...}, ...]）只保留文本部分"""
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        parts = []
        for item in value:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, Mapping) and item.get("type", "text") == "text":
                text = item.get("text")
                if isinstance(text, str):
                    parts.append(text)
        return " ".join(parts)
    return ""


def synthesize_message_id(prefix: Any, timestamp: Optional[datetime] = None) -> str:
    """生成 {role-or-sender}-{毫秒时间戳}-{随机后缀}，保证列表渲染key唯一"""
    moment = timestamp or utc_now()
    label = getattr(prefix, "value", prefix)
    if not isinstance(label, str) or not label:
        label = "unknown"
    return f"{label}-{int(moment.timestamp() * 1000)}-{uuid.uuid4().hex[:8]}"


def normalize_message(record: Any, chat_id: Optional[str] = None) -> Message:
    """
    把任意形似消息的记录转成规范 Message

    Args:
        record: dict / 对象 / Message
        chat_id: 记录本身没有对话ID时使用的默认值

    Returns:
        Message（内容无法恢复时为空字符串，过滤交给渲染层）
    """
    if isinstance(record, Message):
        if chat_id and not record.chat_id:
            return record.model_copy(update={"chat_id": chat_id})
        return record

    if record is None:
        record = {}

    raw_role = _field(record, "role")
    raw_sender = _field(record, "sender")
    role = normalize_role(raw_role, raw_sender)

    content = _flatten_content(_field(record, "content"))
    if not content:
        content = _flatten_content(_field(record, "text"))

    raw_timestamp = _field(record, "timestamp", "created_at", "createdAt")
    timestamp = parse_timestamp(raw_timestamp)

    message_id = _field(record, "id", "_id")
    if message_id is None or message_id == "":
        message_id = synthesize_message_id(raw_role or raw_sender, timestamp)

    owner = _field(record, "chat_id", "chatId") or chat_id

    return Message(
        id=str(message_id),
        role=role,
        content=content,
        timestamp=timestamp,
        chat_id=str(owner) if owner is not None else None,
    )


def normalize_messages(records: Any, chat_id: Optional[str] = None) -> List[Message]:
    """列表版本：非列表输入视为空，非对象元素直接跳过"""
    if not isinstance(records, (list, tuple)):
        return []
    normalized = []
    for index, record in enumerate(records):
        if record is None or isinstance(record, (str, bytes, int, float, bool, list, tuple)):
            logger.warning(f"跳过无法解析的消息记录 #{index}: {type(record).__name__}")
            continue
        normalized.append(normalize_message(record, chat_id=chat_id))
    return normalized


def derive_title(text: Any, max_length: int = TITLE_MAX_LENGTH) -> str:
    """
    从第一条用户消息生成对话标题

    规则：
    1. 删除撇号（"How's" -> "Hows"），其余非单词字符替换为空格
    2. 合并连续空白并去掉首尾空白
    3. 不超过 max_length 原样返回；否则按单词截断并追加 "..."

    Args:
        text: 消息文本
        max_length: 标题最大长度（不含省略号）

    Returns:
        标题；清洗后为空时返回 "New Chat"
    """
    if not isinstance(text, str):
        return DEFAULT_TITLE

    cleaned = _APOSTROPHES.sub("", text.strip())
    cleaned = _NON_WORD.sub(" ", cleaned)
    cleaned = _WHITESPACE.sub(" ", cleaned).strip()

    if not cleaned:
        return DEFAULT_TITLE
    if len(cleaned) <= max_length:
        return cleaned

    words = cleaned.split(" ")
    title_words = []
    current_length = 0
    for word in words:
        if current_length + len(word) + 1 <= max_length:
            title_words.append(word)
            current_length += len(word) + 1
        else:
            break

    if not title_words:
        # 第一个单词就超长，只能硬截断
        return cleaned[:max_length] + "..."

    title = " ".join(title_words)
    if len(title_words) < len(words):
        title += "..."
    return title


def _first_user_text(messages: Iterable[Message]) -> Optional[str]:
    for message in messages:
        if message.role == Role.USER and message.content.strip():
            return message.content
    return None


def normalize_chat(record: Any, user_id: Optional[str] = None) -> Chat:
    """
    把任意形似对话的记录转成规范 Chat

    - id/_id/chatId 合并成一个 id（优先级 id > _id > chatId）
    - messages 缺失、为 None 或不是列表时一律变成 []
    - 没有标题时从第一条用户消息生成
    """
    if isinstance(record, Chat):
        return record
    if record is None:
        record = {}

    raw_id = _field(record, "id", "_id", "chatId", "chat_id")
    if raw_id is None or raw_id == "":
        chat_id = str(uuid.uuid4())
        logger.warning(f"对话记录缺少ID，已生成临时ID: {chat_id}")
    else:
        chat_id = str(raw_id)

    messages = normalize_messages(_field(record, "messages"), chat_id=chat_id)

    title = _field(record, "title")
    if not isinstance(title, str) or not title.strip():
        first_text = _first_user_text(messages)
        title = derive_title(first_text) if first_text else DEFAULT_TITLE

    now = utc_now()
    created_at = parse_timestamp(
        _field(record, "createdAt", "created_at", "updatedAt", "updated_at"), now
    )
    updated_at = parse_timestamp(
        _field(record, "updatedAt", "updated_at", "createdAt", "created_at"), now
    )

    owner = _field(record, "userId", "user_id") or user_id

    return Chat(
        id=chat_id,
        user_id=str(owner) if owner is not None else None,
        title=title,
        messages=messages,
        created_at=created_at,
        updated_at=updated_at,
    )


def normalize_chats(records: Any, user_id: Optional[str] = None) -> List[Chat]:
    if not isinstance(records, (list, tuple)):
        return []
    chats = []
    for index, record in enumerate(records):
        if record is None or not isinstance(record, (Mapping, Chat)):
            logger.warning(f"跳过无法解析的对话记录 #{index}: {type(record).__name__}")
            continue
        chats.append(normalize_chat(record, user_id=user_id))
    return chats


def normalize_history(payload: Any, user_id: Optional[str] = None) -> HistorySnapshot:
    """历史记录接口响应 -> HistorySnapshot"""
    if not isinstance(payload, Mapping):
        payload = {}
    owner = payload.get("userId") or user_id
    return HistorySnapshot(
        chats=normalize_chats(payload.get("chats"), user_id=owner),
        messages=normalize_messages(payload.get("messages")),
        user_id=str(owner) if owner is not None else None,
        source=payload.get("source") if isinstance(payload.get("source"), str) else None,
        notice=payload.get("message") if isinstance(payload.get("message"), str) else None,
    )
