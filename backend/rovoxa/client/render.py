"""渲染前的防御层：无论上游数据多脏，列表渲染都不能崩"""
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Iterable, List, Optional

from .errors import ChatClientError
from .models import Chat, Message, Role
from .normalizer import DEFAULT_TITLE, derive_title, normalize_message
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

THINKING_PLACEHOLDER = "Thinking..."
EMPTY_USER_PLACEHOLDER = "(empty message)"
PREVIEW_LENGTH = 60


@dataclass(frozen=True)
class RenderItem:
    """渲染一个气泡需要的全部信息"""
    key: str
    role: str
    text: str
    timestamp: Optional[datetime] = None
    placeholder: bool = False
    error: bool = False


def guard_messages(items: Any) -> List[RenderItem]:
    """
    过滤并转换待渲染的消息序列

    - 只接受 Message 或 dict，其余（None、字符串、数字……）记日志后跳过
    - 助手空内容（流式生成中）显示“思考中”占位
    - 用户空内容（理论上不会出现）也显示占位，不渲染空气泡
    """
    if not isinstance(items, (list, tuple)):
        if items is not None:
            logger.warning(f"待渲染消息不是列表: {type(items).__name__}")
        return []

    rendered = []
    for index, item in enumerate(items):
        if isinstance(item, Message):
            message = item
        elif isinstance(item, Mapping):
            message = normalize_message(item)
        else:
            logger.warning(f"跳过无效消息 #{index}: {type(item).__name__}")
            continue

        placeholder = False
        text = message.content
        if not text.strip():
            placeholder = True
            text = THINKING_PLACEHOLDER if message.role == Role.ASSISTANT else EMPTY_USER_PLACEHOLDER

        rendered.append(RenderItem(
            key=message.id,
            role=message.role.value,
            text=text,
            timestamp=message.timestamp,
            placeholder=placeholder,
        ))
    return rendered


def render_transcript(messages: Iterable[Any], error: Optional[ChatClientError] = None) -> List[RenderItem]:
    """消息列表 + 发送失败时末尾的行内错误气泡"""
    rendered = guard_messages(list(messages) if messages is not None else None)
    if error is not None:
        rendered.append(RenderItem(key="transcript-error", role=Role.ASSISTANT.value, text=error.message, error=True))
    return rendered


@dataclass(frozen=True)
class ChatSummary:
    """侧边栏的一行"""
    id: str
    title: str
    last_message: Optional[str]
    timestamp: datetime
    message_count: int


def summarize_chats(chats: Iterable[Chat]) -> List[ChatSummary]:
    """侧边栏列表：存储的标题优先（"New Chat" 不算），其次从第一条用户消息生成"""
    summaries = []
    for chat in chats or []:
        if not isinstance(chat, Chat):
            logger.warning(f"跳过无效对话: {type(chat).__name__}")
            continue

        first_user = next((m for m in chat.messages if m.role == Role.USER and m.content.strip()), None)
        if chat.title and chat.title.strip() and chat.title != DEFAULT_TITLE:
            title = chat.title
        elif first_user is not None:
            title = derive_title(first_user.content)
        else:
            title = DEFAULT_TITLE

        last = chat.messages[-1] if chat.messages else None
        preview = None
        if last is not None and last.content:
            preview = last.content[:PREVIEW_LENGTH]
            if len(last.content) > PREVIEW_LENGTH:
                preview += "..."

        summaries.append(ChatSummary(
            id=chat.id,
            title=title,
            last_message=preview,
            timestamp=last.timestamp if last is not None else chat.updated_at,
            message_count=len(chat.messages),
        ))
    return summaries
