"""客户端规范数据模型

所有从网络进来的记录都要先经过 normalizer 变成这里的类型，
之后的状态管理和渲染只接触这些封闭结构。
"""
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, ConfigDict, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


class Role(str, Enum):
    """消息角色"""
    USER = "user"
    ASSISTANT = "assistant"


class Message(BaseModel):
    """一条聊天消息（规范形态）"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="消息ID，聊天内唯一")
    role: Role = Field(..., description="user / assistant")
    content: str = Field(default="", description="消息内容，只有助手回复流式生成中才会为空")
    timestamp: datetime = Field(default_factory=utc_now, description="时间（UTC）")
    chat_id: Optional[str] = Field(default=None, description="所属对话ID")


class Chat(BaseModel):
    """一个对话（规范形态）"""
    model_config = ConfigDict(frozen=True)

    id: str = Field(..., description="对话ID（已合并 id/_id/chatId）")
    user_id: Optional[str] = Field(default=None, description="用户ID")
    title: str = Field(default="New Chat", description="对话标题")
    messages: List[Message] = Field(default_factory=list, description="按时间顺序的消息，永远是列表")
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def chat_id(self) -> str:
        """与 id 永远一致"""
        return self.id


class HistorySnapshot(BaseModel):
    """一次历史记录拉取的结果"""
    model_config = ConfigDict(frozen=True)

    chats: List[Chat] = Field(default_factory=list)
    messages: List[Message] = Field(default_factory=list)
    user_id: Optional[str] = None
    source: Optional[str] = None
    notice: Optional[str] = Field(default=None, description="服务端附带的提示信息")
