"""数据模型定义"""
from datetime import datetime
from typing import Optional
from pydantic import BaseModel, ConfigDict, Field


class ChatRecord(BaseModel):
    """chats 表的一行"""
    id: str = Field(..., description="对话ID（UUID）")
    user_id: str = Field(..., description="用户ID")
    title: str = Field(default="New Chat", description="对话标题")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")
    updated_at: datetime = Field(default_factory=datetime.now, description="更新时间")


class MessageRecord(BaseModel):
    """messages 表的一行"""
    id: str = Field(..., description="消息ID（UUID）")
    chat_id: str = Field(..., description="所属对话ID")
    role: str = Field(..., description="user / assistant")
    content: str = Field(..., description="消息内容")
    created_at: datetime = Field(default_factory=datetime.now, description="创建时间")


class ChatCreate(BaseModel):
    """创建对话请求"""
    model_config = ConfigDict(populate_by_name=True)

    chat_id: str = Field(..., alias="chatId", min_length=1, description="客户端生成的对话ID")
    message: Optional[str] = Field(default=None, description="首条消息（用于生成标题，可选）")
