"""数据库连接和操作

表结构与 Supabase 迁移脚本一致：
- chats(id, user_id, title, created_at, updated_at)
- messages(id, chat_id -> chats.id ON DELETE CASCADE, role, content, created_at)
"""
import sqlite3
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import aiosqlite

from .models import ChatRecord, MessageRecord
from ..config import config
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

# 数据库路径
DB_PATH = Path(config.DATABASE_PATH)

VALID_ROLES = ("user", "assistant")


class DatabaseError(Exception):
    """数据库操作失败"""


class TableNotFoundError(DatabaseError):
    """表不存在（没有执行迁移）"""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@asynccontextmanager
async def connect():
    """打开连接并启用外键（级联删除依赖它）；sqlite 异常统一转换为 DatabaseError"""
    try:
        async with aiosqlite.connect(DB_PATH) as db:
            db.row_factory = aiosqlite.Row
            await db.execute("PRAGMA foreign_keys = ON")
            yield db
    except sqlite3.Error as e:
        if "no such table" in str(e):
            raise TableNotFoundError(str(e)) from e
        raise DatabaseError(str(e)) from e


async def init_db():
    """初始化数据库（创建表）"""
    DB_PATH.parent.mkdir(parents=True, exist_ok=True)

    async with connect() as db:
        await db.execute("""
            CREATE TABLE IF NOT EXISTS chats (
                id TEXT PRIMARY KEY,
                user_id TEXT NOT NULL,
                title TEXT NOT NULL DEFAULT 'New Chat',
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        await db.execute("""
            CREATE TABLE IF NOT EXISTS messages (
                id TEXT PRIMARY KEY,
                chat_id TEXT NOT NULL REFERENCES chats(id) ON DELETE CASCADE,
                role TEXT NOT NULL CHECK (role IN ('user', 'assistant')),
                content TEXT NOT NULL,
                created_at TEXT NOT NULL
            )
        """)

        # 创建索引以加速查询
        await db.execute("CREATE INDEX IF NOT EXISTS idx_messages_chat_id ON messages(chat_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_messages_created_at ON messages(created_at)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_chats_user_id ON chats(user_id)")
        await db.execute("CREATE INDEX IF NOT EXISTS idx_chats_updated_at ON chats(updated_at DESC)")

        await db.commit()
        logger.info(f"数据库初始化完成: {DB_PATH}")


def _chat_from_row(row) -> ChatRecord:
    return ChatRecord(
        id=row['id'],
        user_id=row['user_id'],
        title=row['title'],
        created_at=datetime.fromisoformat(row['created_at']),
        updated_at=datetime.fromisoformat(row['updated_at']),
    )


def _message_from_row(row) -> MessageRecord:
    return MessageRecord(
        id=row['id'],
        chat_id=row['chat_id'],
        role=row['role'],
        content=row['content'],
        created_at=datetime.fromisoformat(row['created_at']),
    )


async def check_tables():
    """连通性检查；表不存在时抛 TableNotFoundError"""
    async with connect() as db:
        await db.execute("SELECT id FROM chats LIMIT 1")
        await db.execute("SELECT id FROM messages LIMIT 1")


async def create_chat(chat_id: str, user_id: str, title: str = "New Chat") -> ChatRecord:
    """创建新对话"""
    now = _now()
    async with connect() as db:
        await db.execute("""
            INSERT INTO chats (id, user_id, title, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
        """, (chat_id, user_id, title, now, now))
        await db.commit()

    return ChatRecord(
        id=chat_id,
        user_id=user_id,
        title=title,
        created_at=datetime.fromisoformat(now),
        updated_at=datetime.fromisoformat(now),
    )


async def get_chat(chat_id: str, user_id: str) -> Optional[ChatRecord]:
    """获取用户自己的单个对话"""
    async with connect() as db:
        cursor = await db.execute("""
            SELECT * FROM chats WHERE id = ? AND user_id = ?
        """, (chat_id, user_id))
        row = await cursor.fetchone()

    if not row:
        return None
    return _chat_from_row(row)


async def list_chats(user_id: str) -> List[ChatRecord]:
    """获取用户的所有对话（最近更新的在前）"""
    async with connect() as db:
        cursor = await db.execute("""
            SELECT * FROM chats
            WHERE user_id = ?
            ORDER BY updated_at DESC
        """, (user_id,))
        rows = await cursor.fetchall()

    return [_chat_from_row(row) for row in rows]


async def list_messages(user_id: str) -> List[MessageRecord]:
    """获取用户所有对话的全部消息（按时间正序）"""
    async with connect() as db:
        cursor = await db.execute("""
            SELECT messages.* FROM messages
            JOIN chats ON chats.id = messages.chat_id
            WHERE chats.user_id = ?
            ORDER BY messages.created_at ASC, messages.rowid ASC
        """, (user_id,))
        rows = await cursor.fetchall()

    return [_message_from_row(row) for row in rows]


async def list_chats_with_messages(user_id: str) -> Tuple[List[ChatRecord], Dict[str, List[MessageRecord]]]:
    """对话列表 + 按对话分组的消息

    Returns:
        (chats, grouped)：grouped 的 key 是对话ID，每个对话都有一个列表（可能为空）
    """
    chats = await list_chats(user_id)
    messages = await list_messages(user_id)
    grouped: Dict[str, List[MessageRecord]] = {chat.id: [] for chat in chats}
    for message in messages:
        grouped.setdefault(message.chat_id, []).append(message)
    return chats, grouped


async def recent_messages(chat_id: str, limit: int = 10) -> List[MessageRecord]:
    """取对话最近 limit 条消息（返回按时间正序）"""
    async with connect() as db:
        cursor = await db.execute("""
            SELECT * FROM (
                SELECT *, rowid AS seq FROM messages
                WHERE chat_id = ?
                ORDER BY created_at DESC, rowid DESC
                LIMIT ?
            ) ORDER BY created_at ASC, seq ASC
        """, (chat_id, limit))
        rows = await cursor.fetchall()

    return [_message_from_row(row) for row in rows]


async def append_message(chat_id: str, role: str, content: str) -> MessageRecord:
    """追加一条消息"""
    if role not in VALID_ROLES:
        raise ValueError(f"invalid role: {role}")

    message_id = str(uuid.uuid4())
    now = _now()
    async with connect() as db:
        await db.execute("""
            INSERT INTO messages (id, chat_id, role, content, created_at)
            VALUES (?, ?, ?, ?, ?)
        """, (message_id, chat_id, role, content, now))
        await db.commit()

    return MessageRecord(
        id=message_id,
        chat_id=chat_id,
        role=role,
        content=content,
        created_at=datetime.fromisoformat(now),
    )


async def touch_chat(chat_id: str):
    """更新对话活动时间（在收到新消息时调用）"""
    async with connect() as db:
        await db.execute("""
            UPDATE chats SET updated_at = ? WHERE id = ?
        """, (_now(), chat_id))
        await db.commit()


async def delete_chat(chat_id: str, user_id: str) -> bool:
    """删除对话（消息级联删除）"""
    async with connect() as db:
        cursor = await db.execute("""
            DELETE FROM chats WHERE id = ? AND user_id = ?
        """, (chat_id, user_id))
        await db.commit()
        return cursor.rowcount > 0


async def delete_user_chats(user_id: str) -> int:
    """删除用户的全部对话，返回删除数量"""
    async with connect() as db:
        cursor = await db.execute("""
            DELETE FROM chats WHERE user_id = ?
        """, (user_id,))
        await db.commit()
        return cursor.rowcount
