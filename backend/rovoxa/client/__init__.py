"""聊天客户端 - 历史记录同步、乐观发送、对话切换"""
from .api import Attachment, ChatApi
from .errors import ChatClientError, ErrorKind
from .history import HistoryFetcher
from .models import Chat, HistorySnapshot, Message, Role
from .normalizer import derive_title, normalize_chat, normalize_message
from .render import guard_messages, summarize_chats
from .session import Session
from .store import NEW_CHAT, ChatStore

__all__ = [
    'Attachment', 'ChatApi', 'ChatClientError', 'ErrorKind', 'HistoryFetcher',
    'Chat', 'HistorySnapshot', 'Message', 'Role',
    'derive_title', 'normalize_chat', 'normalize_message',
    'guard_messages', 'summarize_chats', 'Session', 'NEW_CHAT', 'ChatStore',
]
