"""数据库模块 - 对话与消息持久化"""
from .database import init_db, DatabaseError, TableNotFoundError
from .models import ChatRecord, MessageRecord

__all__ = ['init_db', 'DatabaseError', 'TableNotFoundError', 'ChatRecord', 'MessageRecord']
