"""历史记录拉取"""
import asyncio

from .api import ChatApi
from .errors import ChatClientError, ErrorKind, classify_exception
from .models import HistorySnapshot
from .normalizer import normalize_history
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)


class HistoryFetcher:
    """拉取当前用户的全部对话和消息

    - 没有token直接抛 NO_TOKEN，不会发请求
    - 整个请求有总超时（默认5秒），超时抛 TIMEOUT
    - 返回值已经过规范化：每个对话的 messages 都是列表，ID别名已合并
    """

    def __init__(self, api: ChatApi):
        self.api = api

    async def fetch(self) -> HistorySnapshot:
        session = self.api.session
        if not session.has_token:
            logger.error("本地没有认证token，无法拉取历史记录")
            raise ChatClientError(ErrorKind.NO_TOKEN, code="NO_TOKEN")

        logger.info(f"拉取历史记录: {session.url('/api/chat/history')}")
        try:
            payload = await asyncio.wait_for(self.api.get_history(), timeout=session.history_timeout)
        except ChatClientError as e:
            logger.error(f"历史记录拉取失败: {e.kind.value} - {e.message}")
            raise
        except Exception as e:
            error = classify_exception(e, session.base_url)
            logger.error(f"历史记录拉取失败: {error.kind.value} - {error.message}")
            raise error from e

        snapshot = normalize_history(payload, user_id=session.user_id)
        logger.info(f"已加载 {len(snapshot.messages)} 条消息, {len(snapshot.chats)} 个对话")
        return snapshot
