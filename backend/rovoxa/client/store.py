"""聊天会话状态

ChatStore 持有一个UI会话的全部可变状态，只在单个事件循环里被修改：

- chats / messages：最近一次成功拉取的服务端历史（已规范化）
- working：当前对话的消息列表（选中对话或刷新时整体替换）
- local：乐观消息缓冲（已显示、尚未被历史刷新确认的发送）
- active_chat_id + generation：当前对话及其“代”，每次切换对话代数+1

异步回调（流式补丁、回滚）都带着发起时的 (chat_id, generation)，
应用前先比对，切换过对话的迟到回调直接作废。
"""
import asyncio
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from .api import Attachment, ChatApi
from .errors import ChatClientError, ErrorKind, classify_exception
from .history import HistoryFetcher
from .models import Chat, Message, Role, utc_now
from .normalizer import normalize_message, synthesize_message_id
from .render import ChatSummary, RenderItem, render_transcript, summarize_chats
from .single_flight import SingleFlight
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

HISTORY_KEY = "chat-history"
NEW_CHAT = "new-chat"


@dataclass
class SendOperation:
    """一次发送的标签：发起时的对话和代数"""
    chat_id: str
    generation: int
    user_message_id: str
    placeholder_id: Optional[str] = None


class ChatStore:
    """一个UI会话的聊天状态

    Args:
        api: 后端接口
        fetcher: 历史记录拉取器（默认基于同一个 api）
        chat_id: 初始对话ID（默认生成新的UUID）
    """

    def __init__(self, api: ChatApi, fetcher: Optional[HistoryFetcher] = None, chat_id: Optional[str] = None):
        self.api = api
        self.fetcher = fetcher or HistoryFetcher(api)

        self.chats: List[Chat] = []
        self.messages: List[Message] = []
        self.working: List[Message] = []
        self.local: List[Message] = []

        self.active_chat_id: str = chat_id or str(uuid.uuid4())
        self.generation = 0

        self.is_loading = False
        self.is_sending = False
        self.history_error: Optional[ChatClientError] = None
        self.transcript_error: Optional[ChatClientError] = None
        self.retry_count = 0

        self._flight = SingleFlight()
        self._pending: Dict[str, SendOperation] = {}

    @property
    def session(self):
        return self.api.session

    # ==================== 读取 ====================

    def visible_messages(self) -> List[Message]:
        """当前对话要显示的消息：对话消息 + 乐观缓冲"""
        return [*self.working, *self.local]

    def render(self) -> List[RenderItem]:
        return render_transcript(self.visible_messages(), self.transcript_error)

    def sidebar(self) -> List[ChatSummary]:
        return summarize_chats(self.chats)

    def find_chat(self, chat_id: str) -> Optional[Chat]:
        for chat in self.chats:
            if chat.id == chat_id:
                return chat
        return None

    @property
    def status(self) -> str:
        """指示器状态：error / thinking / loading / idle"""
        if self.history_error is not None or self.transcript_error is not None:
            return "error"
        if self.is_sending:
            return "thinking"
        if self.is_loading:
            return "loading"
        return "idle"

    def export(self) -> Dict[str, Any]:
        return {
            "userId": self.session.user_id,
            "chatId": self.active_chat_id,
            "messages": [m.model_dump(mode="json") for m in self.visible_messages()],
            "exportedAt": datetime.now(timezone.utc).isoformat(),
        }

    # ==================== 历史记录 ====================

    async def refresh_history(self) -> bool:
        """
        拉取历史记录；进行中时再次调用只会等待同一个请求

        Returns:
            是否成功（失败信息在 history_error）

        Raises:
            ChatClientError: 只有 NO_TOKEN 会抛出，调用方需要跳转登录
        """
        return await self._flight.run(HISTORY_KEY, self._load_history)

    async def retry_history(self) -> bool:
        """手动重试（不会自动重试）"""
        self.retry_count += 1
        logger.info(f"重试拉取历史记录（第 {self.retry_count} 次）")
        return await self.refresh_history()

    async def _load_history(self) -> bool:
        self.is_loading = True
        self.history_error = None
        try:
            snapshot = await self.fetcher.fetch()
        except Exception as e:
            error = classify_exception(e, self.session.base_url)
            self.history_error = error
            if error.kind == ErrorKind.TIMEOUT:
                logger.warning("历史记录拉取超时，保留现有数据")
            else:
                # 其他错误：清掉可能已过期的数据，只保留本会话的乐观消息
                self.chats = []
                self.messages = []
                self.working = []
            if error.kind == ErrorKind.NO_TOKEN:
                raise error
            return False
        finally:
            self.is_loading = False

        self.chats = list(snapshot.chats)
        self.messages = list(snapshot.messages)
        # 已落定的乐观消息交给服务端版本；仍在发送中的保留，流式补丁还要找到它
        in_flight_ids = set()
        for op in self._pending.values():
            if self._is_current(op):
                in_flight_ids.add(op.user_message_id)
                if op.placeholder_id:
                    in_flight_ids.add(op.placeholder_id)
        self.local = [m for m in self.local if m.id in in_flight_ids]
        if in_flight_ids:
            # 服务端可能已经存下这一轮，working 不动，等发送落定后的下一次刷新再对齐
            logger.debug(f"当前对话有 {len(in_flight_ids)} 条发送中的消息，保留 working")
        else:
            active = self.find_chat(self.active_chat_id)
            self.working = list(active.messages) if active is not None else []
        self.retry_count = 0
        return True

    async def clear_history(self) -> bool:
        """删除当前用户的全部历史"""
        self.history_error = None
        try:
            await self.api.clear_history()
        except Exception as e:
            self.history_error = classify_exception(e, self.session.base_url)
            logger.error(f"清空历史记录失败: {self.history_error.message}")
            return False

        logger.info("历史记录已清空")
        self.chats = []
        self.messages = []
        self.working = []
        self.local = []
        self.transcript_error = None
        return True

    # ==================== 切换对话 ====================

    def _activate(self, chat_id: str):
        """切换当前对话：先设置ID，再清空乐观缓冲；旧的异步回调全部作废"""
        self.active_chat_id = chat_id
        self.generation += 1
        self.local = []
        self.transcript_error = None

    def _is_current(self, op: SendOperation) -> bool:
        return op.generation == self.generation and op.chat_id == self.active_chat_id

    async def new_chat(self) -> str:
        """开始新对话；服务端登记失败不影响本地使用（首次发送时会隐式创建）"""
        new_chat_id = str(uuid.uuid4())
        self._activate(new_chat_id)
        self.working = []

        if not self.session.has_token:
            logger.warning("缺少token，新对话仅在本地创建")
            return new_chat_id

        try:
            await self.api.create_chat(new_chat_id)
        except Exception as e:
            error = classify_exception(e, self.session.base_url)
            logger.warning(f"新对话登记失败（仅本地可用）: {error.message}")
            return new_chat_id

        logger.info(f"新对话已创建: {new_chat_id}")
        await self.refresh_history()
        return new_chat_id

    async def select_chat(self, chat_id: Optional[str]) -> bool:
        """
        切换到已加载的对话

        Args:
            chat_id: 对话ID；为空或 NEW_CHAT 时开始新对话

        Returns:
            是否切换成功；找不到对话时清空显示并记录错误
        """
        if not chat_id or chat_id == NEW_CHAT:
            await self.new_chat()
            return True

        chat = self.find_chat(chat_id)
        if chat is None:
            logger.warning(f"对话不存在: {chat_id}")
            self.generation += 1
            self.local = []
            self.working = []
            self.transcript_error = ChatClientError(ErrorKind.UNKNOWN, message="Conversation not found")
            return False

        self._activate(chat.id)
        self.working = list(chat.messages)
        logger.info(f"已切换对话: {chat.id}，共 {len(chat.messages)} 条消息")
        return True

    async def delete_chat(self, chat_id: str) -> bool:
        """删除对话（消息级联删除）；删的是当前对话则开始新对话"""
        try:
            await self.api.delete_chat(chat_id)
        except Exception as e:
            self.transcript_error = classify_exception(e, self.session.base_url)
            logger.error(f"删除对话失败: {self.transcript_error.message}")
            return False

        logger.info(f"对话已删除: {chat_id}")
        await self.refresh_history()
        if chat_id == self.active_chat_id:
            await self.new_chat()
        return True

    # ==================== 发送 ====================

    async def send(self, text: str, attachments: Optional[Sequence[Attachment]] = None) -> Optional[Message]:
        """
        乐观发送一条消息

        1. 去空白后为空：直接忽略，不发请求
        2. 立即把用户消息（无附件时再加一个空的助手占位）放进 local
        3. 发请求；流式回复逐段写入占位消息的 content（ID不变）
        4. 失败：移除占位（保留用户消息），设置 transcript_error

        Returns:
            最终的助手消息；忽略或失败时为 None
        """
        message = text.strip() if isinstance(text, str) else ""
        if not message:
            logger.warning("忽略空消息")
            return None

        now = utc_now()
        user_message = Message(
            id=synthesize_message_id(Role.USER.value, now),
            role=Role.USER,
            content=message,
            timestamp=now,
            chat_id=self.active_chat_id,
        )
        op = SendOperation(
            chat_id=self.active_chat_id,
            generation=self.generation,
            user_message_id=user_message.id,
        )

        if attachments:
            self.local.append(user_message)
            return await self._send_with_files(op, message, list(attachments))

        placeholder = Message(
            id=synthesize_message_id(Role.ASSISTANT.value, now),
            role=Role.ASSISTANT,
            content="",
            timestamp=now,
            chat_id=self.active_chat_id,
        )
        op.placeholder_id = placeholder.id
        # 先落本地状态，再发请求：界面永远不会空着等
        self.local.extend([user_message, placeholder])
        self._pending[placeholder.id] = op
        self.is_sending = True
        self.transcript_error = None

        try:
            reply = await asyncio.wait_for(self._consume_stream(op, message), timeout=self.session.send_timeout)
            if not reply.strip():
                raise ChatClientError(ErrorKind.SERVER_ERROR, message="Empty response from AI")
        except Exception as e:
            error = classify_exception(e, self.session.base_url)
            logger.error(f"发送消息失败: {error.kind.value} - {error.message}")
            self._rollback(op, error)
            return None
        finally:
            self._pending.pop(placeholder.id, None)
            self.is_sending = bool(self._pending)

        return self._find_local(placeholder.id) if self._is_current(op) else None

    async def _consume_stream(self, op: SendOperation, message: str) -> str:
        reply = ""
        async for part in self.api.stream_message(message, op.chat_id):
            reply += part
            self._patch(op, reply)
        return reply

    def _patch(self, op: SendOperation, content: str):
        """替换占位消息的内容；对话已切换则什么都不做"""
        if not self._is_current(op):
            logger.debug(f"对话已切换，丢弃迟到的回复片段: {op.placeholder_id}")
            return
        self.local = [
            m.model_copy(update={"content": content}) if m.id == op.placeholder_id else m
            for m in self.local
        ]

    def _rollback(self, op: SendOperation, error: ChatClientError):
        if not self._is_current(op):
            logger.debug("对话已切换，跳过回滚")
            return
        if op.placeholder_id:
            self.local = [m for m in self.local if m.id != op.placeholder_id]
        self.transcript_error = error

    def _find_local(self, message_id: str) -> Optional[Message]:
        for m in self.local:
            if m.id == message_id:
                return m
        return None

    async def _send_with_files(self, op: SendOperation, message: str, attachments: List[Attachment]) -> Optional[Message]:
        """附件分支：multipart 一次性返回，不用占位/流式补丁"""
        logger.info(f"发送带 {len(attachments)} 个附件的消息")
        self._pending[op.user_message_id] = op
        self.is_sending = True
        self.transcript_error = None
        try:
            payload = await asyncio.wait_for(
                self.api.send_with_files(message, attachments, op.chat_id),
                timeout=self.session.send_timeout,
            )
            reply = payload.get("reply")
            if not isinstance(reply, str) or not reply.strip():
                raise ChatClientError(ErrorKind.SERVER_ERROR, message="Empty response from AI")
        except Exception as e:
            error = classify_exception(e, self.session.base_url)
            logger.error(f"附件消息发送失败: {error.kind.value} - {error.message}")
            self._rollback(op, error)
            return None
        finally:
            self._pending.pop(op.user_message_id, None)
            self.is_sending = bool(self._pending)

        if not self._is_current(op):
            logger.debug("对话已切换，丢弃附件消息的回复")
            return None

        assistant_message = normalize_message(
            {"role": Role.ASSISTANT.value, "content": reply, "timestamp": utc_now()},
            chat_id=op.chat_id,
        )
        self.local.append(assistant_message)
        return assistant_message
