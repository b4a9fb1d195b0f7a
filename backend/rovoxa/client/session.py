"""客户端会话：显式传递身份和token，不读全局存储"""
from dataclasses import dataclass, field, replace
from typing import Dict, Optional

from ..config import config
from .errors import ChatClientError, ErrorKind


@dataclass
class Session:
    """一次登录会话

    Attributes:
        base_url: 后端地址（如 http://localhost:8000）
        token: Supabase Auth 下发的 bearer token
        user_id: 当前用户ID
        history_timeout: 拉取历史记录的超时（秒）
        send_timeout: 发送消息（含等待回复）的超时（秒）
    """
    base_url: str
    token: Optional[str] = None
    user_id: Optional[str] = None
    history_timeout: float = field(default_factory=lambda: config.HISTORY_TIMEOUT_SECONDS)
    send_timeout: float = field(default_factory=lambda: config.SEND_TIMEOUT_SECONDS)

    @property
    def has_token(self) -> bool:
        return bool(self.token and self.token.strip())

    def auth_headers(self) -> Dict[str, str]:
        """Authorization 头；没有token是硬错误"""
        if not self.has_token:
            raise ChatClientError(ErrorKind.NO_TOKEN, code="NO_TOKEN")
        return {"Authorization": f"Bearer {self.token.strip()}"}

    def url(self, endpoint: str) -> str:
        """拼接接口地址，endpoint 可带可不带前导 /"""
        clean_endpoint = endpoint if endpoint.startswith("/") else f"/{endpoint}"
        return f"{self.base_url.rstrip('/')}{clean_endpoint}"

    def with_token(self, token: Optional[str], user_id: Optional[str] = None) -> "Session":
        """重新登录后生成新会话"""
        return replace(self, token=token, user_id=user_id or self.user_id)
