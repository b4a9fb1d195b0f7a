"""请求鉴权：用 Supabase Auth 校验 Bearer token"""
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx
from fastapi import HTTPException, Request

from .config import config
from .utils.structured_logger import get_logger

logger = get_logger(__name__)


@dataclass
class AuthenticatedUser:
    id: str
    email: str = ""
    raw: Dict[str, Any] = field(default_factory=dict)


def auth_error(status_code: int, error: str, code: str, details: Optional[str] = None) -> HTTPException:
    """统一的鉴权错误体：{error, code, details}"""
    detail = {"error": error, "code": code}
    if details:
        detail["details"] = details
    return HTTPException(status_code=status_code, detail=detail)


def extract_token(authorization: Optional[str]) -> str:
    """
    从 Authorization 头取出 token

    Raises:
        HTTPException: 401 NO_TOKEN / INVALID_HEADER
    """
    if not authorization:
        raise auth_error(401, "Access token required", "NO_TOKEN")

    token = authorization.replace("Bearer ", "", 1).strip()
    if not token:
        raise auth_error(401, "Invalid authorization header format", "INVALID_HEADER")
    return token


async def verify_token(token: str) -> AuthenticatedUser:
    """调用 {SUPABASE_URL}/auth/v1/user 校验 token"""
    if not config.SUPABASE_URL or not config.SUPABASE_API_KEY:
        logger.error("Supabase 配置缺失")
        raise auth_error(503, "Authentication service unavailable", "AUTH_SERVICE_UNAVAILABLE",
                         "Supabase configuration missing")

    url = f"{config.SUPABASE_URL.rstrip('/')}/auth/v1/user"
    headers = {
        "Authorization": f"Bearer {token}",
        "apikey": config.SUPABASE_API_KEY,
    }
    try:
        async with httpx.AsyncClient(timeout=config.AUTH_TIMEOUT_SECONDS) as client:
            response = await client.get(url, headers=headers)
    except httpx.HTTPError as e:
        logger.error(f"Supabase Auth 请求失败: {e}")
        raise auth_error(503, "Authentication service unavailable", "AUTH_SERVICE_UNAVAILABLE", str(e))

    if response.status_code != 200:
        logger.warning(f"token 校验失败: HTTP {response.status_code}")
        raise auth_error(401, "Invalid or expired token", "INVALID_TOKEN", f"HTTP {response.status_code}")

    try:
        data = response.json()
    except ValueError:
        data = None
    if not isinstance(data, dict) or not data.get("id"):
        raise auth_error(401, "Invalid or expired token", "INVALID_TOKEN", "User not found in token")

    return AuthenticatedUser(id=str(data["id"]), email=data.get("email") or "", raw=data)


async def get_current_user(request: Request) -> AuthenticatedUser:
    """FastAPI 依赖：返回当前登录用户"""
    token = extract_token(request.headers.get("authorization"))
    user = await verify_token(token)
    logger.debug(f"token 校验通过: {user.id}")
    return user
