"""健康检查接口"""
from datetime import datetime, timezone

from fastapi import APIRouter
from pydantic import BaseModel

from ..db.database import DatabaseError, check_tables
from ..llm import MODEL_NAME
from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

router = APIRouter()

VERSION = "0.1.0"


class HealthResponse(BaseModel):
  """健康检查响应"""
  status: str
  version: str
  model: str
  database: str
  timestamp: str


@router.get("/health", response_model=HealthResponse)
async def health():
  """健康检查（数据库不可用时 status 仍为 ok，database 为 disconnected）"""
  database = "connected"
  try:
      await check_tables()
  except DatabaseError as e:
      logger.warning(f"数据库检查失败: {e}")
      database = "disconnected"

  return HealthResponse(
      status="ok",
      version=VERSION,
      model=MODEL_NAME,
      database=database,
      timestamp=datetime.now(timezone.utc).isoformat(),
  )
