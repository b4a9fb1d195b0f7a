"""FastAPI 主应用"""
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.exception_handlers import http_exception_handler
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .api import chat, health
from .api.health import VERSION
from .config import config
from .db import init_db
from .utils.structured_logger import get_logger, setup_structured_logging

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """管理应用生命周期：启动时配置日志并建表"""
    setup_structured_logging(
        log_level=config.LOG_LEVEL,
        log_dir=config.LOG_DIR,
        enable_json=config.LOG_JSON,
    )
    await init_db()
    logger.info("Rovoxa Chat API 已启动")

    yield  # 应用运行期间

    logger.info("Rovoxa Chat API 已关闭")


# 创建 FastAPI 应用
app = FastAPI(
    title="Rovoxa Chat API",
    description="Rovoxa 聊天后端：Gemini 回复、对话历史、天气与搜索增强",
    version=VERSION,
    lifespan=lifespan,
)

# CORS 中间件
app.add_middleware(
  CORSMiddleware,
  allow_origins=["*"],  # 生产环境应该限制具体域名
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)


@app.exception_handler(StarletteHTTPException)
async def typed_error_handler(request: Request, exc: StarletteHTTPException):
    """detail 是 {error, code, details} 时直接作为响应体"""
    if isinstance(exc.detail, dict):
        return JSONResponse(status_code=exc.status_code, content=exc.detail, headers=getattr(exc, "headers", None))
    return await http_exception_handler(request, exc)


# 注册路由
app.include_router(health.router, prefix="/api", tags=["健康检查"])
app.include_router(chat.router, prefix="/api", tags=["聊天"])


@app.get("/")
async def root():
    """根路径"""
    return {
        "message": "Rovoxa Chat API",
        "docs": "/docs",
        "health": "/api/health"
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
