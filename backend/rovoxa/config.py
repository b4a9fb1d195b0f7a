"""配置管理"""
import os
from pathlib import Path
from dotenv import load_dotenv

# 显式加载 backend/.env 文件（确保无论从哪个目录启动都能找到）
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).lower() == "true"


def _env_list(name: str, default: str) -> list:
    return [item.strip().lower() for item in os.getenv(name, default).split(",") if item.strip()]


class Config:
    """应用配置"""

    # Gemini LLM
    GEMINI_API_KEY = os.getenv("GEMINI_API_KEY")
    GEMINI_MODEL = os.getenv("GEMINI_MODEL", "gemini-2.5-flash")
    GEMINI_TEMPERATURE = float(os.getenv("GEMINI_TEMPERATURE", "0.7"))

    # Supabase Auth（只做token校验，注册/登录由Supabase负责）
    SUPABASE_URL = os.getenv("SUPABASE_URL")
    SUPABASE_API_KEY = os.getenv("SUPABASE_SERVICE_ROLE_KEY") or os.getenv("SUPABASE_ANON_KEY")
    AUTH_TIMEOUT_SECONDS = float(os.getenv("AUTH_TIMEOUT_SECONDS", "10"))

    # 数据库（chats / messages 两张表）
    DATABASE_PATH = os.getenv("DATABASE_PATH", "./data/rovoxa.db")

    # 天气 API（OpenWeather）
    WEATHER_API_KEY = os.getenv("WEATHER_API_KEY")

    # Google Custom Search
    GOOGLE_API_KEY = os.getenv("GOOGLE_API_KEY")
    SEARCH_ENGINE_ID = os.getenv("SEARCH_ENGINE_ID")

    # 客户端超时（秒）
    HISTORY_TIMEOUT_SECONDS = float(os.getenv("HISTORY_TIMEOUT_SECONDS", "5"))
    SEND_TIMEOUT_SECONDS = float(os.getenv("SEND_TIMEOUT_SECONDS", "30"))

    # 上传文件
    MAX_UPLOAD_FILES = int(os.getenv("MAX_UPLOAD_FILES", "5"))
    MAX_UPLOAD_BYTES = int(os.getenv("MAX_UPLOAD_BYTES", str(10 * 1024 * 1024)))
    MAX_FILE_TEXT_CHARS = int(os.getenv("MAX_FILE_TEXT_CHARS", "20000"))
    # 允许的扩展名和 MIME 前缀，两者都要匹配
    ALLOWED_UPLOAD_EXTENSIONS = _env_list(
        "ALLOWED_UPLOAD_EXTENSIONS",
        ".jpeg,.jpg,.png,.gif,.mp4,.avi,.mov,.mp3,.wav,.pdf,.doc,.docx,.txt,.md,.csv,.json",
    )
    ALLOWED_UPLOAD_MIME_PREFIXES = _env_list(
        "ALLOWED_UPLOAD_MIME_PREFIXES",
        "image/,video/,audio/,text/,application/pdf,application/json,application/msword,"
        "application/vnd.openxmlformats-officedocument.wordprocessingml",
    )

    # 对话上下文：取最近N条消息拼接到prompt
    CONTEXT_MESSAGE_LIMIT = int(os.getenv("CONTEXT_MESSAGE_LIMIT", "10"))

    # 日志
    LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
    LOG_DIR = os.getenv("LOG_DIR", "logs")
    LOG_JSON = _env_bool("LOG_JSON", "true")


config = Config()
