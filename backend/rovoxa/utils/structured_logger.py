"""结构化日志系统 - 基于 structlog"""
import structlog
import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional
import contextvars

# 上下文变量：用于在整个请求链路中传递追踪信息
request_id_var = contextvars.ContextVar("request_id", default=None)
chat_id_var = contextvars.ContextVar("chat_id", default=None)
user_id_var = contextvars.ContextVar("user_id", default=None)

# 第三方库的调试日志太多，统一提到WARNING
NOISY_LOGGERS = [
    'aiosqlite',
    'sqlite3',
    'httpx',
    'httpcore',
    'urllib3',
    'asyncio',
    'langchain',
    'langchain_core',
    'langchain_google_genai',
    'multipart',
]


def add_context_info(logger, method_name, event_dict):
    """添加上下文信息到日志"""
    request_id = request_id_var.get()
    chat_id = chat_id_var.get()
    user_id = user_id_var.get()

    if request_id:
        event_dict["request_id"] = request_id
    if chat_id:
        event_dict["chat_id"] = chat_id
    if user_id:
        event_dict["user_id"] = user_id

    return event_dict


def setup_structured_logging(
    log_level: str = "INFO",
    log_dir: str = "logs",
    enable_json: bool = True,
    enable_console: bool = True
):
    """
    配置结构化日志系统

    Args:
        log_level: 日志级别（DEBUG/INFO/WARNING/ERROR）
        log_dir: 日志目录
        enable_json: 是否输出JSON格式（生产环境推荐）
        enable_console: 是否输出到控制台（开发环境推荐）
    """
    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    # 生成日志文件名（按日期）
    date_str = datetime.now().strftime("%Y%m%d")
    log_file = log_path / f"rovoxa_{date_str}.log"
    error_log_file = log_path / f"rovoxa_error_{date_str}.log"

    # 配置标准库logging（作为底层）
    root_logger = logging.getLogger()
    root_logger.handlers.clear()

    plain_formatter = logging.Formatter('%(message)s', style='%')

    if enable_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(getattr(logging, log_level.upper()))
        console_handler.setFormatter(plain_formatter)
        root_logger.addHandler(console_handler)

    # 文件记录所有级别
    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(plain_formatter)
    root_logger.addHandler(file_handler)

    # 错误日志单独保存
    error_handler = logging.FileHandler(error_log_file, encoding='utf-8')
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(plain_formatter)
    root_logger.addHandler(error_handler)

    root_logger.setLevel(getattr(logging, log_level.upper()))

    for logger_name in NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    # 配置structlog处理器链
    shared_processors = [
        structlog.stdlib.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        add_context_info,
        # 调用栈信息（文件名、行号、函数名）
        structlog.processors.CallsiteParameterAdder(
            {
                structlog.processors.CallsiteParameter.FILENAME,
                structlog.processors.CallsiteParameter.LINENO,
                structlog.processors.CallsiteParameter.FUNC_NAME,
            }
        ),
    ]

    if enable_json:
        processors = shared_processors + [structlog.processors.JSONRenderer()]
    else:
        processors = shared_processors + [structlog.dev.ConsoleRenderer(colors=True)]

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )

    get_logger(__name__).info(
        "结构化日志已启用",
        log_level=log_level,
        log_dir=str(log_path.absolute()),
        output="JSON" if enable_json else "console",
    )


def get_logger(name: str = None) -> structlog.BoundLogger:
    """
    获取结构化日志记录器

    Args:
        name: 日志器名称（通常是模块名）

    Returns:
        structlog.BoundLogger实例
    """
    return structlog.get_logger(name)


class LogContext:
    """日志上下文管理器 - 用于在代码块中设置追踪信息"""

    def __init__(
        self,
        request_id: Optional[str] = None,
        chat_id: Optional[str] = None,
        user_id: Optional[str] = None,
    ):
        self.request_id = request_id
        self.chat_id = chat_id
        self.user_id = user_id

        # 用token恢复旧值，嵌套使用也不会串
        self._tokens = []

    def __enter__(self):
        for var, value in (
            (request_id_var, self.request_id),
            (chat_id_var, self.chat_id),
            (user_id_var, self.user_id),
        ):
            if value:
                self._tokens.append((var, var.set(value)))
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        while self._tokens:
            var, token = self._tokens.pop()
            var.reset(token)
