"""日志配置：统一格式与级别，并把请求 ID 与正在操作的存储对象注入每条日志记录。

存储上下文由 :func:`storage_context` 绑定（后端、桶），逐对象循环中用
:func:`bind_object_key` 标记当前 key；JSON 输出会把这些值作为结构化字段写出，
目录操作中途失败时可以直接按字段检索出错的对象。
"""

import json
import logging
import logging.config
import sys
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime
from typing import Any, Dict, Iterator, Optional

from .config import get_settings

_request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
_storage_ctx: ContextVar[Dict[str, Optional[str]]] = ContextVar("storage_context", default={})

STORAGE_FIELDS = ("server_key", "bucket", "object_key")

_TEXT_FORMAT = "%(asctime)s %(levelname)s %(name)s [%(request_id)s]%(storage)s %(message)s"


class _LocalTimeFormatter(logging.Formatter):
    """按配置的时区输出时间；未指定 datefmt 时使用带毫秒的 ISO 格式。"""

    def formatTime(self, record: logging.LogRecord, datefmt: Optional[str] = None) -> str:  # noqa: N802
        moment = datetime.fromtimestamp(record.created, get_settings().timezone_info)
        if datefmt:
            return moment.strftime(datefmt)
        return moment.isoformat(sep=" ", timespec="milliseconds")


class ColorFormatter(_LocalTimeFormatter):
    """终端输出按级别着色；非 TTY 时输出纯文本。"""

    RESET = "\033[0m"
    COLORS = {
        logging.DEBUG: "\033[36m",
        logging.INFO: "\033[32m",
        logging.WARNING: "\033[33m",
        logging.ERROR: "\033[31m",
        logging.CRITICAL: "\033[41m",
    }

    def __init__(self, fmt: str = _TEXT_FORMAT, datefmt: Optional[str] = None, use_colors: Optional[bool] = None):
        super().__init__(fmt=fmt, datefmt=datefmt)
        self.use_colors = sys.stderr.isatty() if use_colors is None else use_colors

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        color = self.COLORS.get(record.levelno) if self.use_colors else None
        return f"{color}{message}{self.RESET}" if color else message


class JsonFormatter(_LocalTimeFormatter):
    """每条日志一行 JSON；存在存储上下文时附带 ``server_key``/``bucket``/``object_key``。"""

    def format(self, record: logging.LogRecord) -> str:
        payload: Dict[str, Any] = {
            "ts": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "request_id": getattr(record, "request_id", None),
            "msg": record.getMessage(),
        }
        for field in STORAGE_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


class DriveContextFilter(logging.Filter):
    """把请求 ID 与当前存储上下文写入记录；``extra`` 中显式传入的字段优先。"""

    def filter(self, record: logging.LogRecord) -> bool:
        if getattr(record, "request_id", None) is None:
            record.request_id = _request_id_ctx.get()
        context = _storage_ctx.get()
        for field in STORAGE_FIELDS:
            if getattr(record, field, None) is None:
                setattr(record, field, context.get(field))
        bound = [f"{field}={getattr(record, field)}" for field in STORAGE_FIELDS if getattr(record, field)]
        record.storage = f" [{' '.join(bound)}]" if bound else ""
        return True


def set_request_id(request_id: Optional[str]) -> None:
    _request_id_ctx.set(request_id)


@contextmanager
def storage_context(server_key: str, bucket: str, object_key: Optional[str] = None) -> Iterator[None]:
    """在代码块内为日志绑定后端与桶（可选初始 key），退出时恢复外层上下文。"""
    token = _storage_ctx.set({"server_key": server_key, "bucket": bucket, "object_key": object_key})
    try:
        yield
    finally:
        _storage_ctx.reset(token)


def bind_object_key(object_key: Optional[str]) -> None:
    """更新当前存储上下文中正在处理的 key；不在 ``storage_context`` 内时忽略。"""
    context = _storage_ctx.get()
    if context:
        _storage_ctx.set({**context, "object_key": object_key})


def current_storage_context() -> Dict[str, Optional[str]]:
    return dict(_storage_ctx.get())


def setup_logging() -> None:
    """按配置初始化 dictConfig：控制台 + 按天滚动的文件，应用与 uvicorn 共用处理器。"""
    settings = get_settings()
    settings.log_directory.mkdir(parents=True, exist_ok=True)
    level = settings.log_level
    console_formatter = "json" if settings.log_json else "console"
    file_formatter = "json" if settings.log_json else "text"
    handlers = ["console", "file"]

    def route(logger_level: str = level) -> Dict[str, Any]:
        return {"handlers": handlers, "level": logger_level, "propagate": False}

    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "filters": {"drive_context": {"()": f"{__name__}.DriveContextFilter"}},
            "formatters": {
                "console": {"()": f"{__name__}.ColorFormatter"},
                "text": {"()": f"{__name__}.ColorFormatter", "use_colors": False},
                "json": {"()": f"{__name__}.JsonFormatter"},
            },
            "handlers": {
                "console": {
                    "class": "logging.StreamHandler",
                    "level": level,
                    "formatter": console_formatter,
                    "filters": ["drive_context"],
                },
                "file": {
                    "class": "logging.handlers.TimedRotatingFileHandler",
                    "level": level,
                    "formatter": file_formatter,
                    "filters": ["drive_context"],
                    "filename": str(settings.log_file_path),
                    "when": "midnight",
                    "backupCount": 14,
                    "encoding": "utf-8",
                    "delay": True,
                },
            },
            "loggers": {
                "app": route(),
                "uvicorn": route(),
                "uvicorn.error": route(),
                "uvicorn.access": route(),
                # boto 的 DEBUG 日志会输出签名与请求体
                "botocore": route("WARNING"),
                "boto3": route("WARNING"),
            },
            "root": {"handlers": handlers, "level": level},
        }
    )


logger = logging.getLogger("app")
