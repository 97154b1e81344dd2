"""业务包描述：主应用通过它装配路由、日志、数据库初始化与异常处理。"""

from __future__ import annotations

from dataclasses import dataclass
from logging import Logger
from typing import Callable

from fastapi import APIRouter


@dataclass(frozen=True)
class AppPackage:
    """一个可被 ``app.main`` 启用的业务包。"""

    name: str
    description: str
    api_router: APIRouter
    get_settings: Callable[[], object]
    setup_logging: Callable[[], None]
    logger: Logger
    init_db: Callable[[], None]
    create_response: Callable[..., dict]
    http_exception_handler: Callable[..., object]
    generic_exception_handler: Callable[..., object]
