"""异常处理模块：定义统一的业务异常与响应格式。

核心层抛出的错误都继承自 ``AppException``，并带有稳定的 ``kind`` 标识，
HTTP 层据此映射为响应码；核心层内部不吞掉、也不自动重试任何一种错误。
"""

from typing import Any, Optional

from fastapi import HTTPException, Request
from fastapi.responses import JSONResponse

from app.packages.drive.core.constants import (
    HTTP_STATUS_BAD_GATEWAY,
    HTTP_STATUS_BAD_REQUEST,
    HTTP_STATUS_CONFLICT,
    HTTP_STATUS_FORBIDDEN,
    HTTP_STATUS_GATEWAY_TIMEOUT,
    HTTP_STATUS_INTERNAL_ERROR,
    HTTP_STATUS_NOT_FOUND,
    HTTP_STATUS_PAYLOAD_TOO_LARGE,
    HTTP_STATUS_PAYMENT_REQUIRED,
)


class AppException(HTTPException):
    """携带统一响应结构的业务异常，方便在全局处理中转换响应体。"""

    def __init__(self, msg: str, code: int = HTTP_STATUS_BAD_REQUEST, data=None) -> None:
        super().__init__(status_code=code, detail=msg)
        self.data = data


class DriveError(AppException):
    """存储核心错误基类：``kind`` 为对外稳定的错误类别。"""

    kind = "DriveError"
    status_code_default = HTTP_STATUS_BAD_REQUEST
    default_msg = "存储操作失败"

    def __init__(self, msg: Optional[str] = None, *, data: Optional[dict[str, Any]] = None) -> None:
        payload = {"kind": self.kind}
        if data:
            payload.update(data)
        super().__init__(msg or self.default_msg, self.status_code_default, payload)

    @property
    def msg(self) -> str:
        return self.detail


class NotFoundError(DriveError):
    kind = "NotFound"
    status_code_default = HTTP_STATUS_NOT_FOUND
    default_msg = "文件或目录不存在"


class AlreadyExistsError(DriveError):
    kind = "AlreadyExists"
    status_code_default = HTTP_STATUS_CONFLICT
    default_msg = "同名文件或目录已存在"


class UnauthorizedError(DriveError):
    kind = "Unauthorized"
    status_code_default = HTTP_STATUS_FORBIDDEN
    default_msg = "无权访问该文件或目录"


class QuotaExceededError(DriveError):
    kind = "QuotaExceeded"
    status_code_default = HTTP_STATUS_PAYLOAD_TOO_LARGE
    default_msg = "存储空间不足"


class QuotaExpiredError(DriveError):
    kind = "QuotaExpired"
    status_code_default = HTTP_STATUS_PAYMENT_REQUIRED
    default_msg = "存储套餐已过期"


class InvalidTargetError(DriveError):
    kind = "InvalidTarget"
    status_code_default = HTTP_STATUS_BAD_REQUEST
    default_msg = "目标位置无效"


class BackendError(DriveError):
    kind = "BackendError"
    status_code_default = HTTP_STATUS_BAD_GATEWAY
    default_msg = "对象存储服务异常"


class BackendTimeoutError(DriveError):
    kind = "BackendTimeout"
    status_code_default = HTTP_STATUS_GATEWAY_TIMEOUT
    default_msg = "对象存储请求超时"


class ConfigurationError(DriveError):
    kind = "ConfigurationError"
    status_code_default = HTTP_STATUS_INTERNAL_ERROR
    default_msg = "存储后端配置错误"


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:  # pragma: no cover - framework glue
    """将 FastAPI 的 ``HTTPException`` 转换为统一响应格式。"""
    payload = {"msg": exc.detail, "data": getattr(exc, "data", None), "code": exc.status_code}
    return JSONResponse(status_code=exc.status_code, content=payload, headers=getattr(exc, "headers", None))


async def generic_exception_handler(request: Request, exc: Exception) -> JSONResponse:  # pragma: no cover - framework glue
    """兜底处理：将未捕获异常转换为标准的 500 响应结构。"""
    payload = {
        "msg": "服务器内部错误",
        "data": None,
        "code": HTTP_STATUS_INTERNAL_ERROR,
    }
    return JSONResponse(status_code=HTTP_STATUS_INTERNAL_ERROR, content=payload)
