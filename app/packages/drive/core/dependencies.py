"""依赖注入模块：封装 FastAPI 中复用度高的依赖函数，并按需组装存储核心组件。"""

from collections.abc import Generator
from functools import lru_cache
from typing import Optional

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import ACCESS_TOKEN_TYPE
from app.packages.drive.core.security import Identity, decode_token, identity_from_claims
from app.packages.drive.db import session as db_session
from app.packages.drive.services.bucket_policy import PolicyManager, build_lock_provider
from app.packages.drive.services.file_item_service import FileItemService
from app.packages.drive.services.quota_service import quota_service
from app.packages.drive.services.storage_backends import BackendRegistry, build_registry
from app.packages.drive.services.storage_service import StorageService

security_scheme = HTTPBearer(auto_error=False)


def get_db() -> Generator[Session, None, None]:
    """生成一个数据库会话，并在请求结束后自动关闭。"""
    db = db_session.SessionLocal()
    try:
        yield db
    finally:
        db.close()


def get_identity(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security_scheme),
) -> Identity:
    """解析 ``Authorization`` 头部并返回调用方身份，不存在或非法时抛出 401。"""
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="缺少认证信息")

    if credentials.scheme.lower() != ACCESS_TOKEN_TYPE:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="认证类型无效")

    payload = decode_token(credentials.credentials)
    if payload is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token 无效或已过期")

    identity = identity_from_claims(payload)
    if identity is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Token 无效")
    return identity


@lru_cache
def get_backend_registry() -> BackendRegistry:
    return build_registry(get_settings())


@lru_cache
def get_policy_manager() -> PolicyManager:
    return PolicyManager(get_backend_registry(), build_lock_provider(get_settings()))


@lru_cache
def get_storage_service() -> StorageService:
    return StorageService(get_backend_registry(), get_policy_manager())


@lru_cache
def get_file_item_service() -> FileItemService:
    """进程级单例：后端客户端长期复用且线程安全。"""
    return FileItemService(get_storage_service(), quota_service, get_settings())
