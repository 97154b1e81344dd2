"""安全模块：JWT 令牌的生成与解析，以及调用方身份的表示。"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from .config import get_settings
from .constants import ADMIN_ROLE
from .logger import logger


@dataclass(frozen=True)
class Identity:
    """已认证调用方：文件归属用户 ID 以及是否为管理员。"""

    owner_id: int
    is_admin: bool = False


def create_access_token(subject: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """根据传入载荷生成带有过期时间的签名 JWT。"""
    settings = get_settings()
    expire = datetime.now(timezone.utc) + (
        expires_delta if expires_delta else timedelta(minutes=settings.access_token_expire_minutes)
    )
    to_encode = subject.copy()
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_token(token: str) -> Optional[Dict[str, Any]]:
    """解析并校验 JWT，合法时返回其中的业务载荷，否则返回 ``None``。"""
    settings = get_settings()
    try:
        return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:  # pragma: no cover - logging side effect
        logger.warning("Failed to decode JWT: %s", exc)
        return None


def identity_from_claims(payload: Dict[str, Any]) -> Optional[Identity]:
    """从令牌载荷中提取 ``user_id`` 与管理员标记，缺少用户 ID 时返回 ``None``。"""
    user_id = payload.get("user_id")
    if user_id is None:
        return None
    try:
        owner_id = int(user_id)
    except (TypeError, ValueError):
        return None
    is_admin = bool(payload.get("is_admin", False))
    roles = payload.get("roles") or []
    if isinstance(roles, (list, tuple)) and any(str(role).lower() == ADMIN_ROLE for role in roles):
        is_admin = True
    return Identity(owner_id=owner_id, is_admin=is_admin)
