"""时区工具方法：数据库统一存储不带时区的 UTC 时间，展示时转换为配置时区。"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from zoneinfo import ZoneInfo

from app.packages.drive.core.config import get_settings


def get_timezone() -> ZoneInfo:
    """返回配置指定的时区信息。"""
    return get_settings().timezone_info


def utc_now() -> datetime:
    """返回不带时区信息的当前 UTC 时间，用于写库与比较。"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_utc_naive(value: Optional[datetime]) -> Optional[datetime]:
    """将任意 ``datetime`` 归一为不带时区的 UTC 时间；无时区对象视为 UTC。"""
    if value is None:
        return None
    if value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def to_local(value: Optional[datetime]) -> Optional[datetime]:
    """将 ``datetime`` 转换为配置时区；无时区对象按 UTC 解释。"""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(get_timezone())


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    """将时间格式化为 ``YYYY-MM-DD HH:MM:SS`` 字符串。"""
    localized = to_local(value)
    if localized is None:
        return None
    return localized.strftime("%Y-%m-%d %H:%M:%S")
