"""模型包初始化，便于统一导入 ORM 实体并触发模型注册。"""

from app.packages.drive.models.base import Base
from app.packages.drive.models.file_item import FileItem
from app.packages.drive.models.storage_quota import StorageQuota

__all__ = [
    "Base",
    "FileItem",
    "StorageQuota",
]
