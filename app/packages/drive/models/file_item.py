"""逻辑文件树节点模型（文件与目录合并）。

存储规则：
- 根节点 ``parent_id`` 为空；同一父目录下同一归属用户的名称唯一（由服务层校验）；
- ``object_key``：文件为对象 key，目录为以 '/' 结尾的前缀；
- 子孙节点与父目录共享 ``server_key``/``bucket``，且 key 以父目录前缀开头；
- 目录 ``size_bytes`` 恒为 0。
"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.drive.core.enums import FileKindEnum, PermissionEnum
from app.packages.drive.models.base import Base, SoftDeleteMixin, TimestampMixin


class FileItem(TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "file_items"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    owner_id: Mapped[int] = mapped_column(Integer, index=True)
    parent_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("file_items.id"), nullable=True, index=True
    )
    name: Mapped[str] = mapped_column(String(255))
    kind: Mapped[str] = mapped_column(String(16))  # "file" | "directory"
    permission: Mapped[str] = mapped_column(String(16))  # "public" | "private"
    server_key: Mapped[str] = mapped_column(String(8))
    bucket: Mapped[str] = mapped_column(String(63))
    object_key: Mapped[str] = mapped_column(String(1024))
    size_bytes: Mapped[int] = mapped_column(BigInteger, default=0)
    content_type: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    __table_args__ = (
        Index("ix_file_items_owner_parent", "owner_id", "parent_id"),
        Index("ix_file_items_location", "server_key", "bucket", "object_key", mysql_length={"object_key": 255}),
    )

    @property
    def is_dir(self) -> bool:
        return self.kind == FileKindEnum.DIRECTORY.value

    @property
    def is_public(self) -> bool:
        return self.permission == PermissionEnum.PUBLIC.value
