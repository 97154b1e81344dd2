"""模型基类：统一声明式基类与通用审计字段。

本模块集中提供：
- Base：SQLAlchemy 声明式基类，带统一命名约定；
- TimestampMixin：`created_at`、`updated_at`（不带时区的 UTC 时间）；
- SoftDeleteMixin：`is_deleted`。
"""

from datetime import datetime

from sqlalchemy import Boolean, DateTime, MetaData, func
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.sql import expression

from app.packages.drive.core.timezone import utc_now

convention = {
    "ix": "ix_%(column_0_label)s",
    "uq": "uq_%(table_name)s_%(column_0_name)s",
    "ck": "ck_%(table_name)s_%(constraint_name)s",
    "fk": "fk_%(table_name)s_%(column_0_name)s_%(referred_table_name)s",
    "pk": "pk_%(table_name)s",
}

metadata_obj = MetaData(naming_convention=convention)


class Base(DeclarativeBase):
    """全局声明式基类，附带一致的命名约定，便于迁移与调试。"""

    metadata = metadata_obj


class TimestampMixin:
    """通用时间戳字段，为记录新增、更新提供审计能力。"""

    created_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        default=utc_now,
        onupdate=utc_now,
        server_default=func.now(),
        nullable=False,
    )


class SoftDeleteMixin:
    """软删除字段，避免物理删除导致数据丢失。"""

    is_deleted: Mapped[bool] = mapped_column(
        Boolean,
        default=False,
        server_default=expression.false(),
        nullable=False,
    )
