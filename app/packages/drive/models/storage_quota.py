"""用户存储配额模型：已用空间与配额均以 KB 计，``expire_at`` 之后拒绝写入。"""

from datetime import datetime
from typing import Optional

from sqlalchemy import BigInteger, DateTime, Integer
from sqlalchemy.orm import Mapped, mapped_column

from app.packages.drive.models.base import Base, SoftDeleteMixin, TimestampMixin


class StorageQuota(TimestampMixin, SoftDeleteMixin, Base):
    __tablename__ = "storage_quota"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    owner_id: Mapped[int] = mapped_column(Integer, unique=True, index=True)
    used_space_kb: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    quota_kb: Mapped[int] = mapped_column(BigInteger, default=0, nullable=False)
    charged_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    expire_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
