"""存储配额服务：按用户记录已用空间与配额（KB），写入前预占，强制删除后释放。

预占使用带条件的单条 UPDATE（``used + kb <= quota AND expire_at > now``），
并在支持的数据库上先对配额行加 ``FOR UPDATE`` 锁，因此并发上传时已用空间不会超过配额。
"""

from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.packages.drive.core.constants import KB
from app.packages.drive.core.exceptions import QuotaExceededError, QuotaExpiredError
from app.packages.drive.core.logger import logger
from app.packages.drive.core.timezone import to_utc_naive, utc_now
from app.packages.drive.crud.storage_quota import storage_quota_crud
from app.packages.drive.models.storage_quota import StorageQuota


def kb_for(size_bytes: int) -> int:
    """字节数向上取整为 KB，0 字节为 0。"""
    if size_bytes <= 0:
        return 0
    return math.ceil(size_bytes / KB)


class QuotaService:
    def ensure_exists(self, db: Session, owner_id: int, *, auto_commit: bool = True) -> StorageQuota:
        """读取配额行，不存在时创建零配额记录（已到期）。"""
        quota = storage_quota_crud.get_by_owner(db, owner_id)
        if quota is not None:
            return quota
        # 插入放在保存点内：唯一键冲突只回滚这一步，外层事务（含已加的行锁）不受影响
        try:
            with db.begin_nested():
                quota = storage_quota_crud.create(
                    db,
                    {
                        "owner_id": owner_id,
                        "used_space_kb": 0,
                        "quota_kb": 0,
                        "expire_at": utc_now(),
                    },
                    auto_commit=False,
                )
        except IntegrityError:
            # 并发首次访问：另一请求已创建
            quota = storage_quota_crud.get_by_owner(db, owner_id)
            if quota is None:
                raise
            return quota
        if auto_commit:
            db.commit()
            db.refresh(quota)
        logger.info("quota.created owner=%s", owner_id)
        return quota

    def get(self, db: Session, owner_id: int) -> StorageQuota:
        return self.ensure_exists(db, owner_id)

    def reserve_or_fail(self, db: Session, owner_id: int, size_bytes: int, *, auto_commit: bool = True) -> int:
        return self.reserve_kb_or_fail(db, owner_id, kb_for(size_bytes), auto_commit=auto_commit)

    def reserve_kb_or_fail(self, db: Session, owner_id: int, kb: int, *, auto_commit: bool = True) -> int:
        """预占 ``kb``，成功返回预占量；超额或过期时抛错且不改变任何状态。"""
        self.ensure_exists(db, owner_id, auto_commit=False)
        storage_quota_crud.get_by_owner(db, owner_id, for_update=True)
        now = utc_now()
        if not storage_quota_crud.try_increment(db, owner_id=owner_id, kb=kb, now=now):
            quota = storage_quota_crud.get_by_owner(db, owner_id)
            used, limit, expire_at = quota.used_space_kb, quota.quota_kb, quota.expire_at
            if auto_commit:
                db.rollback()
            data = {"owner_id": owner_id, "requested_kb": kb, "used_kb": used, "quota_kb": limit}
            if used + kb > limit:
                logger.info("quota.exceeded owner=%s requested=%s used=%s quota=%s", owner_id, kb, used, limit)
                raise QuotaExceededError(data=data)
            logger.info("quota.expired owner=%s expire_at=%s", owner_id, expire_at)
            raise QuotaExpiredError(data=data)
        if auto_commit:
            db.commit()
        logger.info("quota.reserve owner=%s kb=%s", owner_id, kb)
        return kb

    def release(self, db: Session, owner_id: int, size_bytes: int, *, auto_commit: bool = True) -> int:
        return self.release_kb(db, owner_id, kb_for(size_bytes), auto_commit=auto_commit)

    def release_kb(self, db: Session, owner_id: int, kb: int, *, auto_commit: bool = True) -> int:
        """释放 ``kb``，已用空间不会小于零。"""
        if kb > 0:
            storage_quota_crud.decrement(db, owner_id=owner_id, kb=kb)
        if auto_commit:
            db.commit()
        logger.info("quota.release owner=%s kb=%s", owner_id, kb)
        return kb

    def recharge(
        self,
        db: Session,
        owner_id: int,
        quota_kb: int,
        expire_at: datetime,
        *,
        charged_at: Optional[datetime] = None,
        auto_commit: bool = True,
    ) -> StorageQuota:
        """覆盖配额与到期时间，并记录充值时间。"""
        self.ensure_exists(db, owner_id, auto_commit=False)
        quota = storage_quota_crud.get_by_owner(db, owner_id, for_update=True)
        quota.quota_kb = quota_kb
        quota.expire_at = to_utc_naive(expire_at)
        quota.charged_at = to_utc_naive(charged_at) or utc_now()
        storage_quota_crud.save(db, quota, auto_commit=auto_commit)
        logger.info("quota.recharge owner=%s quota_kb=%s expire_at=%s", owner_id, quota_kb, quota.expire_at)
        return quota


quota_service = QuotaService()
