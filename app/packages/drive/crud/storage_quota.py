"""StorageQuota CRUD：带条件的原子增减，保证已用空间不超过配额且不小于零。"""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import case
from sqlalchemy.orm import Session

from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.storage_quota import StorageQuota


class CRUDStorageQuota(CRUDBase[StorageQuota]):
    def get_by_owner(self, db: Session, owner_id: int, *, for_update: bool = False) -> Optional[StorageQuota]:
        query = (
            self.query(db)
            .filter(StorageQuota.owner_id == owner_id)
            .execution_options(populate_existing=True)
        )
        if for_update:
            query = query.with_for_update()
        return query.first()

    def try_increment(self, db: Session, *, owner_id: int, kb: int, now: datetime) -> bool:
        """仅当 ``used + kb <= quota`` 且未过期时增加已用空间，返回是否成功。"""
        affected = (
            self.query(db)
            .filter(StorageQuota.owner_id == owner_id)
            .filter(StorageQuota.used_space_kb + kb <= StorageQuota.quota_kb)
            .filter(StorageQuota.expire_at > now)
            .update(
                {StorageQuota.used_space_kb: StorageQuota.used_space_kb + kb},
                synchronize_session=False,
            )
        )
        return affected == 1

    def decrement(self, db: Session, *, owner_id: int, kb: int) -> None:
        """减少已用空间，结果不小于零。"""
        (
            self.query(db)
            .filter(StorageQuota.owner_id == owner_id)
            .update(
                {
                    StorageQuota.used_space_kb: case(
                        (StorageQuota.used_space_kb >= kb, StorageQuota.used_space_kb - kb),
                        else_=0,
                    )
                },
                synchronize_session=False,
            )
        )


storage_quota_crud = CRUDStorageQuota(StorageQuota)
