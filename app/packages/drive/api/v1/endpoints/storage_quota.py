"""存储配额路由：查询当前用户配额，管理员调整任意用户的配额与到期时间。"""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.file_items import QuotaRechargeBody, QuotaResponse
from app.packages.drive.core.constants import HTTP_STATUS_OK
from app.packages.drive.core.dependencies import get_db, get_file_item_service, get_identity
from app.packages.drive.core.responses import create_response
from app.packages.drive.core.security import Identity
from app.packages.drive.services.file_item_service import FileItemService, serialize_quota

router = APIRouter(prefix="/storage-quota", tags=["storage-quota"])


@router.get("", response_model=QuotaResponse)
def get_quota(
    owner_id: Optional[int] = Query(None, alias="ownerId"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    quota = service.get_quota(db, identity, owner_id=owner_id)
    return create_response("获取存储配额成功", serialize_quota(quota), HTTP_STATUS_OK)


@router.put("/{owner_id}", response_model=QuotaResponse)
def recharge_quota(
    payload: QuotaRechargeBody,
    owner_id: int = Path(..., ge=1),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    quota = service.recharge_quota(
        db, identity, owner_id=owner_id, quota_kb=payload.quotaKb, expire_at=payload.expireAt
    )
    return create_response("存储配额已更新", serialize_quota(quota), HTTP_STATUS_OK)
