"""文件树 - 目录/文件 操作请求/响应模型。"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from app.packages.drive.api.v1.schemas.common import ResponseEnvelope
from app.packages.drive.core.enums import PermissionEnum


class DirectoryCreateBody(BaseModel):
    parentId: Optional[int] = None
    name: str = Field(..., min_length=1, max_length=255)
    permission: PermissionEnum = PermissionEnum.PRIVATE


class RenameBody(BaseModel):
    newName: str = Field(..., min_length=1, max_length=255)


class MoveCopyBody(BaseModel):
    newParentId: Optional[int] = None


class PermissionBody(BaseModel):
    permission: PermissionEnum


class LinkItem(BaseModel):
    id: int
    order: int = 0


class LinksBody(BaseModel):
    items: list[LinkItem] = Field(default_factory=list)
    isTemporary: bool = False
    expireMinutes: Optional[int] = Field(default=None, ge=1)


class QuotaRechargeBody(BaseModel):
    quotaKb: int = Field(..., ge=0)
    expireAt: datetime


FileItemResponse = ResponseEnvelope[dict]
FileItemTreeResponse = ResponseEnvelope[list]
FileItemMutationResponse = ResponseEnvelope[Any]
QuotaResponse = ResponseEnvelope[dict]
