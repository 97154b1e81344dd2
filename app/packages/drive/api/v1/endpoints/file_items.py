"""文件树路由：目录/文件的创建、上传、重命名、移动、复制、权限、回收站与链接。

路由层只做参数绑定与响应封装，全部业务规则在 ``FileItemService`` 中；
每次调用都在请求截止时间内执行，超时的后端调用以 504 返回。
"""

from __future__ import annotations

import os
from typing import Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from app.packages.drive.api.v1.schemas.file_items import (
    DirectoryCreateBody,
    FileItemMutationResponse,
    FileItemResponse,
    FileItemTreeResponse,
    LinksBody,
    MoveCopyBody,
    PermissionBody,
    RenameBody,
)
from app.packages.drive.core.config import get_settings
from app.packages.drive.core.constants import HTTP_STATUS_OK
from app.packages.drive.core.dependencies import get_db, get_file_item_service, get_identity
from app.packages.drive.core.enums import PermissionEnum
from app.packages.drive.core.responses import create_response
from app.packages.drive.core.security import Identity
from app.packages.drive.services.file_item_service import (
    FileItemService,
    serialize_item,
    serialize_tree,
)
from app.packages.drive.services.storage_backends import request_deadline

router = APIRouter(prefix="/file-items", tags=["file-items"])
settings = get_settings()


def _deadline():
    return request_deadline(settings.storage_request_timeout_seconds)


def _upload_size(upload: UploadFile) -> int:
    if upload.size is not None:
        return upload.size
    stream = upload.file
    stream.seek(0, os.SEEK_END)
    size = stream.tell()
    stream.seek(0)
    return size


@router.post("/directories", response_model=FileItemResponse)
def create_directory(
    payload: DirectoryCreateBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    with _deadline():
        item = service.create_directory(
            db, identity, parent_id=payload.parentId, name=payload.name, permission=payload.permission
        )
    return create_response("文件夹创建成功", serialize_item(item, service.public_url(item)), HTTP_STATUS_OK)


@router.post("", response_model=FileItemResponse)
def upload_file(
    file: UploadFile = File(...),
    parent_id: Optional[int] = Form(None, alias="parentId"),
    permission: PermissionEnum = Form(PermissionEnum.PRIVATE),
    name: Optional[str] = Form(None),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    with _deadline():
        result = service.upload_file(
            db,
            identity,
            parent_id=parent_id,
            name=name or file.filename or "",
            body=file.file,
            size=_upload_size(file),
            permission=permission,
            content_type=file.content_type,
        )
    return create_response("文件上传成功", serialize_item(result.item, result.url), HTTP_STATUS_OK)


@router.get("/tree", response_model=FileItemTreeResponse)
def get_tree(
    root_id: Optional[int] = Query(None, alias="rootId"),
    owner_id: Optional[int] = Query(None, alias="ownerId"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    nodes = service.tree(db, identity, root_id=root_id, owner_id=owner_id)
    return create_response("获取文件树成功", serialize_tree(nodes), HTTP_STATUS_OK)


@router.get("/tree/deleted", response_model=FileItemTreeResponse)
def get_deleted_tree(
    owner_id: Optional[int] = Query(None, alias="ownerId"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    nodes = service.deleted_tree(db, identity, owner_id=owner_id)
    return create_response("获取回收站成功", serialize_tree(nodes), HTTP_STATUS_OK)


@router.post("/links", response_model=FileItemTreeResponse)
def get_links(
    payload: LinksBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    with _deadline():
        links = service.links(
            db,
            identity,
            [(entry.id, entry.order) for entry in payload.items],
            is_temporary=payload.isTemporary,
            expire_minutes=payload.expireMinutes,
        )
    data = [{**serialize_item(link.item, link.url), "order": link.order} for link in links]
    return create_response("获取链接成功", data, HTTP_STATUS_OK)


@router.patch("/{item_id}/name", response_model=FileItemResponse)
def rename_item(
    item_id: int,
    payload: RenameBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    with _deadline():
        item = service.rename(db, identity, item_id, new_name=payload.newName)
    return create_response("重命名成功", serialize_item(item, service.public_url(item)), HTTP_STATUS_OK)


@router.post("/{item_id}/move", response_model=FileItemResponse)
def move_item(
    item_id: int,
    payload: MoveCopyBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    with _deadline():
        item = service.move(db, identity, item_id, new_parent_id=payload.newParentId)
    return create_response("移动成功", serialize_item(item, service.public_url(item)), HTTP_STATUS_OK)


@router.post("/{item_id}/copy", response_model=FileItemResponse)
def copy_item(
    item_id: int,
    payload: MoveCopyBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    with _deadline():
        item = service.copy(db, identity, item_id, new_parent_id=payload.newParentId)
    return create_response("复制成功", serialize_item(item, service.public_url(item)), HTTP_STATUS_OK)


@router.put("/{item_id}/permission", response_model=FileItemResponse)
def change_permission(
    item_id: int,
    payload: PermissionBody,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    with _deadline():
        item = service.change_permission(db, identity, item_id, permission=payload.permission)
    return create_response("权限修改成功", serialize_item(item), HTTP_STATUS_OK)


@router.delete("/{item_id}", response_model=FileItemMutationResponse)
def soft_delete_item(
    item_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    count = service.soft_delete(db, identity, item_id)
    return create_response("已移入回收站", {"id": item_id, "count": count}, HTTP_STATUS_OK)


@router.put("/{item_id}/restore", response_model=FileItemResponse)
def restore_item(
    item_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    item = service.restore(db, identity, item_id)
    return create_response("恢复成功", serialize_item(item), HTTP_STATUS_OK)


@router.delete("/{item_id}/force", response_model=FileItemMutationResponse)
def force_delete_item(
    item_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    with _deadline():
        summary = service.force_delete(db, identity, item_id)
    return create_response("彻底删除成功", {"id": item_id, **summary}, HTTP_STATUS_OK)


@router.get("/{item_id}/presign", response_model=FileItemMutationResponse)
def presign_item(
    item_id: int,
    ttl_seconds: int = Query(300, alias="ttlSeconds"),
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    with _deadline():
        url = service.presign(db, identity, item_id, ttl_seconds=ttl_seconds)
    return create_response("获取临时链接成功", {"id": item_id, "url": url, "ttlSeconds": ttl_seconds}, HTTP_STATUS_OK)


@router.get("/{item_id}/download")
def download_item(
    item_id: int,
    db: Session = Depends(get_db),
    identity: Identity = Depends(get_identity),
    service: FileItemService = Depends(get_file_item_service),
):
    with _deadline():
        item, chunks = service.download(db, identity, item_id)
    headers = {
        "Content-Disposition": f"attachment; filename*=UTF-8''{quote(item.name)}",
        "Content-Length": str(item.size_bytes),
    }
    return StreamingResponse(chunks, media_type=item.content_type or "application/octet-stream", headers=headers)
