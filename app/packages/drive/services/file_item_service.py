"""文件树服务：数据库中的逻辑文件树（目录/文件、回收站、权限标记）与对象存储的映射。

每个操作都以调用方身份（``Identity``）鉴权：只有归属用户与管理员可以访问节点。
写操作在同一个数据库事务中完成节点变更与配额增减，任何异常都会回滚事务后原样抛出；
对象存储上的多步操作不是原子的，失败后重新执行同一操作即可收敛。

对象布局：
- 用户根目录前缀为 ``u{owner_id}/``，根级节点按用户 ID 确定性地选择后端；
- 子节点继承父目录的 ``server_key`` 与 ``bucket``；
- 文件 key 为“父前缀 + 名称”，目录前缀为“父前缀 + 名称 + '/'”。
"""

from __future__ import annotations

import mimetypes
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, BinaryIO, Dict, Iterator, List, Optional, Sequence, Tuple

from sqlalchemy.orm import Session

from app.packages.drive.core.config import Settings
from app.packages.drive.core.constants import DEFAULT_CONTENT_TYPE, DIRECTORY_CONTENT_TYPE, MAX_NAME_LENGTH
from app.packages.drive.core.enums import FileKindEnum, PermissionEnum
from app.packages.drive.core.exceptions import (
    AlreadyExistsError,
    InvalidTargetError,
    NotFoundError,
    UnauthorizedError,
)
from app.packages.drive.core.logger import logger
from app.packages.drive.core.security import Identity
from app.packages.drive.core.timezone import format_datetime, utc_now
from app.packages.drive.crud.file_item import file_item_crud
from app.packages.drive.models.file_item import FileItem
from app.packages.drive.models.storage_quota import StorageQuota
from app.packages.drive.services.quota_service import QuotaService, kb_for
from app.packages.drive.services.storage_service import StorageService, basename


@dataclass
class UploadResult:
    item: FileItem
    url: str


@dataclass
class ItemLink:
    item: FileItem
    url: str
    order: int


@dataclass
class TreeNode:
    item: FileItem
    children: List["TreeNode"] = field(default_factory=list)


def normalize_name(name: Optional[str]) -> str:
    """校验并规范化节点名称。"""
    value = (name or "").strip()
    if not value:
        raise InvalidTargetError("名称不能为空")
    if len(value) > MAX_NAME_LENGTH:
        raise InvalidTargetError(f"名称长度不能超过 {MAX_NAME_LENGTH} 个字符")
    if "/" in value or "\\" in value or value in {".", ".."}:
        raise InvalidTargetError("名称包含非法字符")
    return value


def normalize_permission(permission: Any) -> str:
    value = getattr(permission, "value", permission)
    if value not in {PermissionEnum.PUBLIC.value, PermissionEnum.PRIVATE.value}:
        raise InvalidTargetError("权限只能为 public 或 private")
    return value


def _sort_key(node: TreeNode) -> Tuple[int, str, int]:
    return (0 if node.item.is_dir else 1, node.item.name.casefold(), node.item.id)


def _sort_tree(nodes: List[TreeNode]) -> List[TreeNode]:
    nodes.sort(key=_sort_key)
    for node in nodes:
        _sort_tree(node.children)
    return nodes


def _build_forest(items: Sequence[FileItem], root_ids: Sequence[int]) -> List[TreeNode]:
    nodes = {item.id: TreeNode(item) for item in items}
    for item in items:
        if item.id in root_ids:
            continue
        parent = nodes.get(item.parent_id)
        if parent is not None:
            parent.children.append(nodes[item.id])
    return _sort_tree([nodes[i] for i in root_ids if i in nodes])


class FileItemService:
    def __init__(self, storage: StorageService, quotas: QuotaService, settings: Settings) -> None:
        self.storage = storage
        self.quotas = quotas
        self.settings = settings

    # ----------------------------
    # 内部工具
    # ----------------------------
    @contextmanager
    def _transaction(self, db: Session) -> Iterator[None]:
        try:
            yield
            db.commit()
        except Exception:
            db.rollback()
            raise

    @staticmethod
    def _authorize(identity: Identity, owner_id: int) -> None:
        if identity.is_admin or identity.owner_id == owner_id:
            return
        raise UnauthorizedError(data={"owner_id": owner_id})

    def _load(
        self,
        db: Session,
        identity: Identity,
        item_id: int,
        *,
        for_update: bool = True,
        allow_deleted: bool = False,
    ) -> FileItem:
        item = file_item_crud.get_any(db, item_id, for_update=for_update)
        if item is None or (item.is_deleted and not allow_deleted):
            raise NotFoundError(data={"id": item_id})
        self._authorize(identity, item.owner_id)
        return item

    def _load_directory(
        self,
        db: Session,
        identity: Identity,
        directory_id: Optional[int],
        *,
        owner_id: Optional[int] = None,
    ) -> Optional[FileItem]:
        """读取并锁定目标目录；``None`` 表示用户根目录。"""
        if directory_id is None:
            return None
        directory = file_item_crud.get_any(db, directory_id, for_update=True)
        if directory is None or directory.is_deleted:
            raise NotFoundError("目标目录不存在", data={"id": directory_id})
        self._authorize(identity, directory.owner_id)
        if not directory.is_dir:
            raise InvalidTargetError("目标不是目录", data={"id": directory_id})
        if owner_id is not None and directory.owner_id != owner_id:
            raise InvalidTargetError("目标目录不属于同一用户", data={"id": directory_id})
        return directory

    @staticmethod
    def root_prefix(owner_id: int) -> str:
        return f"u{owner_id}/"

    def _location(self, parent: Optional[FileItem], owner_id: int) -> Tuple[str, str, str]:
        """返回新节点的 (server_key, bucket, 父前缀)。"""
        if parent is not None:
            return parent.server_key, parent.bucket, parent.object_key
        server_key = self.storage.registry.pick_for_owner(owner_id)
        return server_key, self.settings.storage_bucket, self.root_prefix(owner_id)

    @staticmethod
    def _key_for(prefix: str, name: str, kind: str) -> str:
        key = prefix + name
        if kind == FileKindEnum.DIRECTORY.value:
            key += "/"
        return key

    @staticmethod
    def _parent_prefix(item: FileItem) -> str:
        return item.object_key[: len(item.object_key) - len(basename(item.object_key))]

    def _ensure_name_free(
        self,
        db: Session,
        *,
        owner_id: int,
        parent_id: Optional[int],
        name: str,
        exclude_id: Optional[int] = None,
        include_deleted: bool = True,
    ) -> None:
        # 回收站中的节点仍占用对象 key，因此默认一并参与重名校验
        existing = file_item_crud.find_sibling(
            db,
            owner_id=owner_id,
            parent_id=parent_id,
            name=name,
            include_deleted=include_deleted,
            exclude_id=exclude_id,
        )
        if existing is not None:
            raise AlreadyExistsError(data={"name": name, "parent_id": parent_id, "conflict_id": existing.id})

    def _ensure_not_inside(self, db: Session, item: FileItem, target: Optional[FileItem]) -> None:
        """目标目录不能是节点自身或其子孙。"""
        current = target
        while current is not None:
            if current.id == item.id:
                raise InvalidTargetError("不能将目录移动或复制到其自身或子目录中", data={"id": item.id})
            if current.parent_id is None:
                return
            current = file_item_crud.get_any(db, current.parent_id)

    def _ensure_same_backend(self, item: FileItem, server_key: str, bucket: str) -> None:
        if item.server_key != server_key or item.bucket != bucket:
            raise InvalidTargetError(
                "不支持跨存储后端移动或复制",
                data={"from": f"{item.server_key}/{item.bucket}", "to": f"{server_key}/{bucket}"},
            )

    def _relocate(
        self,
        db: Session,
        item: FileItem,
        new_key: str,
    ) -> List[FileItem]:
        """在对象存储上把节点子树迁移到 ``new_key``，并同步所有子孙的 key。

        目标名称已由同级唯一性校验保证可用，目标下的残留对象只可能来自上次未完成的同一操作，
        因此按续传处理。
        """
        descendants = file_item_crud.list_descendants(db, item, include_deleted=True, for_update=True)
        permissions = {d.object_key: d.permission for d in [item, *descendants]}
        old_key = item.object_key
        self.storage.rename_or_move(
            item.server_key,
            item.bucket,
            old_key,
            new_key,
            item.permission,
            permission_for=lambda key: permissions.get(key, item.permission),
            resume=True,
        )
        item.object_key = new_key
        for descendant in descendants:
            descendant.object_key = new_key + descendant.object_key[len(old_key):]
        return descendants

    def public_url(self, item: FileItem) -> str:
        return self.storage.public_url(item.server_key, item.bucket, item.object_key)

    # ----------------------------
    # 创建
    # ----------------------------
    def create_directory(
        self,
        db: Session,
        identity: Identity,
        *,
        parent_id: Optional[int],
        name: str,
        permission: Any,
    ) -> FileItem:
        name = normalize_name(name)
        permission = normalize_permission(permission)
        with self._transaction(db):
            parent = self._load_directory(db, identity, parent_id)
            owner_id = parent.owner_id if parent is not None else identity.owner_id
            self._ensure_name_free(db, owner_id=owner_id, parent_id=parent_id, name=name)
            server_key, bucket, prefix = self._location(parent, owner_id)
            key = self._key_for(prefix, name, FileKindEnum.DIRECTORY.value)
            item = file_item_crud.create(
                db,
                {
                    "owner_id": owner_id,
                    "parent_id": parent_id,
                    "name": name,
                    "kind": FileKindEnum.DIRECTORY.value,
                    "permission": permission,
                    "server_key": server_key,
                    "bucket": bucket,
                    "object_key": key,
                    "size_bytes": 0,
                    "content_type": DIRECTORY_CONTENT_TYPE,
                },
                auto_commit=False,
            )
            self.storage.create_object(server_key, bucket, key, permission)
        logger.info("file_items.create_directory id=%s owner=%s key=%s", item.id, owner_id, key)
        return item

    def upload_file(
        self,
        db: Session,
        identity: Identity,
        *,
        parent_id: Optional[int],
        name: str,
        body: BinaryIO | bytes,
        size: int,
        permission: Any,
        content_type: Optional[str] = None,
    ) -> UploadResult:
        name = normalize_name(name)
        permission = normalize_permission(permission)
        if size < 0:
            raise InvalidTargetError("文件大小无效")
        content_type = content_type or mimetypes.guess_type(name)[0] or DEFAULT_CONTENT_TYPE
        with self._transaction(db):
            parent = self._load_directory(db, identity, parent_id)
            owner_id = parent.owner_id if parent is not None else identity.owner_id
            self._ensure_name_free(db, owner_id=owner_id, parent_id=parent_id, name=name)
            self.quotas.reserve_or_fail(db, owner_id, size, auto_commit=False)
            server_key, bucket, prefix = self._location(parent, owner_id)
            key = self._key_for(prefix, name, FileKindEnum.FILE.value)
            item = file_item_crud.create(
                db,
                {
                    "owner_id": owner_id,
                    "parent_id": parent_id,
                    "name": name,
                    "kind": FileKindEnum.FILE.value,
                    "permission": permission,
                    "server_key": server_key,
                    "bucket": bucket,
                    "object_key": key,
                    "size_bytes": size,
                    "content_type": content_type,
                },
                auto_commit=False,
            )
            url = self.storage.create_object(
                server_key, bucket, key, permission, body=body, size=size, content_type=content_type
            )
        logger.info("file_items.upload id=%s owner=%s key=%s size=%s", item.id, owner_id, key, size)
        return UploadResult(item=item, url=url)

    # ----------------------------
    # 重命名 / 移动 / 复制
    # ----------------------------
    def rename(self, db: Session, identity: Identity, item_id: int, *, new_name: str) -> FileItem:
        new_name = normalize_name(new_name)
        with self._transaction(db):
            item = self._load(db, identity, item_id)
            if new_name == item.name:
                return item
            self._ensure_name_free(
                db, owner_id=item.owner_id, parent_id=item.parent_id, name=new_name, exclude_id=item.id
            )
            new_key = self._key_for(self._parent_prefix(item), new_name, item.kind)
            old_key = item.object_key
            self._relocate(db, item, new_key)
            item.name = new_name
            file_item_crud.save(db, item, auto_commit=False)
        logger.info("file_items.rename id=%s old=%s new=%s", item.id, old_key, new_key)
        return item

    def move(self, db: Session, identity: Identity, item_id: int, *, new_parent_id: Optional[int]) -> FileItem:
        with self._transaction(db):
            item = self._load(db, identity, item_id)
            if new_parent_id == item.parent_id:
                return item
            target = self._load_directory(db, identity, new_parent_id, owner_id=item.owner_id)
            self._ensure_not_inside(db, item, target)
            server_key, bucket, prefix = self._location(target, item.owner_id)
            self._ensure_same_backend(item, server_key, bucket)
            self._ensure_name_free(
                db, owner_id=item.owner_id, parent_id=new_parent_id, name=item.name, exclude_id=item.id
            )
            new_key = self._key_for(prefix, item.name, item.kind)
            old_key = item.object_key
            self._relocate(db, item, new_key)
            item.parent_id = new_parent_id
            file_item_crud.save(db, item, auto_commit=False)
        logger.info("file_items.move id=%s old=%s new=%s", item.id, old_key, new_key)
        return item

    def copy(self, db: Session, identity: Identity, item_id: int, *, new_parent_id: Optional[int]) -> FileItem:
        with self._transaction(db):
            item = self._load(db, identity, item_id)
            target = self._load_directory(db, identity, new_parent_id, owner_id=item.owner_id)
            self._ensure_not_inside(db, item, target)
            server_key, bucket, prefix = self._location(target, item.owner_id)
            self._ensure_same_backend(item, server_key, bucket)
            self._ensure_name_free(db, owner_id=item.owner_id, parent_id=new_parent_id, name=item.name)

            subtree = [item, *file_item_crud.list_descendants(db, item, include_deleted=True)]
            total_kb = sum(kb_for(node.size_bytes) for node in subtree if not node.is_dir)
            self.quotas.reserve_kb_or_fail(db, item.owner_id, total_kb, auto_commit=False)

            permissions = {node.object_key: node.permission for node in subtree}
            new_root_key = self.storage.copy_into(
                server_key,
                bucket,
                item.object_key,
                prefix,
                item.permission,
                permission_for=lambda key: permissions.get(key, item.permission),
                resume=True,
            )

            # 子树按层序排列，父节点总是先于子节点创建
            id_map: Dict[int, Optional[int]] = {}
            copies: List[FileItem] = []
            for node in subtree:
                parent_id = new_parent_id if node.id == item.id else id_map[node.parent_id]
                clone = file_item_crud.create(
                    db,
                    {
                        "owner_id": node.owner_id,
                        "parent_id": parent_id,
                        "name": node.name,
                        "kind": node.kind,
                        "permission": node.permission,
                        "server_key": node.server_key,
                        "bucket": node.bucket,
                        "object_key": new_root_key + node.object_key[len(item.object_key):],
                        "size_bytes": node.size_bytes,
                        "content_type": node.content_type,
                        "is_deleted": node.is_deleted,
                        "deleted_at": node.deleted_at,
                    },
                    auto_commit=False,
                )
                id_map[node.id] = clone.id
                copies.append(clone)
        root = copies[0]
        logger.info(
            "file_items.copy id=%s new_id=%s key=%s nodes=%s kb=%s", item.id, root.id, new_root_key, len(copies), total_kb
        )
        return root

    # ----------------------------
    # 权限
    # ----------------------------
    def change_permission(self, db: Session, identity: Identity, item_id: int, *, permission: Any) -> FileItem:
        permission = normalize_permission(permission)
        with self._transaction(db):
            item = self._load(db, identity, item_id)
            descendants = file_item_crud.list_descendants(db, item, include_deleted=True, for_update=True)
            self.storage.apply_tree(item.server_key, item.bucket, item.object_key, permission)
            for node in [item, *descendants]:
                node.permission = permission
            file_item_crud.save(db, item, auto_commit=False)
        logger.info("file_items.change_permission id=%s permission=%s nodes=%s", item.id, permission, len(descendants) + 1)
        return item

    # ----------------------------
    # 回收站
    # ----------------------------
    def soft_delete(self, db: Session, identity: Identity, item_id: int) -> int:
        """标记节点及其子孙为已删除，不移动对象也不释放配额，返回标记的节点数。"""
        with self._transaction(db):
            item = self._load(db, identity, item_id)
            descendants = file_item_crud.list_descendants(db, item, include_deleted=True, for_update=True)
            deleted_at = utc_now()
            for node in [item, *descendants]:
                if not node.is_deleted:
                    node.is_deleted = True
                    node.deleted_at = deleted_at
            file_item_crud.save(db, item, auto_commit=False)
        logger.info("file_items.soft_delete id=%s nodes=%s", item_id, len(descendants) + 1)
        return len(descendants) + 1

    def restore(self, db: Session, identity: Identity, item_id: int) -> FileItem:
        with self._transaction(db):
            item = self._load(db, identity, item_id, allow_deleted=True)
            if not item.is_deleted:
                raise InvalidTargetError("节点不在回收站中", data={"id": item_id})
            if item.parent_id is not None:
                parent = file_item_crud.get_any(db, item.parent_id)
                if parent is None or parent.is_deleted:
                    raise InvalidTargetError("父目录仍在回收站中，请先恢复父目录", data={"parent_id": item.parent_id})
            self._ensure_name_free(
                db,
                owner_id=item.owner_id,
                parent_id=item.parent_id,
                name=item.name,
                exclude_id=item.id,
                include_deleted=False,
            )
            descendants = file_item_crud.list_descendants(db, item, include_deleted=True, for_update=True)
            for node in [item, *descendants]:
                node.is_deleted = False
                node.deleted_at = None
            file_item_crud.save(db, item, auto_commit=False)
        logger.info("file_items.restore id=%s nodes=%s", item_id, len(descendants) + 1)
        return item

    def force_delete(self, db: Session, identity: Identity, item_id: int) -> Dict[str, int]:
        """物理删除节点子树的全部对象与记录，并按文件大小释放配额。"""
        with self._transaction(db):
            item = self._load(db, identity, item_id, allow_deleted=True)
            subtree = [item, *file_item_crud.list_descendants(db, item, include_deleted=True, for_update=True)]
            removed = self.storage.remove_tree(item.server_key, item.bucket, item.object_key)
            released_kb = sum(kb_for(node.size_bytes) for node in subtree if not node.is_dir)
            owner_id = item.owner_id
            for node in reversed(subtree):
                file_item_crud.hard_delete(db, node, auto_commit=False)
            self.quotas.release_kb(db, owner_id, released_kb, auto_commit=False)
        logger.info(
            "file_items.force_delete id=%s nodes=%s objects=%s released_kb=%s",
            item_id,
            len(subtree),
            removed,
            released_kb,
        )
        return {"nodes": len(subtree), "objects": removed, "released_kb": released_kb}

    # ----------------------------
    # 查询
    # ----------------------------
    def tree(
        self,
        db: Session,
        identity: Identity,
        *,
        root_id: Optional[int] = None,
        owner_id: Optional[int] = None,
    ) -> List[TreeNode]:
        if root_id is not None:
            root = self._load(db, identity, root_id, for_update=False)
            items = [root, *file_item_crud.list_descendants(db, root, include_deleted=False)]
            return _build_forest(items, [root.id])
        owner_id = identity.owner_id if owner_id is None else owner_id
        self._authorize(identity, owner_id)
        items = file_item_crud.list_by_owner(db, owner_id=owner_id, deleted=False)
        return _build_forest(items, [item.id for item in items if item.parent_id is None])

    def deleted_tree(self, db: Session, identity: Identity, *, owner_id: Optional[int] = None) -> List[TreeNode]:
        owner_id = identity.owner_id if owner_id is None else owner_id
        self._authorize(identity, owner_id)
        items = file_item_crud.list_by_owner(db, owner_id=owner_id, deleted=True)
        trashed = {item.id for item in items}
        roots = [item.id for item in items if item.parent_id is None or item.parent_id not in trashed]
        return _build_forest(items, roots)

    def presign(self, db: Session, identity: Identity, item_id: int, *, ttl_seconds: int) -> str:
        if ttl_seconds < 1 or ttl_seconds > self.settings.storage_presign_max_seconds:
            raise InvalidTargetError(
                f"链接有效期必须在 1 到 {self.settings.storage_presign_max_seconds} 秒之间",
                data={"ttl_seconds": ttl_seconds},
            )
        item = self._load(db, identity, item_id, for_update=False)
        return self.storage.presign_url(item.server_key, item.bucket, item.object_key, ttl_seconds)

    def download(self, db: Session, identity: Identity, item_id: int) -> Tuple[FileItem, Iterator[bytes]]:
        """归属用户、管理员或公开文件可下载；目录不能下载。"""
        item = file_item_crud.get(db, item_id)
        if item is None:
            raise NotFoundError(data={"id": item_id})
        if not item.is_public:
            self._authorize(identity, item.owner_id)
        if item.is_dir:
            raise InvalidTargetError("目录不能下载", data={"id": item_id})
        return item, self.storage.open(item.server_key, item.bucket, item.object_key)

    def links(
        self,
        db: Session,
        identity: Identity,
        items: Sequence[Tuple[int, int]],
        *,
        is_temporary: bool = False,
        expire_minutes: Optional[int] = None,
    ) -> List[ItemLink]:
        """批量获取链接：``items`` 为 (id, order)；不存在、已删除或无权访问的 ID 被跳过。"""
        minutes = expire_minutes or self.settings.storage_presign_default_minutes
        ttl_seconds = minutes * 60
        if is_temporary and (ttl_seconds < 1 or ttl_seconds > self.settings.storage_presign_max_seconds):
            raise InvalidTargetError("链接有效期超出范围", data={"expire_minutes": minutes})
        orders = {item_id: order for item_id, order in items}
        result: List[ItemLink] = []
        for item in file_item_crud.get_many(db, list(orders)):
            if not (identity.is_admin or item.owner_id == identity.owner_id):
                continue
            if is_temporary:
                url = self.storage.presign_url(item.server_key, item.bucket, item.object_key, ttl_seconds)
            else:
                url = self.public_url(item)
            result.append(ItemLink(item=item, url=url, order=orders[item.id]))
        result.sort(key=lambda link: (link.order, link.item.id))
        return result

    # ----------------------------
    # 配额
    # ----------------------------
    def get_quota(self, db: Session, identity: Identity, *, owner_id: Optional[int] = None) -> StorageQuota:
        owner_id = identity.owner_id if owner_id is None else owner_id
        self._authorize(identity, owner_id)
        return self.quotas.get(db, owner_id)

    def recharge_quota(
        self,
        db: Session,
        identity: Identity,
        *,
        owner_id: int,
        quota_kb: int,
        expire_at: datetime,
    ) -> StorageQuota:
        if not identity.is_admin:
            raise UnauthorizedError("仅管理员可以调整存储配额")
        if quota_kb < 0:
            raise InvalidTargetError("配额不能为负数")
        return self.quotas.recharge(db, owner_id, quota_kb, expire_at)


# ----------------------------
# 序列化
# ----------------------------
def serialize_item(item: FileItem, url: Optional[str] = None) -> Dict[str, Any]:
    payload = {
        "id": item.id,
        "ownerId": item.owner_id,
        "parentId": item.parent_id,
        "name": item.name,
        "kind": item.kind,
        "permission": item.permission,
        "serverKey": item.server_key,
        "bucket": item.bucket,
        "objectKey": item.object_key,
        "sizeBytes": item.size_bytes,
        "contentType": item.content_type,
        "isDeleted": item.is_deleted,
        "deletedAt": format_datetime(item.deleted_at),
        "createdAt": format_datetime(item.created_at),
        "updatedAt": format_datetime(item.updated_at),
    }
    if url is not None:
        payload["url"] = url
    return payload


def serialize_tree(nodes: Sequence[TreeNode]) -> List[Dict[str, Any]]:
    return [{**serialize_item(node.item), "children": serialize_tree(node.children)} for node in nodes]


def serialize_quota(quota: StorageQuota) -> Dict[str, Any]:
    return {
        "ownerId": quota.owner_id,
        "usedSpaceKb": quota.used_space_kb,
        "quotaKb": quota.quota_kb,
        "chargedAt": format_datetime(quota.charged_at),
        "expireAt": format_datetime(quota.expire_at),
    }
