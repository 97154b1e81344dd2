"""FileItem CRUD：兄弟节点查询、子树遍历与按归属用户列举。"""

from __future__ import annotations

from typing import List, Optional, Sequence

from sqlalchemy.orm import Session

from app.packages.drive.crud.base import CRUDBase
from app.packages.drive.models.file_item import FileItem


class CRUDFileItem(CRUDBase[FileItem]):
    def get_any(self, db: Session, id: int, *, for_update: bool = False) -> Optional[FileItem]:
        """按 ID 读取节点，包含回收站中的节点。"""
        return self.get(db, id, include_deleted=True, for_update=for_update)

    def find_sibling(
        self,
        db: Session,
        *,
        owner_id: int,
        parent_id: Optional[int],
        name: str,
        include_deleted: bool = True,
        exclude_id: Optional[int] = None,
    ) -> Optional[FileItem]:
        query = (
            self.query(db, include_deleted=include_deleted)
            .filter(FileItem.owner_id == owner_id)
            .filter(FileItem.name == name)
        )
        if parent_id is None:
            query = query.filter(FileItem.parent_id.is_(None))
        else:
            query = query.filter(FileItem.parent_id == parent_id)
        if exclude_id is not None:
            query = query.filter(FileItem.id != exclude_id)
        return query.first()

    def list_children(
        self,
        db: Session,
        parent_ids: Sequence[int],
        *,
        include_deleted: bool = True,
        for_update: bool = False,
    ) -> List[FileItem]:
        if not parent_ids:
            return []
        query = self.query(db, include_deleted=include_deleted).filter(FileItem.parent_id.in_(list(parent_ids)))
        if for_update:
            query = query.with_for_update()
        return query.order_by(FileItem.id).all()

    def list_descendants(
        self,
        db: Session,
        root: FileItem,
        *,
        include_deleted: bool = True,
        for_update: bool = False,
    ) -> List[FileItem]:
        """逐层遍历返回 ``root`` 的全部子孙（不含自身），父节点总在子节点之前。"""
        result: List[FileItem] = []
        frontier = [root.id] if root.is_dir else []
        while frontier:
            level = self.list_children(db, frontier, include_deleted=include_deleted, for_update=for_update)
            result.extend(level)
            frontier = [item.id for item in level if item.is_dir]
        return result

    def list_by_owner(self, db: Session, *, owner_id: int, deleted: Optional[bool] = False) -> List[FileItem]:
        """列举用户全部节点；``deleted`` 为 None 时不区分回收站状态。"""
        query = db.query(FileItem).filter(FileItem.owner_id == owner_id)
        if deleted is not None:
            query = query.filter(FileItem.is_deleted.is_(deleted))
        return query.order_by(FileItem.id).all()

    def get_many(self, db: Session, ids: Sequence[int]) -> List[FileItem]:
        if not ids:
            return []
        return self.query(db).filter(FileItem.id.in_(list(ids))).all()


file_item_crud = CRUDFileItem(FileItem)
