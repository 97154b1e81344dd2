"""CRUD 基类：为各实体提供通用的数据访问方法。"""

from typing import Any, Dict, Generic, Optional, Type, TypeVar

from sqlalchemy.orm import Query, Session

from app.packages.drive.models.base import Base

ModelType = TypeVar("ModelType", bound=Base)


class CRUDBase(Generic[ModelType]):
    """封装常见的查询、创建与保存逻辑，减少重复代码。"""

    def __init__(self, model: Type[ModelType]):
        self.model = model

    def get(
        self,
        db: Session,
        id: Any,
        *,
        include_deleted: bool = False,
        for_update: bool = False,
    ) -> Optional[ModelType]:
        query = self.query(db, include_deleted=include_deleted).filter(self.model.id == id)
        if for_update:
            query = query.with_for_update()
        return query.first()

    def create(self, db: Session, obj_in: Dict[str, Any], *, auto_commit: bool = True) -> ModelType:
        db_obj = self.model(**obj_in)
        db.add(db_obj)
        if auto_commit:
            db.commit()
            db.refresh(db_obj)
        else:
            db.flush()
        return db_obj

    def save(self, db: Session, db_obj: ModelType, *, auto_commit: bool = True) -> ModelType:
        db.add(db_obj)
        if auto_commit:
            db.commit()
            db.refresh(db_obj)
        else:
            db.flush()
        return db_obj

    def hard_delete(self, db: Session, db_obj: ModelType, *, auto_commit: bool = True) -> None:
        """物理删除行。

        注意：与软删除不同，此操作会直接从数据库移除记录。
        """
        db.delete(db_obj)
        if auto_commit:
            try:
                db.commit()
            except Exception:
                db.rollback()
                raise
        else:
            db.flush()

    # 统一构造带软删除过滤的查询
    def query(self, db: Session, *, include_deleted: bool = False) -> Query:
        query = db.query(self.model)
        if hasattr(self.model, "is_deleted") and not include_deleted:
            query = query.filter(self.model.is_deleted.is_(False))
        return query
