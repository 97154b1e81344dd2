"""存储服务：在单个后端上按 key 前缀执行递归的重命名/移动/复制，并同步桶策略。

目录操作是逐对象执行的序列，不是原子操作：中途失败时源与部分目标都保留，
重新执行同一操作即可收敛（每个 key 上的“复制后删除”是幂等的）。
目录标记对象总是最后处理：源标记在所有子对象迁移完成前不会删除，目标标记也最后写入，
因此重试时仍能找到源目录。调用方已保证目标名称可用时传 ``resume=True``，
目标下已存在的部分结果将被覆盖而不是报 ``AlreadyExists``。
失败时会记录正在处理的 key，便于排查。
"""

from __future__ import annotations

from typing import BinaryIO, Callable, Iterator, Optional

from app.packages.drive.core.constants import DIRECTORY_CONTENT_TYPE
from app.packages.drive.core.exceptions import (
    AlreadyExistsError,
    InvalidTargetError,
    NotFoundError,
)
from app.packages.drive.core.logger import bind_object_key, logger, storage_context
from app.packages.drive.services.bucket_policy import PolicyManager
from app.packages.drive.services.storage_backends import BackendRegistry

PermissionResolver = Callable[[str], str]


def basename(key: str) -> str:
    """返回 key 的最后一段；目录保留结尾的 '/'。"""
    if key.endswith("/"):
        return key.rstrip("/").rsplit("/", 1)[-1] + "/"
    return key.rsplit("/", 1)[-1]


class StorageService:
    def __init__(self, registry: BackendRegistry, policies: PolicyManager, url_scheme: str = "https") -> None:
        self.registry = registry
        self.policies = policies
        self.url_scheme = url_scheme

    # ----------------------------
    # URL
    # ----------------------------
    def public_url(self, server_key: str, bucket: str, key: str) -> str:
        return f"{self.url_scheme}://{self.registry.host(server_key)}/{bucket}/{key}"

    def presign_url(self, server_key: str, bucket: str, key: str, ttl_seconds: int) -> str:
        return self.registry.resolve(server_key).presign_get(bucket, key, ttl_seconds)

    # ----------------------------
    # 单对象
    # ----------------------------
    def create_object(
        self,
        server_key: str,
        bucket: str,
        key: str,
        permission: str,
        body: BinaryIO | bytes = b"",
        size: int = 0,
        content_type: Optional[str] = None,
    ) -> str:
        """写入对象（目录为零字节标记）并应用权限，返回公开 URL。"""
        store = self.registry.resolve(server_key)
        store.ensure_bucket(bucket)
        if key.endswith("/"):
            store.put(bucket, key, b"", 0, DIRECTORY_CONTENT_TYPE)
        else:
            store.put(bucket, key, body, size, content_type)
        self.policies.apply(server_key, bucket, key, permission)
        return self.public_url(server_key, bucket, key)

    def open(self, server_key: str, bucket: str, key: str) -> Iterator[bytes]:
        return self.registry.resolve(server_key).open(bucket, key)

    # ----------------------------
    # 目录引擎
    # ----------------------------
    def rename_or_move(
        self,
        server_key: str,
        bucket: str,
        old_key: str,
        new_key: str,
        permission: str,
        permission_for: Optional[PermissionResolver] = None,
        resume: bool = False,
    ) -> str:
        """把 ``old_key``（文件或以 '/' 结尾的目录）迁移到 ``new_key``，返回新 key 的公开 URL。"""
        if old_key == new_key:
            return self.public_url(server_key, bucket, new_key)
        if old_key.endswith("/") != new_key.endswith("/"):
            raise InvalidTargetError("文件与目录之间不能互相重命名", data={"old_key": old_key, "new_key": new_key})
        if old_key.endswith("/") and new_key.startswith(old_key):
            raise InvalidTargetError("不能将目录移动到其自身或子目录中", data={"old_key": old_key, "new_key": new_key})

        store = self.registry.resolve(server_key)
        if not store.exists(bucket, old_key):
            raise NotFoundError(f"对象不存在：{old_key}", data={"key": old_key})
        if not resume and store.exists(bucket, new_key):
            raise AlreadyExistsError(f"目标已存在：{new_key}", data={"key": new_key})

        resolve = permission_for or (lambda _key: permission)
        if old_key.endswith("/"):
            keys = store.list(bucket, old_key, recursive=True)
        else:
            keys = iter([old_key])

        moved = self._transfer(
            "rename_or_move", server_key, bucket, keys, old_key, new_key, resolve, remove_source=True
        )
        logger.info(
            "storage.rename_or_move server=%s bucket=%s old=%s new=%s objects=%s",
            server_key,
            bucket,
            old_key,
            new_key,
            moved,
        )
        return self.public_url(server_key, bucket, new_key)

    def copy_into(
        self,
        server_key: str,
        bucket: str,
        source_key: str,
        destination_directory: str,
        permission: str,
        permission_for: Optional[PermissionResolver] = None,
        resume: bool = False,
    ) -> str:
        """把 ``source_key`` 复制到 ``destination_directory`` 下（同名），返回目标 key。"""
        if not destination_directory.endswith("/"):
            destination_directory += "/"
        new_key = destination_directory + basename(source_key)
        if source_key.endswith("/") and new_key.startswith(source_key):
            raise InvalidTargetError(
                "不能将目录复制到其自身或子目录中", data={"source": source_key, "destination": new_key}
            )

        store = self.registry.resolve(server_key)
        if not store.exists(bucket, source_key):
            raise NotFoundError(f"对象不存在：{source_key}", data={"key": source_key})
        if not resume and store.exists(bucket, new_key):
            raise AlreadyExistsError(f"目标已存在：{new_key}", data={"key": new_key})

        resolve = permission_for or (lambda _key: permission)
        if source_key.endswith("/"):
            keys = store.list(bucket, source_key, recursive=True)
        else:
            keys = iter([source_key])

        copied = self._transfer(
            "copy_into", server_key, bucket, keys, source_key, new_key, resolve, remove_source=False
        )
        logger.info(
            "storage.copy_into server=%s bucket=%s source=%s destination=%s objects=%s",
            server_key,
            bucket,
            source_key,
            new_key,
            copied,
        )
        return new_key

    def apply_tree(self, server_key: str, bucket: str, key: str, permission: str) -> int:
        """对 key（或目录前缀下的每个对象）应用同一权限，返回处理的对象数。"""
        store = self.registry.resolve(server_key)
        keys = store.list(bucket, key, recursive=True) if key.endswith("/") else iter([key])
        count = 0
        current = None
        try:
            with storage_context(server_key, bucket, key):
                for current in keys:
                    bind_object_key(current)
                    self.policies.apply(server_key, bucket, current, permission)
                    count += 1
        except Exception:
            logger.exception(
                "storage.apply_tree failed server=%s bucket=%s root=%s in_flight=%s done=%s",
                server_key,
                bucket,
                key,
                current,
                count,
                extra={"server_key": server_key, "bucket": bucket, "object_key": current},
            )
            raise
        return count

    def remove_tree(self, server_key: str, bucket: str, key: str) -> int:
        """从策略中移除并删除 key（或目录前缀下的每个对象），返回删除的对象数。"""
        store = self.registry.resolve(server_key)
        keys = store.list(bucket, key, recursive=True) if key.endswith("/") else iter([key])
        count = 0
        current = None
        try:
            with storage_context(server_key, bucket, key):
                for current in keys:
                    bind_object_key(current)
                    self.policies.apply(server_key, bucket, current, None, just_remove=True)
                    store.remove(bucket, current)
                    count += 1
        except Exception:
            logger.exception(
                "storage.remove_tree failed server=%s bucket=%s root=%s in_flight=%s done=%s",
                server_key,
                bucket,
                key,
                current,
                count,
                extra={"server_key": server_key, "bucket": bucket, "object_key": current},
            )
            raise
        logger.info("storage.remove_tree server=%s bucket=%s root=%s objects=%s", server_key, bucket, key, count)
        return count

    def _transfer(
        self,
        operation: str,
        server_key: str,
        bucket: str,
        keys: Iterator[str],
        source_root: str,
        target_root: str,
        resolve: PermissionResolver,
        *,
        remove_source: bool,
    ) -> int:
        store = self.registry.resolve(server_key)
        count = 0
        current = None
        root_listed = False

        def move_one(key: str) -> None:
            target = target_root + key[len(source_root):]
            store.copy(bucket, key, target)
            self.policies.apply(server_key, bucket, target, resolve(key))
            if remove_source:
                self.policies.apply(server_key, bucket, key, None, just_remove=True)
                store.remove(bucket, key)
            logger.debug("storage.%s key=%s -> %s", operation, key, target)

        try:
            with storage_context(server_key, bucket, source_root):
                for current in keys:
                    # 根对象（目录标记或单个文件）留到最后
                    if current == source_root:
                        root_listed = True
                        continue
                    bind_object_key(current)
                    move_one(current)
                    count += 1
                if root_listed:
                    current = source_root
                    bind_object_key(current)
                    move_one(current)
                    count += 1
        except Exception:
            logger.exception(
                "storage.%s failed server=%s bucket=%s source=%s target=%s in_flight=%s done=%s",
                operation,
                server_key,
                bucket,
                source_root,
                target_root,
                current,
                count,
                extra={"server_key": server_key, "bucket": bucket, "object_key": current},
            )
            raise
        return count
