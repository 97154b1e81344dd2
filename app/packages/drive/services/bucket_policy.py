"""桶策略管理：通过维护桶级 JSON 策略中的两条语句实现对象级公开/私有。

策略文档中受管的语句按 ``Sid`` 识别：
- ``PublicRead``：Allow + s3:GetObject，列出公开对象的 ARN；
- ``DenyAllExceptOwner``：Deny + s3:GetObject，列出私有对象的 ARN。

其他语句按原样保留（``OtherStatement``）。同一 ARN 至多出现在两条受管语句之一中，
``Resource`` 为空的受管语句会被整体移除。读改写过程在 ``(server_key, bucket)``
互斥锁内完成，锁可以是进程内的 ``threading.Lock`` 或共享的 Redis 锁。
"""

from __future__ import annotations

import copy
import json
import threading
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator, Optional, Union

import redis

from app.packages.drive.core.config import Settings
from app.packages.drive.core.constants import (
    DENY_ALL_SID,
    POLICY_ACTION_GET_OBJECT,
    POLICY_VERSION,
    PUBLIC_READ_SID,
)
from app.packages.drive.core.enums import PermissionEnum
from app.packages.drive.core.exceptions import BackendError, BackendTimeoutError
from app.packages.drive.core.logger import logger
from app.packages.drive.services.storage_backends import BackendRegistry

ARN_PREFIX = "arn:aws:s3:::"


def object_arn(bucket: str, key: str) -> str:
    return f"{ARN_PREFIX}{bucket}/{key}"


# ------------------------------------------
# 策略文档模型
# ------------------------------------------

@dataclass
class ManagedStatement:
    """受管语句；``extra`` 保存读取时的其余字段（Principal、Action、Condition 等）。"""

    sid = ""
    effect = ""

    resources: list[str] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def canonical(cls) -> "ManagedStatement":
        return cls(
            resources=[],
            extra={"Principal": {"AWS": "*"}, "Action": [POLICY_ACTION_GET_OBJECT]},
        )

    @classmethod
    def from_raw(cls, raw: dict[str, Any]) -> "ManagedStatement":
        extra = {k: v for k, v in raw.items() if k not in {"Sid", "Effect", "Resource"}}
        return cls(resources=_as_list(raw.get("Resource")), extra=extra)

    def add(self, arn: str) -> None:
        if arn not in self.resources:
            self.resources.append(arn)
        self.resources = sorted(set(self.resources))

    def discard(self, arn: str) -> None:
        if arn in self.resources:
            self.resources = sorted(r for r in set(self.resources) if r != arn)

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"Sid": self.sid, "Effect": self.effect}
        payload.update(self.extra)
        payload["Resource"] = list(self.resources)
        return payload


class PublicReadStatement(ManagedStatement):
    sid = PUBLIC_READ_SID
    effect = "Allow"


class DenyAllStatement(ManagedStatement):
    sid = DENY_ALL_SID
    effect = "Deny"


@dataclass
class OtherStatement:
    """未识别的语句，原样保留。"""

    raw: dict[str, Any]

    def to_dict(self) -> dict[str, Any]:
        return self.raw


Statement = Union[PublicReadStatement, DenyAllStatement, OtherStatement]


def _as_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return [str(item) for item in value]


def _parse_statement(raw: Any) -> Statement:
    if isinstance(raw, dict):
        sid = raw.get("Sid")
        if sid == PUBLIC_READ_SID:
            return PublicReadStatement.from_raw(raw)
        if sid == DENY_ALL_SID:
            return DenyAllStatement.from_raw(raw)
    return OtherStatement(raw=raw)


@dataclass
class BucketPolicyDocument:
    version: str = POLICY_VERSION
    statements: list[Statement] = field(default_factory=list)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def parse(cls, text: Optional[str]) -> "BucketPolicyDocument":
        """解析策略文本；空文本视为空策略。"""
        if not text:
            return cls()
        try:
            data = json.loads(text)
        except ValueError as exc:
            raise BackendError("桶策略不是合法的 JSON", data={"policy": text[:200]}) from exc
        if not isinstance(data, dict):
            raise BackendError("桶策略格式错误", data={"policy": text[:200]})
        raw_statements = data.get("Statement") or []
        if isinstance(raw_statements, dict):
            raw_statements = [raw_statements]
        extra = {k: v for k, v in data.items() if k not in {"Version", "Statement"}}
        return cls(
            version=data.get("Version") or POLICY_VERSION,
            statements=[_parse_statement(item) for item in raw_statements],
            extra=extra,
        )

    def find(self, kind: type) -> Optional[ManagedStatement]:
        for statement in self.statements:
            if type(statement) is kind:
                return statement
        return None

    def ensure(self, kind: type) -> ManagedStatement:
        statement = self.find(kind)
        if statement is None:
            statement = kind.canonical()
            self.statements.append(statement)
        return statement

    def prune(self) -> None:
        self.statements = [
            s for s in self.statements if isinstance(s, OtherStatement) or s.resources
        ]

    def permission_of(self, arn: str) -> Optional[str]:
        public = self.find(PublicReadStatement)
        if public is not None and arn in public.resources:
            return PermissionEnum.PUBLIC.value
        private = self.find(DenyAllStatement)
        if private is not None and arn in private.resources:
            return PermissionEnum.PRIVATE.value
        return None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"Version": self.version}
        payload.update(self.extra)
        payload["Statement"] = [s.to_dict() for s in self.statements]
        return payload

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), ensure_ascii=False)


def apply_permission(
    document: BucketPolicyDocument,
    arn: str,
    permission: Optional[str],
    just_remove: bool = False,
) -> BucketPolicyDocument:
    """在文档上就地应用一次权限变更，返回同一文档。"""
    public = document.find(PublicReadStatement)
    private = document.find(DenyAllStatement)
    if just_remove:
        for statement in (public, private):
            if statement is not None:
                statement.discard(arn)
    elif permission == PermissionEnum.PUBLIC.value:
        document.ensure(PublicReadStatement).add(arn)
        if private is not None:
            private.discard(arn)
    elif permission == PermissionEnum.PRIVATE.value:
        document.ensure(DenyAllStatement).add(arn)
        if public is not None:
            public.discard(arn)
    else:
        raise ValueError(f"unknown permission: {permission!r}")
    document.prune()
    return document


# ------------------------------------------
# 互斥锁
# ------------------------------------------

class _InMemoryLockProvider:
    def __init__(self, timeout: float) -> None:
        self._timeout = timeout
        self._locks: dict[str, threading.Lock] = {}
        self._guard = threading.Lock()

    def _lock_for(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        lock = self._lock_for(name)
        if not lock.acquire(timeout=self._timeout):
            raise BackendTimeoutError("等待桶策略锁超时", data={"lock": name})
        try:
            yield
        finally:
            lock.release()


class _RedisLockProvider:
    def __init__(self, url: str, timeout: float) -> None:
        self._timeout = timeout
        self._client = redis.Redis.from_url(url)
        try:
            self._client.ping()
        except redis.RedisError as exc:
            raise RuntimeError(f"Redis not available: {exc}") from exc

    @contextmanager
    def hold(self, name: str) -> Iterator[None]:
        lock = self._client.lock(
            f"bucket-policy-lock:{name}",
            timeout=self._timeout,
            blocking_timeout=self._timeout,
        )
        if not lock.acquire():
            raise BackendTimeoutError("等待桶策略锁超时", data={"lock": name})
        try:
            yield
        finally:
            try:
                lock.release()
            except redis.exceptions.LockError:
                logger.warning("bucket policy lock expired before release: %s", name)


def build_lock_provider(settings: Settings):
    if (settings.policy_lock_backend or "").lower() == "redis":
        try:
            provider = _RedisLockProvider(settings.redis_url, settings.policy_lock_timeout_seconds)
            logger.info("Bucket policy lock using Redis: %s", settings.redis_url)
            return provider
        except RuntimeError:
            logger.warning("Bucket policy lock falling back to in-process locks")
    return _InMemoryLockProvider(settings.policy_lock_timeout_seconds)


# ------------------------------------------
# 策略管理器
# ------------------------------------------

class PolicyManager:
    def __init__(self, registry: BackendRegistry, lock_provider=None) -> None:
        self.registry = registry
        self.locks = lock_provider or _InMemoryLockProvider(30)

    def read(self, server_key: str, bucket: str) -> BucketPolicyDocument:
        store = self.registry.resolve(server_key)
        return BucketPolicyDocument.parse(store.get_policy(bucket))

    def permission_of(self, server_key: str, bucket: str, key: str) -> Optional[str]:
        return self.read(server_key, bucket).permission_of(object_arn(bucket, key))

    def apply(
        self,
        server_key: str,
        bucket: str,
        key: str,
        permission: Optional[str],
        just_remove: bool = False,
    ) -> bool:
        """对单个对象应用权限（或从两条语句中移除），返回是否写回了策略。"""
        store = self.registry.resolve(server_key)
        arn = object_arn(bucket, key)
        with self.locks.hold(f"{server_key}:{bucket}"):
            raw = store.get_policy(bucket)
            document = BucketPolicyDocument.parse(raw)
            before = copy.deepcopy(document.to_dict())
            apply_permission(document, arn, permission, just_remove)
            if raw is not None and document.to_dict() == before:
                return False
            if not document.statements:
                if raw is None:
                    return False
                store.delete_policy(bucket)
                logger.info("policy.delete server=%s bucket=%s arn=%s", server_key, bucket, arn)
                return True
            store.set_policy(bucket, document.to_json())
        logger.info(
            "policy.apply server=%s bucket=%s arn=%s permission=%s remove=%s",
            server_key,
            bucket,
            arn,
            permission,
            just_remove,
        )
        return True
