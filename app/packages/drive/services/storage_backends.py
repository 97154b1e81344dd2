"""对象存储后端：后端注册表（S1/S2/S3）与单个后端上的对象原语。

- ``ObjectStore`` 定义核心层依赖的全部原语；
- ``S3ObjectStore`` 基于 boto3 实现，负责把 botocore 的错误翻译成业务异常；
- ``BackendRegistry`` 在启动时固定，按 server_key 查找后端；
- ``request_deadline`` 为当前请求设置截止时间，每次后端调用前检查。
"""

from __future__ import annotations

import time
from collections import OrderedDict
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import BinaryIO, Iterator, Mapping, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import (
    BotoCoreError,
    ClientError,
    ConnectTimeoutError,
    ReadTimeoutError,
)

from app.packages.drive.core.config import Settings
from app.packages.drive.core.constants import DEFAULT_CONTENT_TYPE
from app.packages.drive.core.exceptions import (
    BackendError,
    BackendTimeoutError,
    ConfigurationError,
    NotFoundError,
)
from app.packages.drive.core.logger import logger

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}
_NO_BUCKET_CODES = {"404", "NoSuchBucket", "NotFound"}
_NO_POLICY_CODES = {"NoSuchBucketPolicy"}

_deadline_ctx: ContextVar[Optional[float]] = ContextVar("storage_deadline", default=None)


# ------------------------------------------
# 请求截止时间
# ------------------------------------------

@contextmanager
def request_deadline(seconds: Optional[float]) -> Iterator[None]:
    """在上下文内为所有后端调用设置统一的截止时间（秒）；``None`` 表示不限制。"""
    deadline = time.monotonic() + seconds if seconds else None
    current = _deadline_ctx.get()
    if current is not None and deadline is not None:
        deadline = min(current, deadline)
    token = _deadline_ctx.set(deadline if deadline is not None else current)
    try:
        yield
    finally:
        _deadline_ctx.reset(token)


def remaining_time() -> Optional[float]:
    deadline = _deadline_ctx.get()
    if deadline is None:
        return None
    return deadline - time.monotonic()


def check_deadline(operation: str) -> None:
    """截止时间已过则抛出 ``BackendTimeoutError``。"""
    left = remaining_time()
    if left is not None and left <= 0:
        raise BackendTimeoutError(f"对象存储请求超时：{operation}", data={"operation": operation})


def _error_code(exc: ClientError) -> str:
    return str(exc.response.get("Error", {}).get("Code", ""))


# ------------------------------------------
# 对象原语
# ------------------------------------------

class ObjectStore:
    """单个对象存储后端上的原语接口。目录以 '/' 结尾的零字节对象表示。"""

    def put(
        self,
        bucket: str,
        key: str,
        body: BinaryIO | bytes,
        size: int,
        content_type: Optional[str] = None,
    ) -> None:
        raise NotImplementedError

    def exists(self, bucket: str, key: str) -> bool:
        raise NotImplementedError

    def remove(self, bucket: str, key: str) -> None:
        raise NotImplementedError

    def copy(self, bucket: str, src_key: str, dst_key: str) -> None:
        raise NotImplementedError

    def list(self, bucket: str, prefix: str, recursive: bool = True) -> Iterator[str]:
        raise NotImplementedError

    def presign_get(self, bucket: str, key: str, ttl_seconds: int) -> str:
        raise NotImplementedError

    def open(self, bucket: str, key: str) -> Iterator[bytes]:
        raise NotImplementedError

    def ensure_bucket(self, bucket: str) -> None:
        raise NotImplementedError

    def drop_bucket(self, bucket: str) -> None:
        raise NotImplementedError

    def get_policy(self, bucket: str) -> Optional[str]:
        raise NotImplementedError

    def set_policy(self, bucket: str, policy: str) -> None:
        raise NotImplementedError

    def delete_policy(self, bucket: str) -> None:
        raise NotImplementedError


class S3ObjectStore(ObjectStore):
    """基于 boto3 的 S3 兼容后端（MinIO 等），路径风格寻址，不自动重试。"""

    chunk_size = 64 * 1024

    def __init__(
        self,
        *,
        endpoint_url: str,
        access_key: str,
        secret_key: str,
        region: str,
        connect_timeout: float = 5,
        read_timeout: float = 30,
        client=None,
    ):
        self.endpoint_url = endpoint_url
        self.region = region
        self._client = client or boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            region_name=region,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            config=Config(
                signature_version="s3v4",
                connect_timeout=connect_timeout,
                read_timeout=read_timeout,
                retries={"total_max_attempts": 1},
                s3={"addressing_style": "path"},
            ),
        )

    @property
    def client(self):
        return self._client

    @contextmanager
    def _call(self, operation: str, bucket: str, key: Optional[str] = None) -> Iterator[None]:
        check_deadline(operation)
        try:
            yield
        except (ReadTimeoutError, ConnectTimeoutError) as exc:
            raise BackendTimeoutError(
                f"对象存储请求超时：{operation}",
                data={"operation": operation, "bucket": bucket, "key": key},
            ) from exc
        except ClientError as exc:
            code = _error_code(exc)
            raise BackendError(
                f"对象存储操作失败：{operation} ({code or exc})",
                data={"operation": operation, "bucket": bucket, "key": key, "code": code},
            ) from exc
        except BotoCoreError as exc:
            raise BackendError(
                f"对象存储不可用：{operation} ({exc})",
                data={"operation": operation, "bucket": bucket, "key": key},
            ) from exc

    def put(self, bucket, key, body, size, content_type=None):
        params = {
            "Bucket": bucket,
            "Key": key,
            "Body": body,
            "ContentLength": size,
            "ContentType": content_type or DEFAULT_CONTENT_TYPE,
        }
        with self._call("put", bucket, key):
            self._client.put_object(**params)
        logger.debug("storage.put bucket=%s key=%s size=%s", bucket, key, size)

    def exists(self, bucket, key):
        with self._call("stat", bucket, key):
            try:
                self._client.head_object(Bucket=bucket, Key=key)
            except ClientError as exc:
                if _error_code(exc) in _NOT_FOUND_CODES:
                    return False
                raise
        return True

    def remove(self, bucket, key):
        with self._call("remove", bucket, key):
            try:
                self._client.delete_object(Bucket=bucket, Key=key)
            except ClientError as exc:
                if _error_code(exc) not in _NOT_FOUND_CODES:
                    raise
        logger.debug("storage.remove bucket=%s key=%s", bucket, key)

    def copy(self, bucket, src_key, dst_key):
        with self._call("copy", bucket, src_key):
            try:
                self._client.copy_object(
                    Bucket=bucket,
                    Key=dst_key,
                    CopySource={"Bucket": bucket, "Key": src_key},
                )
            except ClientError as exc:
                if _error_code(exc) in _NOT_FOUND_CODES:
                    raise NotFoundError(
                        f"源对象不存在：{src_key}", data={"bucket": bucket, "key": src_key}
                    ) from exc
                raise
        logger.debug("storage.copy bucket=%s src=%s dst=%s", bucket, src_key, dst_key)

    def list(self, bucket, prefix, recursive=True):
        params = {"Bucket": bucket, "Prefix": prefix}
        if not recursive:
            params["Delimiter"] = "/"
        paginator = self._client.get_paginator("list_objects_v2")
        with self._call("list", bucket, prefix):
            pages = paginator.paginate(**params)
            page_iter = iter(pages)
        while True:
            with self._call("list", bucket, prefix):
                page = next(page_iter, None)
            if page is None:
                return
            for content in page.get("Contents", []):
                key = content.get("Key")
                if key:
                    yield key

    def presign_get(self, bucket, key, ttl_seconds):
        with self._call("presign", bucket, key):
            return self._client.generate_presigned_url(
                "get_object",
                Params={"Bucket": bucket, "Key": key},
                ExpiresIn=int(ttl_seconds),
            )

    def open(self, bucket, key):
        with self._call("get", bucket, key):
            try:
                resp = self._client.get_object(Bucket=bucket, Key=key)
            except ClientError as exc:
                if _error_code(exc) in _NOT_FOUND_CODES:
                    raise NotFoundError(f"对象不存在：{key}", data={"bucket": bucket, "key": key}) from exc
                raise
        return self._iter_body(bucket, key, resp["Body"])

    def _iter_body(self, bucket: str, key: str, body) -> Iterator[bytes]:
        try:
            while True:
                with self._call("read", bucket, key):
                    chunk = body.read(self.chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            body.close()

    def ensure_bucket(self, bucket):
        with self._call("ensure_bucket", bucket):
            try:
                self._client.head_bucket(Bucket=bucket)
                return
            except ClientError as exc:
                if _error_code(exc) not in _NO_BUCKET_CODES:
                    raise
            params = {"Bucket": bucket}
            if self.region and self.region != "us-east-1":
                params["CreateBucketConfiguration"] = {"LocationConstraint": self.region}
            try:
                self._client.create_bucket(**params)
            except ClientError as exc:
                if _error_code(exc) not in {"BucketAlreadyOwnedByYou", "BucketAlreadyExists"}:
                    raise
        logger.info("storage.ensure_bucket created bucket=%s endpoint=%s", bucket, self.endpoint_url)

    def drop_bucket(self, bucket):
        with self._call("drop_bucket", bucket):
            try:
                self._client.delete_bucket(Bucket=bucket)
            except ClientError as exc:
                if _error_code(exc) not in _NO_BUCKET_CODES:
                    raise

    def get_policy(self, bucket):
        with self._call("get_policy", bucket):
            try:
                resp = self._client.get_bucket_policy(Bucket=bucket)
            except ClientError as exc:
                if _error_code(exc) in _NO_POLICY_CODES:
                    return None
                raise
        return resp.get("Policy") or None

    def set_policy(self, bucket, policy):
        with self._call("set_policy", bucket):
            self._client.put_bucket_policy(Bucket=bucket, Policy=policy)

    def delete_policy(self, bucket):
        with self._call("delete_policy", bucket):
            try:
                self._client.delete_bucket_policy(Bucket=bucket)
            except ClientError as exc:
                if _error_code(exc) not in _NO_POLICY_CODES:
                    raise


# ------------------------------------------
# 后端注册表
# ------------------------------------------

@dataclass(frozen=True)
class BackendEntry:
    server_key: str
    host: str
    store: ObjectStore


class BackendRegistry:
    """server_key → 后端的固定映射；查找失败视为配置错误。"""

    def __init__(self, entries: Mapping[str, BackendEntry]):
        self._entries: "OrderedDict[str, BackendEntry]" = OrderedDict(entries)

    def entry(self, server_key: str) -> BackendEntry:
        try:
            return self._entries[server_key]
        except KeyError as exc:
            raise ConfigurationError(
                f"未知的存储后端：{server_key}", data={"server_key": server_key}
            ) from exc

    def resolve(self, server_key: str) -> ObjectStore:
        return self.entry(server_key).store

    def host(self, server_key: str) -> str:
        return self.entry(server_key).host

    def keys(self) -> list[str]:
        return list(self._entries)

    def pick_for_owner(self, owner_id: int) -> str:
        """为用户的根级节点确定性地选择后端。"""
        keys = self.keys()
        if not keys:
            raise ConfigurationError("未配置任何存储后端")
        return keys[owner_id % len(keys)]


def build_registry(settings: Settings) -> BackendRegistry:
    scheme = "https" if settings.storage_use_ssl else "http"
    entries: "OrderedDict[str, BackendEntry]" = OrderedDict()
    for server_key, server in settings.storage_servers.items():
        if not server.host:
            raise ConfigurationError(f"存储后端 {server_key} 缺少地址配置", data={"server_key": server_key})
        store = S3ObjectStore(
            endpoint_url=f"{scheme}://{server.host}",
            access_key=server.access_key,
            secret_key=server.secret_key,
            region=settings.storage_region,
            connect_timeout=settings.storage_connect_timeout_seconds,
            read_timeout=settings.storage_read_timeout_seconds,
        )
        entries[server_key] = BackendEntry(server_key=server_key, host=server.host, store=store)
    logger.info("storage.registry loaded servers=%s", ",".join(entries))
    return BackendRegistry(entries)
