"""测试夹具：为 pytest 提供数据库、内存对象存储与客户端的共享配置。"""

import os
import threading
from datetime import datetime, timedelta
from typing import Callable, Dict, Generator, Optional

TEST_DB_PATH = os.path.join(os.path.dirname(__file__), "test.db")
TEST_DATABASE_URL = f"sqlite:///{TEST_DB_PATH}"

os.environ.setdefault("DATABASE_URL", TEST_DATABASE_URL)
os.environ.setdefault("STORAGE_BUCKET", "b")
os.environ.setdefault("LOG_DIR", os.path.join(os.path.dirname(__file__), "log"))

import pytest  # noqa: E402
from fastapi.testclient import TestClient  # noqa: E402
from sqlalchemy import create_engine  # noqa: E402
from sqlalchemy.orm import Session, sessionmaker  # noqa: E402

from app.main import app  # noqa: E402
from app.packages.drive.core.config import get_settings  # noqa: E402
from app.packages.drive.core.dependencies import get_db, get_file_item_service  # noqa: E402
from app.packages.drive.core.exceptions import NotFoundError  # noqa: E402
from app.packages.drive.core.security import Identity  # noqa: E402
from app.packages.drive.core.timezone import utc_now  # noqa: E402
from app.packages.drive.db import session as db_session  # noqa: E402
from app.packages.drive.models import Base, FileItem, StorageQuota  # noqa: E402
from app.packages.drive.services.bucket_policy import PolicyManager  # noqa: E402
from app.packages.drive.services.file_item_service import FileItemService  # noqa: E402
from app.packages.drive.services.quota_service import QuotaService  # noqa: E402
from app.packages.drive.services.storage_backends import (  # noqa: E402
    BackendEntry,
    BackendRegistry,
    ObjectStore,
    check_deadline,
)
from app.packages.drive.services.storage_service import StorageService  # noqa: E402


class InMemoryObjectStore(ObjectStore):
    """对象存储替身：按桶保存对象字节与策略文本，可按操作注入失败。"""

    def __init__(self, host: str) -> None:
        self.host = host
        self.buckets: set[str] = set()
        self.objects: Dict[str, Dict[str, bytes]] = {}
        self.content_types: Dict[tuple, Optional[str]] = {}
        self.policies: Dict[str, str] = {}
        self.policy_writes = 0
        self.calls: list[tuple] = []
        # (operation, key) -> 异常；key 为 None 表示该操作的任意调用
        self.failures: Dict[tuple, Exception] = {}
        self._lock = threading.RLock()

    def _enter(self, operation: str, key: Optional[str] = None) -> None:
        check_deadline(operation)
        self.calls.append((operation, key))
        exc = self.failures.get((operation, key)) or self.failures.get((operation, None))
        if exc is not None:
            raise exc

    def fail(self, operation: str, exc: Exception, key: Optional[str] = None) -> None:
        self.failures[(operation, key)] = exc

    def keys(self, bucket: str) -> list[str]:
        return sorted(self.objects.get(bucket, {}))

    def put(self, bucket, key, body, size, content_type=None):
        self._enter("put", key)
        data = body if isinstance(body, (bytes, bytearray)) else body.read()
        with self._lock:
            self.objects.setdefault(bucket, {})[key] = bytes(data)
            self.content_types[(bucket, key)] = content_type

    def exists(self, bucket, key):
        self._enter("stat", key)
        return key in self.objects.get(bucket, {})

    def remove(self, bucket, key):
        self._enter("remove", key)
        with self._lock:
            self.objects.get(bucket, {}).pop(key, None)

    def copy(self, bucket, src_key, dst_key):
        self._enter("copy", src_key)
        with self._lock:
            objects = self.objects.get(bucket, {})
            if src_key not in objects:
                raise NotFoundError(f"源对象不存在：{src_key}")
            objects[dst_key] = objects[src_key]

    def list(self, bucket, prefix, recursive=True):
        self._enter("list", prefix)
        with self._lock:
            snapshot = sorted(k for k in self.objects.get(bucket, {}) if k.startswith(prefix))
        for key in snapshot:
            if not recursive and "/" in key[len(prefix):].rstrip("/"):
                continue
            yield key

    def presign_get(self, bucket, key, ttl_seconds):
        self._enter("presign", key)
        return f"https://{self.host}/{bucket}/{key}?X-Amz-Expires={ttl_seconds}&X-Amz-Signature=test"

    def open(self, bucket, key):
        self._enter("get", key)
        data = self.objects.get(bucket, {}).get(key)
        if data is None:
            raise NotFoundError(f"对象不存在：{key}")
        return iter([data[i:i + 4] for i in range(0, len(data), 4)] or [b""])

    def ensure_bucket(self, bucket):
        self._enter("ensure_bucket")
        self.buckets.add(bucket)
        self.objects.setdefault(bucket, {})

    def drop_bucket(self, bucket):
        self._enter("drop_bucket")
        self.buckets.discard(bucket)
        self.objects.pop(bucket, None)
        self.policies.pop(bucket, None)

    def get_policy(self, bucket):
        self._enter("get_policy")
        return self.policies.get(bucket)

    def set_policy(self, bucket, policy):
        self._enter("set_policy")
        self.policies[bucket] = policy
        self.policy_writes += 1

    def delete_policy(self, bucket):
        self._enter("delete_policy")
        self.policies.pop(bucket, None)
        self.policy_writes += 1


@pytest.fixture(scope="session", autouse=True)
def setup_test_database() -> Generator[None, None, None]:
    """创建隔离的 SQLite 测试数据库，并在会话结束后清理。"""
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)

    engine = create_engine(TEST_DATABASE_URL, connect_args={"check_same_thread": False, "timeout": 30})
    TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

    db_session.engine = engine
    db_session.SessionLocal = TestingSessionLocal

    Base.metadata.create_all(bind=engine)
    yield

    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
def clean_tables() -> Generator[None, None, None]:
    """每个用例结束后清空业务表。"""
    yield
    session = db_session.SessionLocal()
    try:
        session.query(FileItem).update({FileItem.parent_id: None}, synchronize_session=False)
        session.query(FileItem).delete(synchronize_session=False)
        session.query(StorageQuota).delete(synchronize_session=False)
        session.commit()
    finally:
        session.close()


@pytest.fixture()
def db_session_fixture() -> Generator[Session, None, None]:
    """提供给测试用例使用的数据库会话。"""
    session = db_session.SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def stores() -> Dict[str, InMemoryObjectStore]:
    return {key: InMemoryObjectStore(f"{key.lower()}.storage.test") for key in ("S1", "S2", "S3")}


@pytest.fixture()
def registry(stores) -> BackendRegistry:
    return BackendRegistry(
        {key: BackendEntry(server_key=key, host=store.host, store=store) for key, store in stores.items()}
    )


@pytest.fixture()
def policies(registry) -> PolicyManager:
    return PolicyManager(registry)


@pytest.fixture()
def storage(registry, policies) -> StorageService:
    return StorageService(registry, policies)


@pytest.fixture()
def quotas() -> QuotaService:
    return QuotaService()


@pytest.fixture()
def service(storage, quotas) -> FileItemService:
    return FileItemService(storage, quotas, get_settings())


@pytest.fixture()
def fund(quotas) -> Callable[..., StorageQuota]:
    """为用户充值配额，默认 1024 KB、一小时后到期。"""

    def _fund(db: Session, owner_id: int, quota_kb: int = 1024, expire_at: Optional[datetime] = None) -> StorageQuota:
        return quotas.recharge(db, owner_id, quota_kb, expire_at or utc_now() + timedelta(hours=1))

    return _fund


@pytest.fixture()
def owner() -> Identity:
    return Identity(owner_id=7)


@pytest.fixture()
def client(db_session_fixture, service):
    """构建 FastAPI TestClient，并注入测试专用的数据库与存储依赖。"""
    def override_get_db() -> Generator[Session, None, None]:
        session = db_session.SessionLocal()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_file_item_service] = lambda: service

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()

