"""配置模块：负责加载和缓存基于环境变量的应用设置。"""

import os
from collections import OrderedDict
from functools import lru_cache
from pathlib import Path
from typing import NamedTuple, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


# 探测项目根目录并加载环境文件，支持通过 ENV_FILE/ENVIRONMENT 定制优先级。
def _detect_base_dir() -> Path:
    """向上遍历目录树，寻找包含 `app` 目录的项目根路径。"""
    current = Path(__file__).resolve()
    for candidate in current.parents:
        if (candidate / "app").is_dir():
            return candidate
    # 回退到文件所在目录，避免在极端情况下抛异常
    return current.parent


BASE_DIR = _detect_base_dir()


def _as_bool(value: Optional[str]) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _load_environment() -> None:
    env_file_override = os.getenv("ENV_FILE")
    if env_file_override:
        candidate = BASE_DIR / env_file_override
        if candidate.exists():
            load_dotenv(candidate, override=True, encoding="utf-8")
        return

    base_env = BASE_DIR / ".env"
    if base_env.exists():
        load_dotenv(base_env, override=False, encoding="utf-8")

    environment = os.getenv("ENVIRONMENT")
    if environment is None and _as_bool(os.getenv("DEBUG")):
        environment = "development"

    if environment:
        if environment.startswith(".env"):
            candidate_name = environment
        else:
            candidate_name = f".env.{environment}"
        candidate_path = BASE_DIR / candidate_name
        if candidate_path.exists():
            load_dotenv(candidate_path, override=True, encoding="utf-8")


_load_environment()


class StorageServerConfig(NamedTuple):
    """单个对象存储后端的连接参数。"""

    host: str
    access_key: str
    secret_key: str


class Settings(BaseSettings):
    """
    封装应用运行所需的所有配置项，每个字段都可以通过环境变量重写。
    三个对象存储后端（S1/S2/S3）的地址与凭据在启动时固定，不支持热加载。
    """

    project_name: str = Field(default="Site Builder Drive API", alias="PROJECT_NAME")
    api_v1_str: str = Field(default="/api/v1", alias="API_V1_STR")
    debug: bool = Field(default=False, alias="DEBUG")

    database_url: str = Field(default="", alias="DATABASE_URL")
    database_driver: str = Field(default="mysql+pymysql", alias="DATABASE_DRIVER")
    database_host: str = Field(default="localhost", alias="DATABASE_HOST")
    database_port: int = Field(default=3306, alias="DATABASE_PORT")
    database_user: str = Field(default="root", alias="DATABASE_USER")
    database_password: str = Field(default="root", alias="DATABASE_PASSWORD")
    database_name: str = Field(default="site_builder", alias="DATABASE_NAME")
    database_echo: bool = Field(default=False, alias="DATABASE_ECHO")

    redis_host: str = Field(default="localhost", alias="REDIS_HOST")
    redis_port: int = Field(default=6379, alias="REDIS_PORT")
    redis_db: int = Field(default=0, alias="REDIS_DB")

    jwt_secret_key: str = Field(default="changeme", alias="JWT_SECRET_KEY")
    jwt_algorithm: str = Field(default="HS256", alias="JWT_ALGORITHM")
    access_token_expire_minutes: int = Field(default=60, alias="ACCESS_TOKEN_EXPIRE_MINUTES")

    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="log", alias="LOG_DIR")
    log_file_name: str = Field(default="app.log", alias="LOG_FILE_NAME")
    log_json: bool = Field(default=False, alias="LOG_JSON")
    app_port: int = Field(default=8000, alias="APP_PORT")
    timezone: str = Field(default="Asia/Tehran", alias="TIMEZONE")

    # 对象存储后端
    storage_s1_host: str = Field(default="localhost:9001", alias="STORAGE_S1_HOST")
    storage_s1_access_key: str = Field(default="minioadmin", alias="STORAGE_S1_ACCESS_KEY")
    storage_s1_secret_key: str = Field(default="minioadmin", alias="STORAGE_S1_SECRET_KEY")
    storage_s2_host: str = Field(default="localhost:9002", alias="STORAGE_S2_HOST")
    storage_s2_access_key: str = Field(default="minioadmin", alias="STORAGE_S2_ACCESS_KEY")
    storage_s2_secret_key: str = Field(default="minioadmin", alias="STORAGE_S2_SECRET_KEY")
    storage_s3_host: str = Field(default="localhost:9003", alias="STORAGE_S3_HOST")
    storage_s3_access_key: str = Field(default="minioadmin", alias="STORAGE_S3_ACCESS_KEY")
    storage_s3_secret_key: str = Field(default="minioadmin", alias="STORAGE_S3_SECRET_KEY")
    storage_use_ssl: bool = Field(default=True, alias="STORAGE_USE_SSL")
    storage_region: str = Field(default="us-east-1", alias="STORAGE_REGION")
    storage_bucket: str = Field(default="site-builder", alias="STORAGE_BUCKET")
    storage_connect_timeout_seconds: float = Field(default=5, alias="STORAGE_CONNECT_TIMEOUT_SECONDS")
    storage_read_timeout_seconds: float = Field(default=30, alias="STORAGE_READ_TIMEOUT_SECONDS")
    storage_request_timeout_seconds: float = Field(default=60, alias="STORAGE_REQUEST_TIMEOUT_SECONDS")
    storage_presign_default_minutes: int = Field(default=5, alias="STORAGE_PRESIGN_DEFAULT_MINUTES")
    storage_presign_max_seconds: int = Field(default=604800, alias="STORAGE_PRESIGN_MAX_SECONDS")

    # 桶策略互斥锁：memory（进程内）或 redis（多进程共享）
    policy_lock_backend: str = Field(default="memory", alias="POLICY_LOCK_BACKEND")
    policy_lock_timeout_seconds: float = Field(default=30, alias="POLICY_LOCK_TIMEOUT_SECONDS")

    model_config = SettingsConfigDict(extra='ignore')

    @property
    def sql_database_url(self) -> str:
        """优先使用 DATABASE_URL，否则根据各字段拼接 MySQL 连接串。"""
        if self.database_url:
            return self.database_url
        return (
            f"{self.database_driver}://{self.database_user}:{self.database_password}"
            f"@{self.database_host}:{self.database_port}/{self.database_name}"
        )

    @property
    def redis_url(self) -> str:
        """根据当前配置生成 Redis 连接地址。"""
        return f"redis://{self.redis_host}:{self.redis_port}/{self.redis_db}"

    def _resolve_path(self, raw: str) -> Path:
        path = Path(raw)
        if not path.is_absolute():
            path = BASE_DIR / path
        return path

    @property
    def log_directory(self) -> Path:
        """返回日志目录的绝对路径，支持相对路径配置。"""
        return self._resolve_path(self.log_dir)

    @property
    def log_file_path(self) -> Path:
        """组合日志目录与文件名，得到完整的日志文件路径。"""
        return self.log_directory / self.log_file_name

    @property
    def timezone_info(self) -> ZoneInfo:
        """返回当前配置对应的时区信息，无法解析时回退到 UTC。"""
        try:
            return ZoneInfo(self.timezone)
        except ZoneInfoNotFoundError:
            return ZoneInfo("UTC")

    @property
    def storage_servers(self) -> "OrderedDict[str, StorageServerConfig]":
        """按 S1、S2、S3 的固定顺序返回后端配置。"""
        servers: "OrderedDict[str, StorageServerConfig]" = OrderedDict()
        servers["S1"] = StorageServerConfig(
            self.storage_s1_host, self.storage_s1_access_key, self.storage_s1_secret_key
        )
        servers["S2"] = StorageServerConfig(
            self.storage_s2_host, self.storage_s2_access_key, self.storage_s2_secret_key
        )
        servers["S3"] = StorageServerConfig(
            self.storage_s3_host, self.storage_s3_access_key, self.storage_s3_secret_key
        )
        return servers


@lru_cache
def get_settings() -> Settings:
    """返回单例化的配置对象，避免重复解析环境变量造成性能浪费。"""
    return Settings()
