from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import List

from dotenv import load_dotenv
from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

ROOT_DIR: Path = Path(__file__).resolve().parent.parent.parent.parent  # repo root
load_dotenv(ROOT_DIR / ".env")  # .env is read before Settings is built


class Settings(BaseSettings):
    # Mongo
    mongo_url: str = Field(default="mongodb://localhost:27017/", alias="MONGO_URL")
    db_name: str = Field(default="explorerdb", alias="DB_NAME")
    coin: str = Field(default="BTC", alias="COIN")

    # Chain RPC
    rpc_url: str = Field(default="http://127.0.0.1:8332/", alias="RPC_URL")
    rpc_user: str = Field(default="", alias="RPC_USER")
    rpc_password: str = Field(default="", alias="RPC_PASSWORD")
    rpc_timeout_sec: float = Field(default=30.0, alias="RPC_TIMEOUT_SEC")

    # Cluster / partitioning
    cluster_enabled: bool = Field(default=True, alias="CLUSTER_ENABLED")
    cluster_max_per_worker: int = Field(default=1000, alias="CLUSTER_MAX_PER_WORKER")
    cluster_pool_size: int = Field(default=0, alias="CLUSTER_POOL_SIZE")  # 0 -> cpu count

    # Supervisor
    heartbeat_check_interval: float = Field(default=10.0, alias="HEARTBEAT_CHECK_INTERVAL")
    stall_threshold_sec: float = Field(default=60.0, alias="STALL_THRESHOLD_SEC")
    range_respawn_max: int = Field(default=3, alias="RANGE_RESPAWN_MAX")

    # Worker unit
    progress_every_blocks: int = Field(default=10, alias="PROGRESS_EVERY_BLOCKS")
    progress_interval_sec: float = Field(default=5.0, alias="PROGRESS_INTERVAL_SEC")
    height_retry_max: int = Field(default=3, alias="HEIGHT_RETRY_MAX")
    height_retry_base_sec: float = Field(default=1.0, alias="HEIGHT_RETRY_BASE_SEC")
    height_retry_max_sec: float = Field(default=30.0, alias="HEIGHT_RETRY_MAX_SEC")

    # Finalizer
    richlist_size: int = Field(default=100, alias="RICHLIST_SIZE")
    richlist_exclude: str = Field(default="", alias="RICHLIST_EXCLUDE")

    # Lock
    lock_dir: str = Field(default="./tmp", alias="LOCK_DIR")

    # Logging
    log_level: str = Field(default="INFO", alias="LOG_LEVEL")
    log_dir: str = Field(default="", alias="LOG_DIR")

    # extra env is ignored, names are case-insensitive
    model_config = SettingsConfigDict(
        extra="ignore",
        case_sensitive=False,
        env_prefix="",
    )

    @property
    def pool_size(self) -> int:
        if self.cluster_pool_size > 0:
            return self.cluster_pool_size
        return max(1, os.cpu_count() or 1)

    @property
    def richlist_excluded(self) -> List[str]:
        return [a.strip() for a in self.richlist_exclude.split(",") if a.strip()]


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
