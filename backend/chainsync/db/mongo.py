from __future__ import annotations

from functools import lru_cache

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase

from chainsync.core.config import get_settings


# One client per process: worker units are spawned, so each child builds its own.
@lru_cache(maxsize=1)
def get_client() -> AsyncIOMotorClient:
    settings = get_settings()
    return AsyncIOMotorClient(
        settings.mongo_url,
        uuidRepresentation="standard",
        tz_aware=True,
        serverSelectionTimeoutMS=10_000,
        connectTimeoutMS=10_000,
        socketTimeoutMS=20_000,
        maxPoolSize=100,
        retryWrites=True,
    )


def get_db_handle() -> AsyncIOMotorDatabase:
    return get_client()[get_settings().db_name]


def close_mongo_client() -> None:
    if get_client.cache_info().currsize:
        get_client().close()
        get_client.cache_clear()

