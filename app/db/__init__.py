"""
app.db
~~~~~~

MongoDB 异步连接管理。

使用 ``motor`` 提供的 ``AsyncIOMotorClient``，在应用生命周期内维护一个
全局连接池。lifespan startup 中依次调用 ``connect_mongo()`` 与 ``ensure_indexes()``，
shutdown 中调用 ``close_mongo()``。

客户端以 ``tz_aware=True`` 创建，读出的 ``scheduled_at`` / ``joined_at`` 等时间字段
都带 UTC 时区，可以直接和 ``utcnow()`` 比较和相减（直播时长就是这样算出来的）。
"""
from __future__ import annotations

from urllib.parse import urlparse, urlunparse

from motor.motor_asyncio import AsyncIOMotorClient, AsyncIOMotorDatabase
from pymongo import ASCENDING, DESCENDING, IndexModel

from app.core.config import Settings, settings
from app.core.logging import get_logger

logger = get_logger(__name__)

_client: AsyncIOMotorClient | None = None

# 启动时统一建的索引；直播列表相关的索引由 SessionRepository 首次使用时创建
STARTUP_INDEXES: dict[str, list[IndexModel]] = {
    # 启动对账按 status 扫描所有进行中的直播
    "live_sessions": [
        IndexModel([("status", ASCENDING)], name="idx_status"),
    ],
    # 通知列表按用户倒序读取，未读数按 is_read 过滤
    "notifications": [
        IndexModel([("user_id", ASCENDING), ("created_at", DESCENDING)], name="idx_user_created"),
        IndexModel([("user_id", ASCENDING), ("is_read", ASCENDING)], name="idx_user_unread"),
        IndexModel([("session_id", ASCENDING)], name="idx_session"),
    ],
}


def _mask_uri(uri: str) -> str:
    """日志里隐藏 MongoDB URI 中的密码。"""
    parsed = urlparse(uri)
    if not parsed.password:
        return uri
    netloc = f"{parsed.username}:***@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


async def connect_mongo(config: Settings = settings) -> AsyncIOMotorDatabase:
    """初始化连接池并 ping 一次，返回直播业务使用的数据库。

    Raises:
        Exception: 连接或 ping 失败时原样抛出，应用不会带着坏连接启动。
    """
    global _client
    _client = AsyncIOMotorClient(config.MONGO_URI, tz_aware=True)
    db = _client[config.MONGO_DB_NAME]
    try:
        await db.command("ping")
    except Exception as e:
        logger.error("MongoDB 连接失败 | uri=%s | %s", _mask_uri(config.MONGO_URI), e, exc_info=True)
        raise
    logger.info("MongoDB 已连接 | uri=%s | db=%s", _mask_uri(config.MONGO_URI), config.MONGO_DB_NAME)
    return db


async def ensure_indexes(db: AsyncIOMotorDatabase) -> int:
    """创建 ``STARTUP_INDEXES`` 中的索引（已存在的同名索引不会重复创建），返回索引总数。"""
    total = 0
    for collection, indexes in STARTUP_INDEXES.items():
        names = await db[collection].create_indexes(indexes)
        total += len(names)
    logger.info("MongoDB 索引已就绪 | count=%d", total)
    return total


async def close_mongo() -> None:
    global _client
    if _client is not None:
        _client.close()
        _client = None
        logger.info("MongoDB 连接已关闭")
