"""
app.db.notification_repository
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

站内通知持久化仓库 —— 向 ``notifications`` 集合批量写入通知。
"""
from __future__ import annotations

from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase

_COLLECTION_NAME = "notifications"


class NotificationRepository:
    """站内通知仓库。"""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]

    async def create_many(self, notifications: list[dict[str, Any]]) -> int:
        """批量写入通知，返回写入条数。"""
        if not notifications:
            return 0
        result = await self._collection.insert_many(notifications, ordered=False)
        return len(result.inserted_ids)
