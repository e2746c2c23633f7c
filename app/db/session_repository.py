"""
app.db.session_repository
~~~~~~~~~~~~~~~~~~~~~~~~~

直播记录持久化仓库 —— 封装 MongoDB ``live_sessions`` 集合的读写。

每场直播一个文档，花名册、等候室和聊天记录以内嵌数组保存。
除创建外，所有写操作都是字段级的定向更新（``$set`` 位置操作符、``$push``、``$pull``），
从不整文档覆盖，避免媒体状态切换与生命周期变更交错时丢失更新。

状态迁移使用条件写：过滤条件里带上期望的源状态，
并发的两次迁移最多只有一次能命中。
"""
from __future__ import annotations

from datetime import datetime
from typing import Any

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo import ReturnDocument

from app.core.logging import get_logger
from app.schemas.live_session import (
    ChatMessage,
    LiveSession,
    RosterEntry,
    SessionStatus,
    WaitingRoomEntry,
    utcnow,
)

logger = get_logger(__name__)

_COLLECTION_NAME = "live_sessions"

# 列表查询不需要聊天记录，避免把最多 500 条消息读出来
_LIST_PROJECTION = {"messages": 0}


def to_object_id(value: str) -> ObjectId | None:
    """把字符串 ID 转为 ``ObjectId``，格式不合法时返回 None。"""
    if ObjectId.is_valid(value):
        return ObjectId(value)
    return None


class SessionRepository:
    """直播记录仓库。

    Attributes:
        db: MongoDB 数据库实例。
    """

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]
        self._indexes_created = False

    async def _ensure_indexes(self) -> None:
        """确保索引已创建（惰性，首次操作时执行一次）。"""
        if self._indexes_created:
            return
        await self._collection.create_index(
            [("course_id", 1), ("status", 1)], name="idx_course_status",
        )
        await self._collection.create_index(
            [("host_id", 1), ("scheduled_at", -1)], name="idx_host_schedule",
        )
        await self._collection.create_index(
            [("scheduled_at", 1), ("status", 1)], name="idx_schedule_status",
        )
        self._indexes_created = True
        logger.debug("live_sessions 索引已就绪")

    @staticmethod
    def _to_model(doc: dict[str, Any]) -> LiveSession:
        data = dict(doc)
        data["id"] = str(data.pop("_id"))
        return LiveSession.model_validate(data)

    # ── 直播记录 ──────────────────────────────────────────────────────

    async def create(
        self,
        *,
        course_id: str,
        host_id: str,
        title: str,
        description: str,
        scheduled_at: datetime,
    ) -> LiveSession:
        """创建一条 scheduled 状态的直播记录。"""
        await self._ensure_indexes()
        now = utcnow()
        doc: dict[str, Any] = {
            "course_id": course_id,
            "host_id": host_id,
            "title": title,
            "description": description,
            "scheduled_at": scheduled_at,
            "status": SessionStatus.SCHEDULED.value,
            "started_at": None,
            "ended_at": None,
            "duration": 0,
            "recording_url": None,
            "participants": [],
            "waiting_room": [],
            "messages": [],
            "created_at": now,
            "updated_at": now,
        }
        result = await self._collection.insert_one(doc)
        doc["_id"] = result.inserted_id
        return self._to_model(doc)

    async def get(self, session_id: str) -> LiveSession | None:
        """按 ID 读取直播，不存在（或 ID 格式不合法）时返回 None。"""
        oid = to_object_id(session_id)
        if oid is None:
            return None
        doc = await self._collection.find_one({"_id": oid})
        return self._to_model(doc) if doc else None

    async def list_by_course(
        self,
        course_id: str,
        status: SessionStatus | None = None,
        skip: int = 0,
        limit: int = 10,
    ) -> tuple[list[LiveSession], int]:
        """分页列出某门课程的直播（按预约时间倒序），返回 (本页, 总数)。"""
        await self._ensure_indexes()
        query: dict[str, Any] = {"course_id": course_id}
        if status is not None:
            query["status"] = status.value
        return await self._page(query, skip, limit)

    async def list_by_host(
        self, host_id: str, skip: int = 0, limit: int = 10,
    ) -> tuple[list[LiveSession], int]:
        """分页列出某位主持人的直播（按预约时间倒序），返回 (本页, 总数)。"""
        await self._ensure_indexes()
        return await self._page({"host_id": host_id}, skip, limit)

    async def _page(
        self, query: dict[str, Any], skip: int, limit: int,
    ) -> tuple[list[LiveSession], int]:
        cursor = (
            self._collection
            .find(query, _LIST_PROJECTION)
            .sort("scheduled_at", -1)
            .skip(skip)
            .limit(limit)
        )
        docs = await cursor.to_list(length=limit)
        total = await self._collection.count_documents(query)
        return [self._to_model(d) for d in docs], total

    async def list_for_courses(
        self,
        course_ids: list[str],
        statuses: list[SessionStatus],
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[LiveSession]:
        """列出多门课程中指定状态的直播（按预约时间正序），可选时间窗口。"""
        if not course_ids:
            return []
        query: dict[str, Any] = {
            "course_id": {"$in": course_ids},
            "status": {"$in": [s.value for s in statuses]},
        }
        window: dict[str, datetime] = {}
        if start is not None:
            window["$gte"] = start
        if end is not None:
            window["$lte"] = end
        if window:
            query["scheduled_at"] = window
        cursor = self._collection.find(query, _LIST_PROJECTION).sort("scheduled_at", 1)
        return [self._to_model(d) for d in await cursor.to_list(length=None)]

    async def update_if_status(
        self,
        session_id: str,
        expected: SessionStatus,
        fields: dict[str, Any],
    ) -> LiveSession | None:
        """仅当当前状态仍为 ``expected`` 时写入 ``fields``。

        Returns:
            更新后的直播；状态已被其他请求改变（或直播不存在）时返回 None。
        """
        oid = to_object_id(session_id)
        if oid is None:
            return None
        doc = await self._collection.find_one_and_update(
            {"_id": oid, "status": expected.value},
            {"$set": {**fields, "updated_at": utcnow()}},
            return_document=ReturnDocument.AFTER,
        )
        return self._to_model(doc) if doc else None

    async def delete(self, session_id: str) -> bool:
        """删除直播；进行中的直播不会被删除。"""
        oid = to_object_id(session_id)
        if oid is None:
            return False
        result = await self._collection.delete_one(
            {"_id": oid, "status": {"$ne": SessionStatus.LIVE.value}},
        )
        return result.deleted_count > 0

    # ── 花名册 ────────────────────────────────────────────────────────

    async def upsert_participant(
        self,
        session_id: str,
        user_id: str,
        endpoint_id: str,
        joined_at: datetime,
    ) -> None:
        """入场：复用已有的花名册条目，没有时才追加。

        复用时刷新连接 ID 与入场时间并清空 ``left_at``，媒体开关保持上次的状态。
        """
        oid = to_object_id(session_id)
        result = await self._collection.update_one(
            {"_id": oid, "participants.user_id": user_id},
            {"$set": {
                "participants.$.endpoint_id": endpoint_id,
                "participants.$.joined_at": joined_at,
                "participants.$.left_at": None,
            }},
        )
        if result.matched_count:
            return
        entry = RosterEntry(user_id=user_id, endpoint_id=endpoint_id, joined_at=joined_at)
        # $ne 条件保证同一用户不会被追加两次
        await self._collection.update_one(
            {"_id": oid, "participants.user_id": {"$ne": user_id}},
            {"$push": {"participants": entry.model_dump()}},
        )

    async def mark_participant_left(
        self,
        session_id: str,
        user_id: str,
        endpoint_id: str,
        left_at: datetime,
    ) -> bool:
        """离场：只有连接 ID 仍匹配时才写入，旧连接的迟到断开不会覆盖重连后的状态。"""
        oid = to_object_id(session_id)
        result = await self._collection.update_one(
            {
                "_id": oid,
                "participants": {"$elemMatch": {"user_id": user_id, "endpoint_id": endpoint_id}},
            },
            {"$set": {
                "participants.$.left_at": left_at,
                "participants.$.endpoint_id": None,
            }},
        )
        return result.modified_count > 0

    async def update_participant_state(
        self, session_id: str, user_id: str, state: dict[str, bool],
    ) -> None:
        """更新参与者自己的媒体开关（最后写入者生效）。"""
        oid = to_object_id(session_id)
        await self._collection.update_one(
            {"_id": oid, "participants.user_id": user_id},
            {"$set": {f"participants.$.{key}": value for key, value in state.items()}},
        )

    async def close_attendance(self, session_id: str, at: datetime) -> None:
        """直播结束：所有仍在线的条目记为离场，清空等候室。"""
        oid = to_object_id(session_id)
        await self._collection.update_one(
            {"_id": oid},
            {"$set": {
                "participants.$[open].left_at": at,
                "participants.$[open].endpoint_id": None,
                "waiting_room": [],
            }},
            array_filters=[{"open.left_at": None}],
        )

    async def close_dangling_attendance(self, at: datetime) -> int:
        """进程重启后，关闭所有 live 直播中遗留的在线条目与等候室。

        Returns:
            被修改的直播数量。
        """
        result = await self._collection.update_many(
            {"status": SessionStatus.LIVE.value},
            {"$set": {
                "participants.$[open].left_at": at,
                "participants.$[open].endpoint_id": None,
                "waiting_room": [],
            }},
            array_filters=[{"open.left_at": None}],
        )
        return result.modified_count

    # ── 等候室 ────────────────────────────────────────────────────────

    async def save_waiting(self, session_id: str, entry: WaitingRoomEntry) -> None:
        """写入等候室条目，同一用户重复申请时覆盖原条目。"""
        oid = to_object_id(session_id)
        data = entry.model_dump()
        result = await self._collection.update_one(
            {"_id": oid, "waiting_room.user_id": entry.user_id},
            {"$set": {"waiting_room.$": data}},
        )
        if result.matched_count:
            return
        await self._collection.update_one(
            {"_id": oid, "waiting_room.user_id": {"$ne": entry.user_id}},
            {"$push": {"waiting_room": data}},
        )

    async def remove_waiting(self, session_id: str, user_id: str) -> None:
        oid = to_object_id(session_id)
        await self._collection.update_one(
            {"_id": oid},
            {"$pull": {"waiting_room": {"user_id": user_id}}},
        )

    # ── 聊天记录 ──────────────────────────────────────────────────────

    async def append_message(
        self, session_id: str, message: ChatMessage, limit: int,
    ) -> bool:
        """追加一条聊天消息，只保留最近 ``limit`` 条（最旧的先淘汰）。

        Returns:
            直播存在并写入成功时为 True。
        """
        oid = to_object_id(session_id)
        result = await self._collection.update_one(
            {"_id": oid},
            {"$push": {"messages": {"$each": [message.model_dump()], "$slice": -limit}}},
        )
        return result.matched_count > 0
