"""
app.db.course_repository
~~~~~~~~~~~~~~~~~~~~~~~~

课程目录只读仓库 —— 读取 ``courses`` 集合中直播需要的字段。

课程的增删改由平台其他模块负责，这里只关心授课教师和选课学生。
"""
from __future__ import annotations

from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.db.session_repository import to_object_id
from app.schemas.live_session import CourseRef

_COLLECTION_NAME = "courses"


def _id_candidates(value: str) -> list[Any]:
    """课程 / 用户 ID 可能以 ObjectId 或字符串保存，两种形式都查。"""
    oid = to_object_id(value)
    return [value, oid] if oid is not None else [value]


class CourseRepository:
    """课程目录仓库。"""

    def __init__(self, db: AsyncIOMotorDatabase) -> None:
        self.db = db
        self._collection = db[_COLLECTION_NAME]

    async def get(self, course_id: str) -> CourseRef | None:
        doc = await self._collection.find_one(
            {"_id": {"$in": _id_candidates(course_id)}},
            {"title": 1, "teacher_id": 1, "enrolled_students": 1},
        )
        if doc is None:
            return None
        return CourseRef(
            id=str(doc["_id"]),
            title=doc.get("title", ""),
            teacher_id=str(doc.get("teacher_id", "")),
            enrolled_students=[str(s) for s in doc.get("enrolled_students", [])],
        )

    async def enrolled_course_ids(self, user_id: str) -> list[str]:
        """列出某个学生选修的全部课程 ID。"""
        cursor = self._collection.find(
            {"enrolled_students": {"$in": _id_candidates(user_id)}},
            {"_id": 1},
        )
        return [str(doc["_id"]) for doc in await cursor.to_list(length=None)]
