"""
tests.conftest
~~~~~~~~~~~~~~

共享 pytest fixtures —— 用内存实现替换 MongoDB 仓库和 WebSocket，
使单元测试可在没有数据库、没有网络的环境下快速运行。
"""
from __future__ import annotations

import itertools
import json
import os
from datetime import datetime, timedelta
from typing import Any

import pytest
import pytest_asyncio

# ── 在所有测试导入前设置环境变量 ─────────────────────────────────────
os.environ.setdefault("ENVIRONMENT", "test")  # 激活 .env.test 配置

from app.schemas.live_session import (  # noqa: E402
    ChatMessage,
    CourseRef,
    LiveSession,
    RosterEntry,
    SessionStatus,
    WaitingRoomEntry,
    utcnow,
)
from app.services.live_room import Caller, LiveRoom  # noqa: E402
from app.services.live_system import LiveSystem  # noqa: E402
from app.services.notifier import SessionNotifier  # noqa: E402

HOST_ID = "teacher-1"
STUDENTS = ["student-1", "student-2", "student-3"]


# ── 内存仓库 ──────────────────────────────────────────────────────────


class FakeSessionRepository:
    """``SessionRepository`` 的内存实现，语义与 Mongo 版保持一致。

    把 ``fail_writes`` 设为 True 可以模拟写库失败。
    """

    def __init__(self) -> None:
        self.docs: dict[str, LiveSession] = {}
        self.fail_writes = False
        self._ids = itertools.count(1)

    def _check(self) -> None:
        if self.fail_writes:
            raise RuntimeError("database unavailable")

    def _stored(self, session_id: str) -> LiveSession | None:
        return self.docs.get(session_id)

    async def create(
        self, *, course_id: str, host_id: str, title: str, description: str, scheduled_at: datetime,
    ) -> LiveSession:
        self._check()
        session = LiveSession(
            id=f"{next(self._ids):024x}",
            course_id=course_id,
            host_id=host_id,
            title=title,
            description=description,
            scheduled_at=scheduled_at,
        )
        self.docs[session.id] = session
        return session.model_copy(deep=True)

    async def get(self, session_id: str) -> LiveSession | None:
        session = self._stored(session_id)
        return session.model_copy(deep=True) if session else None

    async def list_by_course(
        self, course_id: str, status: SessionStatus | None = None, skip: int = 0, limit: int = 10,
    ) -> tuple[list[LiveSession], int]:
        found = [
            s for s in self.docs.values()
            if s.course_id == course_id and (status is None or s.status is status)
        ]
        found.sort(key=lambda s: s.scheduled_at, reverse=True)
        return [s.model_copy(deep=True) for s in found[skip:skip + limit]], len(found)

    async def list_by_host(
        self, host_id: str, skip: int = 0, limit: int = 10,
    ) -> tuple[list[LiveSession], int]:
        found = sorted(
            (s for s in self.docs.values() if s.host_id == host_id),
            key=lambda s: s.scheduled_at, reverse=True,
        )
        return [s.model_copy(deep=True) for s in found[skip:skip + limit]], len(found)

    async def list_for_courses(
        self,
        course_ids: list[str],
        statuses: list[SessionStatus],
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[LiveSession]:
        found = [
            s for s in self.docs.values()
            if s.course_id in course_ids
            and s.status in statuses
            and (start is None or s.scheduled_at >= start)
            and (end is None or s.scheduled_at <= end)
        ]
        found.sort(key=lambda s: s.scheduled_at)
        return [s.model_copy(deep=True) for s in found]

    async def update_if_status(
        self, session_id: str, expected: SessionStatus, fields: dict[str, Any],
    ) -> LiveSession | None:
        self._check()
        session = self._stored(session_id)
        if session is None or session.status is not expected:
            return None
        data = session.model_dump()
        data.update(fields, updated_at=utcnow())
        self.docs[session_id] = LiveSession.model_validate(data)
        return self.docs[session_id].model_copy(deep=True)

    async def delete(self, session_id: str) -> bool:
        self._check()
        session = self._stored(session_id)
        if session is None or session.status is SessionStatus.LIVE:
            return False
        del self.docs[session_id]
        return True

    async def upsert_participant(
        self, session_id: str, user_id: str, endpoint_id: str, joined_at: datetime,
    ) -> None:
        self._check()
        session = self.docs[session_id]
        entry = session.participant(user_id)
        if entry is None:
            session.participants.append(
                RosterEntry(user_id=user_id, endpoint_id=endpoint_id, joined_at=joined_at),
            )
            return
        entry.endpoint_id = endpoint_id
        entry.joined_at = joined_at
        entry.left_at = None

    async def mark_participant_left(
        self, session_id: str, user_id: str, endpoint_id: str, left_at: datetime,
    ) -> bool:
        self._check()
        entry = self.docs[session_id].participant(user_id)
        if entry is None or entry.endpoint_id != endpoint_id:
            return False
        entry.left_at = left_at
        entry.endpoint_id = None
        return True

    async def update_participant_state(
        self, session_id: str, user_id: str, state: dict[str, bool],
    ) -> None:
        self._check()
        entry = self.docs[session_id].participant(user_id)
        if entry is not None:
            for key, value in state.items():
                setattr(entry, key, value)

    async def close_attendance(self, session_id: str, at: datetime) -> None:
        self._check()
        session = self.docs[session_id]
        for entry in session.participants:
            if entry.left_at is None:
                entry.left_at = at
                entry.endpoint_id = None
        session.waiting_room = []

    async def close_dangling_attendance(self, at: datetime) -> int:
        count = 0
        for session in self.docs.values():
            if session.status is SessionStatus.LIVE:
                await self.close_attendance(session.id, at)
                count += 1
        return count

    async def save_waiting(self, session_id: str, entry: WaitingRoomEntry) -> None:
        self._check()
        session = self.docs[session_id]
        session.waiting_room = [w for w in session.waiting_room if w.user_id != entry.user_id]
        session.waiting_room.append(entry.model_copy())

    async def remove_waiting(self, session_id: str, user_id: str) -> None:
        self._check()
        session = self.docs[session_id]
        session.waiting_room = [w for w in session.waiting_room if w.user_id != user_id]

    async def append_message(self, session_id: str, message: ChatMessage, limit: int) -> bool:
        self._check()
        session = self._stored(session_id)
        if session is None:
            return False
        session.messages.append(message.model_copy())
        session.messages = session.messages[-limit:]
        return True


class FakeCourseRepository:
    def __init__(self, courses: list[CourseRef] | None = None) -> None:
        self.courses: dict[str, CourseRef] = {c.id: c for c in courses or []}

    async def get(self, course_id: str) -> CourseRef | None:
        return self.courses.get(course_id)

    async def enrolled_course_ids(self, user_id: str) -> list[str]:
        return [c.id for c in self.courses.values() if c.is_enrolled(user_id)]


class FakeNotificationRepository:
    def __init__(self) -> None:
        self.created: list[dict[str, Any]] = []

    async def create_many(self, notifications: list[dict[str, Any]]) -> int:
        self.created.extend(notifications)
        return len(notifications)


class FakeWebSocket:
    """只记录下行事件的假 WebSocket。"""

    def __init__(self, fail: bool = False) -> None:
        self.sent: list[dict[str, Any]] = []
        self.closed: tuple[int, str] | None = None
        self.fail = fail

    async def send_text(self, text: str) -> None:
        if self.fail:
            raise RuntimeError("connection reset")
        self.sent.append(json.loads(text))

    async def close(self, code: int = 1000, reason: str = "") -> None:
        self.closed = (code, reason)

    def events(self, name: str | None = None) -> list[dict[str, Any]]:
        return [e for e in self.sent if name is None or e["event"] == name]

    def names(self) -> list[str]:
        return [e["event"] for e in self.sent]


# ── 工具函数 ──────────────────────────────────────────────────────────


def connect(room: LiveRoom, user_id: str, role: str = "student", endpoint_id: str | None = None) -> tuple[Caller, FakeWebSocket]:
    """在房间中登记一条假连接。"""
    caller = Caller(user_id=user_id, role=role, endpoint_id=endpoint_id or f"ep-{user_id}")
    ws = FakeWebSocket()
    room.broadcaster.connect(caller.endpoint_id, ws)
    return caller, ws


# ── Fixtures ──────────────────────────────────────────────────────────


@pytest.fixture()
def course() -> CourseRef:
    return CourseRef(id="course-1", title="分布式系统", teacher_id=HOST_ID, enrolled_students=list(STUDENTS))


@pytest.fixture()
def sessions() -> FakeSessionRepository:
    return FakeSessionRepository()


@pytest.fixture()
def courses(course: CourseRef) -> FakeCourseRepository:
    return FakeCourseRepository([course])


@pytest.fixture()
def notifications() -> FakeNotificationRepository:
    return FakeNotificationRepository()


@pytest.fixture()
def system(
    sessions: FakeSessionRepository,
    courses: FakeCourseRepository,
    notifications: FakeNotificationRepository,
) -> LiveSystem:
    return LiveSystem(
        sessions,
        courses,
        SessionNotifier(notifications),
        max_participants=50,
        chat_history_limit=500,
        chat_replay_limit=50,
    )


@pytest_asyncio.fixture()
async def live_session(sessions: FakeSessionRepository, course: CourseRef) -> LiveSession:
    """一场已经开始的直播。"""
    session = await sessions.create(
        course_id=course.id,
        host_id=HOST_ID,
        title="第一讲",
        description="",
        scheduled_at=utcnow() + timedelta(hours=1),
    )
    return await sessions.update_if_status(
        session.id, SessionStatus.SCHEDULED,
        {"status": SessionStatus.LIVE.value, "started_at": utcnow()},
    )
