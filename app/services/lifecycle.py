"""
app.services.lifecycle
~~~~~~~~~~~~~~~~~~~~~~

直播生命周期：创建、开始、结束、取消、修改、删除，以及查询与入场资格检查。

状态机::

    scheduled ──start──▶ live ──end──▶ ended
        │
        └──cancel──▶ cancelled

状态迁移全部通过 ``update_if_status`` 做条件写入，两个并发的 start / end 请求只有一个能成功，
另一个读到新状态后返回 ``InvalidStateError``。
"""
from __future__ import annotations

import math
from datetime import datetime
from typing import Any, Protocol

from app.core.exceptions import (
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.core.logging import get_logger
from app.db.course_repository import CourseRepository
from app.db.session_repository import SessionRepository
from app.schemas.live_session import (
    CreateSessionRequest,
    CurrentUser,
    JoinEligibilityData,
    LiveSession,
    SessionStatus,
    UpdateSessionRequest,
    as_utc,
    utcnow,
)
from app.schemas.signaling import ServerEvent
from app.services.notifier import NotificationKind, SessionNotifier

logger = get_logger(__name__)


class RoomFanout(Protocol):
    """生命周期变化需要推送给直播间连接时使用的接口（由 ``LiveSystem`` 实现）。"""

    async def announce(self, session_id: str, event: ServerEvent) -> None: ...

    async def shutdown_room(self, session_id: str, event: ServerEvent, closed_at: datetime) -> None: ...


class SessionLifecycleController:
    """直播生命周期控制器。"""

    def __init__(
        self,
        sessions: SessionRepository,
        courses: CourseRepository,
        notifier: SessionNotifier,
        rooms: RoomFanout,
    ) -> None:
        self.sessions = sessions
        self.courses = courses
        self.notifier = notifier
        self.rooms = rooms

    # ── 内部工具 ──────────────────────────────────────────────────────

    async def _load(self, session_id: str) -> LiveSession:
        session = await self.sessions.get(session_id)
        if session is None:
            raise NotFoundError("直播不存在")
        return session

    @staticmethod
    def _authorize(session: LiveSession, caller: CurrentUser) -> None:
        if not session.can_manage(caller):
            raise PermissionDeniedError("只有主持人或管理员可以管理该直播")

    @staticmethod
    def _expect(session: LiveSession, expected: SessionStatus, action: str) -> None:
        if session.status is not expected:
            raise InvalidStateError(
                f"无法{action}状态为 {session.status.value} 的直播", session.status.value,
            )

    @staticmethod
    def _future(value: datetime) -> datetime:
        value = as_utc(value)
        if value <= utcnow():
            raise ValidationError("预约时间必须晚于当前时间")
        return value

    async def _transition(
        self,
        session_id: str,
        expected: SessionStatus,
        fields: dict[str, Any],
        action: str,
    ) -> LiveSession:
        updated = await self.sessions.update_if_status(session_id, expected, fields)
        if updated is not None:
            return updated
        # 条件写入失败：直播已被删除，或被并发请求抢先改了状态
        current = await self._load(session_id)
        raise InvalidStateError(
            f"无法{action}状态为 {current.status.value} 的直播", current.status.value,
        )

    async def _notify(self, kind: NotificationKind, session: LiveSession) -> None:
        # 状态已经写入，查课程失败只跳过通知
        try:
            course = await self.courses.get(session.course_id)
        except Exception as e:
            logger.warning("查询课程失败，跳过通知 | session=%s | %s", session.id, e)
            return
        if course is None:
            logger.warning("课程不存在，跳过通知 | session=%s | course=%s", session.id, session.course_id)
            return
        await self.notifier.notify(kind, session, course)

    # ── 生命周期 ──────────────────────────────────────────────────────

    async def create(self, caller: CurrentUser, request: CreateSessionRequest) -> LiveSession:
        """预约一场直播。调用方必须是该课程的授课教师（或管理员）。"""
        scheduled_at = self._future(request.scheduled_at)
        course = await self.courses.get(request.course_id)
        if course is None:
            raise NotFoundError("课程不存在")
        if course.teacher_id != caller.user_id and not caller.is_admin:
            raise PermissionDeniedError("只有该课程的授课教师可以创建直播")

        session = await self.sessions.create(
            course_id=course.id,
            host_id=caller.user_id,
            title=request.title,
            description=request.description,
            scheduled_at=scheduled_at,
        )
        logger.info("直播已创建 | session=%s | course=%s | host=%s", session.id, course.id, caller.user_id)
        await self.notifier.notify(NotificationKind.SCHEDULED, session, course)
        return session

    async def start(self, session_id: str, caller: CurrentUser) -> LiveSession:
        """开始直播：scheduled → live。"""
        session = await self._load(session_id)
        self._authorize(session, caller)
        self._expect(session, SessionStatus.SCHEDULED, "开始")

        updated = await self._transition(
            session_id,
            SessionStatus.SCHEDULED,
            {"status": SessionStatus.LIVE.value, "started_at": utcnow()},
            "开始",
        )
        logger.info("直播开始 | session=%s", session_id)
        await self._notify(NotificationKind.LIVE, updated)
        await self.rooms.announce(session_id, ServerEvent.of(
            "session:live",
            session_id=session_id,
            title=updated.title,
            started_at=updated.started_at.isoformat() if updated.started_at else None,
        ))
        return updated

    async def end(self, session_id: str, caller: CurrentUser) -> LiveSession:
        """结束直播：live → ended，计算时长并关闭所有在线条目。"""
        session = await self._load(session_id)
        self._authorize(session, caller)
        self._expect(session, SessionStatus.LIVE, "结束")

        now = utcnow()
        started_at = as_utc(session.started_at) if session.started_at else now
        duration = max(0, math.floor((now - started_at).total_seconds() / 60 + 0.5))

        await self._transition(
            session_id,
            SessionStatus.LIVE,
            {"status": SessionStatus.ENDED.value, "ended_at": now, "duration": duration},
            "结束",
        )
        logger.info("直播结束 | session=%s | duration=%d", session_id, duration)

        # 关闭在线条目由直播间 worker 执行，排在已进入 worker 的入场操作之后
        await self.rooms.shutdown_room(session_id, ServerEvent.of(
            "session:ended",
            session_id=session_id,
            ended_at=now.isoformat(),
            duration=duration,
        ), now)
        return await self._load(session_id)

    async def cancel(self, session_id: str, caller: CurrentUser) -> LiveSession:
        """取消尚未开始的直播：scheduled → cancelled。"""
        session = await self._load(session_id)
        self._authorize(session, caller)
        self._expect(session, SessionStatus.SCHEDULED, "取消")

        updated = await self._transition(
            session_id,
            SessionStatus.SCHEDULED,
            {"status": SessionStatus.CANCELLED.value},
            "取消",
        )
        logger.info("直播已取消 | session=%s", session_id)
        await self._notify(NotificationKind.CANCELLED, updated)
        await self.rooms.announce(session_id, ServerEvent.of(
            "session:cancelled", session_id=session_id,
        ))
        return updated

    async def update(
        self, session_id: str, caller: CurrentUser, request: UpdateSessionRequest,
    ) -> LiveSession:
        """修改标题 / 简介 / 预约时间，只允许在 scheduled 状态下进行。"""
        session = await self._load(session_id)
        self._authorize(session, caller)
        self._expect(session, SessionStatus.SCHEDULED, "修改")

        fields = request.model_dump(exclude_none=True)
        if "scheduled_at" in fields:
            fields["scheduled_at"] = self._future(fields["scheduled_at"])
        if not fields:
            return session

        updated = await self._transition(session_id, SessionStatus.SCHEDULED, fields, "修改")
        logger.info("直播已修改 | session=%s | fields=%s", session_id, sorted(fields))
        await self._notify(NotificationKind.UPDATED, updated)
        return updated

    async def delete(self, session_id: str, caller: CurrentUser) -> None:
        """删除直播。进行中的直播必须先结束。"""
        session = await self._load(session_id)
        self._authorize(session, caller)
        if session.status is SessionStatus.LIVE:
            raise InvalidStateError("直播进行中，请先结束直播", session.status.value)

        if not await self.sessions.delete(session_id):
            current = await self._load(session_id)
            raise InvalidStateError("直播进行中，请先结束直播", current.status.value)

        logger.info("直播已删除 | session=%s", session_id)
        if session.status is SessionStatus.SCHEDULED:
            await self._notify(NotificationKind.CANCELLED, session)
            await self.rooms.announce(session_id, ServerEvent.of(
                "session:cancelled", session_id=session_id,
            ))

    # ── 查询 ──────────────────────────────────────────────────────────

    async def join_eligibility(self, session_id: str, caller: CurrentUser) -> JoinEligibilityData:
        """检查调用方能否加入直播：直播必须进行中，且调用方选修了课程（或是主持人/管理员）。"""
        session = await self._load(session_id)
        if session.status is not SessionStatus.LIVE:
            raise InvalidStateError(
                f"直播未在进行中（当前状态: {session.status.value}）", session.status.value,
            )
        if not session.can_manage(caller):
            course = await self.courses.get(session.course_id)
            if course is None or not course.is_enrolled(caller.user_id):
                raise PermissionDeniedError("需要先选修该课程才能加入直播")
        return JoinEligibilityData(
            session_id=session.id,
            title=session.title,
            host_id=session.host_id,
            status=session.status,
        )

    async def get_detail(self, session_id: str) -> LiveSession:
        return await self._load(session_id)

    async def list_by_course(
        self,
        course_id: str,
        status: SessionStatus | None = None,
        page: int = 1,
        limit: int = 10,
    ) -> tuple[list[LiveSession], int]:
        return await self.sessions.list_by_course(
            course_id, status, skip=(page - 1) * limit, limit=limit,
        )

    async def list_by_host(
        self, caller: CurrentUser, page: int = 1, limit: int = 10,
    ) -> tuple[list[LiveSession], int]:
        return await self.sessions.list_by_host(
            caller.user_id, skip=(page - 1) * limit, limit=limit,
        )

    async def list_enrolled(
        self,
        caller: CurrentUser,
        start: datetime | None = None,
        end: datetime | None = None,
    ) -> list[LiveSession]:
        """调用方选修课程中即将开始或正在进行的直播。"""
        course_ids = await self.courses.enrolled_course_ids(caller.user_id)
        return await self.sessions.list_for_courses(
            course_ids,
            [SessionStatus.SCHEDULED, SessionStatus.LIVE],
            start=as_utc(start) if start else None,
            end=as_utc(end) if end else None,
        )
