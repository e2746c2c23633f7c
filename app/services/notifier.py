"""
app.services.notifier
~~~~~~~~~~~~~~~~~~~~~

直播生命周期通知 —— 直播被预约、开播、修改、取消时，给课程的选课学生各写一条站内通知。

通知是尽力而为的：写入失败只记日志，不影响生命周期操作本身。
"""
from __future__ import annotations

from enum import Enum

from app.core.logging import get_logger
from app.db.notification_repository import NotificationRepository
from app.schemas.live_session import CourseRef, LiveSession, utcnow

logger = get_logger(__name__)


class NotificationKind(str, Enum):
    SCHEDULED = "session_scheduled"
    LIVE = "session_live"
    UPDATED = "session_updated"
    CANCELLED = "session_cancelled"


_TEMPLATES: dict[NotificationKind, tuple[str, str]] = {
    NotificationKind.SCHEDULED: ("新的直播课已预约", "《{course}》将于 {scheduled_at} 开始直播：{title}"),
    NotificationKind.LIVE: ("直播已开始", "《{course}》的直播「{title}」正在进行，快来加入吧"),
    NotificationKind.UPDATED: ("直播信息已更新", "《{course}》的直播「{title}」有变动，开始时间 {scheduled_at}"),
    NotificationKind.CANCELLED: ("直播已取消", "《{course}》的直播「{title}」已取消"),
}


class SessionNotifier:
    """给选课学生发送直播通知。"""

    def __init__(self, repo: NotificationRepository) -> None:
        self.repo = repo

    async def notify(
        self, kind: NotificationKind, session: LiveSession, course: CourseRef,
    ) -> int:
        """为课程的每位选课学生写入一条通知。

        Returns:
            实际写入的通知数；失败时为 0。
        """
        if not course.enrolled_students:
            return 0

        title, template = _TEMPLATES[kind]
        content = template.format(
            course=course.title or course.id,
            title=session.title,
            scheduled_at=session.scheduled_at.strftime("%Y-%m-%d %H:%M"),
        )
        now = utcnow()
        docs = [
            {
                "user_id": student_id,
                "type": kind.value,
                "title": title,
                "content": content,
                "link": f"/courses/{course.id}/sessions/{session.id}",
                "session_id": session.id,
                "is_read": False,
                "created_at": now,
            }
            for student_id in course.enrolled_students
        ]
        try:
            count = await self.repo.create_many(docs)
        except Exception as e:
            logger.warning("直播通知写入失败 | session=%s | type=%s | %s", session.id, kind.value, e)
            return 0
        logger.info("直播通知已发送 | session=%s | type=%s | count=%d", session.id, kind.value, count)
        return count
