"""
app.schemas.live_session
~~~~~~~~~~~~~~~~~~~~~~~~

直播课堂的领域模型与 REST 请求/响应模型。

``LiveSession`` 与 MongoDB ``live_sessions`` 集合中的文档一一对应，
花名册（``participants``）、等候室（``waiting_room``）与聊天记录（``messages``）
都以内嵌数组的形式保存在同一个文档里。
"""
from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Literal

from pydantic import BaseModel, Field

UserRole = Literal["student", "teacher", "admin"]


def utcnow() -> datetime:
    """带时区的当前 UTC 时间。"""
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """把无时区的时间视为 UTC。"""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SessionStatus(str, Enum):
    """直播生命周期状态。

    只允许 scheduled → live → ended 或 scheduled → cancelled。
    """

    SCHEDULED = "scheduled"
    LIVE = "live"
    ENDED = "ended"
    CANCELLED = "cancelled"


class CurrentUser(BaseModel):
    """由上游身份服务解析好的调用方身份。"""

    user_id: str = Field(..., min_length=1, description="用户 ID")
    role: UserRole = Field(default="student", description="用户角色")

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"


# ── 内嵌文档 ──────────────────────────────────────────────────────────


class RosterEntry(BaseModel):
    """花名册条目：记录每位参与者的出席情况，离开后也不会删除。"""

    user_id: str = Field(..., description="参与者 ID")
    endpoint_id: str | None = Field(default=None, description="当前连接 ID，离线时为空")
    joined_at: datetime = Field(..., description="最近一次入场时间")
    left_at: datetime | None = Field(default=None, description="离开时间，在线时为空")
    is_video_on: bool = Field(default=True, description="摄像头是否开启")
    is_audio_on: bool = Field(default=True, description="麦克风是否开启")
    is_screen_sharing: bool = Field(default=False, description="是否正在共享屏幕")
    hand_raised: bool = Field(default=False, description="是否举手")

    @property
    def is_active(self) -> bool:
        return self.left_at is None


class WaitingRoomEntry(BaseModel):
    """等候室条目：等待主持人批准的入场申请。"""

    user_id: str = Field(..., description="申请人 ID")
    display_name: str = Field(..., description="申请人显示名称")
    endpoint_id: str = Field(..., description="申请人的连接 ID")
    avatar: str | None = Field(default=None, description="头像地址")
    role: UserRole = Field(default="student", description="申请人角色")
    requested_at: datetime = Field(default_factory=utcnow, description="申请时间")


class ChatMessage(BaseModel):
    """一条直播聊天消息，写入后不可修改。"""

    user_id: str = Field(..., description="发送者 ID")
    user_name: str = Field(..., description="发送时的显示名称（冗余保存，不再回查）")
    message: str = Field(..., min_length=1, max_length=1000, description="消息文本")
    timestamp: datetime = Field(default_factory=utcnow, description="发送时间")


class LiveSession(BaseModel):
    """一场直播课堂。"""

    id: str = Field(..., description="直播 ID")
    course_id: str = Field(..., description="所属课程 ID")
    host_id: str = Field(..., description="主持人 ID，创建后不可修改")
    title: str = Field(..., description="标题")
    description: str = Field(default="", description="简介")
    scheduled_at: datetime = Field(..., description="预约开始时间")
    status: SessionStatus = Field(default=SessionStatus.SCHEDULED, description="生命周期状态")
    started_at: datetime | None = Field(default=None, description="实际开始时间")
    ended_at: datetime | None = Field(default=None, description="实际结束时间")
    duration: int = Field(default=0, description="时长（分钟），结束时计算")
    recording_url: str | None = Field(default=None, description="录像地址")
    participants: list[RosterEntry] = Field(default_factory=list, description="花名册")
    waiting_room: list[WaitingRoomEntry] = Field(default_factory=list, description="等候室")
    messages: list[ChatMessage] = Field(default_factory=list, description="聊天记录")
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def is_host(self, user_id: str) -> bool:
        return self.host_id == user_id

    def can_manage(self, user: CurrentUser) -> bool:
        """主持人或管理员才能管理该直播。"""
        return user.is_admin or self.is_host(user.user_id)

    def participant(self, user_id: str) -> RosterEntry | None:
        for entry in self.participants:
            if entry.user_id == user_id:
                return entry
        return None

    def active_participants(self) -> list[RosterEntry]:
        return [p for p in self.participants if p.is_active]

    def recent_messages(self, limit: int) -> list[ChatMessage]:
        """最近 ``limit`` 条消息（按时间正序）。"""
        if limit <= 0:
            return []
        return self.messages[-limit:]


# ── 课程目录（只读协作者）─────────────────────────────────────────────


class CourseRef(BaseModel):
    """直播所需的课程信息子集。"""

    id: str
    title: str = ""
    teacher_id: str
    enrolled_students: list[str] = Field(default_factory=list)

    def is_enrolled(self, user_id: str) -> bool:
        return user_id in self.enrolled_students


# ── REST 请求/响应 ─────────────────────────────────────────────────────


class CreateSessionRequest(BaseModel):
    """创建直播请求体。"""

    course_id: str = Field(..., min_length=1, description="课程 ID")
    title: str = Field(..., min_length=3, max_length=200, description="标题")
    description: str = Field(default="", max_length=1000, description="简介")
    scheduled_at: datetime = Field(..., description="预约开始时间，必须晚于当前时间")


class UpdateSessionRequest(BaseModel):
    """修改直播请求体，只更新显式给出的字段。"""

    title: str | None = Field(default=None, min_length=3, max_length=200)
    description: str | None = Field(default=None, max_length=1000)
    scheduled_at: datetime | None = Field(default=None)


class SessionData(BaseModel):
    """直播摘要（列表 / 生命周期接口的返回值）。"""

    id: str
    course_id: str
    host_id: str
    title: str
    description: str
    scheduled_at: datetime
    status: SessionStatus
    started_at: datetime | None = None
    ended_at: datetime | None = None
    duration: int = 0
    recording_url: str | None = None

    @classmethod
    def from_session(cls, session: LiveSession) -> SessionData:
        return cls.model_validate(session.model_dump(include=set(cls.model_fields)))


class SessionDetailData(SessionData):
    """直播详情：附带当前在线的花名册。"""

    active_participants: list[RosterEntry] = Field(default_factory=list)
    total_participants: int = 0
    waiting_count: int = 0

    @classmethod
    def from_session(cls, session: LiveSession) -> SessionDetailData:
        active = session.active_participants()
        return cls(
            **SessionData.from_session(session).model_dump(),
            active_participants=active,
            total_participants=len(active),
            waiting_count=len(session.waiting_room),
        )


class PageMeta(BaseModel):
    """分页元信息。"""

    total: int
    page: int
    limit: int
    total_pages: int


class SessionPageData(BaseModel):
    """分页后的直播列表。"""

    metadata: PageMeta
    sessions: list[SessionData]


class JoinEligibilityData(BaseModel):
    """入场资格检查结果。"""

    session_id: str
    title: str
    host_id: str
    status: SessionStatus


class RoomInfoData(BaseModel):
    """直播间实时摘要（内存态，不查库）。"""

    session_id: str = Field(..., description="直播 ID")
    online_count: int = Field(..., description="已入场人数")
    waiting_count: int = Field(..., description="等候室人数")
    connection_count: int = Field(..., description="已建立的连接数（含未入场）")
