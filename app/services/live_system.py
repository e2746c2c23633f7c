"""
app.services.live_system
~~~~~~~~~~~~~~~~~~~~~~~~

直播系统 —— 组装各个控制器，管理所有直播间（``LiveRoom``）的生命周期。

在 FastAPI lifespan 中初始化并挂载于 ``app.state.live_system``，不做全局单例。

- ``get_room(session_id)``               → 获取/创建直播间（懒初始化）
- ``dispatch(room, caller, message)``    → 按消息类型分派到对应控制器
- ``handle_disconnect(room, caller)``    → 连接断开时的清理
- ``announce`` / ``shutdown_room``       → 生命周期变化推送给直播间的全部连接
"""
from __future__ import annotations

from datetime import datetime

from motor.motor_asyncio import AsyncIOMotorDatabase

from app.core.config import Settings, settings
from app.core.exceptions import ValidationError
from app.core.logging import get_logger
from app.db.course_repository import CourseRepository
from app.db.notification_repository import NotificationRepository
from app.db.session_repository import SessionRepository
from app.schemas.live_session import RoomInfoData, utcnow
from app.schemas.signaling import (
    AnswerMessage,
    ApproveRequestMessage,
    ChatSendMessage,
    ClientMessage,
    DenyRequestMessage,
    IceCandidateMessage,
    JoinMessage,
    KickParticipantMessage,
    LeaveMessage,
    OfferMessage,
    RaiseHandMessage,
    ScreenShareStartMessage,
    ScreenShareStopMessage,
    ServerEvent,
    ToggleAudioMessage,
    ToggleVideoMessage,
)
from app.services.admission import AdmissionController
from app.services.chat_channel import ChatChannel
from app.services.lifecycle import SessionLifecycleController
from app.services.live_room import Caller, LiveRoom
from app.services.notifier import SessionNotifier
from app.services.signaling import SignalingRelay

logger = get_logger(__name__)


class LiveSystem:
    """直播系统。

    Attributes:
        sessions: 直播持久化。
        courses: 课程目录（只读）。
        admission: 入场控制。
        relay: 信令中继。
        chat: 聊天频道。
        lifecycle: 生命周期控制。
    """

    def __init__(
        self,
        sessions: SessionRepository,
        courses: CourseRepository,
        notifier: SessionNotifier,
        *,
        max_participants: int = 50,
        chat_history_limit: int = 500,
        chat_replay_limit: int = 50,
    ) -> None:
        self.sessions = sessions
        self.courses = courses
        self.admission = AdmissionController(sessions, max_participants, chat_replay_limit)
        self.relay = SignalingRelay()
        self.chat = ChatChannel(sessions, chat_history_limit)
        self.lifecycle = SessionLifecycleController(sessions, courses, notifier, rooms=self)
        self._rooms: dict[str, LiveRoom] = {}

    @classmethod
    def from_database(cls, db: AsyncIOMotorDatabase, config: Settings = settings) -> LiveSystem:
        return cls(
            SessionRepository(db),
            CourseRepository(db),
            SessionNotifier(NotificationRepository(db)),
            max_participants=config.MAX_PARTICIPANTS,
            chat_history_limit=config.CHAT_HISTORY_LIMIT,
            chat_replay_limit=config.CHAT_REPLAY_LIMIT,
        )

    # ── 直播间管理 ────────────────────────────────────────────────────

    def get_room(self, session_id: str) -> LiveRoom:
        """获取指定直播间（不存在则创建）。"""
        room = self._rooms.get(session_id)
        if room is None:
            room = LiveRoom(session_id)
            self._rooms[session_id] = room
            logger.info("直播间已创建 | session=%s", session_id)
        return room

    def peek_room(self, session_id: str) -> LiveRoom | None:
        return self._rooms.get(session_id)

    def list_rooms(self) -> list[RoomInfoData]:
        """列出所有活跃房间的摘要信息。"""
        return [room.info() for room in self._rooms.values()]

    async def release_room(self, session_id: str) -> None:
        """最后一个连接断开后回收直播间；仍有排队中的操作时暂不回收。"""
        room = self._rooms.get(session_id)
        if room is None or not room.is_idle or room.is_busy:
            return
        del self._rooms[session_id]
        await room.close()
        logger.info("直播间已回收 | session=%s", session_id)

    # ── 消息分派（在房间 worker 中执行）──────────────────────────────

    async def dispatch(self, room: LiveRoom, caller: Caller, message: ClientMessage) -> None:
        """把一条上行消息分派给对应的控制器。"""
        if message.session_id != room.session_id:
            raise ValidationError("session_id 与当前连接的直播不一致")

        match message:
            case JoinMessage(display_name=name, avatar=avatar):
                await self.admission.join(room, caller, name, avatar)
            case LeaveMessage():
                await self.admission.leave(room, caller)
            case ApproveRequestMessage(participant_id=pid):
                await self.admission.approve(room, caller, pid)
            case DenyRequestMessage(participant_id=pid):
                await self.admission.deny(room, caller, pid)
            case KickParticipantMessage(participant_id=pid):
                await self.admission.kick(room, caller, pid)
            case OfferMessage() | AnswerMessage() | IceCandidateMessage():
                await self.relay.relay(
                    room, caller, message.type, message.target_endpoint, message.payload,
                )
            case ToggleVideoMessage(enabled=enabled):
                await self.admission.set_media_state(room, caller, "is_video_on", enabled)
            case ToggleAudioMessage(enabled=enabled):
                await self.admission.set_media_state(room, caller, "is_audio_on", enabled)
            case ScreenShareStartMessage():
                await self.admission.set_media_state(room, caller, "is_screen_sharing", True)
            case ScreenShareStopMessage():
                await self.admission.set_media_state(room, caller, "is_screen_sharing", False)
            case RaiseHandMessage(raised=raised):
                await self.admission.set_media_state(room, caller, "hand_raised", raised)
            case ChatSendMessage(text=text):
                await self.chat.send(room, caller, text)
            case _:
                raise ValidationError(f"不支持的消息类型: {type(message).__name__}")

    async def handle_disconnect(self, room: LiveRoom, caller: Caller) -> None:
        await self.admission.disconnect(room, caller)

    # ── 生命周期推送 ──────────────────────────────────────────────────

    async def announce(self, session_id: str, event: ServerEvent) -> None:
        """向直播间的全部连接（含未入场的）推送事件；没有直播间时什么也不做。"""
        room = self._rooms.get(session_id)
        if room is None:
            return
        await room.run(room.broadcaster.broadcast, event)
        await self.release_room(session_id)

    async def shutdown_room(self, session_id: str, event: ServerEvent, closed_at: datetime) -> None:
        """直播结束：关闭花名册中的在线条目，推送事件后清空在线名单与等候室。

        有直播间时在其 worker 中执行，与入场等操作串行；没有直播间时直接写库。
        """
        room = self._rooms.get(session_id)
        if room is None:
            await self.sessions.close_attendance(session_id, closed_at)
            return
        await room.run(self._teardown, room, event, closed_at)
        await self.release_room(session_id)

    async def _teardown(self, room: LiveRoom, event: ServerEvent, closed_at: datetime) -> None:
        await self.sessions.close_attendance(room.session_id, closed_at)
        await room.broadcaster.broadcast(event)
        room.reset()

    # ── 启停 ──────────────────────────────────────────────────────────

    async def reconcile(self) -> int:
        """进程启动时关闭上次运行遗留的在线条目，客户端需要重新 join。"""
        closed = await self.sessions.close_dangling_attendance(utcnow())
        logger.info("遗留在线状态已清理 | sessions=%d", closed)
        return closed

    async def shutdown(self) -> None:
        for room in list(self._rooms.values()):
            await room.close()
        self._rooms.clear()
        logger.info("直播系统已关闭")
