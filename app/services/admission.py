"""
app.services.admission
~~~~~~~~~~~~~~~~~~~~~~

入场控制 —— 等候室、主持人审批、踢人、离场与媒体开关。

所有方法都只在所属 ``LiveRoom`` 的串行 worker 里执行，因此可以放心地读写房间内存态。
每个会改变状态的操作都先写库，写库成功后再更新内存并广播；写库失败时异常直接抛出，
不会有任何参与者看到未持久化的变化。

入场规则：

- 主持人（以及已在名单中的参与者重连）直接入场；
- 其他人进入等候室，由主持人批准或拒绝；
- 在线人数达到上限时立即拒绝，不排队。
"""
from __future__ import annotations

from app.core.exceptions import (
    CapacityError,
    InvalidStateError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from app.core.logging import get_logger
from app.db.session_repository import SessionRepository
from app.schemas.live_session import (
    LiveSession,
    SessionStatus,
    UserRole,
    WaitingRoomEntry,
    utcnow,
)
from app.schemas.signaling import ServerEvent
from app.services.live_room import Caller, LiveRoom
from app.services.presence import MEDIA_FIELDS, Occupant

logger = get_logger(__name__)

# 媒体开关字段 → (广播事件, 事件中的字段名)
MEDIA_EVENTS: dict[str, tuple[str, str]] = {
    "is_video_on": ("session:participant-video-toggled", "video_enabled"),
    "is_audio_on": ("session:participant-audio-toggled", "audio_enabled"),
    "is_screen_sharing": ("session:participant-screen-sharing", "is_sharing"),
    "hand_raised": ("session:participant-hand-raised", "hand_raised"),
}


class AdmissionController:
    """直播间入场控制器。

    Args:
        repo: 直播持久化。
        max_participants: 单个直播间的在线人数上限。
        chat_replay_limit: 入场时补发的最近聊天条数。
    """

    def __init__(
        self,
        repo: SessionRepository,
        max_participants: int = 50,
        chat_replay_limit: int = 50,
    ) -> None:
        self.repo = repo
        self.max_participants = max_participants
        self.chat_replay_limit = chat_replay_limit

    # ── 内部工具 ──────────────────────────────────────────────────────

    async def _load(self, room: LiveRoom) -> LiveSession:
        session = await self.repo.get(room.session_id)
        if session is None:
            raise NotFoundError("直播不存在")
        return session

    async def _load_live(self, room: LiveRoom) -> LiveSession:
        session = await self._load(room)
        if session.status is not SessionStatus.LIVE:
            raise InvalidStateError(
                f"直播未在进行中（当前状态: {session.status.value}）", session.status.value,
            )
        return session

    def _check_capacity(self, room: LiveRoom) -> None:
        if room.presence.count >= self.max_participants:
            raise CapacityError(self.max_participants)

    @staticmethod
    def _require_host(session: LiveSession, caller: Caller) -> None:
        if not session.is_host(caller.user_id):
            raise PermissionDeniedError("只有主持人可以执行该操作")

    def _seat(
        self,
        room: LiveRoom,
        session: LiveSession,
        user_id: str,
        display_name: str,
        endpoint_id: str,
        role: UserRole,
    ) -> Occupant:
        """把参与者放进在线名单，媒体开关沿用花名册中上次的状态。"""
        existing = session.participant(user_id)
        media = {name: getattr(existing, name) for name in MEDIA_FIELDS} if existing else {}
        occupant = Occupant(
            user_id=user_id,
            display_name=display_name,
            endpoint_id=endpoint_id,
            role=role,
            is_host=session.is_host(user_id),
            **media,
        )
        previous = room.presence.add(occupant)
        if previous is not None and previous.endpoint_id != endpoint_id:
            logger.info(
                "参与者重连 | session=%s | user=%s | %s → %s",
                room.session_id, user_id, previous.endpoint_id, endpoint_id,
            )
        return occupant

    async def _announce_entry(
        self, room: LiveRoom, session: LiveSession, occupant: Occupant,
    ) -> None:
        """通知新入场者当前名单与最近聊天，并告知其他人有人入场。"""
        participants = [o.public() for o in room.presence.snapshot(exclude_user=occupant.user_id)]
        await room.broadcaster.send(occupant.endpoint_id, ServerEvent.of(
            "session:joined",
            session_id=room.session_id,
            user_id=occupant.user_id,
            endpoint_id=occupant.endpoint_id,
            participants=participants,
        ))
        history = session.recent_messages(self.chat_replay_limit)
        if history:
            await room.broadcaster.send(occupant.endpoint_id, ServerEvent.of(
                "session:chat-history",
                session_id=room.session_id,
                messages=[m.model_dump(mode="json") for m in history],
            ))
        if occupant.is_host:
            # 主持人晚到或重连时补发仍在等候的申请
            for entry in list(room.waiting.values()):
                await room.broadcaster.send(occupant.endpoint_id, ServerEvent.of(
                    "session:join-request", session_id=room.session_id, **entry.model_dump(mode="json"),
                ))
        await room.broadcaster.broadcast(
            ServerEvent.of("session:participant-joined", session_id=room.session_id, **occupant.public()),
            room.presence.endpoints(exclude=occupant.endpoint_id),
        )

    # ── 入场 ──────────────────────────────────────────────────────────

    async def join(
        self,
        room: LiveRoom,
        caller: Caller,
        display_name: str,
        avatar: str | None = None,
    ) -> str:
        """请求入场。

        Returns:
            ``"active"``（直接入场）或 ``"waiting"``（进入等候室）。

        Raises:
            NotFoundError: 直播不存在。
            InvalidStateError: 直播不在进行中。
            CapacityError: 在线人数已满。
        """
        caller.display_name = display_name
        caller.avatar = avatar
        session = await self._load_live(room)
        self._check_capacity(room)

        if session.is_host(caller.user_id) or caller.user_id in room.presence:
            await self.repo.upsert_participant(
                room.session_id, caller.user_id, caller.endpoint_id, utcnow(),
            )
            occupant = self._seat(
                room, session, caller.user_id, display_name, caller.endpoint_id, caller.role,
            )
            await self._announce_entry(room, session, occupant)
            logger.info("直接入场 | session=%s | user=%s", room.session_id, caller.user_id)
            return "active"

        entry = WaitingRoomEntry(
            user_id=caller.user_id,
            display_name=display_name,
            endpoint_id=caller.endpoint_id,
            avatar=avatar,
            role=caller.role,
        )
        await self.repo.save_waiting(room.session_id, entry)
        room.waiting[caller.user_id] = entry

        await room.broadcaster.broadcast(
            ServerEvent.of("session:join-request", session_id=room.session_id, **entry.model_dump(mode="json")),
            room.presence.endpoints(),
        )
        await room.broadcaster.send(caller.endpoint_id, ServerEvent.of(
            "session:waiting", session_id=room.session_id, message="等待主持人批准入场",
        ))
        logger.info("进入等候室 | session=%s | user=%s", room.session_id, caller.user_id)
        return "waiting"

    async def approve(self, room: LiveRoom, caller: Caller, participant_id: str) -> Occupant:
        """主持人批准等候室中的申请。"""
        session = await self._load_live(room)
        self._require_host(session, caller)
        entry = room.waiting.get(participant_id)
        if entry is None:
            raise NotFoundError("该用户不在等候室中")
        self._check_capacity(room)

        await self.repo.upsert_participant(
            room.session_id, entry.user_id, entry.endpoint_id, utcnow(),
        )
        await self.repo.remove_waiting(room.session_id, participant_id)
        room.waiting.pop(participant_id, None)

        occupant = self._seat(
            room, session, entry.user_id, entry.display_name, entry.endpoint_id, entry.role,
        )
        await self._announce_entry(room, session, occupant)
        logger.info("批准入场 | session=%s | user=%s", room.session_id, participant_id)
        return occupant

    async def deny(self, room: LiveRoom, caller: Caller, participant_id: str) -> None:
        """主持人拒绝等候室中的申请。被拒绝者可以重新申请。"""
        session = await self._load(room)
        self._require_host(session, caller)
        entry = room.waiting.get(participant_id)
        if entry is None:
            raise NotFoundError("该用户不在等候室中")

        await self.repo.remove_waiting(room.session_id, participant_id)
        room.waiting.pop(participant_id, None)

        await room.broadcaster.send(entry.endpoint_id, ServerEvent.of(
            "session:denied", session_id=room.session_id, message="主持人拒绝了你的入场申请",
        ))
        logger.info("拒绝入场 | session=%s | user=%s", room.session_id, participant_id)

    async def kick(self, room: LiveRoom, caller: Caller, participant_id: str) -> None:
        """主持人把参与者移出直播间，并关闭其连接。"""
        session = await self._load(room)
        self._require_host(session, caller)
        if participant_id == caller.user_id:
            raise ValidationError("主持人不能把自己移出直播间")
        occupant = room.presence.get(participant_id)
        if occupant is None:
            raise NotFoundError("该用户不在直播间中")

        await self.repo.mark_participant_left(
            room.session_id, participant_id, occupant.endpoint_id, utcnow(),
        )
        room.presence.remove(participant_id)

        await room.broadcaster.send(occupant.endpoint_id, ServerEvent.of(
            "session:kicked", session_id=room.session_id, by=caller.user_id,
        ))
        await room.broadcaster.broadcast(
            ServerEvent.of(
                "session:participant-left",
                session_id=room.session_id,
                user_id=occupant.user_id,
                display_name=occupant.display_name,
                endpoint_id=occupant.endpoint_id,
                reason="kicked",
            ),
            room.presence.endpoints(),
        )
        await room.broadcaster.close(occupant.endpoint_id, code=4003, reason="kicked")
        logger.info("移出直播间 | session=%s | user=%s", room.session_id, participant_id)

    # ── 离场 ──────────────────────────────────────────────────────────

    async def leave(self, room: LiveRoom, caller: Caller) -> bool:
        """主动离场（或撤回等候室申请）。"""
        released = await self._release(room, caller, reason="left")
        await room.broadcaster.send(caller.endpoint_id, ServerEvent.of(
            "session:left", session_id=room.session_id,
        ))
        return released

    async def disconnect(self, room: LiveRoom, caller: Caller) -> bool:
        """连接断开时的清理，等同于隐式离场。"""
        return await self._release(room, caller, reason="disconnected")

    async def _release(self, room: LiveRoom, caller: Caller, reason: str) -> bool:
        # 只处理本连接的记录，旧连接的迟到断开不影响已重连的参与者
        occupant = room.presence.get(caller.user_id)
        if occupant is not None and occupant.endpoint_id == caller.endpoint_id:
            await self.repo.mark_participant_left(
                room.session_id, caller.user_id, caller.endpoint_id, utcnow(),
            )
            room.presence.remove(caller.user_id, caller.endpoint_id)
            await room.broadcaster.broadcast(
                ServerEvent.of(
                    "session:participant-left",
                    session_id=room.session_id,
                    user_id=occupant.user_id,
                    display_name=occupant.display_name,
                    endpoint_id=occupant.endpoint_id,
                    reason=reason,
                ),
                room.presence.endpoints(),
            )
            logger.info("离场 | session=%s | user=%s | reason=%s", room.session_id, caller.user_id, reason)
            return True

        entry = room.waiting.get(caller.user_id)
        if entry is not None and entry.endpoint_id == caller.endpoint_id:
            await self.repo.remove_waiting(room.session_id, caller.user_id)
            room.waiting.pop(caller.user_id, None)
            await room.broadcaster.broadcast(
                ServerEvent.of(
                    "session:join-request-cancelled",
                    session_id=room.session_id,
                    user_id=caller.user_id,
                ),
                room.presence.endpoints(),
            )
            logger.info("撤回入场申请 | session=%s | user=%s", room.session_id, caller.user_id)
            return True

        return False

    # ── 媒体开关 ──────────────────────────────────────────────────────

    async def set_media_state(
        self, room: LiveRoom, caller: Caller, field: str, value: bool,
    ) -> None:
        """修改自己的一个媒体开关，并通知其他参与者。只能改自己的。"""
        event_name, key = MEDIA_EVENTS[field]
        occupant = room.admitted(caller)

        await self.repo.update_participant_state(room.session_id, caller.user_id, {field: value})
        setattr(occupant, field, value)

        await room.broadcaster.broadcast(
            ServerEvent.of(
                event_name,
                session_id=room.session_id,
                user_id=occupant.user_id,
                user_name=occupant.display_name,
                endpoint_id=occupant.endpoint_id,
                **{key: value},
            ),
            room.presence.endpoints(exclude=occupant.endpoint_id),
        )
