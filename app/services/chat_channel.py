"""
app.services.chat_channel
~~~~~~~~~~~~~~~~~~~~~~~~~

直播间聊天：消息先写入直播文档（只保留最近 N 条），再广播给其他在场参与者。
"""
from __future__ import annotations

from app.core.exceptions import NotFoundError
from app.core.logging import get_logger
from app.db.session_repository import SessionRepository
from app.schemas.live_session import ChatMessage
from app.schemas.signaling import ServerEvent
from app.services.live_room import Caller, LiveRoom

logger = get_logger(__name__)


class ChatChannel:
    """直播间聊天频道。

    Args:
        repo: 直播持久化。
        history_limit: 每场直播最多保留的聊天条数。
    """

    def __init__(self, repo: SessionRepository, history_limit: int = 500) -> None:
        self.repo = repo
        self.history_limit = history_limit

    async def send(self, room: LiveRoom, caller: Caller, text: str) -> ChatMessage:
        """发送一条聊天消息，发送者自己不会收到回显。

        Raises:
            PermissionDeniedError: 发送者尚未入场。
            NotFoundError: 直播已被删除。
        """
        sender = room.admitted(caller)
        message = ChatMessage(
            user_id=sender.user_id,
            user_name=sender.display_name,
            message=text,
        )
        if not await self.repo.append_message(room.session_id, message, self.history_limit):
            raise NotFoundError("直播不存在")

        await room.broadcaster.broadcast(
            ServerEvent.of(
                "session:chat-message",
                session_id=room.session_id,
                **message.model_dump(mode="json"),
            ),
            room.presence.endpoints(exclude=sender.endpoint_id),
        )
        logger.debug("聊天消息 | session=%s | user=%s | len=%d", room.session_id, sender.user_id, len(text))
        return message
