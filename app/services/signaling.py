"""
app.services.signaling
~~~~~~~~~~~~~~~~~~~~~~

WebRTC 信令中继：offer / answer / ICE candidate 点对点转发，负载原样透传。

目标连接不在线时静默丢弃（对方可能刚刚离开），不向发送方报错。
"""
from __future__ import annotations

from typing import Any

from app.core.logging import get_logger
from app.schemas.signaling import ServerEvent
from app.services.live_room import Caller, LiveRoom

logger = get_logger(__name__)

# 消息类型 → 下行事件中承载负载的字段名
_PAYLOAD_KEYS: dict[str, str] = {
    "offer": "offer",
    "answer": "answer",
    "ice-candidate": "candidate",
}


class SignalingRelay:
    """信令中继。"""

    async def relay(
        self,
        room: LiveRoom,
        caller: Caller,
        kind: str,
        target_endpoint: str,
        payload: Any,
    ) -> bool:
        """把一条信令转发给目标连接。

        Returns:
            是否已送达目标连接。

        Raises:
            PermissionDeniedError: 发送方尚未入场。
        """
        sender = room.admitted(caller)
        target = room.presence.find_by_endpoint(target_endpoint)
        if target is None:
            logger.debug(
                "信令目标不在线，丢弃 | session=%s | type=%s | target=%s",
                room.session_id, kind, target_endpoint,
            )
            return False

        event = ServerEvent.of(
            f"session:{kind}",
            session_id=room.session_id,
            from_endpoint=sender.endpoint_id,
            from_user_id=sender.user_id,
            from_user_name=sender.display_name,
            **{_PAYLOAD_KEYS[kind]: payload},
        )
        return await room.broadcaster.send(target.endpoint_id, event)

    async def offer(self, room: LiveRoom, caller: Caller, target_endpoint: str, sdp: Any) -> bool:
        return await self.relay(room, caller, "offer", target_endpoint, sdp)

    async def answer(self, room: LiveRoom, caller: Caller, target_endpoint: str, sdp: Any) -> bool:
        return await self.relay(room, caller, "answer", target_endpoint, sdp)

    async def ice_candidate(
        self, room: LiveRoom, caller: Caller, target_endpoint: str, candidate: Any,
    ) -> bool:
        return await self.relay(room, caller, "ice-candidate", target_endpoint, candidate)
