"""
app.services.room_broadcaster
~~~~~~~~~~~~~~~~~~~~~~~~~~~~~

WebSocket 连接广播器 —— 维护某个直播间的全部连接，并提供点对点发送与广播能力。

连接一建立就登记在这里（无论是否已入场），以 endpoint id 为键；
谁能收到广播由调用方给出的 endpoint 列表决定（通常是在线名单）。
"""
from __future__ import annotations

import asyncio
from collections.abc import Iterable

from fastapi import WebSocket

from app.core.logging import get_logger
from app.schemas.signaling import ServerEvent

logger = get_logger(__name__)


class RoomBroadcaster:
    """WebSocket 连接广播器。

    Attributes:
        connections: endpoint id → WebSocket。
    """

    def __init__(self) -> None:
        self.connections: dict[str, WebSocket] = {}

    def connect(self, endpoint_id: str, websocket: WebSocket) -> None:
        """登记一个已经 accept 的连接。"""
        self.connections[endpoint_id] = websocket

    def disconnect(self, endpoint_id: str) -> None:
        """移除断开的连接。"""
        self.connections.pop(endpoint_id, None)

    def is_connected(self, endpoint_id: str) -> bool:
        return endpoint_id in self.connections

    async def send(self, endpoint_id: str, event: ServerEvent) -> bool:
        """向单个连接发送事件。

        Returns:
            是否发送成功。目标不存在或发送失败时返回 False，不抛异常。
        """
        websocket = self.connections.get(endpoint_id)
        if websocket is None:
            return False
        try:
            await websocket.send_text(event.to_text())
        except Exception as e:
            logger.warning("发送失败，移除断开的连接 | endpoint=%s | %s", endpoint_id, e)
            self.connections.pop(endpoint_id, None)
            return False
        return True

    async def broadcast(
        self,
        event: ServerEvent,
        endpoint_ids: Iterable[str] | None = None,
        exclude: str | None = None,
    ) -> None:
        """向一组连接广播事件。

        Args:
            event: 下行事件。
            endpoint_ids: 接收方；为 None 时发给本房间全部连接。
            exclude: 不发送的连接（通常是事件发起者自己）。
        """
        targets = list(self.connections) if endpoint_ids is None else list(endpoint_ids)
        pairs = [
            (eid, self.connections[eid])
            for eid in targets
            if eid != exclude and eid in self.connections
        ]
        if not pairs:
            return
        text = event.to_text()
        results = await asyncio.gather(
            *(ws.send_text(text) for _, ws in pairs), return_exceptions=True,
        )
        for (eid, _), result in zip(pairs, results):
            if isinstance(result, Exception):
                logger.warning("广播失败，移除断开的连接 | endpoint=%s", eid)
                self.connections.pop(eid, None)

    async def close(self, endpoint_id: str, code: int = 1000, reason: str = "") -> None:
        """由服务端主动关闭某个连接。"""
        websocket = self.connections.pop(endpoint_id, None)
        if websocket is None:
            return
        try:
            await websocket.close(code=code, reason=reason)
        except Exception as e:
            logger.debug("关闭连接时出错（可能已断开） | endpoint=%s | %s", endpoint_id, e)

    @property
    def online_count(self) -> int:
        """当前连接数（含未入场的连接）。"""
        return len(self.connections)
