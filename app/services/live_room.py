"""
app.services.live_room
~~~~~~~~~~~~~~~~~~~~~~

直播间运行时实体 —— 一场直播对应一个 ``LiveRoom``。

每个房间持有自己的在线名单（``PresenceRegistry``）、等候室、连接广播器（``RoomBroadcaster``），
以及一个串行 worker：房间内的所有操作（入场、审批、踢人、媒体开关、聊天、信令、断线清理）
都通过 ``run()`` 投递到同一个 FIFO 队列里逐个执行。

同一房间的状态修改因此是串行的，不同房间之间互不阻塞。
"""
from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

from pydantic import BaseModel, Field

from app.core.exceptions import PermissionDeniedError
from app.core.logging import get_logger
from app.schemas.live_session import RoomInfoData, UserRole, WaitingRoomEntry
from app.services.presence import Occupant, PresenceRegistry
from app.services.room_broadcaster import RoomBroadcaster

logger = get_logger(__name__)

T = TypeVar("T")

_Command = tuple[Callable[..., Awaitable[Any]], tuple[Any, ...], "asyncio.Future[Any]"]


class Caller(BaseModel):
    """一条 WebSocket 连接背后的调用方。

    ``display_name`` 与 ``avatar`` 在收到 join 消息后才有值。
    """

    user_id: str = Field(..., min_length=1)
    role: UserRole = "student"
    endpoint_id: str = Field(..., description="本连接的 ID，由服务端生成")
    display_name: str = ""
    avatar: str | None = None


class LiveRoom:
    """一个直播间的内存态。

    Attributes:
        session_id: 直播 ID。
        presence: 在线名单。
        waiting: 等候室（参与者 ID → 申请条目），与持久化的 ``waiting_room`` 保持一致。
        broadcaster: 本房间的全部连接。
    """

    def __init__(self, session_id: str) -> None:
        self.session_id = session_id
        self.presence = PresenceRegistry()
        self.waiting: dict[str, WaitingRoomEntry] = {}
        self.broadcaster = RoomBroadcaster()
        self._queue: asyncio.Queue[_Command] = asyncio.Queue()
        self._worker: asyncio.Task[None] | None = None
        self._running = False

    async def run(self, fn: Callable[..., Awaitable[T]], *args: Any) -> T:
        """把一次房间操作投递给串行 worker，并等待其结果。

        ``fn`` 内部不能再调用同一房间的 ``run()``，否则会自己等待自己。
        """
        if self._worker is None or self._worker.done():
            self._worker = asyncio.create_task(
                self._drain(), name=f"live-room:{self.session_id}",
            )
        future: asyncio.Future[T] = asyncio.get_running_loop().create_future()
        await self._queue.put((fn, args, future))
        return await future

    async def _drain(self) -> None:
        while True:
            fn, args, future = await self._queue.get()
            self._running = True
            try:
                if future.cancelled():
                    continue
                try:
                    result = await fn(*args)
                except asyncio.CancelledError:
                    future.cancel()
                    raise
                except Exception as exc:
                    if not future.done():
                        future.set_exception(exc)
                else:
                    if not future.done():
                        future.set_result(result)
            finally:
                self._running = False
                self._queue.task_done()

    async def close(self) -> None:
        """停止 worker，队列中尚未执行的操作一律取消，等待方不会一直挂起。"""
        if self._worker is not None and not self._worker.done():
            self._worker.cancel()
            try:
                await self._worker
            except asyncio.CancelledError:
                pass
        self._worker = None

        abandoned = 0
        while not self._queue.empty():
            _, _, future = self._queue.get_nowait()
            self._queue.task_done()
            if not future.done():
                future.cancel()
                abandoned += 1
        if abandoned:
            logger.warning("直播间关闭，取消 %d 个未执行的操作 | session=%s", abandoned, self.session_id)

    @property
    def is_busy(self) -> bool:
        """worker 正在执行或仍有排队中的操作。"""
        return self._running or not self._queue.empty()

    def admitted(self, caller: Caller) -> Occupant:
        """返回调用方在名单中的记录；未入场（或连接已被替换）时拒绝。"""
        occupant = self.presence.get(caller.user_id)
        if occupant is None or occupant.endpoint_id != caller.endpoint_id:
            raise PermissionDeniedError("尚未进入直播间")
        return occupant

    def reset(self) -> None:
        """直播结束后清空在线名单与等候室（连接保留，由客户端自行断开）。"""
        self.presence.clear()
        self.waiting.clear()

    @property
    def is_idle(self) -> bool:
        """没有任何连接时房间可以被回收。"""
        return self.broadcaster.online_count == 0

    @property
    def online_count(self) -> int:
        return self.presence.count

    def info(self) -> RoomInfoData:
        """返回房间摘要信息。"""
        return RoomInfoData(
            session_id=self.session_id,
            online_count=self.presence.count,
            waiting_count=len(self.waiting),
            connection_count=self.broadcaster.online_count,
        )
