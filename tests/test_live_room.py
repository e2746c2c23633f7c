"""
tests.test_live_room
~~~~~~~~~~~~~~~~~~~~

在线名单、连接广播器与直播间串行 worker 的单元测试。
"""
from __future__ import annotations

import asyncio

import pytest

from app.core.exceptions import NotFoundError, PermissionDeniedError
from app.schemas.signaling import ServerEvent
from app.services.live_room import Caller, LiveRoom
from app.services.presence import Occupant, PresenceRegistry
from app.services.room_broadcaster import RoomBroadcaster
from conftest import FakeWebSocket


def occupant(user_id: str, endpoint_id: str | None = None) -> Occupant:
    return Occupant(user_id=user_id, display_name=user_id.upper(), endpoint_id=endpoint_id or f"ep-{user_id}")


# ── PresenceRegistry ─────────────────────────────────────────────────

class TestPresenceRegistry:

    def test_add_and_lookup(self) -> None:
        registry = PresenceRegistry()
        assert registry.add(occupant("a")) is None
        registry.add(occupant("b"))

        assert "a" in registry
        assert registry.count == 2
        assert registry.find_by_endpoint("ep-b").user_id == "b"
        assert registry.find_by_endpoint("ep-x") is None

    def test_add_same_user_replaces_entry(self) -> None:
        """同一用户重连时只保留一条记录。"""
        registry = PresenceRegistry()
        registry.add(occupant("a", "ep-old"))
        previous = registry.add(occupant("a", "ep-new"))

        assert previous.endpoint_id == "ep-old"
        assert registry.count == 1
        assert registry.get("a").endpoint_id == "ep-new"

    def test_remove_with_stale_endpoint_is_ignored(self) -> None:
        """旧连接的迟到断开不能把重连后的参与者移出名单。"""
        registry = PresenceRegistry()
        registry.add(occupant("a", "ep-new"))

        assert registry.remove("a", "ep-old") is None
        assert "a" in registry
        assert registry.remove("a", "ep-new").user_id == "a"
        assert "a" not in registry

    def test_snapshot_returns_copies(self) -> None:
        registry = PresenceRegistry()
        registry.add(occupant("a"))
        registry.add(occupant("b"))

        snapshot = registry.snapshot(exclude_user="a")
        assert [o.user_id for o in snapshot] == ["b"]

        snapshot[0].hand_raised = True
        assert registry.get("b").hand_raised is False

    def test_endpoints_exclude(self) -> None:
        registry = PresenceRegistry()
        registry.add(occupant("a"))
        registry.add(occupant("b"))
        assert registry.endpoints(exclude="ep-a") == ["ep-b"]


# ── RoomBroadcaster ──────────────────────────────────────────────────

class TestRoomBroadcaster:

    @pytest.mark.asyncio
    async def test_broadcast_to_selected_endpoints(self) -> None:
        broadcaster = RoomBroadcaster()
        sockets = {eid: FakeWebSocket() for eid in ("e1", "e2", "e3")}
        for eid, ws in sockets.items():
            broadcaster.connect(eid, ws)

        await broadcaster.broadcast(ServerEvent.of("session:ping", n=1), ["e1", "e2"], exclude="e1")

        assert sockets["e1"].sent == []
        assert sockets["e2"].sent == [{"event": "session:ping", "data": {"n": 1}}]
        assert sockets["e3"].sent == []

    @pytest.mark.asyncio
    async def test_failed_send_drops_connection(self) -> None:
        broadcaster = RoomBroadcaster()
        broadcaster.connect("ok", FakeWebSocket())
        broadcaster.connect("dead", FakeWebSocket(fail=True))

        await broadcaster.broadcast(ServerEvent.of("session:ping"))

        assert broadcaster.is_connected("ok")
        assert not broadcaster.is_connected("dead")
        assert await broadcaster.send("dead", ServerEvent.of("session:ping")) is False

    @pytest.mark.asyncio
    async def test_close_removes_and_closes(self) -> None:
        broadcaster = RoomBroadcaster()
        ws = FakeWebSocket()
        broadcaster.connect("e1", ws)

        await broadcaster.close("e1", code=4003, reason="kicked")

        assert ws.closed == (4003, "kicked")
        assert broadcaster.online_count == 0


# ── LiveRoom ──────────────────────────────────────────────────────────

class TestLiveRoom:

    @pytest.mark.asyncio
    async def test_run_executes_commands_one_at_a_time(self) -> None:
        """并发投递的操作按到达顺序逐个执行，不会交错。"""
        room = LiveRoom("s1")
        trace: list[str] = []

        async def op(name: str) -> str:
            trace.append(f"{name}:start")
            await asyncio.sleep(0.01)
            trace.append(f"{name}:end")
            return name

        results = await asyncio.gather(room.run(op, "a"), room.run(op, "b"), room.run(op, "c"))

        assert results == ["a", "b", "c"]
        assert trace == ["a:start", "a:end", "b:start", "b:end", "c:start", "c:end"]
        await room.close()

    @pytest.mark.asyncio
    async def test_run_propagates_errors_and_keeps_worker_alive(self) -> None:
        room = LiveRoom("s1")

        async def boom() -> None:
            raise NotFoundError("gone")

        async def fine() -> int:
            return 42

        with pytest.raises(NotFoundError):
            await room.run(boom)
        assert await room.run(fine) == 42
        await room.close()

    @pytest.mark.asyncio
    async def test_close_cancels_queued_commands(self) -> None:
        room = LiveRoom("s1")
        gate = asyncio.Event()

        async def blocked() -> None:
            await gate.wait()

        async def queued() -> str:
            return "never"

        running = asyncio.create_task(room.run(blocked))
        waiting = asyncio.create_task(room.run(queued))
        await asyncio.sleep(0)
        await asyncio.sleep(0)
        assert room.is_busy

        await room.close()

        for task in (running, waiting):
            with pytest.raises(asyncio.CancelledError):
                await asyncio.wait_for(task, 1)
        assert not room.is_busy

    def test_admitted_requires_matching_endpoint(self) -> None:
        room = LiveRoom("s1")
        room.presence.add(occupant("a", "ep-1"))

        assert room.admitted(Caller(user_id="a", endpoint_id="ep-1")).user_id == "a"
        with pytest.raises(PermissionDeniedError):
            room.admitted(Caller(user_id="a", endpoint_id="ep-2"))
        with pytest.raises(PermissionDeniedError):
            room.admitted(Caller(user_id="b", endpoint_id="ep-1"))

    def test_info_and_idle(self) -> None:
        room = LiveRoom("s1")
        assert room.is_idle

        room.broadcaster.connect("ep-a", FakeWebSocket())
        room.presence.add(occupant("a"))
        info = room.info()

        assert not room.is_idle
        assert (info.online_count, info.waiting_count, info.connection_count) == (1, 0, 1)

        room.reset()
        assert room.online_count == 0
