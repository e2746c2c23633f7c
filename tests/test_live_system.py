"""
tests.test_live_system
~~~~~~~~~~~~~~~~~~~~~~

LiveSystem 集成测试：消息分派、完整上课流程、容量上限、直播间回收与启动对账。
"""
from __future__ import annotations

import asyncio
import json
from datetime import timedelta

import pytest

from app.core.exceptions import CapacityError, ValidationError
from app.schemas.live_session import (
    CourseRef,
    CreateSessionRequest,
    CurrentUser,
    SessionStatus,
    WaitingRoomEntry,
    utcnow,
)
from app.schemas.signaling import ServerEvent, parse_client_message
from app.services.live_system import LiveSystem
from app.services.notifier import SessionNotifier
from conftest import HOST_ID, FakeCourseRepository, connect

HOST = CurrentUser(user_id=HOST_ID, role="teacher")


def msg(session_id: str, type_: str, **fields):
    return parse_client_message(json.dumps({"session_id": session_id, "type": type_, **fields}))


class TestDispatch:

    @pytest.mark.asyncio
    async def test_session_id_must_match_room(self, system, live_session) -> None:
        room = system.get_room(live_session.id)
        host, _ = connect(room, HOST_ID, "teacher")

        with pytest.raises(ValidationError):
            await room.run(system.dispatch, room, host, msg("other-session", "join", display_name="王老师"))
        await room.close()

    @pytest.mark.asyncio
    async def test_media_messages_are_routed(self, system, live_session, sessions) -> None:
        room = system.get_room(live_session.id)
        host, _ = connect(room, HOST_ID, "teacher")
        sid = live_session.id

        await room.run(system.dispatch, room, host, msg(sid, "join", display_name="王老师"))
        await room.run(system.dispatch, room, host, msg(sid, "toggle-video", enabled=False))
        await room.run(system.dispatch, room, host, msg(sid, "screen-share-start"))
        await room.run(system.dispatch, room, host, msg(sid, "raise-hand", raised=True))

        entry = sessions.docs[sid].participant(HOST_ID)
        assert (entry.is_video_on, entry.is_screen_sharing, entry.hand_raised) == (False, True, True)

        await room.run(system.dispatch, room, host, msg(sid, "screen-share-stop"))
        assert room.presence.get(HOST_ID).is_screen_sharing is False
        await room.close()


class TestClassroomScenario:

    @pytest.mark.asyncio
    async def test_full_session(self, system, sessions) -> None:
        """预约 → 开播 → 学生申请 → 批准 → 信令 → 聊天 → 断线 → 下课。"""
        session = await system.lifecycle.create(HOST, CreateSessionRequest(
            course_id="course-1", title="Intro", scheduled_at=utcnow() + timedelta(days=1),
        ))
        await system.lifecycle.start(session.id, HOST)
        sid = session.id
        room = system.get_room(sid)

        host, host_ws = connect(room, HOST_ID, "teacher")
        student, student_ws = connect(room, "student-1")
        await room.run(system.dispatch, room, host, msg(sid, "join", display_name="王老师"))
        await room.run(system.dispatch, room, student, msg(sid, "join", display_name="小明"))
        assert student_ws.names() == ["session:waiting"]

        await room.run(system.dispatch, room, host, msg(sid, "approve-request", participant_id="student-1"))
        joined = student_ws.events("session:joined")[0]["data"]
        assert [p["user_id"] for p in joined["participants"]] == [HOST_ID]
        assert host_ws.events("session:participant-joined")[0]["data"]["user_id"] == "student-1"

        await room.run(system.dispatch, room, student, msg(
            sid, "offer", target_endpoint=host.endpoint_id, payload={"sdp": "o"},
        ))
        assert host_ws.events("session:offer")[0]["data"]["from_endpoint"] == student.endpoint_id

        await room.run(system.dispatch, room, student, msg(sid, "chat-message", text="老师好"))
        assert host_ws.events("session:chat-message")[0]["data"]["message"] == "老师好"

        await room.run(system.handle_disconnect, room, student)
        room.broadcaster.disconnect(student.endpoint_id)
        assert host_ws.events("session:participant-left")[0]["data"]["user_id"] == "student-1"
        assert sessions.docs[sid].participant("student-1").left_at is not None

        ended = await system.lifecycle.end(sid, HOST)
        assert ended.status is SessionStatus.ENDED
        assert ended.duration == 0
        assert host_ws.names()[-1] == "session:ended"
        assert room.presence.count == 0
        await system.shutdown()

    @pytest.mark.asyncio
    async def test_fifty_first_participant_is_rejected(self, sessions, notifications, live_session) -> None:
        students = [f"s{i}" for i in range(60)]
        courses = FakeCourseRepository([
            CourseRef(id="course-1", teacher_id=HOST_ID, enrolled_students=students),
        ])
        system = LiveSystem(sessions, courses, SessionNotifier(notifications), max_participants=50)
        room = system.get_room(live_session.id)
        host, _ = connect(room, HOST_ID, "teacher")
        await system.admission.join(room, host, "王老师")

        for uid in students[:49]:
            caller, _ = connect(room, uid)
            await system.admission.join(room, caller, uid)
            await system.admission.approve(room, host, uid)
        assert room.presence.count == 50

        late, late_ws = connect(room, students[49])
        with pytest.raises(CapacityError):
            await system.admission.join(room, late, "迟到")
        assert late_ws.sent == []
        await room.close()


class TestRooms:

    @pytest.mark.asyncio
    async def test_release_only_idle_rooms(self, system, live_session) -> None:
        room = system.get_room(live_session.id)
        assert system.get_room(live_session.id) is room
        caller, _ = connect(room, "student-1")

        await system.release_room(live_session.id)
        assert system.peek_room(live_session.id) is room

        room.broadcaster.disconnect(caller.endpoint_id)
        await system.release_room(live_session.id)
        assert system.peek_room(live_session.id) is None
        assert system.list_rooms() == []

    @pytest.mark.asyncio
    async def test_release_waits_for_queued_commands(self, system, live_session) -> None:
        room = system.get_room(live_session.id)

        async def noop() -> str:
            return "done"

        pending = asyncio.create_task(room.run(noop))
        await asyncio.sleep(0)
        await system.release_room(live_session.id)

        assert await asyncio.wait_for(pending, 1) == "done"
        assert system.peek_room(live_session.id) is room
        await system.release_room(live_session.id)
        assert system.peek_room(live_session.id) is None

    @pytest.mark.asyncio
    async def test_announce_releases_idle_room(self, system, live_session) -> None:
        system.get_room(live_session.id)

        await system.announce(live_session.id, ServerEvent.of("session:live"))

        assert system.peek_room(live_session.id) is None

    @pytest.mark.asyncio
    async def test_announce_without_room_is_noop(self, system) -> None:
        await system.announce("nobody-here", ServerEvent.of("session:live"))
        assert system.peek_room("nobody-here") is None

    @pytest.mark.asyncio
    async def test_reconcile_closes_dangling_attendance(self, system, sessions, live_session) -> None:
        await sessions.upsert_participant(live_session.id, "student-1", "ep-old", utcnow())
        await sessions.save_waiting(
            live_session.id,
            WaitingRoomEntry(user_id="student-2", display_name="小红", endpoint_id="ep-x"),
        )

        closed = await system.reconcile()

        assert closed == 1
        doc = sessions.docs[live_session.id]
        assert doc.participant("student-1").left_at is not None
        assert doc.waiting_room == []
