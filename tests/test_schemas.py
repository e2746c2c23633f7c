"""
tests.test_schemas
~~~~~~~~~~~~~~~~~~

上行消息解析、领域模型与直播通知测试。
"""
from __future__ import annotations

import json
from datetime import timedelta

import pytest

from app.core.exceptions import CapacityError, InvalidStateError, ValidationError
from app.schemas import ApiResponse
from app.schemas.live_session import (
    ChatMessage,
    CourseRef,
    CurrentUser,
    LiveSession,
    RosterEntry,
    SessionDetailData,
    utcnow,
)
from app.schemas.signaling import (
    IceCandidateMessage,
    JoinMessage,
    ServerEvent,
    ToggleAudioMessage,
    parse_client_message,
)
from app.services.notifier import NotificationKind, SessionNotifier


class TestClientMessages:

    def test_discriminated_by_type(self) -> None:
        join = parse_client_message(json.dumps({"session_id": "s1", "type": "join", "display_name": "小明"}))
        assert isinstance(join, JoinMessage)
        assert join.avatar is None

        ice = parse_client_message(json.dumps({
            "session_id": "s1", "type": "ice-candidate",
            "target_endpoint": "ep-2", "payload": {"candidate": "c", "sdpMid": "0"},
        }))
        assert isinstance(ice, IceCandidateMessage)
        assert ice.payload == {"candidate": "c", "sdpMid": "0"}

    @pytest.mark.parametrize("raw", [
        "not json",
        json.dumps({"session_id": "s1", "type": "dance"}),
        json.dumps({"session_id": "s1", "type": "chat-message", "text": ""}),
        json.dumps({"session_id": "s1", "type": "chat-message", "text": "x" * 1001}),
        json.dumps({"session_id": "s1", "type": "offer", "payload": {}}),
        json.dumps({"type": "leave"}),
    ])
    def test_malformed_messages_are_rejected(self, raw: str) -> None:
        with pytest.raises(ValidationError):
            parse_client_message(raw)

    def test_toggles_require_real_booleans(self) -> None:
        ok = parse_client_message(json.dumps({"session_id": "s1", "type": "toggle-audio", "enabled": False}))
        assert isinstance(ok, ToggleAudioMessage) and ok.enabled is False

        with pytest.raises(ValidationError):
            parse_client_message(json.dumps({"session_id": "s1", "type": "toggle-audio", "enabled": "yes"}))

    def test_server_event_shape(self) -> None:
        event = ServerEvent.of("session:left", session_id="s1")
        assert json.loads(event.to_text()) == {"event": "session:left", "data": {"session_id": "s1"}}


class TestModels:

    def test_session_helpers(self) -> None:
        now = utcnow()
        session = LiveSession(
            id="s1", course_id="c1", host_id="t1", title="第一讲", scheduled_at=now,
            participants=[
                RosterEntry(user_id="a", joined_at=now),
                RosterEntry(user_id="b", joined_at=now, left_at=now + timedelta(minutes=5)),
            ],
            messages=[ChatMessage(user_id="a", user_name="A", message=str(i)) for i in range(5)],
        )

        assert session.can_manage(CurrentUser(user_id="t1", role="teacher"))
        assert session.can_manage(CurrentUser(user_id="x", role="admin"))
        assert not session.can_manage(CurrentUser(user_id="a"))
        assert [m.message for m in session.recent_messages(2)] == ["3", "4"]
        assert session.recent_messages(0) == []

        detail = SessionDetailData.from_session(session)
        assert detail.total_participants == 1
        assert [p.user_id for p in detail.active_participants] == ["a"]

    def test_error_payloads(self) -> None:
        response = ApiResponse.from_error(InvalidStateError("不能开始", "ended"))
        assert response.code == 409
        assert response.data == {"error": "InvalidStateError", "message": "不能开始", "status": "ended"}

        capacity = CapacityError(50)
        assert capacity.status_code == 409
        assert capacity.payload()["max_participants"] == 50


class TestNotifier:

    @pytest.mark.asyncio
    async def test_one_notification_per_student(self, notifications, live_session) -> None:
        course = CourseRef(id="course-1", title="分布式系统", teacher_id="t1", enrolled_students=["a", "b"])

        count = await SessionNotifier(notifications).notify(NotificationKind.LIVE, live_session, course)

        assert count == 2
        assert {n["user_id"] for n in notifications.created} == {"a", "b"}
        assert all(n["type"] == "session_live" for n in notifications.created)
        assert "分布式系统" in notifications.created[0]["content"]

    @pytest.mark.asyncio
    async def test_failures_are_swallowed(self, live_session) -> None:
        class BrokenRepo:
            async def create_many(self, notifications):
                raise RuntimeError("mongo down")

        course = CourseRef(id="course-1", teacher_id="t1", enrolled_students=["a"])
        assert await SessionNotifier(BrokenRepo()).notify(NotificationKind.UPDATED, live_session, course) == 0
