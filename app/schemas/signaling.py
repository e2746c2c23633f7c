"""
app.schemas.signaling
~~~~~~~~~~~~~~~~~~~~~

直播间 WebSocket 消息协议。

客户端上行消息是一个以 ``type`` 字段区分的联合类型，每种消息都有固定且经过校验的字段，
由 ``LiveSystem.dispatch`` 通过模式匹配逐一分派；服务端下行统一为 ``ServerEvent``::

    {"event": "session:participant-joined", "data": {...}}
"""
from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, StrictBool, TypeAdapter
from pydantic import ValidationError as PydanticValidationError

from app.core.exceptions import ValidationError


class _ClientMessage(BaseModel):
    session_id: str = Field(..., min_length=1, description="直播 ID，必须与连接路径一致")


# ── 入场控制 ──────────────────────────────────────────────────────────


class JoinMessage(_ClientMessage):
    type: Literal["join"]
    display_name: str = Field(..., min_length=1, max_length=100)
    avatar: str | None = None


class LeaveMessage(_ClientMessage):
    type: Literal["leave"]


class ApproveRequestMessage(_ClientMessage):
    type: Literal["approve-request"]
    participant_id: str = Field(..., min_length=1)


class DenyRequestMessage(_ClientMessage):
    type: Literal["deny-request"]
    participant_id: str = Field(..., min_length=1)


class KickParticipantMessage(_ClientMessage):
    type: Literal["kick-participant"]
    participant_id: str = Field(..., min_length=1)


# ── 信令中继 ──────────────────────────────────────────────────────────


class _RelayMessage(_ClientMessage):
    target_endpoint: str = Field(..., min_length=1, description="目标连接 ID")
    payload: Any = Field(..., description="原样转发，不做任何解析")


class OfferMessage(_RelayMessage):
    type: Literal["offer"]


class AnswerMessage(_RelayMessage):
    type: Literal["answer"]


class IceCandidateMessage(_RelayMessage):
    type: Literal["ice-candidate"]


# ── 媒体状态 ──────────────────────────────────────────────────────────


class ToggleVideoMessage(_ClientMessage):
    type: Literal["toggle-video"]
    enabled: StrictBool


class ToggleAudioMessage(_ClientMessage):
    type: Literal["toggle-audio"]
    enabled: StrictBool


class ScreenShareStartMessage(_ClientMessage):
    type: Literal["screen-share-start"]


class ScreenShareStopMessage(_ClientMessage):
    type: Literal["screen-share-stop"]


class RaiseHandMessage(_ClientMessage):
    type: Literal["raise-hand"]
    raised: StrictBool


# ── 聊天 ──────────────────────────────────────────────────────────────


class ChatSendMessage(_ClientMessage):
    type: Literal["chat-message"]
    text: str = Field(..., min_length=1, max_length=1000)


RelayMessage = Union[OfferMessage, AnswerMessage, IceCandidateMessage]

ClientMessage = Annotated[
    Union[
        JoinMessage,
        LeaveMessage,
        ApproveRequestMessage,
        DenyRequestMessage,
        KickParticipantMessage,
        OfferMessage,
        AnswerMessage,
        IceCandidateMessage,
        ToggleVideoMessage,
        ToggleAudioMessage,
        ScreenShareStartMessage,
        ScreenShareStopMessage,
        RaiseHandMessage,
        ChatSendMessage,
    ],
    Field(discriminator="type"),
]

_client_message_adapter: TypeAdapter[ClientMessage] = TypeAdapter(ClientMessage)


def parse_client_message(raw: str | bytes) -> ClientMessage:
    """解析一帧上行 JSON。

    Raises:
        ValidationError: JSON 不合法、``type`` 未知或字段校验失败。
    """
    try:
        return _client_message_adapter.validate_json(raw)
    except PydanticValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or '<root>'}: {err['msg']}"
            for err in e.errors()
        )
        raise ValidationError(f"消息格式不合法: {details}") from e


class ServerEvent(BaseModel):
    """服务端下行事件。"""

    event: str = Field(..., description="事件名，统一以 ``session:`` 开头")
    data: dict[str, Any] = Field(default_factory=dict, description="事件数据")

    @classmethod
    def of(cls, event: str, **data: Any) -> ServerEvent:
        return cls(event=event, data=data)

    def to_text(self) -> str:
        return self.model_dump_json()
