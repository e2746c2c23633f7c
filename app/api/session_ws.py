"""
app.api.session_ws
~~~~~~~~~~~~~~~~~~

WebSocket 直播间接口 —— 入场控制、WebRTC 信令、媒体状态与聊天。

提供 ``/ws/sessions/{session_id}?user_id=...&role=...`` 端点。每条连接由服务端分配一个
endpoint id（信令中继的寻址单位），上行消息解析后投递到所属直播间的串行 worker 执行。

业务异常转换为 ``session:error`` 事件发回本连接，连接保持打开；
连接断开时按隐式离场处理。
"""
from __future__ import annotations

import uuid

from fastapi import APIRouter, WebSocket, WebSocketDisconnect, status
from pydantic import ValidationError as PydanticValidationError

from app.core.config import settings
from app.core.exceptions import LiveSessionError
from app.core.logging import get_logger, request_id_ctx_var
from app.core.rate_limit import WebSocketRateLimiter
from app.schemas.signaling import ChatSendMessage, ServerEvent, parse_client_message
from app.services.live_room import Caller
from app.services.live_system import LiveSystem

logger = get_logger(__name__)

router: APIRouter = APIRouter()

# 聊天消息限流，按 endpoint id 计
ws_limiter = WebSocketRateLimiter(interval_seconds=settings.WS_RATE_LIMIT_INTERVAL)


@router.websocket("/ws/sessions/{session_id}")
async def session_websocket(
    websocket: WebSocket,
    session_id: str,
    user_id: str | None = None,
    role: str = "student",
) -> None:
    """直播间 WebSocket 端点。

    上行消息为 JSON，以 ``type`` 区分（join / leave / approve-request / offer / chat-message 等）；
    下行统一为 ``{"event": "session:...", "data": {...}}``。

    Args:
        websocket: FastAPI WebSocket 连接对象。
        session_id: 直播 ID。
        user_id: 调用方 ID（由上游网关注入）。
        role: 调用方角色。
    """
    endpoint_id = uuid.uuid4().hex
    token = request_id_ctx_var.set(f"ws-{endpoint_id[:8]}")

    try:
        try:
            caller = Caller(user_id=user_id or "", role=role, endpoint_id=endpoint_id)
        except PydanticValidationError:
            logger.warning("拒绝连接：缺少调用方身份 | session=%s", session_id)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        system: LiveSystem = websocket.app.state.live_system
        if await system.sessions.get(session_id) is None:
            logger.warning("拒绝连接：直播不存在 | session=%s", session_id)
            await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
            return

        await websocket.accept()
        # 取房间与登记之间不能有 await
        room = system.get_room(session_id)
        room.broadcaster.connect(endpoint_id, websocket)
        logger.info(
            "连接建立 | session=%s | user=%s | 连接数: %d",
            session_id, caller.user_id, room.broadcaster.online_count,
        )
        await room.broadcaster.send(endpoint_id, ServerEvent.of(
            "session:connected", session_id=session_id, endpoint_id=endpoint_id,
        ))

        try:
            while True:
                raw = await websocket.receive_text()
                try:
                    message = parse_client_message(raw)
                    if isinstance(message, ChatSendMessage) and not ws_limiter.is_allowed(endpoint_id):
                        await room.broadcaster.send(endpoint_id, ServerEvent.of(
                            "session:error",
                            error="RateLimited",
                            message="发送消息太快了，请稍后再试",
                        ))
                        continue
                    await room.run(system.dispatch, room, caller, message)
                except LiveSessionError as e:
                    logger.info(
                        "操作被拒绝 | session=%s | user=%s | %s: %s",
                        session_id, caller.user_id, e.error, e.message,
                    )
                    await room.broadcaster.send(endpoint_id, ServerEvent.of("session:error", **e.payload()))
        except WebSocketDisconnect:
            pass
        except Exception as e:
            logger.error("WebSocket 处理异常: %s | session=%s", e, session_id, exc_info=True)
        finally:
            try:
                await room.run(system.handle_disconnect, room, caller)
            except Exception as e:
                logger.error("断线清理失败: %s | session=%s | user=%s", e, session_id, caller.user_id)
            room.broadcaster.disconnect(endpoint_id)
            ws_limiter.remove_client(endpoint_id)
            logger.info(
                "连接断开 | session=%s | user=%s | 连接数: %d",
                session_id, caller.user_id, room.broadcaster.online_count,
            )
            await system.release_room(session_id)
    finally:
        request_id_ctx_var.reset(token)
