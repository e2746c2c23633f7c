"""
app.api.session_endpoints
~~~~~~~~~~~~~~~~~~~~~~~~~

直播课堂 REST 接口 —— 生命周期管理与查询。

路由前缀 ``/api/sessions``，业务异常由 ``app.main`` 统一转换为 ``ApiResponse``。

端点:
  - ``POST   /sessions``                        → 预约直播
  - ``GET    /sessions/my-sessions``            → 我主持的直播（分页）
  - ``GET    /sessions/my-enrolled-sessions``   → 我选修课程中即将开始 / 进行中的直播
  - ``GET    /sessions/course/{course_id}``     → 某门课程的直播（分页）
  - ``GET    /sessions/{session_id}``           → 直播详情
  - ``GET    /sessions/{session_id}/room``      → 直播间实时摘要
  - ``PUT    /sessions/{session_id}``           → 修改直播
  - ``PUT    /sessions/{session_id}/start``     → 开始直播
  - ``PUT    /sessions/{session_id}/end``       → 结束直播
  - ``PUT    /sessions/{session_id}/cancel``    → 取消直播
  - ``POST   /sessions/{session_id}/join``      → 入场资格检查
  - ``DELETE /sessions/{session_id}``           → 删除直播
"""
from __future__ import annotations

import math
from datetime import datetime

from fastapi import APIRouter, Depends, Query, status

from app.api.deps import get_current_user, get_lifecycle, get_live_system
from app.schemas.api_response import ApiResponse
from app.schemas.live_session import (
    CreateSessionRequest,
    CurrentUser,
    JoinEligibilityData,
    LiveSession,
    PageMeta,
    RoomInfoData,
    SessionData,
    SessionDetailData,
    SessionPageData,
    SessionStatus,
    UpdateSessionRequest,
)
from app.services.lifecycle import SessionLifecycleController
from app.services.live_system import LiveSystem

router: APIRouter = APIRouter(prefix="/sessions")


def _page(sessions: list[LiveSession], total: int, page: int, limit: int) -> SessionPageData:
    return SessionPageData(
        metadata=PageMeta(
            total=total,
            page=page,
            limit=limit,
            total_pages=math.ceil(total / limit) if total else 0,
        ),
        sessions=[SessionData.from_session(s) for s in sessions],
    )


# ── 创建与查询 ────────────────────────────────────────────────────────


@router.post(
    "",
    summary="预约直播",
    status_code=status.HTTP_201_CREATED,
    response_model=ApiResponse[SessionData],
)
async def create_session(
    request: CreateSessionRequest,
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[SessionData]:
    """为自己授课的课程预约一场直播，并通知选课学生。"""
    session = await lifecycle.create(user, request)
    return ApiResponse.ok(data=SessionData.from_session(session), msg="直播已创建", code=201)


@router.get("/my-sessions", summary="我主持的直播", response_model=ApiResponse[SessionPageData])
async def my_sessions(
    page: int = Query(1, ge=1, description="页码"),
    limit: int = Query(10, ge=1, le=100, description="每页条数"),
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[SessionPageData]:
    sessions, total = await lifecycle.list_by_host(user, page=page, limit=limit)
    return ApiResponse.ok(data=_page(sessions, total, page, limit))


@router.get(
    "/my-enrolled-sessions",
    summary="我选修课程中的直播",
    response_model=ApiResponse[list[SessionData]],
)
async def my_enrolled_sessions(
    start: datetime | None = Query(None, description="预约时间下限"),
    end: datetime | None = Query(None, description="预约时间上限"),
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[list[SessionData]]:
    """返回即将开始或正在进行的直播，按预约时间正序（日历视图用）。"""
    sessions = await lifecycle.list_enrolled(user, start=start, end=end)
    return ApiResponse.ok(data=[SessionData.from_session(s) for s in sessions])


@router.get(
    "/course/{course_id}",
    summary="课程的直播列表",
    response_model=ApiResponse[SessionPageData],
)
async def course_sessions(
    course_id: str,
    status_filter: SessionStatus | None = Query(None, alias="status", description="按状态过滤"),
    page: int = Query(1, ge=1, description="页码"),
    limit: int = Query(10, ge=1, le=100, description="每页条数"),
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[SessionPageData]:
    sessions, total = await lifecycle.list_by_course(
        course_id, status_filter, page=page, limit=limit,
    )
    return ApiResponse.ok(data=_page(sessions, total, page, limit))


@router.get("/{session_id}", summary="直播详情", response_model=ApiResponse[SessionDetailData])
async def session_detail(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[SessionDetailData]:
    session = await lifecycle.get_detail(session_id)
    return ApiResponse.ok(data=SessionDetailData.from_session(session))


@router.get("/{session_id}/room", summary="直播间实时摘要", response_model=ApiResponse[RoomInfoData])
async def room_info(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    system: LiveSystem = Depends(get_live_system),
) -> ApiResponse[RoomInfoData]:
    """返回内存中的在线人数、等候人数与连接数；没有直播间时全部为 0。"""
    await system.lifecycle.get_detail(session_id)
    room = system.peek_room(session_id)
    if room is None:
        info = RoomInfoData(session_id=session_id, online_count=0, waiting_count=0, connection_count=0)
    else:
        info = room.info()
    return ApiResponse.ok(data=info)


# ── 生命周期 ──────────────────────────────────────────────────────────


@router.put("/{session_id}", summary="修改直播", response_model=ApiResponse[SessionData])
async def update_session(
    session_id: str,
    request: UpdateSessionRequest,
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[SessionData]:
    session = await lifecycle.update(session_id, user, request)
    return ApiResponse.ok(data=SessionData.from_session(session), msg="直播已修改")


@router.put("/{session_id}/start", summary="开始直播", response_model=ApiResponse[SessionData])
async def start_session(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[SessionData]:
    session = await lifecycle.start(session_id, user)
    return ApiResponse.ok(data=SessionData.from_session(session), msg="直播已开始")


@router.put("/{session_id}/end", summary="结束直播", response_model=ApiResponse[SessionData])
async def end_session(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[SessionData]:
    session = await lifecycle.end(session_id, user)
    return ApiResponse.ok(data=SessionData.from_session(session), msg="直播已结束")


@router.put("/{session_id}/cancel", summary="取消直播", response_model=ApiResponse[SessionData])
async def cancel_session(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[SessionData]:
    session = await lifecycle.cancel(session_id, user)
    return ApiResponse.ok(data=SessionData.from_session(session), msg="直播已取消")


@router.post(
    "/{session_id}/join",
    summary="入场资格检查",
    response_model=ApiResponse[JoinEligibilityData],
)
async def join_session(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[JoinEligibilityData]:
    """只做资格检查，真正入场通过 WebSocket 的 join 消息完成。"""
    data = await lifecycle.join_eligibility(session_id, user)
    return ApiResponse.ok(data=data)


@router.delete("/{session_id}", summary="删除直播", response_model=ApiResponse[None])
async def delete_session(
    session_id: str,
    user: CurrentUser = Depends(get_current_user),
    lifecycle: SessionLifecycleController = Depends(get_lifecycle),
) -> ApiResponse[None]:
    await lifecycle.delete(session_id, user)
    return ApiResponse.ok(data=None, msg="直播已删除")
