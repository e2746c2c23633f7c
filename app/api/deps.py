"""
app.api.deps
~~~~~~~~~~~~

路由依赖：从 ``app.state`` 取直播系统，从请求头取调用方身份。

身份认证由上游网关完成，这里只读取网关注入的 ``X-User-Id`` / ``X-User-Role``。
"""
from __future__ import annotations

from fastapi import Depends, Header, HTTPException, Request, status
from pydantic import ValidationError as PydanticValidationError

from app.schemas.live_session import CurrentUser
from app.services.lifecycle import SessionLifecycleController
from app.services.live_system import LiveSystem


def get_live_system(request: Request) -> LiveSystem:
    return request.app.state.live_system


def get_lifecycle(system: LiveSystem = Depends(get_live_system)) -> SessionLifecycleController:
    return system.lifecycle


def get_current_user(
    x_user_id: str | None = Header(default=None),
    x_user_role: str = Header(default="student"),
) -> CurrentUser:
    if not x_user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="缺少调用方身份")
    try:
        return CurrentUser(user_id=x_user_id, role=x_user_role)
    except PydanticValidationError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="调用方身份不合法")
