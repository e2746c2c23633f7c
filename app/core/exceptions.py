"""
app.core.exceptions
~~~~~~~~~~~~~~~~~~~

直播课堂的业务异常体系。

所有业务异常都继承 ``LiveSessionError``，携带 HTTP 状态码和可序列化的附加信息：

- REST 接口由 ``app.main`` 中的异常处理器统一转换为 ``ApiResponse.fail()``；
- WebSocket 连接中则转换为 ``session:error`` 事件，连接本身不会断开。

本模块不做任何自动重试，重试策略完全交给客户端。
"""
from __future__ import annotations

from typing import Any


class LiveSessionError(Exception):
    """直播课堂业务异常基类。

    Attributes:
        status_code: 对应的 HTTP 状态码。
        message: 人类可读的错误描述。
    """

    status_code: int = 500

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    @property
    def error(self) -> str:
        """错误类型名，客户端据此区分处理。"""
        return type(self).__name__

    def payload(self) -> dict[str, Any]:
        """返回附加在错误响应 / 事件中的数据。"""
        return {"error": self.error, "message": self.message}


class ValidationError(LiveSessionError):
    """输入不合法（例如预约时间已过去）。"""

    status_code = 400


class PermissionDeniedError(LiveSessionError):
    """非主持人尝试执行主持人专属操作，或调用方无权访问该直播。"""

    status_code = 403


class NotFoundError(LiveSessionError):
    """直播 / 课程 / 参与者不存在。"""

    status_code = 404


class InvalidStateError(LiveSessionError):
    """当前生命周期状态下不允许该操作。

    附带当前状态，客户端可据此重新同步界面。
    """

    status_code = 409

    def __init__(self, message: str, status: str) -> None:
        super().__init__(message)
        self.status = status

    def payload(self) -> dict[str, Any]:
        return {**super().payload(), "status": self.status}


class CapacityError(LiveSessionError):
    """直播间已满，立即拒绝，不排队。"""

    status_code = 409

    def __init__(self, max_participants: int) -> None:
        super().__init__(f"直播间已满（最多 {max_participants} 人）")
        self.max_participants = max_participants

    def payload(self) -> dict[str, Any]:
        return {**super().payload(), "max_participants": self.max_participants}
