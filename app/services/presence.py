"""
app.services.presence
~~~~~~~~~~~~~~~~~~~~~

在线名单（Presence Registry）—— 某个直播间“此刻谁能连得上”的内存索引。

它只是缓存，不是事实来源：花名册才记录“谁来过”。进程重启后名单从空开始重建。
每个 ``LiveRoom`` 持有一份独立的名单，只由该房间的串行 worker 通过
``AdmissionController`` 修改，因此不需要加锁。

判断“某人是否已在场”时以这份名单为准，而不是查库，避免并发入场时读到旧数据。
"""
from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from app.schemas.live_session import UserRole

# 媒体开关字段，与 ``RosterEntry`` 同名
MEDIA_FIELDS: tuple[str, ...] = ("is_video_on", "is_audio_on", "is_screen_sharing", "hand_raised")


class Occupant(BaseModel):
    """在线名单中的一位参与者。"""

    user_id: str = Field(..., description="参与者 ID")
    display_name: str = Field(..., description="显示名称")
    endpoint_id: str = Field(..., description="当前连接 ID（信令中继目标）")
    role: UserRole = Field(default="student", description="用户角色")
    is_host: bool = Field(default=False, description="是否为主持人")
    is_video_on: bool = True
    is_audio_on: bool = True
    is_screen_sharing: bool = False
    hand_raised: bool = False

    def media_state(self) -> dict[str, bool]:
        return {name: getattr(self, name) for name in MEDIA_FIELDS}

    def public(self) -> dict[str, Any]:
        """下发给其他参与者的快照。"""
        return self.model_dump()


class PresenceRegistry:
    """单个直播间的在线名单，按参与者 ID 索引。"""

    def __init__(self) -> None:
        self._occupants: dict[str, Occupant] = {}

    def add(self, occupant: Occupant) -> Occupant | None:
        """加入（或替换）一位参与者。

        Returns:
            被替换掉的旧记录（重连场景），首次加入时为 None。
        """
        previous = self._occupants.get(occupant.user_id)
        self._occupants[occupant.user_id] = occupant
        return previous

    def remove(self, user_id: str, endpoint_id: str | None = None) -> Occupant | None:
        """移除一位参与者。

        给出 ``endpoint_id`` 时，只有连接 ID 匹配才移除，
        旧连接的迟到断开不会把已经重连的参与者踢出名单。
        """
        occupant = self._occupants.get(user_id)
        if occupant is None:
            return None
        if endpoint_id is not None and occupant.endpoint_id != endpoint_id:
            return None
        return self._occupants.pop(user_id)

    def get(self, user_id: str) -> Occupant | None:
        return self._occupants.get(user_id)

    def find_by_endpoint(self, endpoint_id: str) -> Occupant | None:
        for occupant in self._occupants.values():
            if occupant.endpoint_id == endpoint_id:
                return occupant
        return None

    def snapshot(self, exclude_user: str | None = None) -> list[Occupant]:
        """当前在线名单的副本。"""
        return [
            o.model_copy() for uid, o in self._occupants.items() if uid != exclude_user
        ]

    def endpoints(self, exclude: str | None = None) -> list[str]:
        return [o.endpoint_id for o in self._occupants.values() if o.endpoint_id != exclude]

    def clear(self) -> None:
        self._occupants.clear()

    def __contains__(self, user_id: object) -> bool:
        return user_id in self._occupants

    def __len__(self) -> int:
        return len(self._occupants)

    @property
    def count(self) -> int:
        """当前在线人数，入场容量检查以此为准。"""
        return len(self._occupants)
