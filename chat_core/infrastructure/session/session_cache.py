"""调用方会话缓存。

记录每个用户当前有效的令牌与最后活动时间；超过 expire_minutes 未活动
即视为过期。只负责会话有效期，不涉及角色/权限判断。
"""

import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from chat_core.domain.exceptions import UnauthorizedError


@dataclass
class SessionEntry:
    token: str
    last_active: float


class SessionCache:
    def __init__(self, expire_minutes: int = 30, clock: Callable[[], float] = time.time):
        self._expire_seconds = expire_minutes * 60
        self._clock = clock
        self._entries: Dict[str, SessionEntry] = {}

    def register(self, user_id: str, token: str) -> None:
        self._entries[str(user_id)] = SessionEntry(token=token, last_active=self._clock())

    def revoke(self, user_id: str) -> None:
        self._entries.pop(str(user_id), None)

    def get(self, user_id: str) -> Optional[SessionEntry]:
        return self._entries.get(str(user_id))

    def touch(self, user_id: str, token: str) -> None:
        """校验令牌并刷新活动时间。

        活动时间无论校验成败都会先刷新，随后才比较上一次活动时间。
        """

        entry = self._entries.get(str(user_id))
        if entry is None:
            raise UnauthorizedError(code="TOKEN_NOT_CACHED", message="Session token not cached", http_status=401)
        now = self._clock()
        previous = entry.last_active
        entry.last_active = now
        if now - previous > self._expire_seconds:
            raise UnauthorizedError(code="SESSION_EXPIRED", message="Session expired after inactivity", http_status=401)
        if entry.token != token:
            raise UnauthorizedError(code="TOKEN_NOT_CACHED", message="Session token mismatch", http_status=401)
