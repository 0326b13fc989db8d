"""进程内有界 LRU 消息存储（默认实现）。"""

import copy
from collections import OrderedDict
from typing import Optional

from chat_core.domain.models import ChatMessage
from chat_core.domain.store import MessageStore


class MemoryMessageStore(MessageStore):
    """按最近使用淘汰的内存存储。

    存入与取出的都是副本：调用方修改自己手里的对象，不会影响已持久化的消息。
    所有操作都在事件循环线程内同步完成，不存在交错写坏同一条目的情况。
    """

    def __init__(self, max_size: int = 10000):
        if max_size < 1:
            raise ValueError("max_size must be >= 1")
        self._max_size = max_size
        self._items: "OrderedDict[str, ChatMessage]" = OrderedDict()

    async def get(self, message_id: str) -> Optional[ChatMessage]:
        item = self._items.get(message_id)
        if item is None:
            return None
        self._items.move_to_end(message_id)
        return _copy(item)

    async def set(self, message_id: str, message: ChatMessage) -> None:
        self._items[message_id] = _copy(message)
        self._items.move_to_end(message_id)
        while len(self._items) > self._max_size:
            self._items.popitem(last=False)

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, message_id: object) -> bool:
        return message_id in self._items


def _copy(message: ChatMessage) -> ChatMessage:
    return copy.deepcopy(message)
