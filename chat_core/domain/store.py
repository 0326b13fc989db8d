from typing import Awaitable, Callable, Optional, Protocol

from .models import ChatMessage


class MessageStore(Protocol):
    """按消息 ID 存取 ChatMessage 的键值存储。

    get 找不到时返回 None；读写失败时抛出 StorageError。
    同一 key 的并发写入以最后一次为准。
    """

    async def get(self, message_id: str) -> Optional[ChatMessage]:
        ...

    async def set(self, message_id: str, message: ChatMessage) -> None:
        ...


GetMessageById = Callable[[str], Awaitable[Optional[ChatMessage]]]
UpsertMessage = Callable[[ChatMessage], Awaitable[None]]
