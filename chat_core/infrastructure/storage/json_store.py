import asyncio
import json
import os
from pathlib import Path
from typing import Optional
from uuid import uuid4

from chat_core.config.settings import settings
from chat_core.domain.exceptions import StorageError
from chat_core.domain.models import ChatMessage
from chat_core.domain.store import MessageStore


class JsonMessageStore(MessageStore):
    """每条消息一个 JSON 文件：<root>/messages/<id>.json。"""

    def __init__(self, root: str | Path | None = None):
        self._root = Path(root or settings.storage_root).resolve()
        self._msg_root = self._root / "messages"
        self._msg_root.mkdir(parents=True, exist_ok=True)

    async def get(self, message_id: str) -> Optional[ChatMessage]:
        return await asyncio.to_thread(self._read, message_id)

    async def set(self, message_id: str, message: ChatMessage) -> None:
        await asyncio.to_thread(self._write, message_id, message)

    def _path(self, message_id: str) -> Path:
        # ID 来自外部输入，含路径分隔符的一律拒绝，不做截断
        if (
            not message_id
            or message_id in {".", ".."}
            or "/" in message_id
            or "\\" in message_id
            or "\x00" in message_id
        ):
            raise StorageError(code="STORE_INVALID_KEY", message=f"Invalid message id: {message_id!r}")
        return self._msg_root / f"{message_id}.json"

    def _read(self, message_id: str) -> Optional[ChatMessage]:
        path = self._path(message_id)
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
            return ChatMessage.from_dict(data)
        except (OSError, ValueError, KeyError) as e:
            raise StorageError(code="STORE_READ_ERROR", message=str(e), message_id=message_id)

    def _write(self, message_id: str, message: ChatMessage) -> None:
        path = self._path(message_id)
        tmp_path = self._msg_root / f"{path.stem}.{uuid4().hex}.json.tmp"
        try:
            tmp_path.write_text(json.dumps(message.to_dict(), ensure_ascii=False), encoding="utf-8")
            os.replace(tmp_path, path)
        except (OSError, TypeError, ValueError) as e:
            tmp_path.unlink(missing_ok=True)
            raise StorageError(code="STORE_WRITE_ERROR", message=str(e), message_id=message_id)
