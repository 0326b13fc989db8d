"""流式响应解析。

- iter_sse_data: 把 text/event-stream 的行序列还原成事件 data 负载。
- StreamAssembler: 逐帧累积 assistant 消息，并把进度回调给调用方。
"""

import inspect
import json
from typing import Any, AsyncIterable, AsyncIterator, Dict, List, Optional

from chat_core.domain.exceptions import ProtocolError
from chat_core.domain.models import ChatMessage, ProgressCallback
from chat_core.infrastructure.logging.logger import logger

DONE_SENTINEL = "[DONE]"


async def iter_sse_data(lines: AsyncIterable[str]) -> AsyncIterator[str]:
    """按 SSE 规则产出每个事件的 data。

    同一事件的多行 data 以换行拼接；空行结束一个事件，流结束时未以空行
    收尾的事件也会被产出。注释行（以冒号开头）与其他字段被忽略。
    """

    buffer: List[str] = []
    async for raw in lines:
        line = raw.rstrip("\r")
        if not line:
            if buffer:
                yield "\n".join(buffer)
                buffer = []
            continue
        if line.startswith(":"):
            continue
        if line.startswith("data:"):
            value = line[5:]
            if value.startswith(" "):
                value = value[1:]
            buffer.append(value)
    if buffer:
        yield "\n".join(buffer)


class StreamAssembler:
    """把增量帧拼成最终的 assistant 消息。

    result 在整个过程中被原地修改，on_progress 收到的就是这条消息本身。
    收到哨兵 [DONE] 后 text 去除首尾空白，此后的帧一律忽略。
    """

    def __init__(
        self,
        result: ChatMessage,
        on_progress: Optional[ProgressCallback] = None,
        image_suffix: str = "",
    ):
        self.result = result
        self._on_progress = on_progress
        self._image_suffix = image_suffix
        self.finished = False

    async def feed(self, data: str) -> bool:
        """处理一个事件负载；返回 True 表示已收到哨兵。"""

        if self.finished:
            return True
        if data == DONE_SENTINEL:
            self.result.text = self.result.text.strip()
            self.finished = True
            return True

        try:
            frame = json.loads(data)
            if not isinstance(frame, dict):
                raise ValueError("stream frame is not a JSON object")
            self._apply(frame)
        except (ValueError, TypeError, AttributeError, KeyError) as e:
            logger.warning(
                "Unexpected stream event",
                extra={"extra": {"message_id": self.result.id, "error": str(e), "data": data[:200]}},
            )
            raise ProtocolError(code="STREAM_DECODE_ERROR", message=f"Malformed stream frame: {e}")

        if frame.get("choices") and self._on_progress is not None:
            ret = self._on_progress(self.result)
            if inspect.isawaitable(ret):
                await ret
        return False

    def _apply(self, frame: Dict[str, Any]) -> None:
        if frame.get("id"):
            self.result.id = frame["id"]
        choices = frame.get("choices") or []
        if not choices:
            return
        choice = choices[0]
        delta = choice.get("delta") or {}
        content = delta.get("content")
        self.result.delta = content
        if content:
            self.result.text += content
        elif choice.get("finish_reason") == "stop":
            self.result.text += self._image_suffix
        if delta.get("role"):
            self.result.role = delta["role"]
        self.result.detail = frame
