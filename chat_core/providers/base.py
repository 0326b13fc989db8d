"""补全策略抽象接口。

ChatEngine 每次调用只选择一次策略：

- BufferedCompletion: 一次请求，读取完整 JSON 响应。
- StreamingCompletion: 读取 SSE 事件流，边收边回调进度。

两者都接收已组装好的请求体与 assistant 占位消息，返回填充后的同一条消息，
上层不需要关心具体是哪种模式。
"""

from typing import Any, Dict, Protocol

from chat_core.domain.models import ChatMessage


class CompletionStrategy(Protocol):
    """补全策略协议。

    - stream: 请求体中 stream 字段的取值。
    - complete(payload, result): 发送请求并把结果写入 result。
    """

    stream: bool

    async def complete(self, payload: Dict[str, Any], result: ChatMessage) -> ChatMessage:
        ...
