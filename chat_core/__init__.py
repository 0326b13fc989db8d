"""chat_core 顶层包。

远端大模型 chat completions 服务的客户端：按 token 预算从消息祖先链重建
对话上下文，以非流式或流式方式调用远端模型，并持久化每一轮问答。
"""

from chat_core.agents.chat_engine import ChatEngine
from chat_core.domain.cancellation import CancellationToken
from chat_core.domain.models import ChatMessage, SendMessageOptions

__all__ = ["ChatEngine", "CancellationToken", "ChatMessage", "SendMessageOptions"]
