"""统一的对话与结果数据模型。

本模块定义了客户端内部共享的标准数据结构：

- ChatMessage: 一条持久化的对话消息（system/user/assistant），通过
  parent_message_id 串成祖先链。
- PromptMessage: 发给远端模型的一条 role/content/name 条目。
- SendMessageOptions: send_message 的调用参数。
- BuildResult: 上下文构建的结果（消息序列 + token 统计）。
"""

from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Literal, Optional, Union, TYPE_CHECKING

if TYPE_CHECKING:
    # 仅在类型检查时导入，避免运行时循环依赖
    from chat_core.domain.cancellation import CancellationToken


# LLM 消息角色类型（与 OpenAI chat completions 的 role 字段对应）
Role = Literal["system", "user", "assistant"]


@dataclass
class ChatMessage:
    """一条对话消息。

    - id: 唯一标识，发送方未提供时自动生成。
    - role: 创建后不再变化（流式 delta 中的 role 仅用于修正占位消息）。
    - conversation_id: 调用方提供的分组键，客户端不做解释。
    - parent_message_id: 上一轮消息 ID，构成单向祖先链。
    - text: 消息正文；流式模式下 assistant 消息逐步累积。
    - delta: 最近一次收到的增量片段（仅流式，临时字段）。
    - detail: Provider 原始响应（usage、completion id 等），可用时才附加。
    - name: 透传给远端模型的发送者标签。
    """

    id: str
    role: Role
    text: str = ""
    conversation_id: Optional[str] = None
    parent_message_id: Optional[str] = None
    delta: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
    name: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "role": self.role,
            "text": self.text,
            "conversation_id": self.conversation_id,
            "parent_message_id": self.parent_message_id,
            "delta": self.delta,
            "detail": self.detail,
            "name": self.name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatMessage":
        return cls(
            id=data["id"],
            role=data.get("role") or "user",
            text=data.get("text") or "",
            conversation_id=data.get("conversation_id"),
            parent_message_id=data.get("parent_message_id"),
            delta=data.get("delta"),
            detail=data.get("detail"),
            name=data.get("name"),
        )


# 多模态内容片段，如 {"type": "text", "text": ...} / {"type": "image_url", ...}
ContentPart = Dict[str, Any]


@dataclass
class PromptMessage:
    """发送给远端模型的单条消息。content 为纯文本或多段结构化内容。"""

    role: str
    content: Union[str, List[ContentPart]]
    name: Optional[str] = None

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"role": self.role, "content": self.content}
        if self.name:
            payload["name"] = self.name
        return payload

    def content_text(self) -> str:
        """把 content 压平成纯文本，用于拼接 prompt 计数。"""

        if isinstance(self.content, str):
            return self.content
        pieces: List[str] = []
        for part in self.content:
            if part.get("type") == "text":
                pieces.append(part.get("text") or "")
            elif part.get("type") == "image_url":
                pieces.append((part.get("image_url") or {}).get("url") or "")
        return "\n".join(p for p in pieces if p)


ProgressCallback = Callable[[ChatMessage], Union[None, Awaitable[None]]]


@dataclass
class SendMessageOptions:
    """一次 send_message 调用的可选参数。

    stream 为 None 时，是否流式取决于是否提供了 on_progress。
    timeout_ms 为 None 时不设超时。
    """

    parent_message_id: Optional[str] = None
    conversation_id: Optional[str] = None
    message_id: Optional[str] = None
    timeout_ms: Optional[int] = None
    on_progress: Optional[ProgressCallback] = None
    stream: Optional[bool] = None
    cancel_token: Optional["CancellationToken"] = None
    completion_params: Dict[str, Any] = field(default_factory=dict)
    system_message: Optional[str] = None
    name: Optional[str] = None

    @property
    def wants_stream(self) -> bool:
        if self.stream is not None:
            return self.stream
        return self.on_progress is not None


@dataclass
class BuildResult:
    """上下文构建结果。

    - messages: 有序的 PromptMessage 列表（system、祖先由旧到新、本轮 user）。
    - max_tokens: 允许回答使用的 token 数，至少为 1。
    - num_tokens: messages 拼接成 prompt 后的 token 数。
    - image_suffix: 识图请求在流式结束时追加到回答末尾的标记。
    - model_override: 识图请求需要切换的模型，否则为 None。
    """

    messages: List[PromptMessage]
    max_tokens: int
    num_tokens: int
    image_suffix: str = ""
    model_override: Optional[str] = None
