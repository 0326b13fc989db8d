"""上下文构建器。

从本轮用户输入出发，沿 parent_message_id 向前回溯祖先消息，在 token 上限内
拼出尽可能长的有序消息序列：

    [system] + [最旧祖先 ... 最新祖先] + [本轮 user]

每一步把当前序列按固定角色标签拼成纯文本 prompt 并计数；一旦超出上限
就停下，保留上一次被接受的序列。system + 本轮 user 的最小序列总是被接受，
即使它本身已经超限，上限由远端服务最终把关。
"""

import logging
import re
from typing import Any, Dict, List, Optional, Set, Tuple

from chat_core.context.tokenizer import TokenCounter
from chat_core.domain.models import BuildResult, ChatMessage, ContentPart, PromptMessage
from chat_core.domain.store import GetMessageById
from chat_core.infrastructure.logging.logger import logger

USER_LABEL = "User"
ASSISTANT_LABEL = "ChatGPT"

_PAREN_RE = re.compile(r"\((.*?)\)")


def serialize_prompt(messages: List[PromptMessage]) -> str:
    """把消息序列压平成用于计数的 prompt 文本。"""

    parts: List[str] = []
    for m in messages:
        if m.role == "system":
            parts.append(f"Instructions:\n{m.content_text()}")
        elif m.role == "user":
            parts.append(f"{USER_LABEL}:\n{m.content_text()}")
        else:
            parts.append(f"{ASSISTANT_LABEL}:\n{m.content_text()}")
    return "\n\n".join(parts)


class ContextBuilder:
    def __init__(
        self,
        get_message_by_id: GetMessageById,
        count_tokens: TokenCounter,
        max_model_tokens: int = 4000,
        max_response_tokens: int = 1000,
        site_domain: str = "",
        image_marker: str = "![从感叹号开始为识图标志请勿修改]",
        vision_model: str = "gpt-4-vision-preview",
        max_chain_depth: int = 1000,
    ):
        self._get_message_by_id = get_message_by_id
        self._count_tokens = count_tokens
        self.max_model_tokens = max_model_tokens
        self.max_response_tokens = max_response_tokens
        self._site_domain = site_domain
        self._image_marker = image_marker
        self._vision_model = vision_model
        self._max_chain_depth = max_chain_depth

    @property
    def max_prompt_tokens(self) -> int:
        return self.max_model_tokens - self.max_response_tokens

    async def build(
        self,
        text: str,
        parent_message_id: Optional[str] = None,
        system_message: Optional[str] = None,
        name: Optional[str] = None,
        log_ctx: Optional[Dict[str, Any]] = None,
    ) -> BuildResult:
        log_ctx = log_ctx or {}
        ceiling = self.max_prompt_tokens

        anchor: List[PromptMessage] = []
        if system_message:
            anchor.append(PromptMessage(role="system", content=system_message))
        system_offset = len(anchor)

        user_entry, image_suffix = self._user_entry(text, name)
        next_messages = anchor + ([user_entry] if user_entry else [])
        model_override = self._vision_model if image_suffix else None

        messages: List[PromptMessage] = list(anchor)
        num_tokens = 0
        visited: Set[str] = set()
        steps = 0

        while True:
            prompt = serialize_prompt(next_messages)
            estimate = self._count_tokens(prompt)
            is_valid = estimate <= ceiling

            # 第一轮是最小序列，无论是否超限都接受
            if steps > 0 and prompt and not is_valid:
                break

            messages = next_messages
            num_tokens = estimate

            if not is_valid or not parent_message_id:
                break
            if parent_message_id in visited:
                _log(logging.WARNING, "Cycle in message chain", log_ctx, message_id=parent_message_id)
                break
            if steps >= self._max_chain_depth:
                _log(logging.WARNING, "Message chain too deep", log_ctx, max_chain_depth=self._max_chain_depth)
                break
            visited.add(parent_message_id)
            steps += 1

            parent = await self._fetch_parent(parent_message_id, log_ctx)
            if parent is None:
                break

            next_messages = (
                next_messages[:system_offset]
                + [PromptMessage(role=parent.role or "user", content=parent.text, name=parent.name)]
                + next_messages[system_offset:]
            )
            parent_message_id = parent.parent_message_id

        # 提示词与回答共享 max_model_tokens，尽量为回答保留 max_response_tokens
        max_tokens = max(1, min(self.max_model_tokens - num_tokens, self.max_response_tokens))
        return BuildResult(
            messages=messages,
            max_tokens=max_tokens,
            num_tokens=num_tokens,
            image_suffix=image_suffix,
            model_override=model_override,
        )

    async def _fetch_parent(self, message_id: str, log_ctx: Dict[str, Any]) -> Optional[ChatMessage]:
        try:
            return await self._get_message_by_id(message_id)
        except Exception as e:
            # 读取失败按找不到父消息处理，历史在此截断
            _log(
                logging.WARNING,
                "Failed to read parent message",
                log_ctx,
                message_id=message_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            return None

    def _user_entry(self, text: str, name: Optional[str]) -> Tuple[Optional[PromptMessage], str]:
        """构造本轮 user 条目；带识图标记时返回多段内容与图片后缀。"""

        if not text:
            return None, ""
        if self._image_marker and self._image_marker in text:
            match = _PAREN_RE.search(text)
            if match:
                path = match.group(1)
                before = text.split(self._image_marker)[0]
                url = path if path.startswith("http") else f"{self._site_domain}{path}"
                content: List[ContentPart] = [
                    {"type": "text", "text": before},
                    {"type": "image_url", "image_url": {"url": url}},
                ]
                suffix = f"{self._image_marker}({path})"
                return PromptMessage(role="user", content=content, name=name), suffix
        return PromptMessage(role="user", content=text, name=name), ""


def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
    payload = dict(log_ctx)
    payload.update(fields)
    logger.log(level, message, extra={"extra": payload})
