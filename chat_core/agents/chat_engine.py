"""对话引擎核心模块。

实现一次完整的问答交换：构建上下文、选择补全策略并调用远端模型、
补全 usage 估算、持久化本轮问答，以及超时/取消控制。
"""

import asyncio
import logging
import time
from typing import Any, Dict, Optional
from uuid import uuid4

import httpx

from chat_core.context.builder import ContextBuilder
from chat_core.context.tokenizer import TokenCounter, get_token_counter
from chat_core.domain.cancellation import CancellationToken
from chat_core.domain.exceptions import CompletionTimeoutError, StorageError
from chat_core.domain.models import BuildResult, ChatMessage, SendMessageOptions
from chat_core.domain.store import GetMessageById, MessageStore, UpsertMessage
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.storage.memory_store import MemoryMessageStore
from chat_core.providers.openai_client import OpenAIChatClient
from chat_core.providers.registry import (
    CHATGPT_MODEL,
    DEFAULT_BASE_URL,
    DEFAULT_MAX_MODEL_TOKENS,
    DEFAULT_MAX_RESPONSE_TOKENS,
    VISION_MODEL,
    ModelConfig,
    default_system_message,
)


class ChatEngine:
    """远端 chat completions 服务的会话客户端。

    历史上下文完全由 parent_message_id 决定：调用方只需记住上一条
    assistant 消息的 id，下一轮把它作为 parent_message_id 传回即可。
    """

    def __init__(
        self,
        api_key: Optional[str],
        api_org: Optional[str] = None,
        api_base_url: str = DEFAULT_BASE_URL,
        debug: bool = False,
        completion_params: Optional[Dict[str, Any]] = None,
        system_message: Optional[str] = None,
        max_model_tokens: int = DEFAULT_MAX_MODEL_TOKENS,
        max_response_tokens: int = DEFAULT_MAX_RESPONSE_TOKENS,
        message_store: Optional[MessageStore] = None,
        get_message_by_id: Optional[GetMessageById] = None,
        upsert_message: Optional[UpsertMessage] = None,
        count_tokens: Optional[TokenCounter] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        http_timeout: float = 120.0,
        site_domain: str = "",
        vision_model: str = VISION_MODEL,
        image_marker: str = "![从感叹号开始为识图标志请勿修改]",
        max_chain_depth: int = 1000,
    ):
        self._client = OpenAIChatClient(
            api_key=api_key,
            api_org=api_org,
            api_base_url=api_base_url,
            http_timeout=http_timeout,
            transport=transport,
            debug=debug,
        )
        self._completion_params: Dict[str, Any] = {
            **ModelConfig(model=CHATGPT_MODEL).to_params(),
            **(completion_params or {}),
        }
        self._system_message = default_system_message() if system_message is None else system_message
        self._max_model_tokens = max_model_tokens
        self._max_response_tokens = max_response_tokens

        self._message_store: MessageStore = message_store if message_store is not None else MemoryMessageStore()
        self._get_message_by_id: GetMessageById = get_message_by_id or self._default_get_message_by_id
        self._upsert_message: UpsertMessage = upsert_message or self._default_upsert_message
        self._count_tokens: TokenCounter = count_tokens or get_token_counter()

        self._builder = ContextBuilder(
            get_message_by_id=self._get_message_by_id,
            count_tokens=self._count_tokens,
            max_model_tokens=max_model_tokens,
            max_response_tokens=max_response_tokens,
            site_domain=site_domain,
            image_marker=image_marker,
            vision_model=vision_model,
            max_chain_depth=max_chain_depth,
        )

    @classmethod
    def from_settings(cls, cfg, **overrides: Any) -> "ChatEngine":
        """根据 Settings 创建引擎，overrides 优先于配置。"""

        kwargs: Dict[str, Any] = dict(
            api_key=cfg.openai_api_key,
            api_org=cfg.openai_api_org,
            api_base_url=cfg.openai_api_base_url,
            debug=cfg.debug,
            completion_params=ModelConfig(
                model=cfg.model,
                temperature=cfg.temperature,
                top_p=cfg.top_p,
                presence_penalty=cfg.presence_penalty,
            ).to_params(),
            system_message=cfg.system_message,
            max_model_tokens=cfg.max_model_tokens,
            max_response_tokens=cfg.max_response_tokens,
            count_tokens=get_token_counter(cfg.token_encoding),
            http_timeout=cfg.http_timeout,
            site_domain=cfg.site_domain,
            vision_model=cfg.vision_model,
            image_marker=cfg.image_marker,
            max_chain_depth=cfg.max_chain_depth,
        )
        kwargs.update(overrides)
        return cls(**kwargs)

    @property
    def api_key(self) -> str:
        return self._client.api_key

    @api_key.setter
    def api_key(self, api_key: str) -> None:
        self._client.api_key = api_key

    @property
    def api_org(self) -> Optional[str]:
        return self._client.api_org

    @api_org.setter
    def api_org(self, api_org: Optional[str]) -> None:
        self._client.api_org = api_org

    @property
    def builder(self) -> ContextBuilder:
        return self._builder

    async def send_message(self, text: str, options: Optional[SendMessageOptions] = None) -> ChatMessage:
        """发送一条消息并等待完整回答。

        Args:
            text: 本轮用户输入。
            options: 可选参数；提供 on_progress 时默认走流式。

        Returns:
            已持久化的 assistant 消息。

        Raises:
            CompletionTimeoutError: 超过 timeout_ms，底层请求已被取消。
            RequestAbortedError: cancel_token 被触发。
            TransportError / NetworkError / ProtocolError: 远端调用失败，不做持久化。
            StorageError: 远端调用成功但持久化失败。
        """

        opts = options or SendMessageOptions()
        log_ctx: Dict[str, Any] = {
            "trace_id": f"tr-{uuid4().hex}",
            "conversation_id": opts.conversation_id,
        }

        token = opts.cancel_token
        if opts.timeout_ms and token is None:
            token = CancellationToken()

        exchange = self._exchange(text, opts, log_ctx)
        if token is None:
            return await exchange
        if not opts.timeout_ms:
            return await token.guard(exchange)

        try:
            return await asyncio.wait_for(token.guard(exchange), timeout=opts.timeout_ms / 1000)
        except asyncio.TimeoutError:
            # wait_for 已取消并等待了进行中的请求，这里只同步令牌状态
            token.cancel("timeout")
            self._log(logging.WARNING, "Completion timed out", log_ctx, timeout_ms=opts.timeout_ms)
            raise CompletionTimeoutError(
                code="TIMEOUT",
                message="OpenAI timed out waiting for response",
                http_status=504,
            )

    async def _exchange(self, text: str, opts: SendMessageOptions, log_ctx: Dict[str, Any]) -> ChatMessage:
        start_time = time.time()
        message_id = opts.message_id or str(uuid4())
        log_ctx["message_id"] = message_id

        user_message = ChatMessage(
            id=message_id,
            role="user",
            text=text,
            conversation_id=opts.conversation_id,
            parent_message_id=opts.parent_message_id,
            name=opts.name,
        )

        system_message = self._system_message if opts.system_message is None else opts.system_message
        built = await self._builder.build(
            text,
            parent_message_id=opts.parent_message_id,
            system_message=system_message,
            name=opts.name,
            log_ctx=log_ctx,
        )
        self._log(
            logging.INFO,
            "Built context",
            log_ctx,
            num_tokens=built.num_tokens,
            max_tokens=built.max_tokens,
            message_count=len(built.messages),
        )

        result = ChatMessage(
            id=str(uuid4()),
            role="assistant",
            text="",
            conversation_id=opts.conversation_id,
            parent_message_id=message_id,
        )

        stream = opts.wants_stream
        params = {**self._completion_params, **opts.completion_params}
        if built.model_override:
            params["model"] = built.model_override
        payload = self._client.build_payload(built.messages, built.max_tokens, params, stream)
        self._client.log_debug("sendMessage payload", num_tokens=built.num_tokens, body=payload, **log_ctx)

        strategy = self._client.strategy(stream, on_progress=opts.on_progress, image_suffix=built.image_suffix)
        self._log(
            logging.INFO,
            "Calling provider",
            log_ctx,
            model=params.get("model"),
            stream=stream,
        )
        try:
            result = await strategy.complete(payload, result)
        except asyncio.CancelledError:
            self._log(logging.INFO, "Completion cancelled", log_ctx)
            raise
        except Exception as e:
            self._log(logging.ERROR, "Completion failed", log_ctx, error=str(e), error_type=type(e).__name__)
            raise

        self._estimate_usage(result, built, log_ctx)
        await self._persist(user_message, result, log_ctx)

        self._log(
            logging.INFO,
            "Completed exchange",
            log_ctx,
            elapsed_seconds=round(time.time() - start_time, 2),
            assistant_message_id=result.id,
        )
        return result

    def _estimate_usage(self, message: ChatMessage, built: BuildResult, log_ctx: Dict[str, Any]) -> None:
        """Provider 未返回 usage 时按本地计数补一个估算值；失败只记录日志。"""

        if message.detail is None or message.detail.get("usage"):
            return
        try:
            prompt_tokens = built.num_tokens
            completion_tokens = self._count_tokens(message.text)
            message.detail["usage"] = {
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
                "total_tokens": prompt_tokens + completion_tokens,
                "estimated": True,
            }
        except Exception as e:
            self._log(logging.WARNING, "Usage estimation failed", log_ctx, error=str(e))

    async def _persist(self, user_message: ChatMessage, result: ChatMessage, log_ctx: Dict[str, Any]) -> None:
        try:
            await asyncio.gather(
                self._upsert_message(user_message),
                self._upsert_message(result),
            )
        except Exception as e:
            # 远端调用已成功，但本轮问答没有完整落盘，整体视为失败
            self._log(logging.ERROR, "Failed to persist exchange", log_ctx, error=str(e))
            raise StorageError(
                code="STORE_WRITE_ERROR",
                message=f"Completion succeeded but persisting failed: {e}",
                http_status=500,
                message_id=result.id,
            ) from e
        self._log(
            logging.INFO,
            "Stored exchange",
            log_ctx,
            user_message_id=user_message.id,
            assistant_message_id=result.id,
        )

    async def _default_get_message_by_id(self, message_id: str) -> Optional[ChatMessage]:
        return await self._message_store.get(message_id)

    async def _default_upsert_message(self, message: ChatMessage) -> None:
        await self._message_store.set(message.id, message)

    @staticmethod
    def _log(level: int, message: str, log_ctx: Dict[str, Any], **fields: Any) -> None:
        payload = dict(log_ctx)
        payload.update(fields)
        logger.log(level, message, extra={"extra": payload})
