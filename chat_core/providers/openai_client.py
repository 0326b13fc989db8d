"""OpenAI Chat Completions 适配器。

本模块负责：

1. 保存凭证与端点，组装 URL / 请求头 / 请求体。
2. 提供两种补全策略：BufferedCompletion（一次性 JSON）与
   StreamingCompletion（SSE 增量帧）。
3. 把 HTTP 状态码、网络异常、响应结构问题统一转换成业务异常。
"""

import logging
from typing import Any, Dict, List, Optional

import httpx

from chat_core.domain.exceptions import ConfigError, NetworkError, ProtocolError, RateLimitError, TransportError
from chat_core.domain.models import ChatMessage, ProgressCallback, PromptMessage
from chat_core.infrastructure.logging.logger import logger
from chat_core.providers.base import CompletionStrategy
from chat_core.providers.registry import DEFAULT_BASE_URL
from chat_core.providers.stream import StreamAssembler, iter_sse_data


class OpenAIChatClient:
    """远端 chat/completions 端点的 HTTP 客户端。

    - transport: 可选的 httpx 传输层（测试时传入 httpx.MockTransport）。
    - debug: 为 True 时记录完整请求体与非流式响应。
    """

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        api_org: Optional[str] = None,
        api_base_url: str = DEFAULT_BASE_URL,
        http_timeout: float = 120.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        debug: bool = False,
    ):
        if not api_key:
            # 配置缺失走 ConfigError，构造期即失败
            raise ConfigError(code="MISSING_API_KEY", message="OpenAI missing required apiKey")
        if transport is not None and not isinstance(transport, httpx.AsyncBaseTransport):
            raise ConfigError(code="INVALID_TRANSPORT", message="transport must be an httpx.AsyncBaseTransport")
        self.api_key = api_key
        self.api_org = api_org
        self._base_url = api_base_url.rstrip("/")
        self._http_timeout = http_timeout
        self._transport = transport
        self.debug = debug

    @property
    def url(self) -> str:
        return f"{self._base_url}/chat/completions"

    def headers(self) -> Dict[str, str]:
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        # 多组织账号需要显式指定组织
        if self.api_org:
            headers["OpenAI-Organization"] = self.api_org
        return headers

    def build_payload(
        self,
        messages: List[PromptMessage],
        max_tokens: int,
        params: Dict[str, Any],
        stream: bool,
    ) -> Dict[str, Any]:
        """组装请求体；params 中的 max_tokens 可覆盖计算值。"""

        return {
            "max_tokens": max_tokens,
            **params,
            "messages": [m.to_payload() for m in messages],
            "stream": stream,
        }

    def http(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._http_timeout, trust_env=False, transport=self._transport)

    def strategy(
        self,
        stream: bool,
        on_progress: Optional[ProgressCallback] = None,
        image_suffix: str = "",
    ) -> CompletionStrategy:
        if stream:
            return StreamingCompletion(self, on_progress=on_progress, image_suffix=image_suffix)
        return BufferedCompletion(self)

    def raise_for_status(self, resp: httpx.Response) -> None:
        if resp.status_code < 400:
            return
        body = resp.text
        status_text = getattr(resp, "reason_phrase", None) or ""
        message = f"OpenAI error {resp.status_code or status_text}: {body}"
        if resp.status_code == 429:
            # 限流错误交给上层做重试/退避
            raise RateLimitError(
                code="RATE_LIMIT", message=message, http_status=429, status_text=status_text, body=body
            )
        raise TransportError(
            code="API_ERROR",
            message=message,
            http_status=resp.status_code,
            status_text=status_text,
            body=body,
        )

    def log_debug(self, message: str, **fields: Any) -> None:
        if self.debug:
            logger.log(logging.INFO, message, extra={"extra": fields})


class BufferedCompletion:
    """非流式：一次请求，解析 choices[0].message。"""

    stream = False

    def __init__(self, client: OpenAIChatClient):
        self._client = client

    async def complete(self, payload: Dict[str, Any], result: ChatMessage) -> ChatMessage:
        client = self._client
        try:
            async with client.http() as http:
                resp = await http.post(client.url, json=payload, headers=client.headers())
        except httpx.RequestError as e:
            # 网络错误：DNS 失败、连接超时等
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        client.raise_for_status(resp)
        try:
            data = resp.json()
        except ValueError as e:
            raise ProtocolError(code="INVALID_RESPONSE", message=f"OpenAI returned non-JSON body: {e}")
        client.log_debug("Completion response", response=data)
        return self._parse_response(data, result)

    @staticmethod
    def _parse_response(data: Any, result: ChatMessage) -> ChatMessage:
        if not isinstance(data, dict):
            raise ProtocolError(code="INVALID_RESPONSE", message="OpenAI error: unknown")
        if data.get("id"):
            result.id = data["id"]
        choices = data.get("choices") or []
        if not choices:
            detail = data.get("detail")
            if isinstance(detail, dict):
                detail = detail.get("message")
            raise ProtocolError(code="NO_CHOICES", message=f"OpenAI error: {detail or 'unknown'}")
        message = choices[0].get("message") or {}
        result.text = (message.get("content") or "").strip()
        if message.get("role"):
            result.role = message["role"]
        result.detail = data
        return result


class StreamingCompletion:
    """流式：读取 SSE 帧直到哨兵 [DONE]。"""

    stream = True

    def __init__(
        self,
        client: OpenAIChatClient,
        on_progress: Optional[ProgressCallback] = None,
        image_suffix: str = "",
    ):
        self._client = client
        self._on_progress = on_progress
        self._image_suffix = image_suffix

    async def complete(self, payload: Dict[str, Any], result: ChatMessage) -> ChatMessage:
        client = self._client
        assembler = StreamAssembler(result, on_progress=self._on_progress, image_suffix=self._image_suffix)
        try:
            async with client.http() as http:
                async with http.stream("POST", client.url, json=payload, headers=client.headers()) as resp:
                    if resp.status_code >= 400:
                        await resp.aread()
                        client.raise_for_status(resp)
                    async for data in iter_sse_data(resp.aiter_lines()):
                        if await assembler.feed(data):
                            break
        except httpx.RequestError as e:
            raise NetworkError(code="NETWORK_ERROR", message=str(e))
        if not assembler.finished:
            raise ProtocolError(code="STREAM_INCOMPLETE", message="Stream ended before [DONE]")
        return result
