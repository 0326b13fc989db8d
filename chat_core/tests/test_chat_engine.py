import asyncio
import json

import httpx
import pytest

from chat_core.agents.chat_engine import ChatEngine
from chat_core.domain.cancellation import CancellationToken
from chat_core.domain.exceptions import (
    CompletionTimeoutError,
    ConfigError,
    RequestAbortedError,
    StorageError,
    TransportError,
)
from chat_core.domain.models import ChatMessage, SendMessageOptions
from chat_core.infrastructure.storage.memory_store import MemoryMessageStore


def count_words(text: str) -> int:
    return len(text.split())


def reply(content="pong", usage=None, id="chatcmpl-1"):
    data = {"id": id, "choices": [{"message": {"role": "assistant", "content": content}, "finish_reason": "stop"}]}
    if usage is not None:
        data["usage"] = usage
    return data


class Recorder:
    """记录每次请求体，并按顺序返回预设响应。"""

    def __init__(self, *responses):
        self.bodies = []
        self._responses = list(responses)

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.bodies.append(json.loads(request.content))
        return self._responses.pop(0)


def make_engine(handler, store=None, **kw):
    return ChatEngine(
        api_key="sk-test-key",
        transport=httpx.MockTransport(handler),
        message_store=store if store is not None else MemoryMessageStore(),
        count_tokens=count_words,
        system_message="be brief",
        **kw,
    )


def test_engine_requires_api_key():
    with pytest.raises(ConfigError):
        ChatEngine(api_key=None)


def test_send_message_persists_both_turns():
    store = MemoryMessageStore()
    rec = Recorder(httpx.Response(200, json=reply("pong", usage={"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4})))
    engine = make_engine(rec, store=store)

    result = asyncio.run(
        engine.send_message("ping", SendMessageOptions(message_id="u1", conversation_id="c1", name="alice"))
    )

    assert result.text == "pong"
    assert result.role == "assistant"
    assert result.parent_message_id == "u1"
    assert result.conversation_id == "c1"
    assert result.detail["usage"] == {"prompt_tokens": 3, "completion_tokens": 1, "total_tokens": 4}

    user = asyncio.run(store.get("u1"))
    assert user.text == "ping" and user.role == "user" and user.name == "alice"
    assert asyncio.run(store.get(result.id)).text == "pong"
    assert len(store) == 2

    body = rec.bodies[0]
    assert body["messages"] == [
        {"role": "system", "content": "be brief"},
        {"role": "user", "content": "ping", "name": "alice"},
    ]
    assert body["stream"] is False
    assert body["model"] == "gpt-3.5-turbo"
    assert body["presence_penalty"] == 1.0
    assert body["max_tokens"] == 1000


def test_follow_up_includes_history():
    rec = Recorder(
        httpx.Response(200, json=reply("first answer", id="a-1")),
        httpx.Response(200, json=reply("second answer", id="a-2")),
    )
    engine = make_engine(rec)

    first = asyncio.run(engine.send_message("first question", SendMessageOptions(message_id="u1")))
    asyncio.run(engine.send_message("second question", SendMessageOptions(parent_message_id=first.id)))

    contents = [m["content"] for m in rec.bodies[1]["messages"]]
    assert contents == ["be brief", "first question", "first answer", "second question"]
    roles = [m["role"] for m in rec.bodies[1]["messages"]]
    assert roles == ["system", "user", "assistant", "user"]


def test_usage_is_estimated_when_missing():
    engine = make_engine(Recorder(httpx.Response(200, json=reply("one two three"))))
    result = asyncio.run(engine.send_message("hello there"))
    usage = result.detail["usage"]
    assert usage["estimated"] is True
    assert usage["completion_tokens"] == 3
    assert usage["total_tokens"] == usage["prompt_tokens"] + 3


def test_usage_estimation_failure_is_ignored():
    calls = {"n": 0}

    def flaky_counter(text):
        calls["n"] += 1
        # 上下文构建阶段正常计数，估算阶段失败
        if calls["n"] > 1:
            raise RuntimeError("tokenizer down")
        return 1

    engine = ChatEngine(
        api_key="sk-test-key",
        transport=httpx.MockTransport(Recorder(httpx.Response(200, json=reply("ok")))),
        count_tokens=flaky_counter,
        system_message="",
    )
    result = asyncio.run(engine.send_message("hi"))
    assert result.text == "ok"
    assert "usage" not in result.detail


def test_failure_persists_nothing():
    store = MemoryMessageStore()
    engine = make_engine(Recorder(httpx.Response(503, text="busy")), store=store)
    with pytest.raises(TransportError):
        asyncio.run(engine.send_message("ping", SendMessageOptions(message_id="u1")))
    assert len(store) == 0


def test_persist_failure_is_storage_error():
    async def get_message(message_id):
        return None

    async def upsert_message(message):
        raise StorageError(code="STORE_WRITE_ERROR", message="read-only")

    engine = make_engine(
        Recorder(httpx.Response(200, json=reply())),
        get_message_by_id=get_message,
        upsert_message=upsert_message,
    )
    with pytest.raises(StorageError) as exc:
        asyncio.run(engine.send_message("ping"))
    assert exc.value.code == "STORE_WRITE_ERROR"
    assert not isinstance(exc.value, TransportError)


def test_persist_failure_from_plain_callable_is_storage_error():
    store = MemoryMessageStore()

    async def upsert_message(message):
        raise RuntimeError("store backend failed")

    engine = make_engine(Recorder(httpx.Response(200, json=reply())), store=store, upsert_message=upsert_message)
    with pytest.raises(StorageError) as exc:
        asyncio.run(engine.send_message("ping"))
    assert exc.value.code == "STORE_WRITE_ERROR"
    assert exc.value.http_status == 500
    assert isinstance(exc.value.__cause__, RuntimeError)


def test_unreadable_parent_sends_without_history():
    async def get_message(message_id):
        raise ConnectionError("redis down")

    rec = Recorder(httpx.Response(200, json=reply("fresh start")))
    engine = make_engine(rec, get_message_by_id=get_message)
    result = asyncio.run(engine.send_message("ping", SendMessageOptions(parent_message_id="p")))
    assert result.text == "fresh start"
    assert [m["role"] for m in rec.bodies[0]["messages"]] == ["system", "user"]


def test_streaming_send_message_reports_progress():
    frames = [
        {"id": "chatcmpl-s", "choices": [{"delta": {"role": "assistant"}}]},
        {"id": "chatcmpl-s", "choices": [{"delta": {"content": "Hel"}}]},
        {"id": "chatcmpl-s", "choices": [{"delta": {"content": "lo"}}]},
        {"id": "chatcmpl-s", "choices": [{"delta": {}, "finish_reason": "stop"}]},
    ]
    body = "".join(f"data: {json.dumps(f)}\n\n" for f in frames) + "data: [DONE]\n\n"
    rec = Recorder(httpx.Response(200, content=body.encode("utf-8")))
    store = MemoryMessageStore()
    engine = make_engine(rec, store=store)
    seen = []

    result = asyncio.run(engine.send_message("hi", SendMessageOptions(on_progress=lambda m: seen.append(m.text))))

    assert rec.bodies[0]["stream"] is True
    assert result.text == "Hello"
    assert result.id == "chatcmpl-s"
    assert seen == ["", "Hel", "Hello", "Hello"]
    assert result.detail["usage"]["estimated"] is True
    assert asyncio.run(store.get("chatcmpl-s")).text == "Hello"


def test_explicit_stream_flag_without_callback():
    body = b'data: {"choices": [{"delta": {"content": "x"}}]}\n\ndata: [DONE]\n\n'
    rec = Recorder(httpx.Response(200, content=body))
    result = asyncio.run(make_engine(rec).send_message("hi", SendMessageOptions(stream=True)))
    assert rec.bodies[0]["stream"] is True
    assert result.text == "x"


def test_per_call_overrides_and_system_message():
    rec = Recorder(httpx.Response(200, json=reply()))
    engine = make_engine(rec)
    asyncio.run(
        engine.send_message(
            "hi",
            SendMessageOptions(completion_params={"temperature": 0.1, "model": "gpt-4"}, system_message=""),
        )
    )
    body = rec.bodies[0]
    assert body["temperature"] == 0.1
    assert body["model"] == "gpt-4"
    assert [m["role"] for m in body["messages"]] == ["user"]


def test_image_message_switches_to_vision_model():
    rec = Recorder(httpx.Response(200, json=reply("a cat")))
    engine = make_engine(rec, site_domain="https://chat.example.com", image_marker="![img]", vision_model="vision")
    overrides = {"temperature": 0.5}
    asyncio.run(
        engine.send_message("what is this ![img](/f/cat.png)", SendMessageOptions(completion_params=overrides))
    )
    body = rec.bodies[0]
    assert body["model"] == "vision"
    assert body["messages"][-1]["content"][1]["image_url"]["url"] == "https://chat.example.com/f/cat.png"
    # 调用方传入的参数字典不被修改
    assert overrides == {"temperature": 0.5}


def test_api_key_and_org_setters():
    rec = []

    def handler(request):
        rec.append(dict(request.headers))
        return httpx.Response(200, json=reply())

    engine = make_engine(handler)
    engine.api_key = "sk-rotated-key"
    engine.api_org = "org-42"
    asyncio.run(engine.send_message("hi"))
    assert engine.api_key == "sk-rotated-key"
    assert rec[0]["authorization"] == "Bearer sk-rotated-key"
    assert rec[0]["openai-organization"] == "org-42"


def test_timeout_cancels_request_before_raising():
    state = {"aborted": False}

    async def slow_handler(request):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            state["aborted"] = True
            raise
        return httpx.Response(200, json=reply())

    store = MemoryMessageStore()
    engine = make_engine(slow_handler, store=store)

    async def run():
        try:
            await engine.send_message("ping", SendMessageOptions(timeout_ms=50))
        except CompletionTimeoutError as e:
            # 超时异常到达调用方时，底层请求必须已经被取消
            assert state["aborted"] is True
            raise e

    with pytest.raises(CompletionTimeoutError) as exc:
        asyncio.run(run())
    assert exc.value.code == "TIMEOUT"
    assert len(store) == 0


def test_timeout_marks_external_token():
    async def slow_handler(request):
        await asyncio.sleep(10)
        return httpx.Response(200, json=reply())

    token = CancellationToken()
    engine = make_engine(slow_handler)
    with pytest.raises(CompletionTimeoutError):
        asyncio.run(engine.send_message("ping", SendMessageOptions(timeout_ms=30, cancel_token=token)))
    assert token.cancelled
    assert token.reason == "timeout"


def test_external_cancel_aborts_request():
    state = {"aborted": False}

    async def slow_handler(request):
        try:
            await asyncio.sleep(10)
        except asyncio.CancelledError:
            state["aborted"] = True
            raise
        return httpx.Response(200, json=reply())

    store = MemoryMessageStore()
    engine = make_engine(slow_handler, store=store)
    token = CancellationToken()

    async def run():
        loop = asyncio.get_running_loop()
        loop.call_later(0.05, token.cancel, "user stopped")
        await engine.send_message("ping", SendMessageOptions(cancel_token=token))

    with pytest.raises(RequestAbortedError) as exc:
        asyncio.run(run())
    assert "user stopped" in exc.value.message
    assert state["aborted"] is True
    assert len(store) == 0


def test_fast_response_within_timeout():
    engine = make_engine(Recorder(httpx.Response(200, json=reply("quick"))))
    result = asyncio.run(engine.send_message("ping", SendMessageOptions(timeout_ms=5000)))
    assert result.text == "quick"


def test_custom_store_callables_take_priority():
    saved = {}

    async def get_message(message_id):
        return saved.get(message_id)

    async def upsert_message(message: ChatMessage):
        saved[message.id] = message

    store = MemoryMessageStore()
    engine = make_engine(
        Recorder(httpx.Response(200, json=reply())),
        store=store,
        get_message_by_id=get_message,
        upsert_message=upsert_message,
    )
    result = asyncio.run(engine.send_message("ping", SendMessageOptions(message_id="u1")))
    assert set(saved) == {"u1", result.id}
    assert len(store) == 0
