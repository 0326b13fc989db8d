"""对外 API 服务模块。

提供简化的函数接口供上层应用（HTTP 路由、脚本等）调用。
"""

from typing import Any, Dict, Optional

from chat_core.agents.chat_engine import ChatEngine
from chat_core.config.settings import settings
from chat_core.domain.models import ChatMessage, ProgressCallback, SendMessageOptions
from chat_core.domain.store import MessageStore
from chat_core.infrastructure.logging.logger import logger
from chat_core.infrastructure.session.session_cache import SessionCache
from chat_core.infrastructure.storage.json_store import JsonMessageStore
from chat_core.infrastructure.storage.memory_store import MemoryMessageStore


_engine: Optional[ChatEngine] = None
_sessions: Optional[SessionCache] = None


def _default_store() -> MessageStore:
    if settings.message_store == "json":
        return JsonMessageStore(root=settings.storage_root)
    return MemoryMessageStore(max_size=settings.message_store_max_size)


def get_default_engine() -> ChatEngine:
    """获取默认的 ChatEngine 实例（单例）。"""
    global _engine
    if _engine is None:
        _engine = ChatEngine.from_settings(settings, message_store=_default_store())
    return _engine


def get_session_cache() -> SessionCache:
    global _sessions
    if _sessions is None:
        _sessions = SessionCache(expire_minutes=settings.session_expire_minutes)
    return _sessions


async def run_chat(
    text: str,
    *,
    parent_message_id: Optional[str] = None,
    conversation_id: Optional[str] = None,
    timeout_ms: Optional[int] = None,
    on_progress: Optional[ProgressCallback] = None,
    system_message: Optional[str] = None,
    user_id: Optional[str] = None,
    session_token: Optional[str] = None,
    session_cache: Optional[SessionCache] = None,
    engine: Optional[ChatEngine] = None,
) -> Dict[str, Any]:
    """运行一轮对话。

    Args:
        text: 用户输入内容
        parent_message_id: 上一条消息 ID（可选，不提供则开启新对话）
        conversation_id: 会话ID（可选，原样透传）
        timeout_ms: 整体超时（可选，默认取配置）
        on_progress: 流式进度回调（可选，提供时走流式）
        system_message: 覆盖默认 system 指令（可选）
        user_id / session_token: 提供 user_id 时先校验会话是否有效

    Returns:
        包含 assistant 消息 ID、正文与 usage 的字典

    Raises:
        各种 domain.exceptions 中定义的异常
    """
    try:
        if user_id is not None:
            (session_cache or get_session_cache()).touch(user_id, session_token or "")
        message = await (engine or get_default_engine()).send_message(
            text,
            SendMessageOptions(
                parent_message_id=parent_message_id,
                conversation_id=conversation_id,
                timeout_ms=timeout_ms if timeout_ms is not None else settings.timeout_ms,
                on_progress=on_progress,
                system_message=system_message,
            ),
        )
        return message_to_response(message)
    except Exception as e:
        logger.error(f"Chat failed: {e}", extra={"extra": {
            "conversation_id": conversation_id,
            "parent_message_id": parent_message_id,
            "error": str(e),
        }})
        raise


def message_to_response(message: ChatMessage) -> Dict[str, Any]:
    return {
        "id": message.id,
        "conversation_id": message.conversation_id,
        "parent_message_id": message.parent_message_id,
        "role": message.role,
        "text": message.text,
        "usage": (message.detail or {}).get("usage"),
    }
