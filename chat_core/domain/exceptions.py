"""统一业务异常模型。

所有跨模块抛出的业务级错误都应该继承自 BusinessError，
便于在 API 层或调用方做统一捕获与用户提示。

分类：
- ConfigError: 构造期的配置缺失/非法，不重试。
- TransportError: 远端返回非 2xx，携带状态码与原始响应体。
- NetworkError: 连接失败、DNS 失败等网络层错误。
- ProtocolError: 响应缺少 choices、流式帧无法解析等协议错误。
- CompletionTimeoutError / RequestAbortedError: 超时与外部取消。
- StorageError: 消息存储读写失败。
"""

from typing import Optional


class BusinessError(Exception):
    """业务异常基类。

    Attributes:
        code: 机器可读错误码（如 "STORE_READ_ERROR"）。
        message: 用户可读错误信息。
        http_status: 映射到 HTTP 时可用的状态码，默认 400。
        extra: 其他补充字段（例如 trace_id、body 等）。
    """

    def __init__(self, code: str, message: str, http_status: int = 400, **extra):
        self.code = code
        self.message = message
        self.http_status = http_status
        self.extra = extra
        super().__init__(message)


class ConfigError(BusinessError):
    """缺少凭证、传输层非法等构造期错误。"""


class TransportError(BusinessError):
    """远端 API 返回非成功状态码时抛出。"""

    @property
    def status_code(self) -> int:
        return self.http_status

    @property
    def status_text(self) -> Optional[str]:
        return self.extra.get("status_text")

    @property
    def body(self) -> Optional[str]:
        return self.extra.get("body")


class RateLimitError(TransportError):
    """Provider 限流（429），重试/退避由调用方决定。"""


class NetworkError(BusinessError):
    """网络层错误，例如连接失败、读超时等。"""


class ProtocolError(BusinessError):
    """响应结构不符合预期。"""


class CompletionTimeoutError(BusinessError):
    """整体超时。抛出前底层请求已被取消。"""


class RequestAbortedError(BusinessError):
    """调用方通过 CancellationToken 主动取消。"""


class StorageError(BusinessError):
    """消息存储读写失败；code 区分 STORE_READ_ERROR / STORE_WRITE_ERROR。"""


class UnauthorizedError(BusinessError):
    """会话过期或令牌不匹配。"""
