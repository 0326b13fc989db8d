"""文本 → token 数的纯函数。

使用 tiktoken 的 BPE 编码（gpt-3.5-turbo 对应 cl100k_base）。
任何 ``Callable[[str], int]`` 都可以替换这里的实现。
"""

from functools import lru_cache
from typing import Callable

import tiktoken

from chat_core.config.settings import settings

TokenCounter = Callable[[str], int]

# 远端模型会把该特殊标记当作控制符，计数前去掉
_END_OF_TEXT = "<|endoftext|>"


@lru_cache(maxsize=8)
def _get_encoding(encoding_name: str) -> "tiktoken.Encoding":
    return tiktoken.get_encoding(encoding_name)


def get_token_counter(encoding_name: str = "cl100k_base") -> TokenCounter:
    """返回绑定指定编码的计数函数。编码在第一次计数时才加载。"""

    def count(text: str) -> int:
        if not text:
            return 0
        text = text.replace(_END_OF_TEXT, "")
        return len(_get_encoding(encoding_name).encode(text))

    return count


def count_tokens(text: str) -> int:
    return get_token_counter(settings.token_encoding)(text)
