"""远端模型的默认参数。

把“默认补全参数 / token 限额 / 默认 system 指令”集中放在这里，
ChatEngine 与配置层都从这里取默认值，便于后续升级模型。"""

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Optional

CHATGPT_MODEL = "gpt-3.5-turbo"
VISION_MODEL = "gpt-4-vision-preview"
DEFAULT_BASE_URL = "https://api.openai.com/v1"
DEFAULT_MAX_MODEL_TOKENS = 4000
DEFAULT_MAX_RESPONSE_TOKENS = 1000


@dataclass
class ModelConfig:
    """一次调用之外保持不变的补全参数。"""

    model: str = CHATGPT_MODEL
    temperature: float = 0.8
    top_p: float = 1.0
    presence_penalty: float = 1.0
    extra: Dict[str, Any] = field(default_factory=dict)

    def to_params(self) -> Dict[str, Any]:
        params: Dict[str, Any] = {
            "model": self.model,
            "temperature": self.temperature,
            "top_p": self.top_p,
            "presence_penalty": self.presence_penalty,
        }
        params.update(self.extra)
        return params


def default_system_message(today: Optional[date] = None) -> str:
    current = (today or date.today()).isoformat()
    return (
        "You are ChatGPT, a large language model trained by OpenAI. Answer as concisely as possible.\n"
        "Knowledge cutoff: 2021-09-01\n"
        f"Current date: {current}"
    )
