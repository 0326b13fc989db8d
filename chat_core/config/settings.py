"""配置管理模块。

支持从 .env、config.yaml 以及环境变量加载配置。
优先级：初始化参数 > 环境变量 > .env > config.yaml。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Literal, Optional

import yaml
from pydantic import AliasChoices, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("CHAT_CONFIG_FILE")
    if explicit:
        candidates.append(Path(explicit).expanduser())
    candidates.extend([
        Path.cwd() / "config.yaml",
        Path(__file__).resolve().parents[2] / "config.yaml",
    ])

    seen: set[Path] = set()
    for path in candidates:
        if not path or path in seen:
            continue
        seen.add(path)
        try:
            if path.exists():
                data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
                if isinstance(data, dict):
                    return data
                warnings.warn(f"Config file {path} is not a mapping, ignored")
        except (OSError, yaml.YAMLError) as exc:
            warnings.warn(f"Failed to read config file {path}: {exc}")
    return {}


class Settings(BaseSettings):
    """配置设置（使用 Pydantic）。"""

    # ---- 远端模型服务 ----
    openai_api_key: Optional[str] = Field(default=None, description="OpenAI API 密钥")
    openai_api_org: Optional[str] = Field(default=None, description="可选的 OpenAI 组织 ID")
    openai_api_base_url: str = Field(
        default="https://api.openai.com/v1",
        description="Chat Completions API 基础URL",
    )
    model: str = Field(default="gpt-3.5-turbo", description="默认模型")
    vision_model: str = Field(default="gpt-4-vision-preview", description="识图请求改用的模型")
    temperature: float = Field(default=0.8, ge=0.0, le=2.0)
    top_p: float = Field(default=1.0, ge=0.0, le=1.0)
    presence_penalty: float = Field(default=1.0, ge=-2.0, le=2.0)

    # ---- token 预算 ----
    max_model_tokens: int = Field(default=4000, ge=1, description="模型上下文总 token 数")
    max_response_tokens: int = Field(default=1000, ge=1, description="为回答预留的 token 数")
    token_encoding: str = Field(default="cl100k_base", description="tiktoken 编码名")
    max_chain_depth: int = Field(default=1000, ge=1, description="祖先链回溯的最大步数")

    # ---- 请求行为 ----
    system_message: Optional[str] = Field(default=None, description="覆盖默认 system 指令")
    timeout_ms: Optional[int] = Field(default=None, ge=1, description="整体请求超时（毫秒）")
    http_timeout: float = Field(default=120.0, ge=1.0, description="HTTP 超时时间（秒）")
    debug: bool = Field(default=False, description="是否记录完整请求体")

    # ---- 识图 ----
    site_domain: str = Field(default="", description="相对图片路径补全用的站点域名")
    image_marker: str = Field(default="![从感叹号开始为识图标志请勿修改]")

    # ---- 存储 ----
    message_store: Literal["memory", "json"] = Field(default="memory")
    message_store_max_size: int = Field(default=10000, ge=1)
    storage_root: str = Field(default=".storage", description="存储根目录")

    # ---- 会话 ----
    session_expire_minutes: int = Field(
        default=30,
        ge=1,
        validation_alias=AliasChoices("session_expire_minutes", "logout_min"),
        description="无操作多少分钟后会话失效",
    )

    # ---- 日志 ----
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("openai_api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

    @field_validator("openai_api_base_url", "site_domain")
    @classmethod
    def strip_trailing_slash(cls, v: str) -> str:
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def normalize_log_level(cls, v: str) -> str:
        return v.upper()

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        return (
            init_settings,
            env_settings,
            dotenv_settings,
            cls._config_source,
            file_secret_settings,
        )


settings = Settings()
