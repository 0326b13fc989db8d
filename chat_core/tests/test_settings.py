import pytest
from pydantic import ValidationError

from chat_core.config.settings import Settings


def test_settings_read_yaml_file(monkeypatch, tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("max_model_tokens: 8000\nsite_domain: https://chat.example.com/\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_CONFIG_FILE", str(cfg))
    monkeypatch.delenv("MAX_MODEL_TOKENS", raising=False)
    s = Settings()
    assert s.max_model_tokens == 8000
    assert s.site_domain == "https://chat.example.com"


def test_env_overrides_yaml(monkeypatch, tmp_path):
    cfg = tmp_path / "config.yaml"
    cfg.write_text("max_response_tokens: 500\n", encoding="utf-8")
    monkeypatch.setenv("CHAT_CONFIG_FILE", str(cfg))
    monkeypatch.setenv("MAX_RESPONSE_TOKENS", "700")
    monkeypatch.setenv("LOGOUT_MIN", "45")
    s = Settings()
    assert s.max_response_tokens == 700
    assert s.session_expire_minutes == 45


def test_short_api_key_rejected():
    with pytest.raises(ValidationError):
        Settings(openai_api_key="short")
