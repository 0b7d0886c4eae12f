import pytest
from pydantic import ValidationError

from tutor_core.config.settings import Settings


@pytest.fixture
def clean_env(monkeypatch, tmp_path):
    for key in ("API_BASE_URL", "API_KEY", "API_MODEL", "STREAM_TIMEOUT", "MAX_RETRIES", "TUTOR_CONFIG_FILE"):
        monkeypatch.delenv(key, raising=False)
    monkeypatch.chdir(tmp_path)
    return tmp_path


def test_defaults(clean_env):
    s = Settings(_env_file=None)
    assert s.stream_timeout == 30
    assert s.max_retries == 2
    assert s.retry_base_delay == 2.0
    assert s.default_max_tokens == 8192
    assert s.default_temperature == 0.5
    assert s.conversation_window == 10


def test_yaml_config_file(clean_env, monkeypatch):
    path = clean_env / "tutor.yaml"
    path.write_text(
        "api_base_url: https://llm.example.com/v1/\napi_model: m1\nstream_timeout: 60\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("TUTOR_CONFIG_FILE", str(path))
    s = Settings(_env_file=None)
    assert s.api_base_url == "https://llm.example.com/v1"
    assert s.api_model == "m1"
    assert s.stream_timeout == 60


def test_env_overrides_yaml(clean_env, monkeypatch):
    path = clean_env / "config.yaml"
    path.write_text("max_retries: 5\n", encoding="utf-8")
    monkeypatch.setenv("MAX_RETRIES", "1")
    s = Settings(_env_file=None)
    assert s.max_retries == 1


def test_short_api_key_rejected(clean_env, monkeypatch):
    monkeypatch.setenv("API_KEY", "short")
    with pytest.raises(ValidationError):
        Settings(_env_file=None)
