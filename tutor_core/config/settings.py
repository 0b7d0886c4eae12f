"""配置管理模块。

支持从环境变量、.env 以及 config.yaml 加载配置，优先级依次降低。
"""

import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _load_config_from_yaml() -> Dict[str, Any]:
    """从 config.yaml 加载配置（若存在）。"""
    candidates = []
    explicit = os.getenv("TUTOR_CONFIG_FILE")
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

    # ---- 上游 chat/completions 服务 ----
    api_base_url: Optional[str] = Field(default=None, description="上游 API 基础URL，如 https://api.example.com/v1")
    api_key: Optional[str] = Field(default=None, description="上游 API 密钥")
    api_model: Optional[str] = Field(default=None, description="上游模型 ID")

    http_timeout: float = Field(default=30.0, ge=1.0, description="单次 HTTP 读写超时（秒）")
    connect_timeout: float = Field(default=10.0, gt=0, description="建立连接超时（秒）")
    stream_timeout: float = Field(default=30.0, ge=1.0, le=600.0, description="整个流式会话的超时（秒）")

    # ---- 重试 ----
    max_retries: int = Field(default=2, ge=0, le=10, description="连接阶段的最大重试次数")
    retry_base_delay: float = Field(default=2.0, ge=1.0, description="指数退避底数，第 n 次重试等待 base**n 秒")

    # ---- 生成参数默认值 ----
    default_max_tokens: int = Field(default=8192, ge=1)
    default_temperature: float = Field(default=0.5, ge=0.0, le=2.0)
    top_p: float = Field(default=0.9, gt=0.0, le=1.0)
    frequency_penalty: float = Field(default=0.5, ge=-2.0, le=2.0)
    presence_penalty: float = Field(default=0.1, ge=-2.0, le=2.0)

    # ---- 会话缓存 ----
    conversation_window: int = Field(default=10, ge=1, le=200, description="每个会话保留的最大消息数")

    prompts_file: Optional[str] = Field(default=None, description="提示词变体 YAML 文件路径")
    log_dir: str = Field(default="logs", description="日志目录")
    log_level: str = Field(default="INFO", description="日志级别")
    log_redact_content: bool = Field(default=False, description="是否脱敏日志内容")

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    @staticmethod
    def _config_source() -> Dict[str, Any]:
        return _load_config_from_yaml()

    @field_validator("api_base_url")
    @classmethod
    def strip_trailing_slash(cls, v: Optional[str]) -> Optional[str]:
        if v:
            return v.rstrip("/")
        return v

    @field_validator("api_key")
    @classmethod
    def validate_api_key(cls, v: Optional[str]) -> Optional[str]:
        if v and len(v) < 10:
            raise ValueError("API key seems too short")
        return v

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
