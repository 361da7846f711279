"""Configuration settings for the Zeus chat core.

Uses pydantic-settings so every field can come from the environment or a
``.env`` file.
"""

from enum import Enum
from functools import lru_cache

from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class CompletionBackend(str, Enum):
    aggregator = "aggregator"
    gemini = "gemini"


class LogFormat(str, Enum):
    console = "console"
    json = "json"


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # ===== Application =====
    app_name: str = Field(default="Zeus Chat API", description="Application name")
    environment: str = Field(default="development")
    log_level: str = Field(default="INFO")
    log_format: LogFormat = Field(default=LogFormat.console)

    # ===== Completion providers =====
    completion_backend: CompletionBackend = Field(default=CompletionBackend.aggregator)
    aimlapi_key: str = Field(default="", validation_alias=AliasChoices("AIMLAPI_KEY", "aimlapi_key"))
    aimlapi_base_url: str = Field(default="https://api.aimlapi.com/v1")
    together_api_key: str = Field(
        default="",
        validation_alias=AliasChoices("TOGETHER_API_KEY", "ALTOGETHER_AI_KEY", "together_api_key"),
    )
    together_base_url: str = Field(default="https://api.together.xyz/v1")
    gemini_api_key: str = Field(default="", validation_alias=AliasChoices("GEMINI_API_KEY", "gemini_api_key"))
    api_timeout: float = Field(default=30.0, description="Completion request timeout in seconds")

    # ===== Orchestration =====
    max_message_length: int = Field(default=10000, description="Maximum characters per message")
    max_concurrent_sends: int = Field(default=10, description="Sends in flight across conversations")
    max_open_sessions: int = Field(default=100, description="Started sessions kept before the least recently used is closed")
    session_idle_timeout: float = Field(default=300.0, description="Seconds before an idle session is closed")

    # ===== HTTP surface =====
    rate_limit: int = Field(default=50)
    rate_limit_window: int = Field(default=60, description="Rate limit window in seconds")


@lru_cache
def get_settings() -> Settings:
    return Settings()
