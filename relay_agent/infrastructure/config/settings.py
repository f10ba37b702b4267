"""
Relay agent configuration.

ContextSettings holds the thread context engine limits. The engine itself never
reads the environment: whoever owns the engine loads settings here and passes
the object in.
"""

from functools import lru_cache
from typing import FrozenSet, Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class ContextSettings(BaseSettings):
    """Limits and policies for the thread context engine"""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_CONTEXT_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Tool execution cache
    max_executions_per_thread: int = Field(default=100, ge=1)
    max_execution_age_seconds: float = Field(default=30 * 60, gt=0)
    # Tools whose effect is durable enough to remember for the whole thread
    never_expire_tools: FrozenSet[str] = frozenset({"postMessage", "getThreadHistory"})

    # History pruning
    max_messages: int = Field(default=75, ge=1)
    target_messages: int = Field(default=50, ge=1)
    min_messages_to_keep: int = Field(default=10, ge=0)
    always_keep_message_types: FrozenSet[str] = frozenset({"button_click", "system_note"})
    keep_root_message: bool = True

    # Context formatting
    turn_gap_ms: int = Field(default=100, ge=0)
    default_context_limit: int = Field(default=25, ge=1)
    assistant_name: str = "Aya"
    default_timezone: str = "America/Sao_Paulo"

    @model_validator(mode="after")
    def _check_pruning_bounds(self) -> "ContextSettings":
        if self.target_messages > self.max_messages:
            raise ValueError("target_messages must not exceed max_messages")
        return self


class LoggingSettings(BaseSettings):
    """Process-level logging configuration"""

    model_config = SettingsConfigDict(
        env_prefix="RELAY_LOG_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    format: Literal["json", "console"] = "json"
    service_name: str = "relay-agent"


@lru_cache
def get_settings() -> ContextSettings:
    """Get cached ContextSettings instance"""
    return ContextSettings()


@lru_cache
def get_logging_settings() -> LoggingSettings:
    return LoggingSettings()
