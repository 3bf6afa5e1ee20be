"""Per-workflow limits for the coordinator and its domain sub-graphs."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class AgentSettings(BaseSettings):
    """Retry ceilings, recursion limit and per-run deadline.

    Environment variables:
      APP_MAX_RETRY          — application sub-graph retry ceiling (default: 1)
      OBJECT_MAX_RETRY       — object sub-graph retry ceiling (default: 3)
      COORDINATOR_MAX_RETRY  — coordinator retry ceiling (default: 3)
      RECURSION_LIMIT        — LangGraph super-step limit per invocation (default: 100)
      RUN_TIMEOUT_SECONDS    — wall-clock deadline for one run (default: 300)
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )

    app_max_retry: int = Field(default=1, ge=1, validation_alias="APP_MAX_RETRY")
    object_max_retry: int = Field(default=3, ge=1, validation_alias="OBJECT_MAX_RETRY")
    coordinator_max_retry: int = Field(default=3, ge=1, validation_alias="COORDINATOR_MAX_RETRY")
    recursion_limit: int = Field(default=100, ge=10, validation_alias="RECURSION_LIMIT")
    run_timeout_seconds: float = Field(default=300.0, gt=0, validation_alias="RUN_TIMEOUT_SECONDS")

    @classmethod
    def from_env(cls) -> AgentSettings:
        return cls()
