# config.py
# Runtime settings. Values come from the environment (and a local .env file);
# every field has a default so the engine runs with no configuration at all.

import os

from dotenv import load_dotenv
from pydantic import BaseModel, Field

_ENV_PREFIX = "MCP_WORKFLOW_"


class Settings(BaseModel):
    """Engine, pool and planner knobs. Durations are in seconds."""

    model: str = "anthropic/claude-3.5-haiku"
    base_url: str = "https://openrouter.ai/api/v1"
    api_key: str | None = Field(default=None, repr=False)
    registry_path: str | None = None

    max_iterations: int = Field(10, ge=1)
    retry_budget: int = Field(3, ge=0, description="Retries allowed per step for retryable failures.")
    loop_threshold: int = Field(3, ge=1, description="Identical calls tolerated before a loop is declared.")
    max_parse_errors: int = Field(3, ge=1)

    tool_timeout: float = Field(60.0, gt=0)
    planner_timeout: float = Field(60.0, gt=0)
    connect_timeout: float = Field(30.0, gt=0)
    connect_attempts: int = Field(3, ge=1)
    connect_backoff: float = Field(0.5, ge=0)

    idle_ttl: float = Field(300.0, gt=0)
    sweep_interval: float = Field(60.0, gt=0)

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "Settings":
        """
        Build settings from MCP_WORKFLOW_* variables.

        OPENROUTER_API_KEY and MCP_REGISTRY_PATH are read without the prefix,
        matching the names other MCP tooling already uses.
        """
        if dotenv:
            load_dotenv()

        values: dict[str, str] = {}
        for name in cls.model_fields:
            raw = os.getenv(f"{_ENV_PREFIX}{name.upper()}")
            if raw is not None:
                values[name] = raw

        api_key = os.getenv("OPENROUTER_API_KEY")
        if api_key and "api_key" not in values:
            values["api_key"] = api_key
        registry_path = os.getenv("MCP_REGISTRY_PATH")
        if registry_path and "registry_path" not in values:
            values["registry_path"] = registry_path

        return cls.model_validate(values)
