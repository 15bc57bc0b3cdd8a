"""Pydantic models for config validation.

Opt-in schema validation for ``Config.config_data``.  Call
``Config.validated()`` to obtain a typed, validated ``ConfidantConfig``
instance.  Env-var overrides arrive as strings; pydantic coerces them.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

ServerTypeName = Literal["lmstudio", "ollama", "openai", "custom"]


class PathsConfig(BaseModel):
    """File-system paths used by the gateway."""

    data_dir: Path
    preferences_file: Path | None = None

    @field_validator("data_dir", "preferences_file", mode="before")
    @classmethod
    def _expand_user(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(v).expanduser()
        if isinstance(v, Path):
            return v.expanduser()
        return v


class LLMConfig(BaseModel):
    """Inference server connection and admission settings."""

    model_config = ConfigDict(extra="allow")

    endpoint: str = "http://localhost:1234/v1/chat/completions"
    server_type: ServerTypeName = "lmstudio"
    api_key: str = ""
    default_model: str = "meta-llama-3.1-8b-instruct"
    temperature: float = Field(0.7, ge=0.0, le=2.0)
    max_tokens: int = Field(2048, gt=0)
    timeout: float = Field(30.0, gt=0)
    rate_limit_rpm: int = Field(60, gt=0)
    queue_backoff: float = Field(1.0, gt=0)
    max_context_messages: int = Field(5, ge=0)
    models_cache_ttl: float = Field(300.0, ge=0)
    log_malformed_stream_lines: bool = False

    @field_validator("server_type", mode="before")
    @classmethod
    def _lower_server_type(cls, v: Any) -> Any:
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("endpoint")
    @classmethod
    def _http_endpoint(cls, v: str) -> str:
        if not v.startswith(("http://", "https://")):
            raise ValueError(f"endpoint must be an http(s) URL, got {v!r}")
        return v.rstrip("/")


class LoggingConfig(BaseModel):
    """Log sink settings passed to ``setup_logging``."""

    level: str = "WARNING"
    file: str | None = None


class ConfidantConfig(BaseModel):
    """Root configuration model.

    Uses ``extra="allow"`` so consumers can bolt on custom sections
    without touching this schema.
    """

    model_config = ConfigDict(extra="allow")

    paths: PathsConfig = PathsConfig(data_dir=Path("~/.confidant"))
    llm: LLMConfig = LLMConfig()
    logging: LoggingConfig = LoggingConfig()
