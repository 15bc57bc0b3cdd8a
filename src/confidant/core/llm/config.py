"""
LLM configuration: roles, server types, and built-in model defaults.

Central configuration for every call the gateway makes.  Change the
built-in defaults here to affect every request that falls through the
model resolution cascade.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass
from typing import Any

# --- Built-in defaults (used before any global config has been saved) ---

BUILTIN_MODEL = "meta-llama-3.1-8b-instruct"
BUILTIN_TEMPERATURE = 0.7
BUILTIN_MAX_TOKENS = 2048
BUILTIN_CONTEXT_WINDOW = 30

MODELS_CACHE_TTL = 5 * 60  # seconds


class Role(str, enum.Enum):
    """Which job a request is doing; selects the cascade and global defaults."""

    CONVERSATIONAL = "conversational"
    ANALYTICAL = "analytical"


class ConfigSource(str, enum.Enum):
    """Cascade level a ModelConfig was resolved from."""

    CHARACTER = "character"
    USER = "user"
    GLOBAL = "global"


class ServerType(str, enum.Enum):
    """Inference server flavour; only affects the token-limit parameter name."""

    LMSTUDIO = "lmstudio"
    OLLAMA = "ollama"
    OPENAI = "openai"
    CUSTOM = "custom"


_MAX_TOKENS_FIELD = "max_tokens"
_NUM_PREDICT_FIELD = "num_predict"


@dataclass(frozen=True)
class ModelConfig:
    """Resolved model settings for a single request."""

    model: str
    temperature: float = BUILTIN_TEMPERATURE
    max_tokens: int = BUILTIN_MAX_TOKENS
    source: ConfigSource = ConfigSource.GLOBAL
    context_window_messages: int = BUILTIN_CONTEXT_WINDOW


def parse_role(role: Role | str) -> Role:
    """Coerce a role name to :class:`Role`, raising ``ValueError`` on junk."""
    if isinstance(role, Role):
        return role
    try:
        return Role(str(role).strip().lower())
    except ValueError:
        raise ValueError(f"Invalid role: {role!r}. Must be 'conversational' or 'analytical'") from None


def parse_server_type(server_type: ServerType | str | None) -> ServerType:
    """Coerce a server-type tag; unknown tags are treated as ``custom``."""
    if isinstance(server_type, ServerType):
        return server_type
    try:
        return ServerType((server_type or ServerType.LMSTUDIO.value).strip().lower())
    except ValueError:
        return ServerType.CUSTOM


def adapt_parameters(body: dict[str, Any], server_type: ServerType | str | None) -> dict[str, Any]:
    """Rename the token-limit field for the target server.

    Ollama expects ``num_predict``; LM Studio and OpenAI expect
    ``max_tokens``.  ``custom`` servers get the body as-is.
    """
    adapted = dict(body)
    kind = parse_server_type(server_type)

    if kind is ServerType.OLLAMA and _MAX_TOKENS_FIELD in adapted:
        adapted[_NUM_PREDICT_FIELD] = adapted.pop(_MAX_TOKENS_FIELD)
    elif kind in (ServerType.LMSTUDIO, ServerType.OPENAI) and _NUM_PREDICT_FIELD in adapted:
        adapted[_MAX_TOKENS_FIELD] = adapted.pop(_NUM_PREDICT_FIELD)

    return adapted

