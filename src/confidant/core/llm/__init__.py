"""
LLM plumbing: model resolution, pacing, HTTP transport, and JSON recovery.

Talks to a single OpenAI-compatible inference server over ``httpx``.
"""

from .config import (
    BUILTIN_MODEL,
    ConfigSource,
    ModelConfig,
    Role,
    ServerType,
    adapt_parameters,
    parse_role,
    parse_server_type,
)
from .model_resolver import ModelResolver
from .preferences import InMemoryPreferenceStore, JsonFilePreferenceStore, PreferenceStore
from .rate_limiter import RateLimiter, RateLimitWindow
from .recovery import ParseAttempt, RecoveryEngine, RecoveryResult, build_fallback, normalize_json_text
from .structured import StructuredResponder, build_structured_prompt
from .transport import CompletionResult, HttpTransport, StreamAccumulator, StreamResult
from .utils import build_messages, extract_choice_content, extract_delta_content

__all__ = [
    "BUILTIN_MODEL",
    "CompletionResult",
    "ConfigSource",
    "HttpTransport",
    "InMemoryPreferenceStore",
    "JsonFilePreferenceStore",
    "ModelConfig",
    "ModelResolver",
    "ParseAttempt",
    "PreferenceStore",
    "RateLimitWindow",
    "RateLimiter",
    "RecoveryEngine",
    "RecoveryResult",
    "Role",
    "ServerType",
    "StreamAccumulator",
    "StreamResult",
    "StructuredResponder",
    "adapt_parameters",
    "build_fallback",
    "build_messages",
    "build_structured_prompt",
    "extract_choice_content",
    "extract_delta_content",
    "normalize_json_text",
    "parse_role",
    "parse_server_type",
]
