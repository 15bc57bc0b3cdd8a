"""
Model resolution cascade for conversational and analytical requests.

Picks the model, temperature, and token limit for a (user, character, role)
triple.  Resolution is a pure read against the preference store and runs
fresh for every request because settings can change between calls.  Only
the inference server's model catalog is cached, for five minutes.
"""

from __future__ import annotations

from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from confidant.core.exceptions import NoModelConfiguredError, ValidationError, wrap_error
from confidant.core.utils.cache import TTLCache

from .config import (
    BUILTIN_CONTEXT_WINDOW,
    BUILTIN_MAX_TOKENS,
    BUILTIN_MODEL,
    BUILTIN_TEMPERATURE,
    MODELS_CACHE_TTL,
    ConfigSource,
    ModelConfig,
    Role,
    parse_role,
)
from .preferences import Preferences, PreferenceStore

ModelCatalogFetcher = Callable[[], Awaitable[list[dict[str, str]]]]

_MODELS_CACHE_KEY = "available_models"


class ModelResolver:
    """Resolves :class:`ModelConfig` through the character -> user -> global cascade.

    Cascade per role:
      - conversational: character override -> user default -> global default
      - analytical:     user default -> global default (character values ignored)

    The global default falls back to a built-in model so the gateway works
    before first-time setup.
    """

    def __init__(
        self,
        store: PreferenceStore,
        *,
        catalog_fetcher: ModelCatalogFetcher | None = None,
        default_model: str = BUILTIN_MODEL,
        default_temperature: float = BUILTIN_TEMPERATURE,
        default_max_tokens: int = BUILTIN_MAX_TOKENS,
        models_cache_ttl: float = MODELS_CACHE_TTL,
        models_cache: TTLCache | None = None,
    ):
        self._store = store
        self._catalog_fetcher = catalog_fetcher
        self.default_model = default_model
        self.default_temperature = default_temperature
        self.default_max_tokens = default_max_tokens
        self._models_cache = models_cache or TTLCache(ttl_seconds=models_cache_ttl)

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve_model_config(
        self,
        user_id: str | None,
        character_id: str | None,
        role: Role | str = Role.CONVERSATIONAL,
    ) -> ModelConfig:
        """Resolve the model configuration for one request.

        Raises:
            ValidationError: If *role* is not a known role.
            NoModelConfiguredError: If no level, including the built-in
                default, yields a model id.
        """
        try:
            role = parse_role(role)
        except ValueError as e:
            raise ValidationError(str(e), layer="model_resolver", context={"role": role}) from e

        global_config = self.get_global_config(role)
        context_window = self._store.get_context_window(role) or BUILTIN_CONTEXT_WINDOW

        if role is Role.CONVERSATIONAL and character_id is not None:
            entry = self._role_entry(self._store.get_character_preferences(str(character_id)), role)
            if entry:
                return self._build(entry, ConfigSource.CHARACTER, global_config, context_window, user_id, character_id)
            logger.debug(f"Character {character_id} has no conversational override, checking user defaults")

        if user_id is not None:
            entry = self._role_entry(self._store.get_user_preferences(str(user_id)), role)
            if entry:
                return self._build(entry, ConfigSource.USER, global_config, context_window, user_id, character_id)
            logger.debug(f"User {user_id} has no {role.value} preferences, using global defaults")

        return self._build(global_config, ConfigSource.GLOBAL, global_config, context_window, user_id, character_id)

    def get_global_config(self, role: Role | str) -> dict[str, Any]:
        """Return the persisted global default for *role*, or the built-in one."""
        role = parse_role(role)
        stored = self._store.get_global_config(role)
        if stored and stored.get("model"):
            return stored

        if not self.default_model:
            logger.error(f"No global {role.value} model configured and no built-in default available")
            raise NoModelConfiguredError(
                "No model configured. Set a global LLM configuration or llm.default_model.",
                layer="model_resolver",
                context={"role": role.value},
            )

        logger.warning(f"Global {role.value} config not found, using built-in default {self.default_model}")
        return {
            "model": self.default_model,
            "temperature": self.default_temperature,
            "max_tokens": self.default_max_tokens,
        }

    @staticmethod
    def _role_entry(preferences: Preferences | None, role: Role) -> dict[str, Any] | None:
        if not preferences:
            return None
        entry = preferences.get(role.value)
        if isinstance(entry, dict) and entry.get("model"):
            return entry
        return None

    def _build(
        self,
        entry: dict[str, Any],
        source: ConfigSource,
        global_config: dict[str, Any],
        context_window: int,
        user_id: str | None,
        character_id: str | None,
    ) -> ModelConfig:
        model = str(entry.get("model") or "").strip()
        if not model:
            raise NoModelConfiguredError(
                "Resolved model configuration has an empty model id",
                layer="model_resolver",
                context={"source": source.value, "user_id": user_id, "character_id": character_id},
            )

        config = ModelConfig(
            model=model,
            temperature=float(_first_set(entry, global_config, "temperature", self.default_temperature)),
            max_tokens=int(_first_set(entry, global_config, "max_tokens", self.default_max_tokens)),
            source=source,
            context_window_messages=int(entry.get("context_window_messages") or context_window),
        )
        logger.info(
            f"Resolved model {config.model} from {source.value} "
            f"(user={user_id}, character={character_id}, temp={config.temperature}, max_tokens={config.max_tokens})"
        )
        return config

    # ------------------------------------------------------------------
    # Preference writes
    # ------------------------------------------------------------------

    def set_user_preferences(self, user_id: str, preferences: Preferences) -> None:
        """Save a user's defaults for either role."""
        self._validate_entries(preferences, allowed={Role.CONVERSATIONAL, Role.ANALYTICAL})
        self._store.set_user_preferences(str(user_id), preferences)
        logger.info(f"Updated LLM preferences for user {user_id}")

    def set_character_preferences(self, character_id: str, preferences: Preferences) -> None:
        """Save a character's conversational override.

        Raises:
            ValidationError: If the preferences carry an analytical entry.
                Analytical work always runs on the user's or global model.
        """
        if Role.ANALYTICAL.value in preferences:
            raise ValidationError(
                "Characters may only override the conversational model",
                layer="model_resolver",
                context={"character_id": character_id},
            )
        self._validate_entries(preferences, allowed={Role.CONVERSATIONAL})
        self._store.set_character_preferences(str(character_id), preferences)
        logger.info(f"Updated LLM preferences for character {character_id}")

    def set_global_config(self, role: Role | str, config: dict[str, Any]) -> None:
        """Persist the global default for *role*."""
        try:
            role = parse_role(role)
        except ValueError as e:
            raise ValidationError(str(e), layer="model_resolver") from e
        if not config.get("model"):
            raise ValidationError("Global LLM config requires a model", layer="model_resolver")
        self._store.set_global_config(role, config)
        logger.info(f"Updated global {role.value} LLM config: {config.get('model')}")

    @staticmethod
    def _validate_entries(preferences: Preferences, *, allowed: set[Role]) -> None:
        allowed_names = {r.value for r in allowed}
        for key, entry in preferences.items():
            if key not in allowed_names:
                raise ValidationError(
                    f"Unknown preference role {key!r}; expected one of {sorted(allowed_names)}",
                    layer="model_resolver",
                )
            if not isinstance(entry, dict):
                raise ValidationError(f"Preference entry for {key!r} must be an object", layer="model_resolver")

    # ------------------------------------------------------------------
    # Model catalog
    # ------------------------------------------------------------------

    async def get_available_models(self) -> list[dict[str, str]]:
        """List models the inference server reports, cached for five minutes."""
        cached = self._models_cache.get_cached_data(_MODELS_CACHE_KEY)
        if cached is not None:
            age = self._models_cache.age(_MODELS_CACHE_KEY) or 0.0
            logger.debug(f"Returning {len(cached)} cached models ({age:.0f}s old)")
            return list(cached)

        if self._catalog_fetcher is None:
            raise NoModelConfiguredError("No model catalog source configured", layer="model_resolver")

        try:
            models = await self._catalog_fetcher()
        except Exception as e:
            raise wrap_error(e, "Failed to get available models", layer="model_resolver")

        self._models_cache.cache_data(_MODELS_CACHE_KEY, list(models))
        logger.info(f"Fetched {len(models)} available models from LLM server")
        return list(models)


def _first_set(entry: dict[str, Any], fallback: dict[str, Any], key: str, default: Any) -> Any:
    for source in (entry, fallback):
        value = source.get(key)
        if value is not None:
            return value
    return default
