"""
Per-user, per-character, and global model preferences.

The resolver reads preferences through the :class:`PreferenceStore`
protocol so the application can back it with whatever repository it
already has.  Two stores ship here: an in-memory one (tests, embedding)
and a JSON-file one that persists settings across restarts.

Preference documents look like::

    {
        "conversational": {"model": "llama-3.1-8b-instruct", "temperature": 0.8, "max_tokens": 2000},
        "analytical": {"model": "qwen2.5-7b-instruct", "temperature": 0.1}
    }
"""

from __future__ import annotations

import copy
import json
import os
from typing import Any, Protocol

from loguru import logger

from confidant.core.exceptions import ConfigurationError

from .config import Role

Preferences = dict[str, dict[str, Any]]


class PreferenceStore(Protocol):
    """Read/write access to model preferences at every cascade level."""

    def get_user_preferences(self, user_id: str) -> Preferences | None: ...

    def set_user_preferences(self, user_id: str, preferences: Preferences) -> None: ...

    def get_character_preferences(self, character_id: str) -> Preferences | None: ...

    def set_character_preferences(self, character_id: str, preferences: Preferences) -> None: ...

    def get_global_config(self, role: Role) -> dict[str, Any] | None: ...

    def set_global_config(self, role: Role, config: dict[str, Any]) -> None: ...

    def get_context_window(self, role: Role) -> int | None: ...


class InMemoryPreferenceStore:
    """Dict-backed store; nothing survives the process."""

    def __init__(
        self,
        users: dict[str, Preferences] | None = None,
        characters: dict[str, Preferences] | None = None,
        global_config: dict[str, dict[str, Any]] | None = None,
    ):
        self._data: dict[str, dict[str, Any]] = {
            "users": {str(k): v for k, v in (users or {}).items()},
            "characters": {str(k): v for k, v in (characters or {}).items()},
            "global": dict(global_config or {}),
        }

    def get_user_preferences(self, user_id: str) -> Preferences | None:
        return copy.deepcopy(self._data["users"].get(str(user_id)))

    def set_user_preferences(self, user_id: str, preferences: Preferences) -> None:
        self._data["users"][str(user_id)] = copy.deepcopy(preferences)
        self._persist()

    def get_character_preferences(self, character_id: str) -> Preferences | None:
        return copy.deepcopy(self._data["characters"].get(str(character_id)))

    def set_character_preferences(self, character_id: str, preferences: Preferences) -> None:
        self._data["characters"][str(character_id)] = copy.deepcopy(preferences)
        self._persist()

    def get_global_config(self, role: Role) -> dict[str, Any] | None:
        return copy.deepcopy(self._data["global"].get(role.value))

    def set_global_config(self, role: Role, config: dict[str, Any]) -> None:
        self._data["global"][role.value] = copy.deepcopy(config)
        self._persist()

    def get_context_window(self, role: Role) -> int | None:
        value = self._data["global"].get(f"{role.value}_context_window")
        try:
            return int(value) if value else None
        except (TypeError, ValueError):
            return None

    def _persist(self) -> None:
        """Hook for subclasses that write through to storage."""


class JsonFilePreferenceStore(InMemoryPreferenceStore):
    """Store backed by a single JSON document on disk.

    The whole document is rewritten on every change, which is fine for
    the handful of users and characters a local deployment has.
    """

    def __init__(self, path: str):
        self._path = os.path.expanduser(path)
        super().__init__()
        self._data.update(self._load())

    @property
    def path(self) -> str:
        return self._path

    def _load(self) -> dict[str, dict[str, Any]]:
        if not os.path.exists(self._path):
            return {}
        try:
            with open(self._path) as f:
                raw = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise ConfigurationError(
                f"Failed to load LLM preferences from {self._path}: {e}",
                layer="preferences",
            ) from e
        if not isinstance(raw, dict):
            raise ConfigurationError(f"LLM preferences file {self._path} must contain a JSON object", layer="preferences")
        return {section: dict(raw.get(section) or {}) for section in ("users", "characters", "global")}

    def _persist(self) -> None:
        directory = os.path.dirname(self._path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self._path}.tmp"
        with open(tmp_path, "w") as f:
            json.dump(self._data, f, indent=2)
        os.replace(tmp_path, self._path)
        logger.debug(f"Saved LLM preferences to {self._path}")
