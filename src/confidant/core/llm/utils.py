"""Utility functions for building chat messages and reading completions."""

from __future__ import annotations

import json
from collections.abc import Iterable
from typing import Any

from loguru import logger

from confidant.core.exceptions import MalformedResponseError

MAX_CONTEXT_MESSAGES = 5
MAX_CONTEXT_MESSAGE_CHARS = 2000


def process_context_message(message: Any) -> dict[str, str] | None:
    """Normalize one context entry into a ``{role, content}`` chat message.

    Accepts plain strings, ``{role, content}`` dicts, legacy ``{message}``
    dicts, and ``{sender: "agent"}`` dicts (mapped to ``assistant``).  Empty
    or oversized entries are dropped.
    """
    role = "user"
    if isinstance(message, str):
        content = message
    elif isinstance(message, dict):
        if message.get("content"):
            content = message["content"]
        elif message.get("message"):
            content = message["message"]
        else:
            content = json.dumps(message)

        if message.get("role"):
            role = message["role"]
        elif message.get("sender") == "agent":
            role = "assistant"
    elif hasattr(message, "role") and hasattr(message, "content"):
        role, content = message.role, message.content
    else:
        content = str(message) if message is not None else ""

    content = str(content)
    if content.strip() and len(content) < MAX_CONTEXT_MESSAGE_CHARS:
        return {"role": str(role), "content": content.strip()}
    return None


def build_messages(
    prompt: str,
    context_messages: Iterable[Any] = (),
    *,
    system_prompt: str | None = None,
    max_context_messages: int = MAX_CONTEXT_MESSAGES,
) -> list[dict[str, str]]:
    """Assemble the ``messages`` array: system, recent context, then the prompt."""
    messages: list[dict[str, str]] = []

    if system_prompt and system_prompt.strip():
        messages.append({"role": "system", "content": system_prompt})

    context = list(context_messages)
    recent = context[-max_context_messages:] if max_context_messages > 0 else []
    for entry in recent:
        processed = process_context_message(entry)
        if processed:
            messages.append(processed)

    messages.append({"role": "user", "content": prompt})
    logger.debug(f"Building conversation with {len(messages)} messages")
    return messages


def extract_choice_content(data: Any) -> str:
    """Pull the reply text out of a chat-completions response body.

    Uses ``message.content`` and falls back to ``message.reasoning_content``,
    which some reasoning models populate instead.

    Raises:
        MalformedResponseError: If there are no choices or neither field
            holds text.
    """
    if not isinstance(data, dict):
        raise MalformedResponseError("LLM response body is not a JSON object", layer="transport")

    choices = data.get("choices")
    if not choices or not isinstance(choices, list):
        raise MalformedResponseError("No response from LLM (empty choices)", layer="transport")

    choice = choices[0] if isinstance(choices[0], dict) else {}
    message = choice.get("message") or {}
    for field in ("content", "reasoning_content"):
        value = message.get(field)
        if isinstance(value, str) and value.strip():
            return value.strip()

    raise MalformedResponseError(
        "No content found in LLM response",
        layer="transport",
        context={"model": data.get("model"), "finish_reason": choice.get("finish_reason")},
    )


def extract_delta_content(event: Any) -> str | None:
    """Return the incremental content fragment of one streaming event, if any."""
    if not isinstance(event, dict):
        return None
    choices = event.get("choices")
    if not choices or not isinstance(choices[0], dict):
        return None
    delta = choices[0].get("delta") or {}
    content = delta.get("content") if isinstance(delta, dict) else None
    return content if isinstance(content, str) and content else None
