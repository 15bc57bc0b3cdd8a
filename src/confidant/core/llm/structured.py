"""
Structured (JSON) responses on top of the plain completion call.

:class:`StructuredResponder` wraps the caller's prompt with strict JSON
instructions, makes a low-temperature call, and hands the reply to the
:class:`~confidant.core.llm.recovery.RecoveryEngine`.  A failed call or an
unparseable reply gets exactly one more attempt at a slightly higher
temperature with a larger token budget; after that the schema-shaped
fallback is returned.  Only a missing model configuration escapes.
"""

from __future__ import annotations

import dataclasses
import json
import time
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

from loguru import logger

from confidant.core.exceptions import NoModelConfiguredError

from .config import Role
from .recovery import RecoveryEngine, Schema, build_fallback

if TYPE_CHECKING:
    from confidant.core.llm.transport import CompletionResult
    from confidant.gateway.requests import RequestOptions

CompletionFn = Callable[[str, "RequestOptions"], Awaitable["CompletionResult"]]

STRUCTURED_TEMPERATURE = 0.1
STRUCTURED_MAX_TOKENS = 1500
RETRY_TEMPERATURE = 0.3
RETRY_EXTRA_TOKENS = 200


def build_structured_prompt(prompt: str, schema: Schema | None = None) -> str:
    """Append JSON-only instructions (and the schema, if any) to *prompt*."""
    parts = [
        prompt,
        "",
        "=== JSON GENERATION OPTIMIZATION ===",
        "You are a precise JSON generator. Focus on accuracy and completeness.",
        "",
        "=== CRITICAL JSON REQUIREMENTS ===",
        "1. Respond with ONLY valid JSON - no explanations or markdown",
        "2. Start immediately with { and end with }",
        "3. Complete ALL required fields in the schema",
        "4. Use proper JSON syntax: double quotes, no trailing commas",
        "5. Do not truncate or abbreviate any values",
    ]

    if schema:
        parts += ["", "=== REQUIRED SCHEMA ===", json.dumps(schema, indent=2)]
        properties = schema.get("properties")
        if isinstance(properties, dict):
            required = set(schema.get("required") or ())
            parts += ["", "=== FIELD REQUIREMENTS ==="]
            for key, prop in properties.items():
                prop = prop if isinstance(prop, dict) else {}
                line = f"- {key}: {prop.get('type', 'any')} {'(REQUIRED)' if key in required else '(optional)'}"
                if prop.get("description"):
                    line += f" - {prop['description']}"
                parts.append(line)

    parts += [
        "",
        "=== RESPONSE FORMAT ===",
        "Generate the JSON response now. Start with { and ensure complete, valid JSON:",
    ]
    return "\n".join(parts)


class StructuredResponder:
    """Generates JSON values from a completion function.

    Args:
        complete: ``await complete(prompt, options)`` returning a
            ``CompletionResult``; the gateway passes its queued
            ``generate_response`` path here.
        default_options: Options used when the caller passes none; their
            role (analytical unless set) also fills in callers' unset role.
        engine: Recovery engine; a fresh one by default.
    """

    def __init__(
        self,
        complete: CompletionFn,
        default_options: RequestOptions,
        engine: RecoveryEngine | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._complete = complete
        self._default_options = default_options
        self.engine = engine or RecoveryEngine()
        self._clock = clock
        self._stats: dict[str, Any] = {
            "total_requests": 0,
            "successful_parses": 0,
            "fallbacks_used": 0,
            "strategy_usage": {},
            "total_response_time": 0.0,
        }

    async def generate_structured_response(
        self,
        prompt: str,
        schema: Schema | None = None,
        options: RequestOptions | None = None,
    ) -> Any:
        """Return a parsed JSON value for *prompt*, or the schema fallback.

        Raises:
            NoModelConfiguredError: No model could be resolved at all.
        """
        started = self._clock()
        self._stats["total_requests"] += 1
        defaults = self._default_options
        options = (options or defaults).with_default_role(defaults.role or Role.ANALYTICAL)

        primary = dataclasses.replace(
            options,
            temperature=options.temperature if options.temperature is not None else STRUCTURED_TEMPERATURE,
            max_tokens=options.max_tokens or STRUCTURED_MAX_TOKENS,
            streaming=False,
        )
        enhanced = build_structured_prompt(prompt, schema)
        logger.debug(
            f"Generating structured response (prompt={len(enhanced)} chars, "
            f"schema={'yes' if schema else 'no'}, temp={primary.temperature})"
        )

        try:
            value = await self._attempt(enhanced, primary, "primary")
            if value is None:
                logger.warning("Primary structured attempt failed, retrying once")
                retry = dataclasses.replace(
                    primary,
                    temperature=RETRY_TEMPERATURE,
                    max_tokens=primary.max_tokens + RETRY_EXTRA_TOKENS,
                )
                value = await self._attempt(enhanced, retry, "retry")
                if value is not None:
                    self._stats["fallbacks_used"] += 1
        finally:
            self._stats["total_response_time"] += self._clock() - started

        if value is not None:
            self._stats["successful_parses"] += 1
            return value

        logger.error("All structured response attempts failed, using schema fallback")
        self._stats["fallbacks_used"] += 1
        return build_fallback(schema, "All parsing strategies failed")

    async def _attempt(self, prompt: str, options: RequestOptions, label: str) -> Any:
        try:
            result = await self._complete(prompt, options)
        except NoModelConfiguredError:
            raise
        except Exception as e:
            logger.error(f"{label} structured attempt failed: {type(e).__name__}: {e}")
            return None

        if not result or not result.content:
            logger.warning(f"{label} structured attempt failed: no response content")
            return None

        parsed = self.engine.parse(result.content)
        if not parsed.succeeded:
            logger.warning(f"{label} structured attempt failed: could not parse response")
            return None

        usage = self._stats["strategy_usage"]
        usage[parsed.strategy] = usage.get(parsed.strategy, 0) + 1
        logger.info(f"{label} structured attempt succeeded via {parsed.strategy}")
        return parsed.value

    def get_statistics(self) -> dict[str, Any]:
        total = self._stats["total_requests"]
        usage = dict(self._stats["strategy_usage"])
        return {
            "total_requests": total,
            "successful_parses": self._stats["successful_parses"],
            "fallbacks_used": self._stats["fallbacks_used"],
            "strategy_usage": usage,
            "average_response_time": self._stats["total_response_time"] / total if total else 0.0,
            "success_rate": round(self._stats["successful_parses"] / total * 100, 2) if total else 0.0,
            "most_successful_strategy": max(usage, key=usage.get) if usage else None,
            "parser": self.engine.get_statistics(),
        }
