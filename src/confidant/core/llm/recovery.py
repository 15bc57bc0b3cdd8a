"""
Structured response recovery.

Local models asked for JSON rarely return only JSON.  They wrap it in
markdown fences, put a sentence in front of it, use Python literals, or
leave trailing commas.  :class:`RecoveryEngine` runs an ordered chain of
extraction strategies over the raw text and stops at the first one that
yields a JSON object or array.  When every strategy fails it synthesizes a
value shaped like the caller's schema instead of raising.

Strategy order (stable, most reliable first):

1. ``direct``               the whole text
2. ``markdown``             fenced ```json block, plain ``` block, inline backticks
3. ``object_extraction``    outermost brace-delimited span
4. ``content_indicators``   balanced object after ``Response:``, ``Result:`` ...
5. ``line_reconstruction``  lines from the first ``{`` line until braces balance
6. ``aggressive_cleaning``  first ``{`` to its matching ``}``, closing truncated output
"""

from __future__ import annotations

import copy
import json
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from loguru import logger

from confidant.core.exceptions import RecoveryError

Strategy = Callable[[str], Any]
Schema = dict[str, Any]

_IDENTIFIER = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_COLON_AHEAD = re.compile(r"\s*:")
_LITERALS = {"True": "true", "False": "false", "None": "null", "undefined": "null"}

_MARKDOWN_PATTERNS = (
    re.compile(r"```json\s*([\s\S]*?)\s*```", re.IGNORECASE),
    re.compile(r"```\s*([\s\S]*?)\s*```"),
    re.compile(r"`([\s\S]*?)`"),
)
_OBJECT_PATTERNS = (
    re.compile(r"\{[\s\S]*\}(?=\s*$)"),
    re.compile(r"\{[\s\S]*\}"),
    re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}"),
)
_CONTENT_MARKER = re.compile(r"(?:JSON\s*Response|Response|Result|Answer|Output)\s*:?\s*(?=\{)", re.IGNORECASE)

_TYPE_ZERO_VALUES: dict[str, Any] = {
    "string": "",
    "number": 0,
    "integer": 0,
    "boolean": False,
    "array": [],
    "object": {},
}


# ----------------------------------------------------------------------
# Normalization
# ----------------------------------------------------------------------


def normalize_json_text(text: str) -> str:
    """Repair the JSON-ish syntax local models commonly produce.

    Strips ``//`` and ``/* */`` comments, drops trailing commas, converts
    single-quoted strings to double-quoted ones, quotes bare object keys, and
    maps ``True``/``False``/``None``/``undefined`` to JSON literals.  The
    contents of string literals are never touched.
    """
    out: list[str] = []
    i, n = 0, len(text)

    while i < n:
        ch = text[i]

        if ch in "\"'":
            literal, i = _read_string(text, i)
            out.append(literal)
        elif text.startswith("//", i):
            end = text.find("\n", i)
            i = n if end == -1 else end
        elif text.startswith("/*", i):
            end = text.find("*/", i + 2)
            i = n if end == -1 else end + 2
        elif ch in "}]":
            _drop_trailing_comma(out)
            out.append(ch)
            i += 1
        elif ch.isalpha() or ch in "_$":
            match = _IDENTIFIER.match(text, i)
            word = match.group(0) if match else ch
            i += len(word)
            if _in_key_position(out) and _COLON_AHEAD.match(text, i):
                out.append(f'"{word}"')
            else:
                out.append(_LITERALS.get(word, word))
        else:
            out.append(ch)
            i += 1

    return "".join(out).strip()


def _read_string(text: str, start: int) -> tuple[str, int]:
    """Read a quoted string at *start*; return it as a JSON string literal."""
    quote = text[start]
    chars: list[str] = []
    i, n = start + 1, len(text)

    while i < n:
        ch = text[i]
        if ch == "\\" and i + 1 < n:
            nxt = text[i + 1]
            chars.append("'" if nxt == "'" else ch + nxt)
            i += 2
            continue
        if ch == quote:
            return '"' + "".join(chars) + '"', i + 1
        chars.append('\\"' if ch == '"' else ch)
        i += 1

    # Unterminated; leave as-is for the parser to reject
    return text[start:], n


def _last_significant(out: list[str]) -> int:
    j = len(out) - 1
    while j >= 0 and not out[j].strip():
        j -= 1
    return j


def _drop_trailing_comma(out: list[str]) -> None:
    j = _last_significant(out)
    if j >= 0 and out[j] == ",":
        del out[j]


def _in_key_position(out: list[str]) -> bool:
    j = _last_significant(out)
    return j >= 0 and out[j] in ("{", ",")


def _loads(candidate: str) -> Any:
    return json.loads(normalize_json_text(candidate), strict=False)


# ----------------------------------------------------------------------
# Brace scanning
# ----------------------------------------------------------------------


def find_matching_brace(text: str, start: int) -> int | None:
    """Index of the ``}`` closing the ``{`` at *start*, skipping braces inside strings."""
    depth = 0
    quote: str | None = None
    escaped = False

    for i in range(start, len(text)):
        ch = text[i]
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return i
    return None


def close_truncated(fragment: str) -> str:
    """Append whatever closers a cut-off JSON fragment is missing."""
    stack: list[str] = []
    quote: str | None = None
    escaped = False

    for ch in fragment:
        if quote:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == quote:
                quote = None
            continue
        if ch in "\"'":
            quote = ch
        elif ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()

    repaired = fragment + (quote or "")
    repaired = repaired.rstrip().rstrip(",")
    if repaired.endswith(":"):
        repaired += " null"
    return repaired + "".join(reversed(stack))


# ----------------------------------------------------------------------
# Strategies
# ----------------------------------------------------------------------


def parse_direct(text: str) -> Any:
    return _loads(text.strip())


def parse_markdown(text: str) -> Any:
    for pattern in _MARKDOWN_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            return _loads(match.group(1).strip())
        except ValueError:
            continue
    raise RecoveryError("No markdown JSON found")


def parse_object_extraction(text: str) -> Any:
    for pattern in _OBJECT_PATTERNS:
        match = pattern.search(text)
        if not match:
            continue
        try:
            return _loads(match.group(0))
        except ValueError:
            continue
    raise RecoveryError("No valid JSON object found")


def parse_content_indicators(text: str) -> Any:
    for marker in _CONTENT_MARKER.finditer(text):
        start = marker.end()
        end = find_matching_brace(text, start)
        if end is None:
            continue
        try:
            return _loads(text[start : end + 1])
        except ValueError:
            continue
    raise RecoveryError("No content indicators found")


def parse_line_reconstruction(text: str) -> Any:
    lines = text.split("\n")
    first = next((i for i, line in enumerate(lines) if line.strip().startswith("{")), None)
    if first is None:
        raise RecoveryError("No JSON structure found in lines")

    block = "\n".join(lines[first:])
    opening = block.index("{")
    end = find_matching_brace(block, opening)
    if end is None:
        raise RecoveryError("JSON lines never balance")

    # Keep whole lines, up to and including the one that closes the object
    line_end = block.find("\n", end)
    reconstructed = block if line_end == -1 else block[:line_end]
    return _loads(reconstructed[opening:])


def parse_aggressive_cleaning(text: str) -> Any:
    start = text.find("{")
    if start == -1:
        raise RecoveryError("No opening brace found")

    end = find_matching_brace(text, start)
    if end is not None:
        return _loads(text[start : end + 1])

    logger.debug("No closing brace found, closing truncated JSON")
    return _loads(close_truncated(text[start:]))


STRATEGIES: tuple[tuple[str, Strategy], ...] = (
    ("direct", parse_direct),
    ("markdown", parse_markdown),
    ("object_extraction", parse_object_extraction),
    ("content_indicators", parse_content_indicators),
    ("line_reconstruction", parse_line_reconstruction),
    ("aggressive_cleaning", parse_aggressive_cleaning),
)


# ----------------------------------------------------------------------
# Fallback values
# ----------------------------------------------------------------------


def default_for_property(prop: Any) -> Any:
    """Placeholder for one schema property: ``default``, ``fallback``, or the type's zero value."""
    if not isinstance(prop, dict):
        return None
    for key in ("default", "fallback"):
        if key in prop:
            return copy.deepcopy(prop[key])

    kind = prop.get("type")
    if isinstance(kind, list):
        kind = next((k for k in kind if k != "null"), None)
    return copy.deepcopy(_TYPE_ZERO_VALUES.get(kind)) if isinstance(kind, str) else None


def build_fallback(schema: Schema | None, message: str | None = None) -> Any:
    """Synthesize a value shaped like *schema* for when parsing failed."""
    if schema:
        if "fallback" in schema:
            return copy.deepcopy(schema["fallback"])
        properties = schema.get("properties")
        if isinstance(properties, dict):
            return {key: default_for_property(prop) for key, prop in properties.items()}
    return {"error": "JSON parsing failed", "message": message}


# ----------------------------------------------------------------------
# Engine
# ----------------------------------------------------------------------


@dataclass
class ParseAttempt:
    """One strategy's outcome for one input."""

    strategy_name: str
    succeeded: bool
    result_or_error: Any


@dataclass
class RecoveryResult:
    """The winning strategy (None when all failed), its value, and every attempt made."""

    value: Any
    strategy: str | None
    attempts: list[ParseAttempt] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.strategy is not None


class RecoveryEngine:
    """Runs the strategy chain and keeps per-strategy win/failure counts."""

    def __init__(self, strategies: tuple[tuple[str, Strategy], ...] = STRATEGIES):
        self.strategies = strategies
        self._wins: Counter[str] = Counter()
        self._failures: Counter[str] = Counter()
        self._total_parses = 0
        self._failed_parses = 0

    def parse(self, raw_text: str) -> RecoveryResult:
        """Try each strategy in order; stop at the first object or array."""
        self._total_parses += 1
        attempts: list[ParseAttempt] = []

        if not isinstance(raw_text, str) or not raw_text.strip():
            self._failed_parses += 1
            logger.debug("Nothing to parse (empty or non-string response)")
            return RecoveryResult(value=None, strategy=None, attempts=attempts)

        logger.debug(f"Attempting to parse response ({len(raw_text)} chars)")
        for name, strategy in self.strategies:
            try:
                value = strategy(raw_text)
            except (RecoveryError, ValueError, RecursionError) as e:
                attempts.append(ParseAttempt(name, False, str(e)))
                self._failures[name] += 1
                logger.debug(f"Strategy {name} failed: {e}")
                continue

            if not isinstance(value, (dict, list)):
                attempts.append(ParseAttempt(name, False, f"parsed a {type(value).__name__}, not an object or array"))
                self._failures[name] += 1
                continue

            attempts.append(ParseAttempt(name, True, value))
            self._wins[name] += 1
            logger.debug(f"Strategy {name} succeeded")
            return RecoveryResult(value=value, strategy=name, attempts=attempts)

        self._failed_parses += 1
        return RecoveryResult(value=None, strategy=None, attempts=attempts)

    def recover(self, raw_text: str, schema: Schema | None = None) -> Any:
        """Parsed value, or the schema-shaped fallback.  Never raises for bad input."""
        result = self.parse(raw_text)
        if result.succeeded:
            return result.value

        message = "All parsing strategies failed"
        logger.warning(f"{message} ({len(result.attempts)} tried), using schema fallback")
        return build_fallback(schema, message)

    def get_statistics(self) -> dict[str, Any]:
        return {
            "strategies": [name for name, _ in self.strategies],
            "total_parses": self._total_parses,
            "failed_parses": self._failed_parses,
            "wins": dict(self._wins),
            "failures": dict(self._failures),
        }
