"""
HTTP transport to an OpenAI-compatible chat-completions server.

Two call shapes:

- **Buffered** (:meth:`HttpTransport.send`): one POST, one JSON body back,
  bounded by a hard deadline.
- **Streaming** (:meth:`HttpTransport.stream`): a chunked POST whose body is
  a sequence of ``data: <json>`` lines ending in ``data: [DONE]``.  Bytes are
  reassembled into lines as they arrive and each content fragment is handed
  to the caller's ``on_chunk`` callback before the next read.

Transport failures are mapped onto the gateway's error taxonomy so callers
can tell a retryable hiccup (timeout, refused connection) from a useless
payload.
"""

from __future__ import annotations

import asyncio
import codecs
import json
import time
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

import httpx
from loguru import logger

from confidant.core.exceptions import LLMError, LLMTimeoutError, LLMUnavailableError, MalformedResponseError

from .config import ServerType, parse_server_type
from .utils import extract_choice_content, extract_delta_content

ChunkCallback = Callable[[str, str], None]
"""``on_chunk(fragment, accumulated_so_far)``, called synchronously per fragment."""

DATA_PREFIX = "data:"
DONE_MARKER = "[DONE]"
CONNECTION_CHECK_TIMEOUT = 5.0

# Connection refused / reset / dropped mid-response
_UNAVAILABLE_ERRORS = (httpx.NetworkError, httpx.RemoteProtocolError, ConnectionError)


@dataclass
class CompletionResult:
    """Outcome of a buffered call."""

    content: str
    usage: dict[str, Any] | None = None
    model: str | None = None


@dataclass
class StreamResult:
    """Outcome of a streaming call."""

    content: str
    model: str | None = None
    chunk_count: int = 0
    skipped_lines: int = 0
    cancelled: bool = False


class StreamAccumulator:
    """Per-call reassembly state for a streamed response body.

    Decodes bytes incrementally (multi-byte characters may straddle chunk
    boundaries), keeps the trailing partial line buffered, and accumulates
    the content fragments seen so far.
    """

    def __init__(self) -> None:
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self.buffer = ""
        self.content = ""
        self.chunk_count = 0
        self.skipped_lines = 0
        self.done = False

    def feed(self, data: bytes) -> list[str]:
        """Add raw bytes; return every line completed by them."""
        self.buffer += self._decoder.decode(data)
        lines = self.buffer.split("\n")
        self.buffer = lines.pop()
        return lines

    def flush(self) -> list[str]:
        """Return whatever is left once the body has ended."""
        tail = self.buffer + self._decoder.decode(b"", final=True)
        self.buffer = ""
        return [tail] if tail.strip() else []

    def append(self, fragment: str) -> None:
        self.content += fragment
        self.chunk_count += 1


class HttpTransport:
    """Issues chat-completion calls against a single inference server."""

    def __init__(
        self,
        endpoint: str,
        *,
        server_type: ServerType | str = ServerType.LMSTUDIO,
        timeout: float = 30.0,
        api_key: str | None = None,
        log_malformed_lines: bool = False,
        client: httpx.AsyncClient | None = None,
    ):
        """
        Args:
            endpoint: Full chat-completions URL, e.g.
                ``http://localhost:1234/v1/chat/completions``.
            server_type: Server flavour tag (affects parameter names only).
            timeout: Default deadline in seconds for buffered calls; also the
                idle read timeout between streamed chunks.
            api_key: Optional bearer token for hosted OpenAI-compatible servers.
            log_malformed_lines: Log skipped stream lines at WARNING instead
                of TRACE.
            client: Pre-built ``httpx.AsyncClient`` (tests inject one backed by
                ``httpx.MockTransport``).  Closed by :meth:`close` only when
                this transport created it.
        """
        self.endpoint = endpoint.rstrip("/")
        self.server_type = parse_server_type(server_type)
        self.timeout = timeout
        self.api_key = api_key or None
        self.log_malformed_lines = log_malformed_lines
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(timeout))

    @property
    def models_url(self) -> str:
        """Catalog URL derived from the chat-completions endpoint."""
        if self.endpoint.endswith("/chat/completions"):
            return self.endpoint[: -len("/chat/completions")] + "/models"
        return self.endpoint + "/models"

    # ------------------------------------------------------------------
    # Buffered mode
    # ------------------------------------------------------------------

    async def send(self, body: dict[str, Any], *, timeout: float | None = None) -> CompletionResult:
        """POST *body* and return the parsed completion.

        Raises:
            LLMTimeoutError: The call exceeded *timeout* (default: ``self.timeout``).
            LLMUnavailableError: The server refused or reset the connection.
            LLMError: The server answered with a non-success status.
            MalformedResponseError: The body is not usable.
        """
        deadline = timeout or self.timeout
        started = time.monotonic()
        logger.debug(f"POST {self.endpoint} model={body.get('model')} messages={len(body.get('messages', []))}")

        try:
            response = await asyncio.wait_for(
                self._client.post(self.endpoint, json=body, headers=self._headers(), timeout=deadline),
                timeout=deadline,
            )
        except (asyncio.TimeoutError, httpx.TimeoutException) as e:
            raise LLMTimeoutError(
                f"LLM request timed out after {deadline:.0f}s - the model may be overloaded",
                layer="transport",
                context={"endpoint": self.endpoint, "timeout": deadline},
            ) from e
        except _UNAVAILABLE_ERRORS as e:
            raise LLMUnavailableError(
                f"LLM service unavailable ({type(e).__name__}) - check that the server is running",
                layer="transport",
                context={"endpoint": self.endpoint},
            ) from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM request failed: {e}", layer="transport", context={"endpoint": self.endpoint}) from e

        self._raise_for_status(response)

        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError(
                "LLM response body is not valid JSON",
                layer="transport",
                context={"body": response.text[:200]},
            ) from e

        content = extract_choice_content(data)
        usage = data.get("usage")
        logger.debug(
            f"LLM response in {time.monotonic() - started:.2f}s "
            f"(tokens={usage.get('total_tokens', 'unknown') if isinstance(usage, dict) else 'unknown'})"
        )
        return CompletionResult(content=content, usage=usage, model=data.get("model") or body.get("model"))

    # ------------------------------------------------------------------
    # Streaming mode
    # ------------------------------------------------------------------

    async def stream(
        self,
        body: dict[str, Any],
        on_chunk: ChunkCallback | None = None,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> StreamResult:
        """POST *body* with ``stream: true`` and process events as they arrive.

        ``on_chunk(fragment, accumulated)`` fires for every content fragment
        before the next network read.  Malformed lines are skipped.  When
        *cancel_event* is set, reading stops between chunks and the partial
        content is returned with ``cancelled=True``.
        """
        body = {**body, "stream": True}
        acc = StreamAccumulator()
        started = time.monotonic()
        first_chunk_at: float | None = None
        cancelled = False

        try:
            async with self._client.stream(
                "POST",
                self.endpoint,
                json=body,
                headers=self._headers(stream=True),
                timeout=httpx.Timeout(self.timeout),
            ) as response:
                if not response.is_success:
                    await response.aread()
                    self._raise_for_status(response)

                async for data in response.aiter_bytes():
                    if cancel_event is not None and cancel_event.is_set():
                        cancelled = True
                        break
                    if first_chunk_at is None:
                        first_chunk_at = time.monotonic()
                        logger.debug(f"First stream chunk after {first_chunk_at - started:.2f}s")

                    for line in acc.feed(data):
                        self._process_line(line, acc, on_chunk)
                        if acc.done:
                            break
                    if acc.done:
                        break
                else:
                    for line in acc.flush():
                        self._process_line(line, acc, on_chunk)
        except httpx.TimeoutException as e:
            raise LLMTimeoutError(
                f"LLM stream stalled for more than {self.timeout:.0f}s",
                layer="transport",
                context={"endpoint": self.endpoint, "chunks": acc.chunk_count},
            ) from e
        except _UNAVAILABLE_ERRORS as e:
            raise LLMUnavailableError(
                f"LLM stream connection failed ({type(e).__name__})",
                layer="transport",
                context={"endpoint": self.endpoint, "chunks": acc.chunk_count},
            ) from e
        except httpx.HTTPError as e:
            raise LLMError(f"LLM stream failed: {e}", layer="transport", context={"endpoint": self.endpoint}) from e

        state = "cancelled" if cancelled else ("completed" if acc.done else "ended without [DONE]")
        logger.debug(f"Stream {state} after {acc.chunk_count} chunks in {time.monotonic() - started:.2f}s")
        return StreamResult(
            content=acc.content,
            model=body.get("model"),
            chunk_count=acc.chunk_count,
            skipped_lines=acc.skipped_lines,
            cancelled=cancelled,
        )

    def _process_line(self, line: str, acc: StreamAccumulator, on_chunk: ChunkCallback | None) -> None:
        line = line.rstrip("\r")
        if not line.strip() or not line.startswith(DATA_PREFIX):
            return

        payload = line[len(DATA_PREFIX) :].strip()
        if payload == DONE_MARKER:
            acc.done = True
            return

        try:
            event = json.loads(payload)
        except ValueError:
            acc.skipped_lines += 1
            message = f"Skipping malformed stream line: {payload[:120]!r}"
            if self.log_malformed_lines:
                logger.warning(message)
            else:
                logger.trace(message)
            return

        fragment = extract_delta_content(event)
        if fragment:
            acc.append(fragment)
            if on_chunk is not None:
                on_chunk(fragment, acc.content)

    # ------------------------------------------------------------------
    # Catalog / probing
    # ------------------------------------------------------------------

    async def list_models(self) -> list[dict[str, str]]:
        """Return ``[{id, name}]`` from the server's model catalog."""
        try:
            response = await self._client.get(self.models_url, headers=self._headers(), timeout=self.timeout)
        except httpx.TimeoutException as e:
            raise LLMTimeoutError("Model catalog request timed out", layer="transport") from e
        except _UNAVAILABLE_ERRORS as e:
            raise LLMUnavailableError("LLM server unreachable while listing models", layer="transport") from e

        self._raise_for_status(response, what="Failed to fetch models")
        try:
            data = response.json()
        except ValueError as e:
            raise MalformedResponseError("Model catalog is not valid JSON", layer="transport") from e

        entries = data.get("data") if isinstance(data, dict) else None
        return [
            {"id": str(entry["id"]), "name": str(entry.get("name") or entry["id"])}
            for entry in entries or []
            if isinstance(entry, dict) and entry.get("id")
        ]

    async def check_connection(self, timeout: float = CONNECTION_CHECK_TIMEOUT) -> bool:
        """Probe the catalog endpoint; True when the server answers 2xx."""
        try:
            response = await self._client.get(self.models_url, headers=self._headers(), timeout=timeout)
        except httpx.HTTPError as e:
            logger.warning(f"LLM connection check failed ({self.models_url}): {e!r}")
            return False
        return response.is_success

    async def close(self) -> None:
        """Release underlying HTTP resources."""
        if self._owns_client:
            await self._client.aclose()

    # ------------------------------------------------------------------
    # Internal
    # ------------------------------------------------------------------

    def _headers(self, *, stream: bool = False) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if stream:
            headers["Accept"] = "text/event-stream"
            headers["Cache-Control"] = "no-cache"
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def _raise_for_status(self, response: httpx.Response, *, what: str = "LLM request failed") -> None:
        if response.is_success:
            return
        raise LLMError(
            f"{what}: {response.status_code} {response.reason_phrase}",
            layer="transport",
            context={"status": response.status_code, "endpoint": str(response.request.url)},
        )
