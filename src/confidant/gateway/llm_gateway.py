"""LLM gateway: the single entry point for every inference call.

Callers hand in a prompt, recent context, and options.  The gateway
resolves which model to use (character, then user, then global), builds
the chat-completions body, and submits it to the rate-limited
:class:`~confidant.gateway.request_queue.RequestQueue`.  The queue's
executor performs the buffered or streaming HTTP call.

Structured (JSON) requests are layered on top through
:class:`~confidant.core.llm.structured.StructuredResponder`, which calls
back into :meth:`LLMGateway.generate_response` and so shares the same
queue and budget.
"""

from __future__ import annotations

import asyncio
import dataclasses
import time
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from loguru import logger

from confidant.core.health import HealthStatus, check_health
from confidant.core.llm.config import Role, adapt_parameters, parse_server_type
from confidant.core.llm.model_resolver import ModelResolver
from confidant.core.llm.preferences import InMemoryPreferenceStore, JsonFilePreferenceStore, PreferenceStore
from confidant.core.llm.rate_limiter import RateLimiter
from confidant.core.llm.recovery import Schema
from confidant.core.llm.structured import StructuredResponder
from confidant.core.llm.transport import ChunkCallback, CompletionResult, HttpTransport, StreamResult
from confidant.core.llm.utils import MAX_CONTEXT_MESSAGES, build_messages
from confidant.gateway.request_queue import DEFAULT_BACKOFF, RequestQueue
from confidant.gateway.requests import GatewayRequest, QueuedRequest, RequestOptions

if TYPE_CHECKING:
    import httpx

    from confidant.core.config import Config

ANALYSIS_TEMPERATURE = 0.3

ANALYSIS_PROMPTS = {
    "sentiment": (
        'Analyze the sentiment of the following text: "{text}". Respond with JSON: '
        '{{"sentiment": "positive|negative|neutral", "confidence": 0-1, "explanation": "brief explanation"}}'
    ),
    "topics": (
        'Extract the main topics from the following text: "{text}". Respond with JSON: '
        '{{"topics": ["topic1", "topic2"], "confidence": 0-1}}'
    ),
    "intent": (
        'Determine the intent of the following text: "{text}". Respond with JSON: '
        '{{"intent": "question|request|complaint|compliment|other", "confidence": 0-1}}'
    ),
    "summary": 'Provide a concise summary of the following text: "{text}". Keep it under 100 words.',
    "keywords": (
        'Extract key terms and phrases from: "{text}". Respond with JSON: '
        '{{"keywords": ["term1", "term2"], "phrases": ["phrase1", "phrase2"]}}'
    ),
}


def build_analysis_prompt(text: str, analysis_type: str) -> str:
    """Canned prompt for *analysis_type*; unknown types get a generic one."""
    template = ANALYSIS_PROMPTS.get(analysis_type, 'Analyze the following text: "{text}"')
    return template.format(text=text)


@dataclass
class GatewayMetrics:
    """Running request counters; response times include queue wait."""

    total_requests: int = 0
    successful_requests: int = 0
    failed_requests: int = 0
    total_response_time: float = 0.0
    last_request_time: float | None = None

    def record(self, duration: float, success: bool) -> None:
        self.last_request_time = time.time()
        self.total_response_time += duration
        if success:
            self.successful_requests += 1
        else:
            self.failed_requests += 1

    @property
    def average_response_time(self) -> float:
        finished = self.successful_requests + self.failed_requests
        return self.total_response_time / finished if finished else 0.0

    @property
    def success_rate(self) -> float:
        finished = self.successful_requests + self.failed_requests
        return round(self.successful_requests / finished * 100, 2) if finished else 0.0


class LLMGateway:
    """Mediates all calls to the inference server.

    Args:
        resolver: Model resolution cascade.
        transport: HTTP transport to the inference server.
        rate_limiter: Shared admission budget (60/min by default).
        max_context_messages: How many recent context messages to send.
        queue_backoff: Seconds the queue waits after a denied admission.
        sleep: Injected into the queue for tests.
    """

    def __init__(
        self,
        resolver: ModelResolver,
        transport: HttpTransport,
        rate_limiter: RateLimiter | None = None,
        *,
        max_context_messages: int = MAX_CONTEXT_MESSAGES,
        queue_backoff: float = DEFAULT_BACKOFF,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.resolver = resolver
        self.transport = transport
        self.rate_limiter = rate_limiter or RateLimiter()
        self.max_context_messages = max_context_messages
        self.queue = RequestQueue(self._execute, self.rate_limiter, backoff=queue_backoff, sleep=sleep)
        self.metrics = GatewayMetrics()
        self.structured = StructuredResponder(self._complete_structured, RequestOptions(role=Role.ANALYTICAL))

    async def __aenter__(self) -> LLMGateway:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    # ── Generation ─────────────────────────────────────────────────

    async def generate_response(
        self,
        prompt: str,
        context_messages: Iterable[Any] = (),
        options: RequestOptions | None = None,
    ) -> CompletionResult:
        """Buffered completion for *prompt*.

        Raises:
            ValidationError: Empty prompt or bad options.
            NoModelConfiguredError: No model could be resolved.
            LLMTimeoutError, LLMUnavailableError, LLMError,
            MalformedResponseError: The call itself failed.
        """
        options = options or RequestOptions()
        if options.streaming:
            options = dataclasses.replace(options, streaming=False)
        request = GatewayRequest.create(
            prompt, context_messages, options, max_context_messages=self.max_context_messages
        )
        logger.debug(f"Generating response {request.id} (prompt={len(prompt)} chars, context={len(request.context_messages)})")
        return await self._submit(request)

    async def generate_streaming_response(
        self,
        prompt: str,
        context_messages: Iterable[Any] = (),
        options: RequestOptions | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> StreamResult:
        """Streaming completion; ``on_chunk(fragment, accumulated)`` fires per fragment.

        Goes through the same queue and budget as buffered calls.  Setting
        *cancel_event* stops the stream and returns the partial content.
        """
        options = dataclasses.replace(options or RequestOptions(), streaming=True)
        request = GatewayRequest.create(
            prompt, context_messages, options, max_context_messages=self.max_context_messages
        )
        logger.debug(f"Generating streaming response {request.id} (prompt={len(prompt)} chars)")
        return await self._submit(request, on_chunk=on_chunk, cancel_event=cancel_event)

    async def generate_structured_response(
        self,
        prompt: str,
        schema: Schema | None = None,
        options: RequestOptions | None = None,
    ) -> Any:
        """Parsed JSON value for *prompt*, or a value shaped like *schema*.

        Uses the analytical role unless *options* say otherwise.  Only
        ``NoModelConfiguredError`` escapes.
        """
        return await self.structured.generate_structured_response(prompt, schema, options)

    async def analyze_text(
        self,
        text: str,
        analysis_type: str,
        options: RequestOptions | None = None,
    ) -> CompletionResult:
        """Run a canned analysis (sentiment, topics, intent, summary, keywords) over *text*."""
        options = dataclasses.replace(
            (options or RequestOptions()).with_default_role(Role.ANALYTICAL),
            temperature=ANALYSIS_TEMPERATURE,
            streaming=False,
        )
        logger.debug(f"Analyzing text ({analysis_type}, {len(text)} chars)")
        return await self.generate_response(build_analysis_prompt(text, analysis_type), (), options)

    # ── Catalog / health / metrics ─────────────────────────────────

    async def get_available_models(self) -> list[dict[str, str]]:
        return await self.resolver.get_available_models()

    async def check_connection(self) -> bool:
        return await self.transport.check_connection()

    async def health_check(self) -> HealthStatus:
        return await check_health(self.transport, self.rate_limiter, len(self.queue))

    def get_metrics(self) -> dict[str, Any]:
        """Counters, timings, queue depth, and rate-limit status."""
        return {
            "total_requests": self.metrics.total_requests,
            "successful_requests": self.metrics.successful_requests,
            "failed_requests": self.metrics.failed_requests,
            "average_response_time": self.metrics.average_response_time,
            "success_rate": self.metrics.success_rate,
            "last_request_time": self.metrics.last_request_time,
            "queue_length": len(self.queue),
            "is_processing_queue": self.queue.is_draining,
            "rate_limit": self.rate_limiter.get_status(),
            "structured": self.structured.get_statistics(),
            "endpoint": self.transport.endpoint,
            "server_type": self.transport.server_type.value,
        }

    # ── Configuration ──────────────────────────────────────────────

    def update_configuration(
        self,
        *,
        endpoint: str | None = None,
        server_type: str | None = None,
        default_model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
        timeout: float | None = None,
        requests_per_minute: int | None = None,
    ) -> None:
        """Change connection and default settings at runtime.

        Takes effect for requests built after the call; requests already
        queued keep the body they were built with.
        """
        if endpoint is not None:
            self.transport.endpoint = endpoint.rstrip("/")
        if server_type is not None:
            self.transport.server_type = parse_server_type(server_type)
        if timeout is not None:
            self.transport.timeout = timeout
        if default_model is not None:
            self.resolver.default_model = default_model
        if temperature is not None:
            self.resolver.default_temperature = temperature
        if max_tokens is not None:
            self.resolver.default_max_tokens = max_tokens
        if requests_per_minute is not None:
            self.rate_limiter.update_limit(requests_per_minute)

        logger.info(
            f"LLM configuration updated (endpoint={self.transport.endpoint}, "
            f"server_type={self.transport.server_type.value}, default_model={self.resolver.default_model})"
        )

    async def close(self) -> None:
        """Stop the queue and release HTTP resources."""
        await self.queue.stop()
        await self.transport.close()

    # ── Internal ───────────────────────────────────────────────────

    def _build_body(self, request: GatewayRequest) -> dict[str, Any]:
        options = request.options
        config = self.resolver.resolve_model_config(options.user_id, options.character_id, options.role)
        messages = build_messages(
            request.prompt,
            request.context_messages,
            system_prompt=options.system_prompt,
            max_context_messages=min(self.max_context_messages, config.context_window_messages),
        )
        body = {
            "model": config.model,
            "messages": messages,
            "temperature": options.temperature if options.temperature is not None else config.temperature,
            "max_tokens": options.max_tokens if options.max_tokens is not None else config.max_tokens,
            "stream": options.streaming,
        }
        return adapt_parameters(body, self.transport.server_type)

    async def _submit(
        self,
        request: GatewayRequest,
        *,
        on_chunk: ChunkCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> Any:
        started = time.monotonic()
        self.metrics.total_requests += 1
        try:
            body = self._build_body(request)
            future = self.queue.enqueue(request, body=body, on_chunk=on_chunk, cancel_event=cancel_event)
            result = await future
        except (Exception, asyncio.CancelledError):
            # Cancelled callers count as failures
            self.metrics.record(time.monotonic() - started, success=False)
            raise
        self.metrics.record(time.monotonic() - started, success=True)
        return result

    async def _execute(self, item: QueuedRequest) -> CompletionResult | StreamResult:
        if item.is_streaming:
            return await self.transport.stream(item.body, item.on_chunk, cancel_event=item.cancel_event)
        return await self.transport.send(item.body, timeout=item.request.options.timeout)

    async def _complete_structured(self, prompt: str, options: RequestOptions) -> CompletionResult:
        return await self.generate_response(prompt, (), options)


def create_gateway(
    config: Config | None = None,
    *,
    store: PreferenceStore | None = None,
    client: httpx.AsyncClient | None = None,
) -> LLMGateway:
    """Build a gateway from configuration.

    Args:
        config: Loaded :class:`~confidant.core.config.Config`; the global
            singleton when omitted.
        store: Preference store; defaults to the JSON file at
            ``paths.preferences_file`` (in-memory when unset).
        client: Pre-built ``httpx.AsyncClient`` for the transport.
    """
    from confidant.core.config import get_config

    validated = (config or get_config()).validated()
    settings = validated.llm

    transport = HttpTransport(
        settings.endpoint,
        server_type=settings.server_type,
        timeout=settings.timeout,
        api_key=settings.api_key,
        log_malformed_lines=settings.log_malformed_stream_lines,
        client=client,
    )

    if store is None:
        preferences_file = validated.paths.preferences_file
        store = JsonFilePreferenceStore(str(preferences_file)) if preferences_file else InMemoryPreferenceStore()

    resolver = ModelResolver(
        store,
        catalog_fetcher=transport.list_models,
        default_model=settings.default_model,
        default_temperature=settings.temperature,
        default_max_tokens=settings.max_tokens,
        models_cache_ttl=settings.models_cache_ttl,
    )

    logger.debug(f"Creating LLM gateway for {settings.endpoint} ({settings.server_type}, {settings.rate_limit_rpm} rpm)")
    return LLMGateway(
        resolver,
        transport,
        RateLimiter(settings.rate_limit_rpm),
        max_context_messages=settings.max_context_messages,
        queue_backoff=settings.queue_backoff,
    )
