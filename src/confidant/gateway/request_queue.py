"""Request queue: serialized, rate-limited execution of gateway requests.

Every call to the inference server goes through a single FIFO queue
drained by one background task, so at most one request is in flight and
admission decisions happen one at a time.  When the rate limiter denies
admission the drain task sleeps a fixed backoff and asks again; the head
of the queue never loses its place.

Callers get an ``asyncio.Future`` back from :meth:`RequestQueue.enqueue`
and await it for the result.  A failure rejects only that request's
future; the queue keeps draining.
"""

from __future__ import annotations

import asyncio
import time
from collections import deque
from collections.abc import Awaitable, Callable
from typing import Any

from loguru import logger

from confidant.core.exceptions import LLMError, RateLimitedError, wrap_error
from confidant.core.llm.rate_limiter import RateLimiter
from confidant.core.llm.transport import ChunkCallback
from confidant.gateway.requests import GatewayRequest, QueuedRequest

RequestExecutor = Callable[[QueuedRequest], Awaitable[Any]]
"""Async callback that performs one admitted request and returns its result."""

DEFAULT_BACKOFF = 1.0


class RequestQueue:
    """FIFO queue with a lazily started drain task.

    Args:
        executor: Performs an admitted request (the gateway's transport call).
        rate_limiter: Shared admission budget.
        backoff: Seconds to wait after a denied admission.
        sleep: Injected for tests; defaults to ``asyncio.sleep``.
    """

    def __init__(
        self,
        executor: RequestExecutor,
        rate_limiter: RateLimiter,
        *,
        backoff: float = DEFAULT_BACKOFF,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self._executor = executor
        self._rate_limiter = rate_limiter
        self.backoff = backoff
        self._sleep = sleep
        self._queue: deque[QueuedRequest] = deque()
        self._drain_task: asyncio.Task | None = None

    # ── Public API ─────────────────────────────────────────────────

    def enqueue(
        self,
        request: GatewayRequest,
        *,
        body: dict[str, Any] | None = None,
        on_chunk: ChunkCallback | None = None,
        cancel_event: asyncio.Event | None = None,
    ) -> asyncio.Future:
        """Append *request* and return the future that will carry its result.

        Must be called from a running event loop.
        """
        loop = asyncio.get_running_loop()
        item = QueuedRequest(
            request=request,
            future=loop.create_future(),
            body=dict(body or {}),
            on_chunk=on_chunk,
            cancel_event=cancel_event,
        )
        self._queue.append(item)
        logger.debug(f"Queued request {item.id} ({'stream' if item.is_streaming else 'buffered'}, depth={len(self._queue)})")
        self._ensure_draining()
        return item.future

    def __len__(self) -> int:
        return len(self._queue)

    @property
    def is_draining(self) -> bool:
        return self._drain_task is not None and not self._drain_task.done()

    async def stop(self) -> None:
        """Cancel the drain task and reject every request still waiting."""
        if self._drain_task is not None and not self._drain_task.done():
            self._drain_task.cancel()
            try:
                await self._drain_task
            except asyncio.CancelledError:
                pass
        self._drain_task = None

        rejected = 0
        while self._queue:
            item = self._queue.popleft()
            if not item.future.done():
                item.future.set_exception(
                    LLMError("Request queue stopped before the request ran", layer="request_queue")
                )
                rejected += 1
        if rejected:
            logger.warning(f"Request queue stopped, rejected {rejected} pending requests")
        else:
            logger.debug("Request queue stopped")

    # ── Internal ───────────────────────────────────────────────────

    def _ensure_draining(self) -> None:
        if self.is_draining:
            return
        self._drain_task = asyncio.create_task(self._drain(), name="llm-request-queue")

    async def _drain(self) -> None:
        """Admit and execute queued requests strictly one at a time."""
        while self._queue:
            head = self._queue[0]
            if head.future.done():
                # Caller gave up while waiting; costs no budget
                self._queue.popleft()
                logger.debug(f"Skipping cancelled request {head.id}")
                continue

            try:
                self._rate_limiter.acquire()
            except RateLimitedError as e:
                logger.debug(f"Rate limited (retry in ~{e.retry_after:.1f}s), backing off {self.backoff}s")
                await self._sleep(self.backoff)
                continue

            self._queue.popleft()
            await self._execute(head)

    async def _execute(self, item: QueuedRequest) -> None:
        with logger.contextualize(request_id=item.id):
            await self._run(item)

    async def _run(self, item: QueuedRequest) -> None:
        waited = time.monotonic() - item.enqueued_at
        logger.debug(f"Executing request {item.id} after {waited:.2f}s in queue")
        try:
            result = await self._executor(item)
        except asyncio.CancelledError:
            if not item.future.done():
                item.future.cancel()
            raise
        except Exception as e:
            error = wrap_error(
                e,
                "LLM request failed",
                layer="request_queue",
                context={"request_id": item.id, "streaming": item.is_streaming},
            )
            if not item.future.done():
                item.future.set_exception(error)
            return

        if not item.future.done():
            item.future.set_result(result)
