"""Aggregated health check: single call to assess gateway health.

Combines inference server reachability, rate-limit pressure, and queue
depth into one status object for monitoring and dashboards.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from confidant.core.llm.rate_limiter import RateLimiter
    from confidant.core.llm.transport import HttpTransport

QUEUE_BACKLOG_WARNING = 10


@dataclass
class HealthStatus:
    """Snapshot of gateway health."""

    healthy: bool = True
    """Overall health: False when the inference server is unreachable."""

    endpoint: str = ""

    server_reachable: bool = False

    rate_limit: dict[str, Any] = field(default_factory=dict)
    """Current window counters from the rate limiter."""

    queue_length: int = 0

    warnings: list[str] = field(default_factory=list)
    """Human-readable warnings for degraded subsystems."""


async def check_health(
    transport: HttpTransport,
    rate_limiter: RateLimiter | None = None,
    queue_length: int = 0,
) -> HealthStatus:
    """Assess gateway health across the server, the rate limiter, and the queue.

    Args:
        transport: Transport whose server is probed (5 s timeout).
        rate_limiter: Optional limiter to report budget pressure for.
        queue_length: Requests currently waiting for admission.

    Returns:
        A :class:`HealthStatus` snapshot.
    """
    status = HealthStatus(endpoint=transport.endpoint, queue_length=queue_length)

    status.server_reachable = await transport.check_connection()
    if not status.server_reachable:
        status.healthy = False
        status.warnings.append(f"LLM server unreachable at {transport.endpoint}")

    if rate_limiter is not None:
        status.rate_limit = rate_limiter.get_status()
        if not rate_limiter.check_rate_limit():
            status.warnings.append(
                f"Rate limit reached ({status.rate_limit['current_requests']}/"
                f"{status.rate_limit['requests_per_minute']} per minute)"
            )

    if queue_length >= QUEUE_BACKLOG_WARNING:
        status.warnings.append(f"Request queue backlog: {queue_length} waiting")

    return status
