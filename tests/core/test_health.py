"""Tests for confidant.core.health."""

import httpx

from confidant.core.health import QUEUE_BACKLOG_WARNING, check_health
from confidant.core.llm.rate_limiter import RateLimiter
from confidant.core.llm.transport import HttpTransport

ENDPOINT = "http://llm.test/v1/chat/completions"


def make_transport(handler):
    return HttpTransport(ENDPOINT, client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))


def ok(request):
    return httpx.Response(200, json={"data": []})


def refuse(request):
    raise httpx.ConnectError("refused", request=request)


class TestCheckHealth:
    async def test_healthy(self):
        status = await check_health(make_transport(ok))
        assert status.healthy
        assert status.server_reachable
        assert status.endpoint == ENDPOINT
        assert status.warnings == []
        assert status.rate_limit == {}

    async def test_unreachable_is_unhealthy(self):
        status = await check_health(make_transport(refuse))
        assert not status.healthy
        assert not status.server_reachable
        assert any("unreachable" in w for w in status.warnings)

    async def test_server_error_is_unhealthy(self):
        status = await check_health(make_transport(lambda request: httpx.Response(503)))
        assert not status.healthy

    async def test_rate_limit_pressure_warns_but_stays_healthy(self, fake_clock):
        limiter = RateLimiter(limit_per_minute=2, clock=fake_clock)
        limiter.acquire()
        limiter.acquire()

        status = await check_health(make_transport(ok), limiter)
        assert status.healthy
        assert status.rate_limit["current_requests"] == 2
        assert any("Rate limit reached (2/2" in w for w in status.warnings)

    async def test_queue_backlog_warns(self):
        status = await check_health(make_transport(ok), queue_length=QUEUE_BACKLOG_WARNING)
        assert status.healthy
        assert status.queue_length == QUEUE_BACKLOG_WARNING
        assert any("backlog" in w for w in status.warnings)
