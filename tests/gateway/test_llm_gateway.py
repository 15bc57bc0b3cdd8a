"""Tests for LLMGateway against an httpx.MockTransport inference server."""

import asyncio
import json

import httpx
import pytest

from confidant.core.config import Config
from confidant.core.exceptions import LLMError, NoModelConfiguredError, ValidationError
from confidant.core.llm.config import Role, ServerType
from confidant.core.llm.model_resolver import ModelResolver
from confidant.core.llm.preferences import InMemoryPreferenceStore, JsonFilePreferenceStore
from confidant.core.llm.rate_limiter import RateLimiter
from confidant.core.llm.transport import HttpTransport
from confidant.gateway import ChatMessage, LLMGateway, RequestOptions, build_analysis_prompt, create_gateway

ENDPOINT = "http://llm.test/v1/chat/completions"


def completion(content):
    return {"model": "served-model", "choices": [{"message": {"content": content}}], "usage": {"total_tokens": 7}}


def sse_body(*fragments):
    lines = [f"data: {json.dumps({'choices': [{'delta': {'content': f}}]})}\n" for f in fragments]
    return ("".join(lines) + "data: [DONE]\n").encode()


class FakeServer:
    """Records request bodies and answers from a script of replies."""

    def __init__(self, *replies, stream_fragments=("Hel", "lo")):
        self.replies = list(replies) or ["ok"]
        self.stream_fragments = stream_fragments
        self.bodies: list[dict] = []
        self.models = [{"id": "served-model"}]

    def __call__(self, request):
        if request.method == "GET":
            return httpx.Response(200, json={"data": self.models})
        body = json.loads(request.content)
        self.bodies.append(body)
        if body.get("stream"):
            return httpx.Response(
                200, content=sse_body(*self.stream_fragments), headers={"content-type": "text/event-stream"}
            )
        reply = self.replies.pop(0) if len(self.replies) > 1 else self.replies[0]
        if isinstance(reply, httpx.Response):
            return reply
        return httpx.Response(200, json=completion(reply))


def make_gateway(server, *, store=None, server_type=ServerType.LMSTUDIO, limiter=None):
    client = httpx.AsyncClient(transport=httpx.MockTransport(server))
    transport = HttpTransport(ENDPOINT, server_type=server_type, client=client)
    resolver = ModelResolver(store or InMemoryPreferenceStore(), catalog_fetcher=transport.list_models)
    return LLMGateway(resolver, transport, limiter or RateLimiter())


@pytest.fixture
def store():
    store = InMemoryPreferenceStore()
    store.set_global_config(Role.CONVERSATIONAL, {"model": "global-chat", "temperature": 0.7, "max_tokens": 512})
    store.set_global_config(Role.ANALYTICAL, {"model": "global-analysis", "temperature": 0.2, "max_tokens": 256})
    return store


@pytest.mark.smoke
class TestGenerateResponse:
    async def test_buffered_response(self, store):
        server = FakeServer("  Hello there  ")
        async with make_gateway(server, store=store) as gateway:
            result = await gateway.generate_response("hi", ["earlier message"])

        assert result.content == "Hello there"
        body = server.bodies[0]
        assert body["model"] == "global-chat"
        assert body["temperature"] == 0.7
        assert body["max_tokens"] == 512
        assert body["stream"] is False
        assert body["messages"] == [
            {"role": "user", "content": "earlier message"},
            {"role": "user", "content": "hi"},
        ]

    async def test_character_model_wins(self, store):
        store.set_user_preferences("u1", {"conversational": {"model": "user-chat"}})
        store.set_character_preferences("c1", {"conversational": {"model": "char-chat"}})
        server = FakeServer()
        async with make_gateway(server, store=store) as gateway:
            await gateway.generate_response("hi", options=RequestOptions(user_id="u1", character_id="c1"))
            await gateway.generate_response("hi", options=RequestOptions(user_id="u1"))
            await gateway.generate_response(
                "hi", options=RequestOptions(user_id="u1", character_id="c1", role="analytical")
            )

        assert [b["model"] for b in server.bodies] == ["char-chat", "user-chat", "global-analysis"]

    async def test_caller_parameters_win(self, store):
        server = FakeServer()
        async with make_gateway(server, store=store) as gateway:
            await gateway.generate_response("hi", options=RequestOptions(temperature=0.1, max_tokens=64))

        assert server.bodies[0]["temperature"] == 0.1
        assert server.bodies[0]["max_tokens"] == 64

    async def test_ollama_uses_num_predict(self, store):
        server = FakeServer()
        async with make_gateway(server, store=store, server_type=ServerType.OLLAMA) as gateway:
            await gateway.generate_response("hi")

        assert server.bodies[0]["num_predict"] == 512
        assert "max_tokens" not in server.bodies[0]

    async def test_system_prompt_first_and_context_capped(self, store):
        server = FakeServer()
        async with make_gateway(server, store=store) as gateway:
            await gateway.generate_response(
                "now", [f"m{i}" for i in range(8)], RequestOptions(system_prompt="You are Ava.")
            )

        messages = server.bodies[0]["messages"]
        assert messages[0] == {"role": "system", "content": "You are Ava."}
        assert [m["content"] for m in messages[1:]] == ["m3", "m4", "m5", "m6", "m7", "now"]

    async def test_context_capped_by_resolved_window(self):
        store = InMemoryPreferenceStore(
            global_config={"conversational": {"model": "global-chat"}, "conversational_context_window": 2}
        )
        server = FakeServer()
        async with make_gateway(server, store=store) as gateway:
            await gateway.generate_response(
                "now", ["m1", ChatMessage("assistant", "m2"), {"role": "user", "content": "m3"}]
            )

        assert server.bodies[0]["messages"] == [
            {"role": "assistant", "content": "m2"},
            {"role": "user", "content": "m3"},
            {"role": "user", "content": "now"},
        ]

    async def test_builtin_default_without_configuration(self):
        server = FakeServer()
        async with make_gateway(server) as gateway:
            await gateway.generate_response("hi")

        assert server.bodies[0]["model"] == "meta-llama-3.1-8b-instruct"

    async def test_no_model_surfaces_before_the_queue(self):
        server = FakeServer()
        gateway = make_gateway(server)
        gateway.resolver.default_model = ""
        with pytest.raises(NoModelConfiguredError):
            await gateway.generate_response("hi")
        assert server.bodies == []
        assert gateway.rate_limiter.window.requests_in_window == 0
        await gateway.close()

    async def test_empty_prompt_rejected(self):
        async with make_gateway(FakeServer()) as gateway:
            with pytest.raises(ValidationError):
                await gateway.generate_response("   ")

    async def test_server_error_rejects(self, store):
        server = FakeServer(httpx.Response(500, text="boom"))
        async with make_gateway(server, store=store) as gateway:
            with pytest.raises(LLMError):
                await gateway.generate_response("hi")
            metrics = gateway.get_metrics()

        assert metrics["failed_requests"] == 1
        assert metrics["success_rate"] == 0.0


class TestStreaming:
    async def test_fragments_concatenate_to_final_content(self, store):
        server = FakeServer()
        seen = []
        async with make_gateway(server, store=store) as gateway:
            result = await gateway.generate_streaming_response(
                "hi", on_chunk=lambda fragment, accumulated: seen.append((fragment, accumulated))
            )

        assert seen == [("Hel", "Hel"), ("lo", "Hello")]
        assert result.content == "Hello"
        assert "".join(f for f, _ in seen) == result.content
        assert server.bodies[0]["stream"] is True

    async def test_streaming_shares_the_rate_limit(self, store, fake_clock):
        limiter = RateLimiter(limit_per_minute=5, clock=fake_clock)
        async with make_gateway(FakeServer(), store=store, limiter=limiter) as gateway:
            await gateway.generate_streaming_response("a")
            await gateway.generate_response("b")

        assert limiter.window.requests_in_window == 2

    async def test_pre_set_cancel_event_returns_empty(self, store):
        cancel = asyncio.Event()
        cancel.set()
        async with make_gateway(FakeServer(), store=store) as gateway:
            result = await gateway.generate_streaming_response("hi", cancel_event=cancel)

        assert result.cancelled
        assert result.content == ""


class TestStructured:
    async def test_markdown_wrapped_json(self, store):
        server = FakeServer('Sure! ```json\n{"should_remind": true, "reminder_timing": "tomorrow"}\n```')
        schema = {
            "type": "object",
            "properties": {"should_remind": {"type": "boolean"}, "reminder_timing": {"type": "string"}},
            "required": ["should_remind"],
        }
        async with make_gateway(server, store=store) as gateway:
            value = await gateway.generate_structured_response("Should I remind?", schema)
            stats = gateway.get_metrics()["structured"]

        assert value == {"should_remind": True, "reminder_timing": "tomorrow"}
        body = server.bodies[0]
        assert body["model"] == "global-analysis"
        assert body["temperature"] == 0.1
        assert body["max_tokens"] == 1500
        assert "CRITICAL JSON REQUIREMENTS" in body["messages"][-1]["content"]
        assert stats["successful_parses"] == 1

    async def test_fallback_after_two_bad_replies(self, store):
        server = FakeServer("no json here")
        schema = {"properties": {"mood": {"type": "string"}, "score": {"type": "number"}}}
        async with make_gateway(server, store=store) as gateway:
            value = await gateway.generate_structured_response("Rate it", schema)

        assert value == {"mood": "", "score": 0}
        assert len(server.bodies) == 2
        assert server.bodies[1]["temperature"] == 0.3
        assert server.bodies[1]["max_tokens"] == 1700


    async def test_user_options_keep_the_analytical_cascade(self, store):
        store.set_user_preferences("u1", {"analytical": {"model": "user-analysis"}, "conversational": {"model": "user-chat"}})
        store.set_character_preferences("c1", {"conversational": {"model": "char-chat"}})
        server = FakeServer('{"ok": true}')
        async with make_gateway(server, store=store) as gateway:
            value = await gateway.generate_structured_response(
                "q", None, RequestOptions(user_id="u1", character_id="c1")
            )
            await gateway.analyze_text("fine day", "sentiment", RequestOptions(user_id="u1", character_id="c1"))

        assert value == {"ok": True}
        assert [b["model"] for b in server.bodies] == ["user-analysis", "user-analysis"]


class TestAnalyzeText:
    async def test_sentiment_prompt_and_temperature(self, store):
        server = FakeServer('{"sentiment": "positive"}')
        async with make_gateway(server, store=store) as gateway:
            result = await gateway.analyze_text("I love this", "sentiment")

        body = server.bodies[0]
        assert result.content == '{"sentiment": "positive"}'
        assert body["temperature"] == 0.3
        assert body["model"] == "global-analysis"
        assert body["messages"][-1]["content"] == build_analysis_prompt("I love this", "sentiment")

    def test_unknown_analysis_type_gets_generic_prompt(self):
        assert build_analysis_prompt("hello", "poetry") == 'Analyze the following text: "hello"'


class TestOperations:
    async def test_available_models_are_cached(self):
        server = FakeServer()
        calls = []

        def handler(request):
            if request.method == "GET":
                calls.append(request.url.path)
            return server(request)

        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        transport = HttpTransport(ENDPOINT, server_type="lmstudio", client=client)
        resolver = ModelResolver(InMemoryPreferenceStore(), catalog_fetcher=transport.list_models)
        async with LLMGateway(resolver, transport) as gateway:
            first = await gateway.get_available_models()
            second = await gateway.get_available_models()

        assert first == second == [{"id": "served-model", "name": "served-model"}]
        assert calls == ["/v1/models"]

    async def test_health_check(self):
        async with make_gateway(FakeServer()) as gateway:
            status = await gateway.health_check()
            assert await gateway.check_connection()

        assert status.healthy
        assert status.endpoint == ENDPOINT
        assert status.rate_limit["requests_per_minute"] == 60

    async def test_cancelled_caller_counts_as_failure(self, store):
        release = asyncio.Event()

        async def slow(request):
            await release.wait()
            return httpx.Response(200, json=completion("late"))

        client = httpx.AsyncClient(transport=httpx.MockTransport(slow))
        transport = HttpTransport(ENDPOINT, client=client)
        async with LLMGateway(ModelResolver(store), transport) as gateway:
            with pytest.raises(asyncio.TimeoutError):
                await asyncio.wait_for(gateway.generate_response("hi"), timeout=0.05)
            metrics = gateway.get_metrics()

        assert metrics["total_requests"] == 1
        assert metrics["failed_requests"] == 1
        assert metrics["successful_requests"] == 0

    async def test_metrics_after_success(self, store):
        async with make_gateway(FakeServer(), store=store) as gateway:
            await gateway.generate_response("hi")
            metrics = gateway.get_metrics()

        assert metrics["total_requests"] == 1
        assert metrics["successful_requests"] == 1
        assert metrics["success_rate"] == 100.0
        assert metrics["queue_length"] == 0
        assert metrics["rate_limit"]["current_requests"] == 1
        assert metrics["server_type"] == "lmstudio"

    async def test_update_configuration(self):
        server = FakeServer()
        async with make_gateway(server) as gateway:
            gateway.update_configuration(
                endpoint="http://other.test/v1/chat/completions/",
                server_type="ollama",
                default_model="new-default",
                max_tokens=99,
                requests_per_minute=10,
            )
            await gateway.generate_response("hi")

        assert gateway.transport.endpoint == "http://other.test/v1/chat/completions"
        assert gateway.rate_limiter.limit_per_minute == 10
        assert server.bodies[0]["model"] == "new-default"
        assert server.bodies[0]["num_predict"] == 99


class TestCreateGateway:
    async def test_from_config_file(self, tmp_config_file):
        gateway = create_gateway(Config(config_file=tmp_config_file))
        try:
            assert gateway.transport.endpoint == ENDPOINT
            assert gateway.resolver.default_model == "test-model"
            assert gateway.rate_limiter.limit_per_minute == 30
            assert isinstance(gateway.resolver._store, JsonFilePreferenceStore)
        finally:
            await gateway.close()

    async def test_uses_given_client(self, tmp_config_file):
        server = FakeServer()
        client = httpx.AsyncClient(transport=httpx.MockTransport(server))
        async with create_gateway(Config(config_file=tmp_config_file), client=client) as gateway:
            result = await gateway.generate_response("hi")

        assert result.content == "ok"
        assert server.bodies[0]["model"] == "test-model"
        await client.aclose()
