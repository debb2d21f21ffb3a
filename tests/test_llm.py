"""Tests for character_tools.llm — GenerationTransport and the httpx backends."""

import json

import httpx
import pytest
from unittest.mock import AsyncMock

from character_tools.cancellation import CancellationToken, GenerationAborted, GenerationError
from character_tools.llm import (
    ContentReply,
    ErrorReply,
    GenerationConfig,
    GenerationTransport,
    HttpChatCompletionService,
    HttpHostBackend,
    LLMError,
    MacroSubstituter,
    RawReply,
    StreamReply,
    classify_reply,
    ensure_string,
)
from character_tools.models import StructuredOutputSchema


SCHEMA = StructuredOutputSchema(
    name="Score",
    value={"type": "object", "properties": {"score": {"type": "number"}}, "required": ["score"]},
)


def _stream(*chunks):
    async def gen():
        for chunk in chunks:
            yield chunk
    return gen


# ---------------------------------------------------------------------------
# Reply helpers
# ---------------------------------------------------------------------------

class TestEnsureString:
    def test_string_passthrough(self) -> None:
        assert ensure_string("hello") == "hello"

    def test_none_is_empty(self) -> None:
        assert ensure_string(None) == ""

    def test_dict_becomes_json(self) -> None:
        assert json.loads(ensure_string({"score": 7})) == {"score": 7}

    def test_number(self) -> None:
        assert ensure_string(42) == "42"


class TestClassifyReply:
    def test_callable_is_stream(self) -> None:
        assert isinstance(classify_reply(_stream()), StreamReply)

    def test_error_object(self) -> None:
        reply = classify_reply({"error": "rate limited"})
        assert reply == ErrorReply("rate limited")

    def test_content_object(self) -> None:
        assert classify_reply({"content": "text"}) == ContentReply("text")

    def test_other_value_is_raw(self) -> None:
        assert isinstance(classify_reply(["a"]), RawReply)


class TestMacroSubstituter:
    def test_replaces_known_case_insensitive(self) -> None:
        sub = MacroSubstituter({"user": "Alice"})
        assert sub("Hi {{USER}} and {{ user }}") == "Hi Alice and Alice"

    def test_unknown_left_in_place(self) -> None:
        sub = MacroSubstituter({"user": "Alice"})
        assert sub("{{char}} meets {{user}}") == "{{char}} meets Alice"

    def test_clock_macros(self) -> None:
        out = MacroSubstituter()("{{weekday}}")
        assert out != "{{weekday}}"


# ---------------------------------------------------------------------------
# GenerationTransport — host-default path
# ---------------------------------------------------------------------------

class TestHostPath:
    async def test_sends_system_and_user_messages(self) -> None:
        host = AsyncMock(return_value="The answer")
        transport = GenerationTransport(host=host, substitute=MacroSubstituter({"user": "Bob"}))
        out = await transport.generate("Talk to {{user}}", "prompt", None, CancellationToken(), True)
        assert out == "The answer"
        messages, schema = host.call_args[0]
        assert messages == [
            {"role": "system", "content": "Talk to Bob"},
            {"role": "user", "content": "prompt"},
        ]
        assert schema is None

    async def test_passes_schema(self) -> None:
        host = AsyncMock(return_value='{"score": 5}')
        transport = GenerationTransport(host=host)
        await transport.generate("sys", "prompt", SCHEMA, CancellationToken(), True)
        assert host.call_args[0][1] is SCHEMA

    async def test_object_reply_becomes_json_text(self) -> None:
        transport = GenerationTransport(host=AsyncMock(return_value={"score": 5}))
        out = await transport.generate("sys", "prompt", SCHEMA, CancellationToken(), True)
        assert json.loads(out) == {"score": 5}

    async def test_cancelled_before_call(self) -> None:
        host = AsyncMock(return_value="x")
        token = CancellationToken()
        token.cancel()
        with pytest.raises(GenerationAborted):
            await GenerationTransport(host=host).generate("s", "u", None, token, True)
        host.assert_not_called()

    async def test_cancelled_during_call(self) -> None:
        token = CancellationToken()

        async def host(messages, schema):
            token.cancel()
            return "late"

        with pytest.raises(GenerationAborted):
            await GenerationTransport(host=host).generate("s", "u", None, token, True)

    async def test_missing_host(self) -> None:
        with pytest.raises(GenerationError):
            await GenerationTransport().generate("s", "u", None, CancellationToken(), True)


# ---------------------------------------------------------------------------
# GenerationTransport — custom-config path
# ---------------------------------------------------------------------------

class TestCustomPath:
    def test_build_request(self) -> None:
        config = GenerationConfig(source="openai", model="gpt-x", temperature=0.3, max_tokens=100)
        transport = GenerationTransport(config=config)
        request = transport.build_request("sys", "user", SCHEMA)
        assert request["stream"] is True
        assert request["chat_completion_source"] == "openai"
        assert request["model"] == "gpt-x"
        assert request["temperature"] == 0.3
        assert request["max_tokens"] == 100
        assert request["json_schema"]["name"] == "Score"
        assert request["messages"][1] == {"role": "user", "content": "user"}

    def test_build_request_without_schema(self) -> None:
        request = GenerationTransport().build_request("sys", "user", None)
        assert "json_schema" not in request

    async def test_stream_returns_final_text(self) -> None:
        service = AsyncMock()
        service.send_request.return_value = _stream({"text": "Hel"}, {"text": "Hello"})
        out = await GenerationTransport(service=service).generate(
            "s", "u", None, CancellationToken(), False
        )
        assert out == "Hello"

    async def test_content_reply(self) -> None:
        service = AsyncMock()
        service.send_request.return_value = {"content": "direct"}
        out = await GenerationTransport(service=service).generate(
            "s", "u", None, CancellationToken(), False
        )
        assert out == "direct"

    async def test_error_reply_raises(self) -> None:
        service = AsyncMock()
        service.send_request.return_value = {"error": "quota exceeded"}
        with pytest.raises(GenerationError, match="API error: quota exceeded"):
            await GenerationTransport(service=service).generate(
                "s", "u", None, CancellationToken(), False
            )

    async def test_raw_reply_coerced(self) -> None:
        service = AsyncMock()
        service.send_request.return_value = {"choices": []}
        out = await GenerationTransport(service=service).generate(
            "s", "u", None, CancellationToken(), False
        )
        assert json.loads(out) == {"choices": []}


# ---------------------------------------------------------------------------
# httpx backends
# ---------------------------------------------------------------------------

def _completion(text: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": text}}]}


class TestHttpHostBackend:
    async def test_posts_chat_completion(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            seen["auth"] = request.headers.get("authorization")
            return httpx.Response(200, json=_completion("hi"))

        backend = HttpHostBackend(
            "http://llm.local/", api_key="k", model="m",
            transport=httpx.MockTransport(handler),
        )
        out = await backend([{"role": "user", "content": "x"}], SCHEMA)
        assert out == "hi"
        assert seen["url"] == "http://llm.local/v1/chat/completions"
        assert seen["auth"] == "Bearer k"
        assert seen["body"]["model"] == "m"
        assert seen["body"]["stream"] is False
        assert seen["body"]["response_format"]["json_schema"]["name"] == "Score"

    async def test_http_error(self) -> None:
        backend = HttpHostBackend(
            "http://llm.local",
            transport=httpx.MockTransport(lambda r: httpx.Response(500)),
        )
        with pytest.raises(LLMError, match="HTTP 500"):
            await backend([], None)

    async def test_connect_error(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        backend = HttpHostBackend("http://llm.local", transport=httpx.MockTransport(handler))
        with pytest.raises(LLMError, match="Cannot connect"):
            await backend([], None)


class TestHttpChatCompletionService:
    async def test_non_streaming(self) -> None:
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json=_completion("done"))

        service = HttpChatCompletionService(
            "http://llm.local", transport=httpx.MockTransport(handler)
        )
        reply = await service.send_request({
            "stream": False,
            "messages": [],
            "model": "gpt-x",
            "chat_completion_source": "openai",
        })
        assert reply == {"content": "done"}
        assert "chat_completion_source" not in seen["body"]

    async def test_streaming_yields_cumulative_text(self) -> None:
        events = [
            {"choices": [{"delta": {"content": "Hel"}}]},
            {"choices": [{"delta": {"content": "lo"}}]},
        ]
        sse = "".join(f"data: {json.dumps(e)}\n\n" for e in events) + "data: [DONE]\n\n"
        service = HttpChatCompletionService(
            "http://llm.local",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text=sse)),
        )
        factory = await service.send_request({"stream": True, "messages": []})
        chunks = [chunk async for chunk in factory()]
        assert chunks == [{"text": "Hel"}, {"text": "Hello"}]

    async def test_streaming_http_error_chunk(self) -> None:
        service = HttpChatCompletionService(
            "http://llm.local",
            transport=httpx.MockTransport(lambda r: httpx.Response(401)),
        )
        factory = await service.send_request({"stream": True, "messages": []})
        chunks = [chunk async for chunk in factory()]
        assert chunks == [{"error": "LLM backend returned HTTP 401"}]

    async def test_end_to_end_through_transport(self) -> None:
        sse = 'data: {"choices": [{"delta": {"content": "Full reply"}}]}\n\ndata: [DONE]\n\n'
        service = HttpChatCompletionService(
            "http://llm.local",
            transport=httpx.MockTransport(lambda r: httpx.Response(200, text=sse)),
        )
        out = await GenerationTransport(service=service).generate(
            "s", "u", None, CancellationToken(), False
        )
        assert out == "Full reply"
