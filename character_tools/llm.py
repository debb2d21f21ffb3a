"""Generation transport — one awaited string out of two kinds of backend.

The executor calls GenerationTransport.generate(), which picks one of two
paths:

    host default   — HostBackend: one non-streaming call with a two-message
                     prompt (system, user) and an optional schema.
    custom config  — ChatCompletionBackend: a request carrying the model and
                     sampling parameters from GenerationConfig, always with
                     stream=True.

The custom-config backend may answer with a stream factory, an object with
"error" or "content", or a bare value. classify_reply() turns that into one of
StreamReply / ErrorReply / ContentReply / RawReply once, at the boundary, and
the rest of the code only deals with those four cases.

Two HTTP implementations are provided for OpenAI-compatible chat completion
servers:

    HttpHostBackend            — POST /v1/chat/completions, no streaming.
    HttpChatCompletionService  — same endpoint; with stream=True it returns a
                                 factory of cumulative {"text": ...} chunks
                                 parsed from server-sent events.

Tests use AsyncMock backends instead.
"""

from __future__ import annotations

import json
import logging
import re
from collections.abc import AsyncIterator, Callable, Mapping
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

import httpx
from pydantic import BaseModel

from .cancellation import CancellationToken, GenerationError
from .models import StructuredOutputSchema
from .stream import StreamFactory, consume_stream

logger = logging.getLogger(__name__)

ChatMessage = dict[str, str]


# ---------------------------------------------------------------------------
# Protocols — what the host must provide
# ---------------------------------------------------------------------------

class HostBackend(Protocol):
    async def __call__(
        self, messages: list[ChatMessage], json_schema: StructuredOutputSchema | None
    ) -> Any: ...


class ChatCompletionBackend(Protocol):
    async def send_request(self, request: dict[str, Any]) -> Any: ...


class GenerationConfig(BaseModel):
    """Model and sampling parameters for the custom-config path."""

    source: str = "openrouter"
    model: str = "anthropic/claude-sonnet-4"
    temperature: float = 1.0
    max_tokens: int = 4096
    frequency_penalty: float = 0.0
    presence_penalty: float = 0.0
    top_p: float = 1.0


# ---------------------------------------------------------------------------
# Macro substitution
# ---------------------------------------------------------------------------

_MACRO_RE = re.compile(r"\{\{\s*([A-Za-z_]\w*)\s*\}\}")


class MacroSubstituter:
    """Replaces {{name}} host macros case-insensitively.

    Unknown macros are left in place so later template rendering still sees
    them. {{date}}, {{time}} and {{weekday}} are filled from the clock unless
    overridden.
    """

    def __init__(self, values: Mapping[str, str] | None = None) -> None:
        self._values = {k.lower(): v for k, v in (values or {}).items()}

    def _lookup(self, name: str) -> str | None:
        key = name.lower()
        if key in self._values:
            return self._values[key]
        now = datetime.now()
        if key == "date":
            return now.strftime("%B %d, %Y")
        if key == "time":
            return now.strftime("%I:%M %p")
        if key == "weekday":
            return now.strftime("%A")
        return None

    def __call__(self, text: str) -> str:
        def _replace(match: re.Match[str]) -> str:
            value = self._lookup(match.group(1))
            return match.group(0) if value is None else value

        return _MACRO_RE.sub(_replace, text)


# ---------------------------------------------------------------------------
# Reply classification
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class StreamReply:
    factory: StreamFactory


@dataclass(frozen=True)
class ErrorReply:
    message: str


@dataclass(frozen=True)
class ContentReply:
    text: str


@dataclass(frozen=True)
class RawReply:
    value: Any


Reply = StreamReply | ErrorReply | ContentReply | RawReply


def ensure_string(value: Any) -> str:
    """Coerce a backend reply to text; objects become JSON."""
    if isinstance(value, str):
        return value
    if value is None:
        return ""
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    if isinstance(value, (dict, list)):
        try:
            return json.dumps(value)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def classify_reply(value: Any) -> Reply:
    if callable(value):
        return StreamReply(value)
    if isinstance(value, Mapping):
        if value.get("error"):
            return ErrorReply(ensure_string(value["error"]))
        if value.get("content"):
            return ContentReply(ensure_string(value["content"]))
    return RawReply(value)


# ---------------------------------------------------------------------------
# GenerationTransport
# ---------------------------------------------------------------------------

def _identity(text: str) -> str:
    return text


class GenerationTransport:
    """Normalises the host-default and custom-config backends.

    Args:
        host:        Backend for the host-default path.
        service:     Backend for the custom-config path.
        config:      Model and sampling parameters for the custom path.
        substitute:  Host macro substitution applied to the system prompt.
    """

    def __init__(
        self,
        host: HostBackend | None = None,
        service: ChatCompletionBackend | None = None,
        config: GenerationConfig | None = None,
        substitute: Callable[[str], str] = _identity,
    ) -> None:
        self._host = host
        self._service = service
        self._config = config or GenerationConfig()
        self._substitute = substitute

    @property
    def config(self) -> GenerationConfig:
        return self._config

    async def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: StructuredOutputSchema | None,
        token: CancellationToken,
        use_host_default: bool,
    ) -> str:
        if use_host_default:
            return await self._generate_host(system_prompt, user_prompt, schema, token)
        return await self._generate_custom(system_prompt, user_prompt, schema, token)

    async def _generate_host(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: StructuredOutputSchema | None,
        token: CancellationToken,
    ) -> str:
        if self._host is None:
            raise GenerationError("No host backend configured")

        messages = [
            {"role": "system", "content": self._substitute(system_prompt)},
            {"role": "user", "content": user_prompt},
        ]
        logger.debug(
            "host request schema=%s user_prompt_len=%d",
            schema.name if schema else None, len(user_prompt),
        )

        token.raise_if_cancelled()
        raw = await self._host(messages, schema)
        token.raise_if_cancelled()

        response = ensure_string(raw)
        logger.debug("host response type=%s len=%d", type(raw).__name__, len(response))
        return response

    def build_request(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: StructuredOutputSchema | None,
    ) -> dict[str, Any]:
        cfg = self._config
        request: dict[str, Any] = {
            "stream": True,
            "messages": [
                {"role": "system", "content": self._substitute(system_prompt)},
                {"role": "user", "content": user_prompt},
            ],
            "chat_completion_source": cfg.source,
            "model": cfg.model,
            "temperature": cfg.temperature,
            "max_tokens": cfg.max_tokens,
            "frequency_penalty": cfg.frequency_penalty,
            "presence_penalty": cfg.presence_penalty,
            "top_p": cfg.top_p,
        }
        if schema is not None:
            request["json_schema"] = schema.model_dump()
        return request

    async def _generate_custom(
        self,
        system_prompt: str,
        user_prompt: str,
        schema: StructuredOutputSchema | None,
        token: CancellationToken,
    ) -> str:
        if self._service is None:
            raise GenerationError("No chat completion backend configured")

        request = self.build_request(system_prompt, user_prompt, schema)
        logger.debug(
            "custom request source=%s model=%s schema=%s",
            request["chat_completion_source"], request["model"], schema is not None,
        )

        token.raise_if_cancelled()
        result = await self._service.send_request(request)
        token.raise_if_cancelled()

        reply = classify_reply(result)
        if isinstance(reply, StreamReply):
            response = await consume_stream(reply.factory, token)
        elif isinstance(reply, ErrorReply):
            raise GenerationError(f"API error: {reply.message}")
        elif isinstance(reply, ContentReply):
            response = reply.text
        else:
            response = ensure_string(reply.value)

        logger.debug("custom response kind=%s len=%d", type(reply).__name__, len(response))
        return response


# ---------------------------------------------------------------------------
# HTTP backends
# ---------------------------------------------------------------------------

class LLMError(GenerationError):
    """Raised when the LLM backend cannot be reached or returns an error."""


class _HttpBackend:
    def __init__(
        self,
        provider_url: str,
        api_key: str = "",
        model: str = "",
        timeout: float = 120.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._base_url = provider_url.rstrip("/")
        self._api_key = api_key
        self._model = model
        self._timeout = timeout
        self._transport = transport

    @property
    def url(self) -> str:
        return f"{self._base_url}/v1/chat/completions"

    def _headers(self) -> dict[str, str]:
        headers: dict[str, str] = {"Content-Type": "application/json"}
        if self._api_key:
            headers["Authorization"] = f"Bearer {self._api_key}"
        return headers

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(timeout=self._timeout, transport=self._transport)

    async def _post(self, body: dict[str, Any]) -> dict[str, Any]:
        try:
            async with self._client() as client:
                resp = await client.post(self.url, json=body, headers=self._headers())
                resp.raise_for_status()
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.HTTPStatusError as e:
            raise LLMError(f"LLM backend returned HTTP {e.response.status_code}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
        return resp.json()


def _response_format(schema: Mapping[str, Any]) -> dict[str, Any]:
    return {"type": "json_schema", "json_schema": {
        "name": schema["name"],
        "strict": schema.get("strict", True),
        "schema": schema["value"],
    }}


def _message_text(data: Mapping[str, Any]) -> str:
    choices = data.get("choices")
    if not choices or "message" not in choices[0]:
        raise LLMError("Unexpected response format from chat completion backend")
    return choices[0]["message"].get("content") or ""


def _error_message(error: Any) -> str:
    if isinstance(error, Mapping) and "message" in error:
        return str(error["message"])
    return ensure_string(error)


class HttpHostBackend(_HttpBackend):
    """Non-streaming chat completion call used for the host-default path."""

    async def __call__(
        self, messages: list[ChatMessage], json_schema: StructuredOutputSchema | None
    ) -> str:
        body: dict[str, Any] = {"messages": messages, "stream": False}
        if self._model:
            body["model"] = self._model
        if json_schema is not None:
            body["response_format"] = _response_format(json_schema.model_dump())

        logger.debug("host llm call url=%s messages=%d", self.url, len(messages))
        data = await self._post(body)
        text = _message_text(data)
        logger.debug("host llm response len=%d", len(text))
        return text


class HttpChatCompletionService(_HttpBackend):
    """Chat completion service for the custom-config path.

    With stream=True the reply is a zero-argument factory; each chunk it
    yields carries the full text received so far.
    """

    def _body(self, request: Mapping[str, Any]) -> dict[str, Any]:
        body = {
            k: v for k, v in request.items()
            if k not in ("chat_completion_source", "json_schema")
        }
        if not body.get("model") and self._model:
            body["model"] = self._model
        if request.get("json_schema"):
            body["response_format"] = _response_format(request["json_schema"])
        return body

    async def send_request(self, request: dict[str, Any]) -> Any:
        body = self._body(request)
        if body.get("stream"):
            return lambda: self._stream(body)

        data = await self._post(body)
        if data.get("error"):
            return {"error": _error_message(data["error"])}
        return {"content": _message_text(data)}

    async def _stream(self, body: dict[str, Any]) -> AsyncIterator[dict[str, str]]:
        text = ""
        try:
            async with self._client() as client:
                async with client.stream(
                    "POST", self.url, json=body, headers=self._headers()
                ) as resp:
                    if resp.status_code >= 400:
                        yield {"error": f"LLM backend returned HTTP {resp.status_code}"}
                        return
                    async for line in resp.aiter_lines():
                        line = line.strip()
                        if not line.startswith("data:"):
                            continue
                        payload = line[len("data:"):].strip()
                        if payload == "[DONE]":
                            break
                        try:
                            event = json.loads(payload)
                        except json.JSONDecodeError:
                            logger.debug("skipping malformed stream event %r", payload[:80])
                            continue
                        if event.get("error"):
                            yield {"error": _error_message(event["error"])}
                            return
                        choices = event.get("choices") or [{}]
                        delta = (choices[0].get("delta") or {}).get("content") or ""
                        if delta:
                            text += delta
                            yield {"text": text}
        except httpx.ConnectError as e:
            raise LLMError(f"Cannot connect to LLM backend at {self._base_url}") from e
        except httpx.TimeoutException as e:
            raise LLMError(f"LLM backend timed out after {self._timeout}s") from e
