"""Provider adapters: one variant per backend, bound once per model.

Every adapter speaks the same small contract:

* ``generate_content(request, signal)`` returns a single Response.
* ``generate_content_stream(request, signal)`` opens the HTTP stream, checks
  the status, and returns an async iterator of normalized Events. Errors while
  opening raise ProviderError so the retry controller can wrap the call; once
  the iterator is handed out, malformed chunks are logged and skipped.
* ``count_tokens(contents)`` returns an int, or None when the backend cannot
  tell. It never raises.
"""

import asyncio
import codecs
import dataclasses
import json
import logging
import os
from typing import AsyncIterator

import httpx

from .models import (
    MODEL,
    Event,
    EventType,
    FinishReason,
    Part,
    ProviderConfig,
    Request,
    Response,
    ToolCall,
    Turn,
    Usage,
    map_finish_reason,
)
from .report import ConfigError, ProviderError
from .tokens import estimate_tokens
from .wire import (
    new_call_id,
    anthropic_to_wire,
    anthropic_tools_to_wire,
    dashscope_to_wire,
    gemini_from_wire,
    gemini_to_wire,
    gemini_tools_to_wire,
    openai_to_wire,
    openai_tools_to_wire,
    parse_arguments,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = httpx.Timeout(300.0, connect=30.0)
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_DEFAULT_MAX_TOKENS = 4096

PROVIDERS = (
    "gemini",
    "anthropic",
    "openai",
    "deepseek",
    "openrouter",
    "dashscope",
    "lmstudio",
    "huggingface",
    "generic",
)

API_KEY_ENV: dict[str, str] = {
    "gemini": "GEMINI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "openai": "OPENAI_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "dashscope": "DASHSCOPE_API_KEY",
    "huggingface": "HF_TOKEN",
}

DEFAULT_BASE_URLS: dict[str, str] = {
    "gemini": "https://generativelanguage.googleapis.com/v1beta",
    "anthropic": "https://api.anthropic.com",
    "openai": "https://api.openai.com/v1",
    "deepseek": "https://api.deepseek.com/v1",
    "openrouter": "https://openrouter.ai/api/v1",
    "dashscope": "https://dashscope.aliyuncs.com/api/v1",
    "lmstudio": "http://127.0.0.1:1234/v1",
}

MODEL_PROVIDERS: dict[str, str] = {
    "gemini-1.5-pro": "gemini",
    "gemini-1.5-flash": "gemini",
    "gemini-2.0-flash": "gemini",
    "gemini-2.5-pro": "gemini",
    "gemini-2.5-flash": "gemini",
    "deepseek-chat": "deepseek",
    "deepseek-coder": "deepseek",
    "deepseek-reasoner": "deepseek",
    "claude-3-5-sonnet-20241022": "anthropic",
    "claude-3-5-haiku-20241022": "anthropic",
    "claude-3-opus-20240229": "anthropic",
    "claude-sonnet-4-20250514": "anthropic",
    "claude-opus-4-20250514": "anthropic",
    "gpt-4o": "openai",
    "gpt-4o-mini": "openai",
    "gpt-4-turbo": "openai",
    "gpt-4.1": "openai",
    "o1-mini": "openai",
    "qwen-turbo": "dashscope",
    "qwen-plus": "dashscope",
    "qwen-max": "dashscope",
    "qwen-coder-plus": "dashscope",
    "openai/gpt-4o": "openrouter",
    "anthropic/claude-3.5-sonnet": "openrouter",
    "deepseek/deepseek-chat": "openrouter",
    "google/gemini-pro": "openrouter",
    "meta-llama/llama-3.1-70b-instruct": "openrouter",
}


def provider_for_model(model: str) -> str:
    """Pick a backend for a model name: exact table entry, then keywords."""
    if model in MODEL_PROVIDERS:
        return MODEL_PROVIDERS[model]
    name = model.lower()
    if "gemini" in name or "bison" in name:
        return "gemini"
    if "deepseek" in name:
        return "deepseek"
    if "claude" in name:
        return "anthropic"
    if "gpt" in name or name.startswith(("o1", "o3", "o4")):
        return "openai"
    if "qwen" in name or "tongyi" in name:
        return "dashscope"
    if "/" in name:
        return "openrouter"
    return "gemini"


def resolve_api_key(provider: str, api_key: str | None) -> str | None:
    if api_key:
        return api_key
    env = API_KEY_ENV.get(provider)
    return os.environ.get(env) if env else None


# ---------------------------------------------------------------------------
# SSE line decoding
# ---------------------------------------------------------------------------


def _sse_payload(line: str, prefix: str) -> str | None:
    line = line.rstrip("\r")
    if not line.startswith(prefix):
        return None
    return line[len(prefix) :].strip()


async def iter_sse_data(
    chunks: AsyncIterator[bytes], prefix: str = "data:"
) -> AsyncIterator[str]:
    """Yield the payload of every ``<prefix>`` line in a byte stream.

    A line (and a multi-byte UTF-8 sequence) may be split across reads; the
    trailing partial line is kept until the next read completes it.
    """
    decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
    buffer = ""
    async for chunk in chunks:
        buffer += decoder.decode(chunk)
        lines = buffer.split("\n")
        buffer = lines.pop()
        for line in lines:
            payload = _sse_payload(line, prefix)
            if payload:
                yield payload
    buffer += decoder.decode(b"", final=True)
    payload = _sse_payload(buffer, prefix)
    if payload:
        yield payload


# ---------------------------------------------------------------------------
# Stream decoders: vendor JSON chunk -> Events
# ---------------------------------------------------------------------------


class ToolCallAccumulator:
    """Buffers streamed tool-call fragments until the call is complete."""

    def __init__(self):
        self._calls: dict = {}

    def __bool__(self):
        return bool(self._calls)

    def start(self, key, call_id: str | None, name: str | None) -> None:
        self._calls[key] = {"id": call_id, "name": name or "", "args": []}

    def append(
        self, key, fragment: str, call_id: str | None = None, name: str | None = None
    ) -> None:
        entry = self._calls.setdefault(key, {"id": None, "name": "", "args": []})
        if call_id:
            entry["id"] = call_id
        if name:
            entry["name"] += name
        if fragment:
            entry["args"].append(fragment)

    def complete(self, key) -> ToolCall | None:
        entry = self._calls.pop(key, None)
        if entry is None:
            return None
        return self._build(entry)

    def flush(self) -> list[ToolCall]:
        calls = [self._build(entry) for entry in self._calls.values()]
        self._calls.clear()
        return calls

    @staticmethod
    def _build(entry: dict) -> ToolCall:
        raw = "".join(entry["args"])
        arguments: dict = {}
        if raw.strip():
            try:
                value = json.loads(raw)
            except json.JSONDecodeError:
                logger.warning(
                    "tool call %r arguments never formed valid JSON: %.200s",
                    entry["name"],
                    raw,
                )
            else:
                if isinstance(value, dict):
                    arguments = value
        return ToolCall(
            id=entry["id"] or new_call_id(), name=entry["name"], arguments=arguments
        )


class StreamDecoder:
    """Base decoder. ``done`` becomes True when the vendor signalled the end."""

    def __init__(self):
        self.finish_reason: FinishReason | None = None
        self.usage: Usage | None = None
        self.done = False

    def feed(self, data: dict) -> list[Event]:
        raise NotImplementedError

    def pending(self) -> list[Event]:
        return []

    def finish(self) -> list[Event]:
        events = self.pending()
        events.append(
            Event(
                EventType.DONE,
                {"finish_reason": self.finish_reason, "usage": self.usage},
            )
        )
        return events


def _tool_events(calls: list[ToolCall]) -> list[Event]:
    return [Event(EventType.TOOL_CALL_REQUEST, c) for c in calls]


class OpenAIStreamDecoder(StreamDecoder):
    def __init__(self):
        super().__init__()
        self._calls = ToolCallAccumulator()

    def feed(self, data: dict) -> list[Event]:
        events: list[Event] = []
        if data.get("error"):
            err = data["error"]
            msg = err.get("message", str(err)) if isinstance(err, dict) else str(err)
            events.append(Event(EventType.ERROR, msg))
        usage = data.get("usage")
        if usage:
            self.usage = Usage(
                prompt_tokens=usage.get("prompt_tokens"),
                completion_tokens=usage.get("completion_tokens"),
                total_tokens=usage.get("total_tokens"),
            )
        for choice in data.get("choices") or []:
            delta = choice.get("delta") or {}
            if delta.get("reasoning_content"):
                events.append(Event(EventType.THOUGHT, delta["reasoning_content"]))
            if delta.get("content"):
                events.append(Event(EventType.CONTENT, delta["content"]))
            for tc in delta.get("tool_calls") or []:
                fn = tc.get("function") or {}
                self._calls.append(
                    tc.get("index", 0),
                    fn.get("arguments") or "",
                    call_id=tc.get("id"),
                    name=fn.get("name"),
                )
            if choice.get("finish_reason"):
                self.finish_reason = map_finish_reason(choice["finish_reason"])
                events.extend(_tool_events(self._calls.flush()))
        return events

    def pending(self) -> list[Event]:
        return _tool_events(self._calls.flush())


class AnthropicStreamDecoder(StreamDecoder):
    def __init__(self):
        super().__init__()
        self._calls = ToolCallAccumulator()
        self._prompt_tokens: int | None = None

    def feed(self, data: dict) -> list[Event]:
        kind = data.get("type")
        if kind == "message_start":
            usage = (data.get("message") or {}).get("usage") or {}
            self._prompt_tokens = usage.get("input_tokens")
        elif kind == "content_block_start":
            block = data.get("content_block") or {}
            if block.get("type") == "tool_use":
                self._calls.start(data.get("index"), block.get("id"), block.get("name"))
            elif block.get("type") == "text" and block.get("text"):
                return [Event(EventType.CONTENT, block["text"])]
        elif kind == "content_block_delta":
            delta = data.get("delta") or {}
            dtype = delta.get("type")
            if dtype == "text_delta" and delta.get("text"):
                return [Event(EventType.CONTENT, delta["text"])]
            if dtype == "thinking_delta" and delta.get("thinking"):
                return [Event(EventType.THOUGHT, delta["thinking"])]
            if dtype == "input_json_delta":
                self._calls.append(data.get("index"), delta.get("partial_json") or "")
        elif kind == "content_block_stop":
            call = self._calls.complete(data.get("index"))
            if call is not None:
                return _tool_events([call])
        elif kind == "message_delta":
            delta = data.get("delta") or {}
            if delta.get("stop_reason"):
                self.finish_reason = map_finish_reason(delta["stop_reason"])
            usage = data.get("usage") or {}
            if usage:
                out = usage.get("output_tokens")
                total = (self._prompt_tokens or 0) + (out or 0)
                self.usage = Usage(self._prompt_tokens, out, total or None)
        elif kind == "message_stop":
            self.done = True
        elif kind == "error":
            err = data.get("error") or {}
            return [Event(EventType.ERROR, err.get("message", "unknown stream error"))]
        return []

    def pending(self) -> list[Event]:
        return _tool_events(self._calls.flush())


def _gemini_usage(meta: dict | None) -> Usage | None:
    if not meta:
        return None
    return Usage(
        prompt_tokens=meta.get("promptTokenCount"),
        completion_tokens=meta.get("candidatesTokenCount"),
        total_tokens=meta.get("totalTokenCount"),
    )


class GeminiStreamDecoder(StreamDecoder):
    """Gemini delivers function calls whole, so nothing needs buffering."""

    def feed(self, data: dict) -> list[Event]:
        events: list[Event] = []
        if data.get("error"):
            events.append(Event(EventType.ERROR, data["error"].get("message", "")))
        usage = _gemini_usage(data.get("usageMetadata"))
        if usage is not None:
            self.usage = usage
        candidates = data.get("candidates") or []
        if not candidates:
            return events
        candidate = candidates[0]
        for part in (candidate.get("content") or {}).get("parts") or []:
            if "functionCall" in part:
                fc = part["functionCall"]
                call = ToolCall(
                    id=fc.get("id") or new_call_id(),
                    name=fc.get("name", ""),
                    arguments=fc.get("args") or {},
                )
                events.append(Event(EventType.TOOL_CALL_REQUEST, call))
            elif part.get("text"):
                kind = EventType.THOUGHT if part.get("thought") else EventType.CONTENT
                events.append(Event(kind, part["text"]))
        if candidate.get("finishReason"):
            self.finish_reason = map_finish_reason(candidate["finishReason"])
        return events


class DashScopeStreamDecoder(StreamDecoder):
    """Incremental-output DashScope stream; ends at the first finish_reason."""

    def feed(self, data: dict) -> list[Event]:
        events: list[Event] = []
        usage = data.get("usage")
        if usage:
            self.usage = Usage(
                prompt_tokens=usage.get("input_tokens"),
                completion_tokens=usage.get("output_tokens"),
                total_tokens=usage.get("total_tokens"),
            )
        if data.get("code") and not data.get("output"):
            events.append(Event(EventType.ERROR, data.get("message", data["code"])))
            self.done = True
            return events
        choices = (data.get("output") or {}).get("choices") or []
        if choices:
            choice = choices[0]
            content = (choice.get("message") or {}).get("content")
            if content:
                events.append(Event(EventType.CONTENT, content))
            reason = choice.get("finish_reason")
            # DashScope sends the literal string "null" while streaming.
            if reason and reason != "null":
                self.finish_reason = map_finish_reason(reason)
                self.done = True
        return events


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


def _retry_after(response: httpx.Response) -> float | None:
    value = response.headers.get("retry-after")
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def _is_aborted(signal: asyncio.Event | None) -> bool:
    return signal is not None and signal.is_set()


class ProviderAdapter:
    """Base class for a backend binding. Subclasses fill in the wire details."""

    name = ""
    sse_prefix = "data:"
    decoder_class: type[StreamDecoder] = StreamDecoder

    def __init__(
        self,
        config: ProviderConfig,
        *,
        provider: str | None = None,
        proxy: str | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        self.config = config
        self.provider = provider or self.name
        self.base_url = (
            config.base_url or DEFAULT_BASE_URLS.get(self.provider, "")
        ).rstrip("/")
        self._client = client or httpx.AsyncClient(proxy=proxy, timeout=DEFAULT_TIMEOUT)

    @property
    def model(self) -> str:
        return self.config.model

    async def aclose(self) -> None:
        await self._client.aclose()

    # -- hooks ----------------------------------------------------------------

    def _headers(self) -> dict:
        return {"Content-Type": "application/json"}

    def _url(self, stream: bool) -> str:
        raise NotImplementedError

    def _body(self, request: Request, stream: bool) -> dict:
        raise NotImplementedError

    def _parse_response(self, data: dict) -> Response:
        raise NotImplementedError

    # -- transport ------------------------------------------------------------

    async def _send(self, url: str, body: dict, *, stream: bool, headers=None):
        req = self._client.build_request(
            "POST", url, json=body, headers=headers or self._headers()
        )
        try:
            response = await self._client.send(req, stream=stream)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.provider}: request failed: {e}") from e
        if response.status_code >= 400:
            text = (await response.aread()).decode("utf-8", errors="replace")
            await response.aclose()
            raise ProviderError(
                f"{self.provider} API error {response.status_code}: {text[:500]}",
                status_code=response.status_code,
                retry_after=_retry_after(response),
            )
        return response

    async def generate_content(
        self, request: Request, signal: asyncio.Event | None = None
    ) -> Response:
        response = await self._send(
            self._url(stream=False), self._body(request, stream=False), stream=False
        )
        try:
            data = response.json()
        except json.JSONDecodeError as e:
            raise ProviderError(f"{self.provider}: response is not JSON: {e}") from e
        return self._parse_response(data)

    async def generate_content_stream(
        self, request: Request, signal: asyncio.Event | None = None
    ) -> AsyncIterator[Event]:
        response = await self._send(
            self._url(stream=True),
            self._body(request, stream=True),
            stream=True,
            headers=self._stream_headers(),
        )
        return self._events(response, signal)

    def _stream_headers(self) -> dict:
        return self._headers()

    async def _events(
        self, response: httpx.Response, signal: asyncio.Event | None
    ) -> AsyncIterator[Event]:
        decoder = self.decoder_class()
        try:
            async for payload in iter_sse_data(response.aiter_bytes(), self.sse_prefix):
                if _is_aborted(signal):
                    return
                if payload == "[DONE]":
                    break
                try:
                    data = json.loads(payload)
                except json.JSONDecodeError:
                    logger.warning(
                        "%s: skipping malformed stream chunk: %.200s",
                        self.provider,
                        payload,
                    )
                    continue
                for event in decoder.feed(data):
                    yield event
                if decoder.done:
                    break
            if _is_aborted(signal):
                return
            for event in decoder.finish():
                yield event
        finally:
            await response.aclose()

    async def count_tokens(self, contents: list[Turn]) -> int | None:
        try:
            return estimate_tokens(contents)
        except Exception as e:
            logger.warning("%s: token estimate failed: %s", self.provider, e)
            return None


def _openai_message_to_turn(message: dict) -> Turn:
    parts: list[Part] = []
    if message.get("reasoning_content"):
        parts.append(Part(text=message["reasoning_content"], thought=True))
    if message.get("content"):
        parts.append(Part(text=message["content"]))
    for tc in message.get("tool_calls") or []:
        fn = tc.get("function") or {}
        parts.append(
            Part(
                tool_call=ToolCall(
                    id=tc.get("id") or new_call_id(),
                    name=fn.get("name", ""),
                    arguments=parse_arguments(fn.get("arguments")),
                )
            )
        )
    return Turn(MODEL, parts)


def _openai_usage(usage: dict | None) -> Usage | None:
    if not usage:
        return None
    return Usage(
        prompt_tokens=usage.get("prompt_tokens"),
        completion_tokens=usage.get("completion_tokens"),
        total_tokens=usage.get("total_tokens"),
    )


def _openai_response(data: dict) -> Response:
    choices = data.get("choices") or []
    if not choices:
        return Response(Turn(MODEL, []), usage=_openai_usage(data.get("usage")))
    choice = choices[0]
    return Response(
        turn=_openai_message_to_turn(choice.get("message") or {}),
        finish_reason=map_finish_reason(choice.get("finish_reason")),
        usage=_openai_usage(data.get("usage")),
    )


class OpenAIAdapter(ProviderAdapter):
    """Chat completions API. Also serves deepseek, openrouter and lmstudio."""

    name = "openai"
    decoder_class = OpenAIStreamDecoder

    def _headers(self) -> dict:
        headers = {"Content-Type": "application/json"}
        if self.config.api_key:
            headers["Authorization"] = f"Bearer {self.config.api_key}"
        return headers

    def _url(self, stream: bool) -> str:
        return f"{self.base_url}/chat/completions"

    def _body(self, request: Request, stream: bool) -> dict:
        body: dict = {
            "model": self.model,
            "messages": openai_to_wire(request.contents, request.system_instruction),
            "stream": stream,
        }
        temperature = (
            request.temperature
            if request.temperature is not None
            else self.config.temperature
        )
        if temperature is not None:
            body["temperature"] = temperature
        max_tokens = request.max_tokens or self.config.max_tokens
        if max_tokens:
            body["max_tokens"] = max_tokens
        if request.tools:
            body["tools"] = openai_tools_to_wire(request.tools)
            body["tool_choice"] = "auto"
        if request.json_mode:
            body["response_format"] = {"type": "json_object"}
        if stream and self.provider != "lmstudio":
            body["stream_options"] = {"include_usage": True}
        return body

    def _parse_response(self, data: dict) -> Response:
        return _openai_response(data)


class AnthropicAdapter(ProviderAdapter):
    name = "anthropic"
    decoder_class = AnthropicStreamDecoder

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-api-key": self.config.api_key or "",
            "anthropic-version": ANTHROPIC_VERSION,
        }

    def _url(self, stream: bool) -> str:
        return f"{self.base_url}/v1/messages"

    def _body(self, request: Request, stream: bool) -> dict:
        body: dict = {
            "model": self.model,
            "max_tokens": request.max_tokens
            or self.config.max_tokens
            or ANTHROPIC_DEFAULT_MAX_TOKENS,
            "messages": anthropic_to_wire(request.contents),
            "stream": stream,
        }
        system = request.system_instruction
        if request.json_mode:
            suffix = "Respond with a single JSON object and nothing else."
            system = f"{system}\n\n{suffix}" if system else suffix
        if system:
            body["system"] = system
        temperature = (
            request.temperature
            if request.temperature is not None
            else self.config.temperature
        )
        if temperature is not None:
            body["temperature"] = temperature
        if request.tools:
            body["tools"] = anthropic_tools_to_wire(request.tools)
        return body

    def _parse_response(self, data: dict) -> Response:
        turn = Turn(MODEL, [])
        for block in data.get("content") or []:
            kind = block.get("type")
            if kind == "text":
                turn.parts.append(Part(text=block.get("text", "")))
            elif kind == "thinking":
                turn.parts.append(Part(text=block.get("thinking", ""), thought=True))
            elif kind == "tool_use":
                turn.parts.append(
                    Part(
                        tool_call=ToolCall(
                            id=block.get("id") or new_call_id(),
                            name=block.get("name", ""),
                            arguments=block.get("input") or {},
                        )
                    )
                )
        usage = data.get("usage") or {}
        prompt, completion = usage.get("input_tokens"), usage.get("output_tokens")
        return Response(
            turn=turn,
            finish_reason=map_finish_reason(data.get("stop_reason")),
            usage=Usage(
                prompt,
                completion,
                (prompt or 0) + (completion or 0) or None,
            )
            if usage
            else None,
        )

    async def count_tokens(self, contents: list[Turn]) -> int | None:
        body = {"model": self.model, "messages": anthropic_to_wire(contents)}
        if not body["messages"]:
            return 0
        try:
            response = await self._send(
                f"{self.base_url}/v1/messages/count_tokens", body, stream=False
            )
            return response.json().get("input_tokens")
        except (ProviderError, json.JSONDecodeError) as e:
            logger.warning("anthropic: count_tokens failed: %s", e)
            return None


class GeminiAdapter(ProviderAdapter):
    name = "gemini"
    decoder_class = GeminiStreamDecoder

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "x-goog-api-key": self.config.api_key or "",
        }

    def _url(self, stream: bool) -> str:
        if stream:
            return f"{self.base_url}/models/{self.model}:streamGenerateContent?alt=sse"
        return f"{self.base_url}/models/{self.model}:generateContent"

    def _body(self, request: Request, stream: bool) -> dict:
        body: dict = {"contents": gemini_to_wire(request.contents)}
        if request.system_instruction:
            body["systemInstruction"] = {
                "parts": [{"text": request.system_instruction}]
            }
        if request.tools:
            body["tools"] = gemini_tools_to_wire(request.tools)
        generation: dict = {}
        temperature = (
            request.temperature
            if request.temperature is not None
            else self.config.temperature
        )
        if temperature is not None:
            generation["temperature"] = temperature
        max_tokens = request.max_tokens or self.config.max_tokens
        if max_tokens:
            generation["maxOutputTokens"] = max_tokens
        if request.json_mode:
            generation["responseMimeType"] = "application/json"
        if generation:
            body["generationConfig"] = generation
        return body

    def _parse_response(self, data: dict) -> Response:
        decoder = GeminiStreamDecoder()
        turn = Turn(MODEL, [])
        for event in decoder.feed(data):
            if event.type == EventType.TOOL_CALL_REQUEST:
                turn.parts.append(Part(tool_call=event.value))
            elif event.type == EventType.THOUGHT:
                turn.parts.append(Part(text=event.value, thought=True))
            elif event.type == EventType.CONTENT:
                turn.parts.append(Part(text=event.value))
            elif event.type == EventType.ERROR:
                raise ProviderError(f"gemini: {event.value}")
        afc = data.get("automaticFunctionCallingHistory")
        return Response(
            turn=turn,
            finish_reason=decoder.finish_reason,
            usage=decoder.usage,
            afc_history=gemini_from_wire(afc) if afc else None,
        )

    async def count_tokens(self, contents: list[Turn]) -> int | None:
        url = f"{self.base_url}/models/{self.model}:countTokens"
        try:
            response = await self._send(
                url, {"contents": gemini_to_wire(contents)}, stream=False
            )
            return response.json().get("totalTokens")
        except (ProviderError, json.JSONDecodeError) as e:
            logger.warning("gemini: countTokens failed: %s", e)
            return None


class DashScopeAdapter(ProviderAdapter):
    """Native DashScope text generation. Tool declarations are not sent."""

    name = "dashscope"
    decoder_class = DashScopeStreamDecoder

    def _headers(self) -> dict:
        return {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self.config.api_key or ''}",
        }

    def _stream_headers(self) -> dict:
        headers = self._headers()
        headers["Accept"] = "text/event-stream"
        headers["X-DashScope-SSE"] = "enable"
        return headers

    def _url(self, stream: bool) -> str:
        return f"{self.base_url}/services/aigc/text-generation/generation"

    def _body(self, request: Request, stream: bool) -> dict:
        if request.tools:
            logger.debug("dashscope: ignoring %d tool declarations", len(request.tools))
        parameters: dict = {"result_format": "message"}
        temperature = (
            request.temperature
            if request.temperature is not None
            else self.config.temperature
        )
        if temperature is not None:
            parameters["temperature"] = temperature
        max_tokens = request.max_tokens or self.config.max_tokens
        if max_tokens:
            parameters["max_tokens"] = max_tokens
        if stream:
            parameters["incremental_output"] = True
        return {
            "model": self.model,
            "input": {
                "messages": dashscope_to_wire(
                    request.contents, request.system_instruction
                )
            },
            "parameters": parameters,
        }

    def _parse_response(self, data: dict) -> Response:
        output = data.get("output") or {}
        choices = output.get("choices") or []
        if choices:
            choice = choices[0]
            text = (choice.get("message") or {}).get("content") or ""
            reason = choice.get("finish_reason")
        else:
            text = output.get("text") or ""
            reason = output.get("finish_reason")
        usage = data.get("usage")
        return Response(
            turn=Turn(MODEL, [Part(text=text)] if text else []),
            finish_reason=map_finish_reason(reason if reason != "null" else None),
            usage=Usage(
                usage.get("input_tokens"),
                usage.get("output_tokens"),
                usage.get("total_tokens"),
            )
            if usage
            else None,
        )


class LiteLLMAdapter(ProviderAdapter):
    """Backends routed through litellm (huggingface, generic OpenAI-compatible)."""

    name = "generic"

    def _litellm_kwargs(self, request: Request, stream: bool) -> dict:
        model_id = self.model
        kwargs: dict = {"api_key": self.config.api_key}
        if self.provider == "huggingface":
            model_str = f"huggingface/{model_id.removeprefix('huggingface/')}"
        else:
            model_str = f"openai/{model_id.removeprefix('openai/')}"
        if self.base_url:
            kwargs["api_base"] = self.base_url
        kwargs.update(
            model=model_str,
            messages=openai_to_wire(request.contents, request.system_instruction),
            stream=stream,
        )
        max_tokens = request.max_tokens or self.config.max_tokens
        if max_tokens:
            kwargs["max_tokens"] = max_tokens
        temperature = (
            request.temperature
            if request.temperature is not None
            else self.config.temperature
        )
        if temperature is not None:
            kwargs["temperature"] = temperature
        if request.tools:
            kwargs["tools"] = openai_tools_to_wire(request.tools)
            kwargs["tool_choice"] = "auto"
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        return kwargs

    async def _call(self, kwargs: dict):
        import litellm

        litellm.suppress_debug_info = True
        try:
            return await litellm.acompletion(**kwargs)
        except Exception as e:
            raise ProviderError(
                f"{self.provider}: LLM call failed: {e}",
                status_code=getattr(e, "status_code", None),
            ) from e

    async def generate_content(
        self, request: Request, signal: asyncio.Event | None = None
    ) -> Response:
        response = await self._call(self._litellm_kwargs(request, stream=False))
        return _openai_response(_as_dict(response))

    async def generate_content_stream(
        self, request: Request, signal: asyncio.Event | None = None
    ) -> AsyncIterator[Event]:
        stream = await self._call(self._litellm_kwargs(request, stream=True))
        return self._litellm_events(stream, signal)

    async def _litellm_events(self, stream, signal) -> AsyncIterator[Event]:
        decoder = OpenAIStreamDecoder()
        async for chunk in stream:
            if _is_aborted(signal):
                return
            for event in decoder.feed(_as_dict(chunk)):
                yield event
        for event in decoder.finish():
            yield event

    async def count_tokens(self, contents: list[Turn]) -> int | None:
        import litellm

        try:
            return litellm.token_counter(
                model=self.model, messages=openai_to_wire(contents)
            )
        except Exception as e:
            logger.warning("%s: token_counter failed: %s", self.provider, e)
            return None


def _as_dict(obj) -> dict:
    if isinstance(obj, dict):
        return obj
    if hasattr(obj, "model_dump"):
        return obj.model_dump()
    return dict(obj)


_ADAPTERS: dict[str, type[ProviderAdapter]] = {
    "gemini": GeminiAdapter,
    "anthropic": AnthropicAdapter,
    "openai": OpenAIAdapter,
    "deepseek": OpenAIAdapter,
    "openrouter": OpenAIAdapter,
    "lmstudio": OpenAIAdapter,
    "dashscope": DashScopeAdapter,
    "huggingface": LiteLLMAdapter,
    "generic": LiteLLMAdapter,
}


def create_adapter(
    provider: str,
    config: ProviderConfig,
    *,
    proxy: str | None = None,
    client: httpx.AsyncClient | None = None,
) -> ProviderAdapter:
    """Bind a backend for ``config.model``. Resolves the API key from the env."""
    try:
        cls = _ADAPTERS[provider]
    except KeyError:
        raise ConfigError(f"unknown provider {provider!r}") from None
    key = resolve_api_key(provider, config.api_key)
    if key is None and provider not in ("lmstudio", "generic"):
        raise ConfigError(
            f"no API key for {provider}: set {API_KEY_ENV[provider]} or api_key"
        )
    if key != config.api_key:
        config = dataclasses.replace(config, api_key=key)
    return cls(config, provider=provider, proxy=proxy, client=client)
