"""Shared stubs for the test suite: a scripted provider adapter and config factory."""

import asyncio

from switchboard.config import AgentConfig
from switchboard.models import (
    Event,
    EventType,
    FinishReason,
    Response,
    ToolCall,
    model_turn,
)
from switchboard.tools import Tool, ToolResult


def make_config(**overrides) -> AgentConfig:
    """AgentConfig with zero backoff so retry tests never sleep."""
    kwargs = dict(
        model="gemini-2.5-pro",
        provider="gemini",
        api_key="test-key",
        max_attempts=3,
        initial_delay=0,
        max_delay=0,
    )
    kwargs.update(overrides)
    return AgentConfig(**kwargs)


def text_stream(*chunks: str, thoughts=(), calls=(), finish=FinishReason.STOP) -> list[Event]:
    events = [Event(EventType.THOUGHT, t) for t in thoughts]
    events += [Event(EventType.CONTENT, c) for c in chunks]
    events += [Event(EventType.TOOL_CALL_REQUEST, c) for c in calls]
    events.append(Event(EventType.DONE, {"finish_reason": finish, "usage": None}))
    return events


def reply(text: str) -> Response:
    return Response(model_turn(text), FinishReason.STOP)


def speaker(who: str) -> Response:
    return reply('{"reasoning": "test", "next_speaker": "%s"}' % who)


def call(name: str, **arguments) -> ToolCall:
    return ToolCall(id=f"call_{name}", name=name, arguments=arguments)


class StubAdapter:
    """Plays back scripted replies in order.

    ``replies`` feeds generate_content (Response or exception) and ``streams``
    feeds generate_content_stream (list of Events or exception). A callable
    entry is invoked first, so a script step can mutate state.
    """

    def __init__(self, replies=(), streams=(), *, token_count=None, delay=0.0):
        self.replies = list(replies)
        self.streams = list(streams)
        self.requests = []
        self.stream_requests = []
        self.token_count = token_count
        self.delay = delay
        self.closed = False

    @staticmethod
    def _next(queue):
        item = queue.pop(0)
        if callable(item):
            item = item()
        if isinstance(item, BaseException):
            raise item
        return item

    async def generate_content(self, request, signal=None):
        self.requests.append(request)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self._next(self.replies)

    async def generate_content_stream(self, request, signal=None):
        self.stream_requests.append(request)
        events = self._next(self.streams)
        return self._iterate(events, signal)

    async def _iterate(self, events, signal):
        for event in events:
            if signal is not None and signal.is_set():
                return
            yield event

    async def count_tokens(self, contents):
        if self.token_count is not None:
            return self.token_count(contents)
        return sum(len(t.text()) for t in contents) // 4

    async def aclose(self):
        self.closed = True


class EchoTool(Tool):
    """Counts executions and returns its ``value`` argument."""

    name = "echo"
    description = "Echo a value back."
    parameters = {
        "type": "object",
        "properties": {"value": {"type": "string"}},
        "required": ["value"],
    }

    def __init__(self):
        self.calls = []

    async def execute(self, params, signal):
        self.calls.append(params)
        return ToolResult(f"echo: {params['value']}")


class FakeShellTool(Tool):
    """Stands in for run_shell_command without spawning processes."""

    name = "run_shell_command"
    description = "Run a shell command."
    parameters = {
        "type": "object",
        "properties": {"command": {"type": "string"}},
        "required": ["command"],
    }

    def __init__(self):
        self.commands = []

    async def execute(self, params, signal):
        self.commands.append(params["command"])
        return ToolResult(f"ran {params['command']}")
