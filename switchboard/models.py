"""Provider-neutral data model shared by the session, adapters and orchestrator."""

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

USER = "user"
MODEL = "model"
ROLES = (USER, MODEL)


class FinishReason(str, Enum):
    STOP = "stop"
    MAX_TOKENS = "max_tokens"
    SAFETY = "safety"
    TOOL_CALLS = "tool_calls"
    OTHER = "other"


# Vendor finish/stop reasons collapse onto FinishReason.
_FINISH_REASONS: dict[str, FinishReason] = {
    # openai-compatible, dashscope
    "stop": FinishReason.STOP,
    "length": FinishReason.MAX_TOKENS,
    "content_filter": FinishReason.SAFETY,
    "tool_calls": FinishReason.TOOL_CALLS,
    "function_call": FinishReason.TOOL_CALLS,
    # anthropic
    "end_turn": FinishReason.STOP,
    "stop_sequence": FinishReason.STOP,
    "max_tokens": FinishReason.MAX_TOKENS,
    "tool_use": FinishReason.TOOL_CALLS,
    "refusal": FinishReason.SAFETY,
    # gemini
    "STOP": FinishReason.STOP,
    "MAX_TOKENS": FinishReason.MAX_TOKENS,
    "SAFETY": FinishReason.SAFETY,
    "RECITATION": FinishReason.SAFETY,
    "BLOCKLIST": FinishReason.SAFETY,
    "PROHIBITED_CONTENT": FinishReason.SAFETY,
}


def map_finish_reason(raw: str | None) -> FinishReason | None:
    """Map a vendor finish reason onto the closed set. None stays None."""
    if raw is None:
        return None
    return _FINISH_REASONS.get(raw, FinishReason.OTHER)


class ToolCallStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    ERROR = "error"


@dataclass
class ToolCall:
    id: str
    name: str
    arguments: dict = field(default_factory=dict)
    status: ToolCallStatus = ToolCallStatus.PENDING
    result: "ToolResponse | None" = None


@dataclass
class ToolResponse:
    call_id: str
    name: str
    output: str
    is_error: bool = False


@dataclass
class Part:
    """One element of a turn. Exactly one of text/tool_call/tool_result is set.

    A text part with ``thought=True`` carries model reasoning; it is shown to the
    user but never recorded into history.
    """

    text: str | None = None
    thought: bool = False
    tool_call: ToolCall | None = None
    tool_result: ToolResponse | None = None

    @property
    def is_text(self) -> bool:
        return self.text is not None and not self.thought

    def is_empty(self) -> bool:
        return (
            self.tool_call is None
            and self.tool_result is None
            and not self.thought
            and not self.text
        )


def text_part(text: str) -> Part:
    return Part(text=text)


@dataclass
class Turn:
    role: str
    parts: list[Part] = field(default_factory=list)

    def text(self) -> str:
        return "".join(p.text for p in self.parts if p.is_text)

    def tool_calls(self) -> list[ToolCall]:
        return [p.tool_call for p in self.parts if p.tool_call is not None]

    def is_function_response(self) -> bool:
        return (
            self.role == USER
            and bool(self.parts)
            and all(p.tool_result is not None for p in self.parts)
        )

    def clone(self) -> "Turn":
        return copy.deepcopy(self)


def user_turn(text: str) -> Turn:
    return Turn(USER, [text_part(text)])


def model_turn(text: str) -> Turn:
    return Turn(MODEL, [text_part(text)])


class EventType(str, Enum):
    CONTENT = "content"
    THOUGHT = "thought"
    TOOL_CALL_REQUEST = "tool_call_request"
    TOOL_CALL_RESPONSE = "tool_call_response"
    ERROR = "error"
    DONE = "done"
    # Orchestrator-level events
    CHAT_COMPRESSED = "chat_compressed"
    LOOP_DETECTED = "loop_detected"
    MAX_SESSION_TURNS = "max_session_turns"
    MODEL_SWITCHED = "model_switched"


@dataclass
class Usage:
    prompt_tokens: int | None = None
    completion_tokens: int | None = None
    total_tokens: int | None = None


@dataclass
class Event:
    """One normalized streaming event.

    ``value`` depends on ``type``: str for CONTENT/THOUGHT/ERROR, ToolCall for
    TOOL_CALL_REQUEST, ToolResponse for TOOL_CALL_RESPONSE, a dict with
    ``finish_reason`` and ``usage`` for DONE.
    """

    type: EventType
    value: Any = None


@dataclass
class Request:
    contents: list[Turn]
    system_instruction: str | None = None
    tools: list[dict] = field(default_factory=list)
    temperature: float | None = None
    max_tokens: int | None = None
    json_mode: bool = False


@dataclass
class Response:
    turn: Turn
    finish_reason: FinishReason | None = None
    usage: Usage | None = None
    # Turns the backend executed on its own before answering (Gemini AFC).
    afc_history: list[Turn] | None = None

    def text(self) -> str:
        return self.turn.text()


@dataclass
class CompressionInfo:
    original_token_count: int
    new_token_count: int


@dataclass(frozen=True)
class ProviderConfig:
    """Immutable per-binding provider settings."""

    model: str
    api_key: str | None = None
    base_url: str | None = None
    temperature: float | None = None
    max_tokens: int | None = None
