"""Orchestrator: runs turns, executes tool calls, decides who speaks next."""

import asyncio
import json
import logging
import os
import platform
import re
import time
from contextlib import aclosing
from datetime import date
from typing import AsyncIterator

from .chat import ChatSession
from .config import AgentConfig
from .models import (
    MODEL,
    USER,
    Event,
    EventType,
    Part,
    Request,
    ToolCall,
    ToolResponse,
    Turn,
    model_turn,
    user_turn,
)
from .report import FatalSessionError, ReportCollector
from .retry import retry_with_backoff
from .tool_adapter import ConfirmCallback, ToolCallAdapter, create_tool_adapter
from .tools import ToolRegistry

logger = logging.getLogger(__name__)

MAX_TURNS = 100
CONTINUE_MESSAGE = "Please continue."
ENVIRONMENT_ACK = "Got it. Thanks for the context!"

TOOL_CALL_LOOP_THRESHOLD = 5
CONTENT_LOOP_THRESHOLD = 10

NEXT_SPEAKER_PROMPT = """Analyze *only* the content and structure of your immediately preceding response (your last turn in the conversation history). Based *strictly* on that response, determine who should logically speak next: the 'user' or the 'model' (you).

**Decision Rules (apply in order):**
1. **Model Continues:** If your last response explicitly states an immediate next action *you* intend to take (e.g., "Next, I will...", "Now I'll process..."), OR if the response seems clearly incomplete (cut off mid-thought without a natural conclusion), then the **'model'** should speak next.
2. **Question to User:** If your last response ends with a direct question specifically addressed *to the user*, then the **'user'** should speak next.
3. **Waiting for User:** If your last response completed a thought, statement, or task *and* does not meet the criteria for Rule 1 or Rule 2, the **'user'** should speak next.

**Output Format:**
Respond *only* with a JSON object of this shape, with no text outside it:
{"reasoning": "<brief explanation>", "next_speaker": "user" | "model"}"""


def environment_context(base_dir: str = ".") -> str:
    cwd = os.path.abspath(base_dir)
    today = date.today().strftime("%A, %B %d, %Y")
    return (
        "We are setting up the context for our chat.\n"
        f"Today's date is {today}.\n"
        f"My operating system is: {platform.system().lower() or 'unknown'}\n"
        f"I'm currently working in the directory: {cwd}"
    )


def _aborted(signal: asyncio.Event | None) -> bool:
    return signal is not None and signal.is_set()


# ---------------------------------------------------------------------------
# Loop detection
# ---------------------------------------------------------------------------


class LoopDetector:
    """Collaborator consulted once before each turn and on every event."""

    reason: str | None = None

    def reset(self, prompt_id: str) -> None:
        pass

    async def turn_started(self, signal: asyncio.Event | None) -> bool:
        return False

    def add_and_check(self, event: Event) -> bool:
        return False


class RepetitionLoopDetector(LoopDetector):
    """Flags the same tool call or the same content chunk repeated back to back."""

    def __init__(
        self,
        tool_call_threshold: int = TOOL_CALL_LOOP_THRESHOLD,
        content_threshold: int = CONTENT_LOOP_THRESHOLD,
    ):
        self.tool_call_threshold = tool_call_threshold
        self.content_threshold = content_threshold
        self.reset("")

    def reset(self, prompt_id: str) -> None:
        self.prompt_id = prompt_id
        self.reason = None
        self._last_call: str | None = None
        self._call_repeats = 0
        self._last_chunk: str | None = None
        self._chunk_repeats = 0

    def add_and_check(self, event: Event) -> bool:
        if self.reason is not None:
            return True
        if event.type == EventType.TOOL_CALL_REQUEST:
            call: ToolCall = event.value
            key = f"{call.name}:{json.dumps(call.arguments, sort_keys=True, default=str)}"
            if key == self._last_call:
                self._call_repeats += 1
            else:
                self._last_call, self._call_repeats = key, 1
            self._last_chunk, self._chunk_repeats = None, 0
            if self._call_repeats >= self.tool_call_threshold:
                self.reason = f"tool call {call.name} repeated {self._call_repeats} times"
        elif event.type == EventType.CONTENT:
            chunk = (event.value or "").strip()
            if not chunk:
                return False
            if chunk == self._last_chunk:
                self._chunk_repeats += 1
            else:
                self._last_chunk, self._chunk_repeats = chunk, 1
            if self._chunk_repeats >= self.content_threshold:
                self.reason = f"content repeated {self._chunk_repeats} times"
        return self.reason is not None


# ---------------------------------------------------------------------------
# One model turn
# ---------------------------------------------------------------------------


class TurnRunner:
    """Streams one exchange and collects what the model asked for."""

    def __init__(self, chat: ChatSession, prompt_id: str):
        self.chat = chat
        self.prompt_id = prompt_id
        self.pending_tool_calls: list[ToolCall] = []
        self.text = ""
        self.finish_reason = None
        self.usage = None
        self.error: str | None = None

    async def run(self, message, signal: asyncio.Event | None) -> AsyncIterator[Event]:
        try:
            async with aclosing(self.chat.send_message_stream(message, signal)) as stream:
                async for event in stream:
                    if _aborted(signal):
                        return
                    if event.type == EventType.CONTENT:
                        self.text += event.value
                    elif event.type == EventType.TOOL_CALL_REQUEST:
                        self.pending_tool_calls.append(event.value)
                    elif event.type == EventType.ERROR:
                        self.error = event.value
                    elif event.type == EventType.DONE:
                        self.finish_reason = event.value.get("finish_reason")
                        self.usage = event.value.get("usage")
                    yield event
        except FatalSessionError:
            raise
        except Exception as e:
            if _aborted(signal):
                return
            logger.error("turn %s failed: %s", self.prompt_id, e)
            self.error = str(e)
            yield Event(EventType.ERROR, str(e))


# ---------------------------------------------------------------------------
# Client
# ---------------------------------------------------------------------------


class AgentClient:
    def __init__(
        self,
        config: AgentConfig,
        *,
        registry: ToolRegistry | None = None,
        tool_adapter: ToolCallAdapter | None = None,
        confirm: ConfirmCallback | None = None,
        loop_detector: LoopDetector | None = None,
        system_instruction: str | None = None,
        base_dir: str = ".",
        environment: bool = True,
        adapter_factory=None,
        report: ReportCollector | None = None,
        max_turns: int = MAX_TURNS,
    ):
        self.config = config
        self.registry = registry or ToolRegistry()
        # An adapter passed in stays put; otherwise it follows the active
        # model's backend across fallbacks.
        self._confirm = confirm
        self._tool_adapter_pinned = tool_adapter is not None
        self._tool_provider = config.provider_for(config.model)
        self.tool_adapter = tool_adapter or self._make_tool_adapter(self._tool_provider)
        self.loop_detector = loop_detector or RepetitionLoopDetector()
        self.system_instruction = system_instruction
        self.base_dir = base_dir
        self.environment = environment
        self.report = report
        self.max_turns = max_turns
        self._adapter_factory = adapter_factory
        self.session_turn_count = 0
        self._last_prompt_id: str | None = None
        self.chat = self.start_chat()

    def start_chat(self, extra_history: list[Turn] | None = None) -> ChatSession:
        history: list[Turn] = []
        if self.environment:
            history = [
                user_turn(environment_context(self.base_dir)),
                model_turn(ENVIRONMENT_ACK),
            ]
        history.extend(extra_history or [])
        return ChatSession(
            self.config,
            history=history,
            system_instruction=self.system_instruction,
            tools=self.registry.get_function_declarations(),
            adapter_factory=self._adapter_factory,
            report=self.report,
        )

    async def reset_chat(self) -> None:
        """Start over with a fresh history. Repair counters reset too."""
        await self.chat.aclose()
        self.chat = self.start_chat()
        self.tool_adapter.reset()
        self.session_turn_count = 0

    def _make_tool_adapter(self, provider: str) -> ToolCallAdapter:
        return create_tool_adapter(
            provider, confirm=self._confirm, output_budget=self.config.tool_output_budget
        )

    def bind_tool_adapter(self) -> ToolCallAdapter:
        """The tool adapter for the active model's backend.

        Rebuilt after a fallback to another backend, so repair rules meant
        for the old one stop applying. Repair counters start over with it.
        """
        provider = self.config.provider_for(self.config.model)
        if provider != self._tool_provider and not self._tool_adapter_pinned:
            logger.info("tool adapter rebound: %s -> %s", self._tool_provider, provider)
            self.tool_adapter = self._make_tool_adapter(provider)
            self._tool_provider = provider
        return self.tool_adapter

    async def try_compress(self, force: bool = False):
        return await self.chat.try_compress(force=force)

    async def aclose(self) -> None:
        await self.chat.aclose()

    # -- continuation ----------------------------------------------------------

    async def check_next_speaker(self, signal: asyncio.Event | None = None) -> dict | None:
        """Decide whether the model should keep going without new user input."""
        curated = self.chat.get_history(curated=True)
        if not curated:
            return None
        last = curated[-1]
        if last.is_function_response():
            return {
                "reasoning": "The last message was a function response, so the model should speak next.",
                "next_speaker": "model",
            }
        if last.role != MODEL:
            return None
        if not last.parts:
            return {
                "reasoning": "The last message was a filler model message with no content, so the model should speak next.",
                "next_speaker": "model",
            }

        request = Request(
            contents=curated + [user_turn(NEXT_SPEAKER_PROMPT)],
            system_instruction=self.system_instruction,
            json_mode=True,
        )

        async def call():
            return await self.chat.adapter.generate_content(request, signal)

        try:
            response = await retry_with_backoff(call, **self.config.retry_settings())
        except Exception as e:
            logger.warning("next speaker check failed: %s", e)
            return None
        return parse_next_speaker(response.text())

    # -- main loop -------------------------------------------------------------

    async def send_message_stream(
        self,
        request,
        signal: asyncio.Event | None = None,
        prompt_id: str = "",
        turns: int = MAX_TURNS,
        original_model: str | None = None,
    ) -> AsyncIterator[Event]:
        """Run one user request to completion, yielding Events.

        Tool calls are executed and their results sent back, and the model
        may continue on its own, each within the ``turns`` budget.
        """
        if self._last_prompt_id != prompt_id:
            self.loop_detector.reset(prompt_id)
            self._last_prompt_id = prompt_id
        self.session_turn_count += 1
        limit = self.config.max_session_turns
        tool_results = _tool_results(request)
        if limit > 0 and self.session_turn_count > limit:
            self._answer_unrun_calls(tool_results, "error: session turn limit reached")
            yield Event(EventType.MAX_SESSION_TURNS, limit)
            return

        turns = min(turns, self.max_turns)
        if turns <= 0:
            self._answer_unrun_calls(tool_results, "error: turn limit reached")
            return
        initial_model = original_model or self.config.model

        # A cut must not separate the pending calls from their results.
        if not tool_results:
            compressed = await self.try_compress()
            if compressed is not None:
                yield Event(EventType.CHAT_COMPRESSED, compressed)

        runner = TurnRunner(self.chat, prompt_id)
        if await self.loop_detector.turn_started(signal):
            self._answer_unrun_calls(tool_results, "error: loop detected, call not executed")
            yield self._loop_event()
            return

        looped = False
        async with aclosing(runner.run(request, signal)) as events:
            async for event in events:
                if self.loop_detector.add_and_check(event):
                    looped = True
                    break
                yield event
        if looped:
            self._answer_unrun_calls([], "error: loop detected, call not executed")
            yield self._loop_event()
            return

        if _aborted(signal):
            self._answer_unrun_calls([], "error: aborted")
            return
        if runner.error is not None:
            self._answer_unrun_calls([], "error: turn failed, call not executed")
            return

        if runner.pending_tool_calls:
            responses: list[ToolResponse] = []
            async for event in self._execute_tools(runner, signal):
                responses.append(event.value)
                yield event
            if _aborted(signal):
                return
            follow_up = [Part(tool_result=r) for r in responses]
            async for event in self.send_message_stream(
                follow_up, signal, prompt_id, turns - 1, initial_model
            ):
                yield event
            return

        if self.config.model != initial_model:
            # A fallback fired mid-turn; leave the next move to the user.
            logger.info(
                "model switched %s -> %s, not continuing", initial_model, self.config.model
            )
            yield Event(EventType.MODEL_SWITCHED, self.config.model)
            return

        check = await self.check_next_speaker(signal)
        if check and check.get("next_speaker") == "model" and not _aborted(signal):
            logger.info("model decided to continue: %s", check.get("reasoning", ""))
            async for event in self.send_message_stream(
                [Part(text=CONTINUE_MESSAGE)], signal, prompt_id, turns - 1, initial_model
            ):
                yield event

    def _loop_event(self) -> Event:
        reason = self.loop_detector.reason or "loop detected"
        logger.warning("loop detected: %s", reason)
        if self.report is not None:
            self.report.record_loop(reason)
        return Event(EventType.LOOP_DETECTED, reason)

    async def _execute_tools(
        self, runner: TurnRunner, signal: asyncio.Event | None
    ) -> AsyncIterator[Event]:
        tool_adapter = self.bind_tool_adapter()
        tool_adapter.set_message_content(runner.text)
        results: list[ToolResponse] = []
        for call in runner.pending_tool_calls:
            if _aborted(signal):
                break
            started = time.monotonic()
            response = await tool_adapter.execute_tool_call(self.registry, call, signal)
            if self.report is not None:
                self.report.record_tool_call(
                    call.name,
                    call.arguments,
                    not response.is_error,
                    time.monotonic() - started,
                    len(response.output),
                    error=response.output if response.is_error else None,
                )
            results.append(response)
            yield Event(EventType.TOOL_CALL_RESPONSE, response)

        if _aborted(signal):
            self._answer_unrun_calls(results, "error: aborted")

    def _answer_unrun_calls(self, results: list[ToolResponse], reason: str) -> None:
        """Record a result for every call in the last model turn.

        Calls missing from ``results`` get an error result carrying ``reason``.
        Providers reject a history holding a tool call with no answer.
        """
        history = self.chat.history
        last = history[-1] if history else None
        if last is None or last.role != MODEL:
            return
        calls = last.tool_calls()
        if not calls:
            return
        answered = {r.call_id for r in results}
        results = list(results) + [
            ToolResponse(call.id, call.name, reason, is_error=True)
            for call in calls
            if call.id not in answered
        ]
        self.chat.add_history(Turn(USER, [Part(tool_result=r) for r in results]))


def _tool_results(request) -> list[ToolResponse]:
    if not isinstance(request, list):
        return []
    return [p.tool_result for p in request if isinstance(p, Part) and p.tool_result is not None]


_JSON_OBJECT_RE = re.compile(r"\{.*\}", re.S)


def parse_next_speaker(text: str) -> dict | None:
    """Pull the ``{"reasoning", "next_speaker"}`` object out of a reply."""
    match = _JSON_OBJECT_RE.search(text or "")
    if match is None:
        return None
    try:
        data = json.loads(match.group(0))
    except json.JSONDecodeError:
        logger.warning("next speaker reply is not JSON: %.200s", text)
        return None
    if not isinstance(data, dict) or data.get("next_speaker") not in (USER, MODEL):
        return None
    return data
