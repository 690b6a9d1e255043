"""Chat session: owns the turn history and talks to one provider binding.

The history is an append-only log of user/model turns. Two views exist:
the comprehensive history (everything recorded, including empty or invalid
model output) and the curated history (what is safe to send back to a
provider). Sends are serialized on a per-session lock, so a new request is
only built after the previous exchange has been recorded.
"""

import asyncio
import json
import logging
import time
from dataclasses import asdict
from typing import AsyncIterator

from .config import AgentConfig
from .models import (
    MODEL,
    ROLES,
    USER,
    CompressionInfo,
    Event,
    EventType,
    Part,
    Request,
    Response,
    Turn,
    model_turn,
    user_turn,
)
from .providers import ProviderAdapter
from .report import FatalSessionError, ReportCollector
from .retry import retry_with_backoff

logger = logging.getLogger(__name__)

COMPRESSION_REQUEST = (
    "First, reason in your scratchpad. Then, generate the <state_snapshot>."
)
COMPRESSION_ACK = "Got it. Thanks for the additional context!"

COMPRESSION_PROMPT = """
You are the component that summarizes internal chat history into a given structure.

When the conversation history grows too large, you will be invoked to distill the entire history into a concise, structured XML snapshot. This snapshot is CRITICAL, as it will become the agent's *only* memory of the past. The agent will resume its work based solely on this snapshot. All crucial details, plans, errors, and user directives MUST be preserved.

First, you will think through the entire history in a private <scratchpad>. Review the user's overall goal, the agent's actions, tool outputs, file modifications, and any unresolved questions. Identify every piece of information that is essential for future actions.

After your reasoning is complete, generate the final <state_snapshot> XML object. Be incredibly dense with information. Omit any irrelevant conversational filler.

The structure MUST be as follows:

<state_snapshot>
    <overall_goal>
        <!-- A single, concise sentence describing the user's high-level objective. -->
    </overall_goal>

    <key_knowledge>
        <!-- Crucial facts, conventions, and constraints the agent must remember. Use bullet points. -->
    </key_knowledge>

    <file_system_state>
        <!-- Files that have been created, read, modified, or deleted, with their status and critical learnings. -->
    </file_system_state>

    <recent_actions>
        <!-- The last few significant agent actions and their outcomes. Focus on facts. -->
    </recent_actions>

    <current_plan>
        <!-- The agent's step-by-step plan. Mark completed steps. -->
    </current_plan>
</state_snapshot>
""".strip()


# ---------------------------------------------------------------------------
# History helpers
# ---------------------------------------------------------------------------


def validate_history(history: list[Turn]) -> None:
    for turn in history:
        if turn.role not in ROLES:
            raise FatalSessionError(
                f"Role must be user or model, but got {turn.role!r}."
            )


def is_valid_content(turn: Turn) -> bool:
    """A turn is valid when it has parts and none of them is an empty text."""
    if not turn.parts:
        return False
    for part in turn.parts:
        if (
            part.text is None
            and part.tool_call is None
            and part.tool_result is None
        ):
            return False
        if not part.thought and part.text == "":
            return False
    return True


def extract_curated_history(history: list[Turn]) -> list[Turn]:
    """Drop invalid model output together with the user turn that caused it."""
    curated: list[Turn] = []
    i = 0
    while i < len(history):
        if history[i].role == USER:
            curated.append(history[i])
            i += 1
            continue
        output: list[Turn] = []
        valid = True
        while i < len(history) and history[i].role == MODEL:
            output.append(history[i])
            if valid and not is_valid_content(history[i]):
                valid = False
            i += 1
        if valid:
            curated.extend(output)
        elif curated:
            curated.pop()
    return curated


def _is_text_turn(turn: Turn | None) -> bool:
    return bool(turn and turn.parts and turn.parts[0].is_text and turn.parts[0].text)


def _merge_into(target: Turn, source: Turn) -> None:
    target.parts[0].text += source.parts[0].text or ""
    target.parts.extend(source.parts[1:])


def find_index_after_fraction(history: list[Turn], fraction: float) -> int:
    """Index of the first turn at which the serialized length reaches
    ``fraction`` of the total. Length stands in for token share."""
    if not 0 < fraction < 1:
        raise ValueError("Fraction must be between 0 and 1")
    lengths = [len(json.dumps(asdict(turn), default=str)) for turn in history]
    target = sum(lengths) * fraction
    so_far = 0
    for i, length in enumerate(lengths):
        so_far += length
        if so_far >= target:
            return i
    return len(lengths)


def _append_text(parts: list[Part], text: str, thought: bool = False) -> None:
    if parts and parts[-1].text is not None and parts[-1].thought == thought:
        parts[-1].text += text
    else:
        parts.append(Part(text=text, thought=thought))


def _as_user_turn(message) -> Turn:
    if isinstance(message, Turn):
        if message.role != USER:
            raise FatalSessionError(f"cannot send a {message.role!r} turn")
        return message
    if isinstance(message, str):
        return user_turn(message)
    return Turn(USER, list(message))


# ---------------------------------------------------------------------------
# Session
# ---------------------------------------------------------------------------


class ChatSession:
    def __init__(
        self,
        config: AgentConfig,
        *,
        history: list[Turn] | None = None,
        system_instruction: str | None = None,
        tools: list[dict] | None = None,
        adapter_factory=None,
        report: ReportCollector | None = None,
    ):
        history = history or []
        validate_history(history)
        self.config = config
        self.history: list[Turn] = [t.clone() for t in history]
        self.system_instruction = system_instruction
        self.tools = tools or []
        self.report = report
        self._adapter_factory = adapter_factory or config.create_adapter
        self._adapter: ProviderAdapter | None = None
        self._bound_model: str | None = None
        self._retired: list[ProviderAdapter] = []
        self._lock = asyncio.Lock()

    # -- provider binding ----------------------------------------------------

    @property
    def adapter(self) -> ProviderAdapter:
        """The binding for the active model, rebuilt when the model changes."""
        model = self.config.model
        if self._adapter is None or self._bound_model != model:
            if self._adapter is not None:
                self._retired.append(self._adapter)
            self._adapter = self._adapter_factory(model)
            self._bound_model = model
        return self._adapter

    async def aclose(self) -> None:
        adapters = self._retired + ([self._adapter] if self._adapter else [])
        self._retired = []
        self._adapter = None
        for adapter in adapters:
            close = getattr(adapter, "aclose", None)
            if close is not None:
                await close()

    async def handle_fallback(
        self, auth_type: str | None, error: BaseException
    ) -> str | None:
        """Offer the fallback model after persistent rate limiting.

        Returns the new model id when the switch was accepted.
        """
        current = self.config.model
        fallback = self.config.fallback_model
        if current == fallback or self.config.fallback_handler is None:
            return None
        try:
            accepted = await self.config.fallback_handler(current, fallback, error)
        except Exception as e:
            logger.warning("fallback handler failed: %s", e)
            return None
        if self.report is not None:
            self.report.record_fallback(current, fallback, bool(accepted))
        if accepted:
            self.config.set_model(fallback)
            return fallback
        return None

    def _retry_kwargs(self) -> dict:
        on_retry = None
        if self.report is not None:
            on_retry = lambda attempt, delay, err: self.report.record_retry(  # noqa: E731
                attempt, delay, str(err)
            )
        return {
            **self.config.retry_settings(),
            "on_persistent_429": self.handle_fallback,
            "on_retry": on_retry,
        }

    def _request(self, contents: list[Turn], **overrides) -> Request:
        return Request(
            contents=contents,
            system_instruction=overrides.get("system_instruction", self.system_instruction),
            tools=overrides.get("tools", self.tools),
            json_mode=overrides.get("json_mode", False),
        )

    # -- history --------------------------------------------------------------

    def get_history(self, curated: bool = False) -> list[Turn]:
        """Deep copy of the comprehensive or curated history."""
        history = extract_curated_history(self.history) if curated else self.history
        return [t.clone() for t in history]

    def add_history(self, turn: Turn) -> None:
        validate_history([turn])
        self.history.append(turn.clone())

    def set_history(self, history: list[Turn]) -> None:
        validate_history(history)
        self.history = [t.clone() for t in history]

    def clear_history(self) -> None:
        self.history = []

    def _record_history(
        self,
        user_input: Turn,
        model_output: list[Turn],
        afc_history: list[Turn] | None = None,
    ) -> None:
        non_thought = []
        for turn in model_output:
            parts = [p for p in turn.parts if not p.thought]
            if parts or not turn.parts:
                non_thought.append(Turn(turn.role, parts))

        outputs: list[Turn] = []
        if non_thought and any(t.parts for t in non_thought):
            outputs = [t for t in non_thought if t.parts]
        elif not non_thought and model_output:
            pass  # thoughts only, nothing worth keeping
        elif not user_input.is_function_response():
            # Keep user/model alternation when the model returned nothing.
            outputs = [Turn(MODEL, [])]

        if afc_history:
            self.history.extend(extract_curated_history(afc_history))
        else:
            self.history.append(user_input)

        consolidated: list[Turn] = []
        for turn in outputs:
            last = consolidated[-1] if consolidated else None
            if _is_text_turn(last) and _is_text_turn(turn) and last.role == turn.role:
                _merge_into(last, turn)
            else:
                consolidated.append(turn)

        if consolidated:
            last = self.history[-1] if self.history else None
            if (
                not afc_history
                and _is_text_turn(last)
                and _is_text_turn(consolidated[0])
                and last.role == consolidated[0].role
            ):
                _merge_into(last, consolidated.pop(0))
            self.history.extend(consolidated)

    # -- sending ---------------------------------------------------------------

    def _record_response(self, started: float, response: Response) -> None:
        if self.report is None:
            return
        usage = response.usage
        self.report.record_api_response(
            self.config.model,
            time.monotonic() - started,
            response.finish_reason.value if response.finish_reason else None,
            prompt_tokens=usage.prompt_tokens if usage else None,
            completion_tokens=usage.completion_tokens if usage else None,
        )

    def _record_error(self, started: float, error: BaseException) -> None:
        if self.report is not None:
            self.report.record_api_error(
                self.config.model, time.monotonic() - started, str(error)
            )

    async def send_message(
        self, message, signal: asyncio.Event | None = None
    ) -> Response:
        """Send one message and wait for the whole reply."""
        user = _as_user_turn(message)
        async with self._lock:
            contents = self.get_history(curated=True)
            curated_len = len(contents)
            contents.append(user)
            started = time.monotonic()

            async def call():
                return await self.adapter.generate_content(self._request(contents), signal)

            try:
                response = await retry_with_backoff(call, **self._retry_kwargs())
            except Exception as e:
                self._record_error(started, e)
                raise
            self._record_response(started, response)

            afc = response.afc_history[curated_len:] if response.afc_history else None
            output = [response.turn] if response.turn.parts else []
            self._record_history(user, output, afc)
            return response

    async def send_message_stream(
        self, message, signal: asyncio.Event | None = None
    ) -> AsyncIterator[Event]:
        """Send one message and yield Events as they arrive.

        Thoughts are yielded but not recorded. Whether the stream finishes,
        is aborted, or the consumer stops early, exactly one record step runs.
        """
        user = _as_user_turn(message)
        async with self._lock:
            contents = self.get_history(curated=True)
            contents.append(user)
            started = time.monotonic()

            async def call():
                return await self.adapter.generate_content_stream(
                    self._request(contents), signal
                )

            try:
                stream = await retry_with_backoff(call, **self._retry_kwargs())
            except Exception as e:
                self._record_error(started, e)
                raise

            parts: list[Part] = []
            finish = None
            try:
                async for event in stream:
                    if event.type == EventType.CONTENT:
                        _append_text(parts, event.value)
                    elif event.type == EventType.THOUGHT:
                        _append_text(parts, event.value, thought=True)
                    elif event.type == EventType.TOOL_CALL_REQUEST:
                        parts.append(Part(tool_call=event.value))
                    elif event.type == EventType.DONE:
                        finish = event.value
                    yield event
                    if signal is not None and signal.is_set():
                        break
            finally:
                close = getattr(stream, "aclose", None)
                if close is not None:
                    await close()
                if finish is not None and self.report is not None:
                    self._record_response(
                        started,
                        Response(
                            Turn(MODEL, []),
                            finish.get("finish_reason"),
                            finish.get("usage"),
                        ),
                    )
                self._record_history(user, [Turn(MODEL, parts)] if parts else [])

    # -- compression -----------------------------------------------------------

    async def try_compress(self, force: bool = False) -> CompressionInfo | None:
        """Replace the older part of the history with a model-written summary.

        Returns None when there is nothing to do or the token count is unknown.
        """
        # Held throughout: a send recorded between the snapshot and the
        # rewrite would otherwise be dropped.
        async with self._lock:
            curated = self.get_history(curated=True)
            if not curated:
                return None

            model = self.config.model
            original = await self.adapter.count_tokens(curated)
            if original is None:
                logger.warning("could not determine token count for model %s", model)
                return None
            if not force and original < self.config.compression_threshold * self.config.token_limit(model):
                return None

            cut = find_index_after_fraction(curated, 1 - self.config.compression_preserve)
            # The retained part must start on a fresh user turn, never inside a
            # tool call / tool result pair.
            while cut < len(curated) and (
                curated[cut].role == MODEL or curated[cut].is_function_response()
            ):
                cut += 1
            to_compress, to_keep = curated[:cut], curated[cut:]
            if not to_compress:
                return None

            request = self._request(
                to_compress + [user_turn(COMPRESSION_REQUEST)],
                system_instruction=COMPRESSION_PROMPT,
                tools=[],
            )

            async def call():
                return await self.adapter.generate_content(request)

            response = await retry_with_backoff(call, **self._retry_kwargs())
            summary = response.text()
            self.history = [user_turn(summary), model_turn(COMPRESSION_ACK)] + to_keep

            new = await self.adapter.count_tokens(self.get_history())
        if new is None:
            logger.warning("could not determine compressed history token count")
            return None
        logger.info("compressed history: %d -> %d tokens", original, new)
        if self.report is not None:
            self.report.record_compression(original, new)
        return CompressionInfo(original, new)


__all__ = [
    "ChatSession",
    "COMPRESSION_ACK",
    "COMPRESSION_PROMPT",
    "extract_curated_history",
    "find_index_after_fraction",
    "is_valid_content",
]
