"""Public library API for switchboard: Session class and Result dataclass."""

import asyncio
from dataclasses import dataclass, field
from typing import Callable

from .client import MAX_TURNS, AgentClient
from .config import (
    COMPRESSION_PRESERVE_THRESHOLD,
    COMPRESSION_TOKEN_THRESHOLD,
    DEFAULT_TOOL_OUTPUT_BUDGET,
    AgentConfig,
    FallbackHandler,
)
from .models import Event, EventType, Turn
from .report import ReportCollector
from .retry import (
    DEFAULT_FALLBACK_MODEL,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
)
from .tool_adapter import ConfirmCallback
from .tools import ProcessTracker, ShellTool, ToolRegistry

# Events that end a request without a normal answer, and the outcome they map to.
_STOP_OUTCOMES = {
    EventType.LOOP_DETECTED: "loop_detected",
    EventType.MAX_SESSION_TURNS: "max_session_turns",
    EventType.MODEL_SWITCHED: "model_switched",
}


@dataclass
class Result:
    """Result of a session run or ask call."""

    answer: str | None
    outcome: str
    history: list[Turn]
    error: str | None = None
    report: dict | None = None
    events: list[Event] = field(default_factory=list)

    @property
    def exhausted(self) -> bool:
        return self.outcome in ("loop_detected", "max_session_turns")


@dataclass
class Exchange:
    """What one request produced, as seen by a consumer of the event stream."""

    answer: str = ""
    outcome: str = "success"
    error: str | None = None
    events: list[Event] = field(default_factory=list)


async def drive(
    client: AgentClient,
    message,
    signal: asyncio.Event | None = None,
    *,
    prompt_id: str = "",
    on_event: Callable[[Event], None] | None = None,
) -> Exchange:
    """Consume one request's events. The answer is the text after the last tool result."""
    exchange = Exchange()
    async for event in client.send_message_stream(message, signal, prompt_id):
        exchange.events.append(event)
        if on_event is not None:
            on_event(event)
        if event.type == EventType.CONTENT:
            exchange.answer += event.value
        elif event.type == EventType.TOOL_CALL_RESPONSE:
            exchange.answer = ""
        elif event.type == EventType.ERROR:
            exchange.outcome = "error"
            exchange.error = str(event.value)
        elif event.type in _STOP_OUTCOMES:
            exchange.outcome = _STOP_OUTCOMES[event.type]
    if signal is not None and signal.is_set():
        exchange.outcome = "aborted"
    return exchange


class Session:
    """Programmatic interface to the switchboard orchestrator.

    Stores configuration as plain attributes. Call .run() for single-shot
    questions or .ask() for multi-turn conversations.
    """

    def __init__(
        self,
        *,
        base_dir: str = ".",
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        proxy: str | None = None,
        max_turns: int = MAX_TURNS,
        max_session_turns: int = -1,
        max_output_tokens: int | None = None,
        max_context_tokens: int | None = None,
        temperature: float | None = None,
        auth_type: str | None = None,
        fallback_model: str = DEFAULT_FALLBACK_MODEL,
        compression_threshold: float = COMPRESSION_TOKEN_THRESHOLD,
        compression_preserve: float = COMPRESSION_PRESERVE_THRESHOLD,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        tool_output_budget: int | None = DEFAULT_TOOL_OUTPUT_BUDGET,
        system_prompt: str | None = None,
        yolo: bool = False,
        verbose: bool = False,
        environment: bool = True,
        confirm: ConfirmCallback | None = None,
        fallback_handler: FallbackHandler | None = None,
        adapter_factory=None,
    ):
        self.base_dir = base_dir
        self.provider = provider
        self.model = model
        self.api_key = api_key
        self.base_url = base_url
        self.proxy = proxy
        self.max_turns = max_turns
        self.max_session_turns = max_session_turns
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.temperature = temperature
        self.auth_type = auth_type
        self.fallback_model = fallback_model
        self.compression_threshold = compression_threshold
        self.compression_preserve = compression_preserve
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.tool_output_budget = tool_output_budget
        self.system_prompt = system_prompt
        self.yolo = yolo
        self.verbose = verbose
        self.environment = environment
        self.confirm = confirm
        self.fallback_handler = fallback_handler
        self.adapter_factory = adapter_factory

        # Per-conversation state (for ask() mode)
        self._runner: asyncio.Runner | None = None
        self._client: AgentClient | None = None
        self._asks = 0

    def _make_config(self) -> AgentConfig:
        return AgentConfig(
            model=self.model,
            provider=self.provider,
            api_key=self.api_key,
            base_url=self.base_url,
            proxy=self.proxy,
            temperature=self.temperature,
            max_output_tokens=self.max_output_tokens,
            max_context_tokens=self.max_context_tokens,
            max_session_turns=self.max_session_turns,
            auth_type=self.auth_type,
            fallback_model=self.fallback_model,
            compression_threshold=self.compression_threshold,
            compression_preserve=self.compression_preserve,
            max_attempts=self.max_attempts,
            initial_delay=self.initial_delay,
            max_delay=self.max_delay,
            tool_output_budget=self.tool_output_budget,
            fallback_handler=self.fallback_handler,
        )

    def make_client(self, report: ReportCollector | None = None) -> AgentClient:
        """Build a fresh orchestrator with the built-in shell tool registered."""
        config = self._make_config()
        registry = ToolRegistry()
        registry.register(
            ShellTool(self.base_dir, yolo=self.yolo, tracker=ProcessTracker())
        )
        return AgentClient(
            config,
            registry=registry,
            confirm=self.confirm,
            system_instruction=self.system_prompt,
            base_dir=self.base_dir,
            environment=self.environment,
            adapter_factory=self.adapter_factory,
            report=report,
            max_turns=self.max_turns,
        )

    def _on_event(self):
        if not self.verbose:
            return None
        from . import fmt

        return fmt.event

    def _settings(self) -> dict:
        return {
            "max_turns": self.max_turns,
            "max_session_turns": self.max_session_turns,
            "max_output_tokens": self.max_output_tokens,
            "temperature": self.temperature,
            "compression_threshold": self.compression_threshold,
            "compression_preserve": self.compression_preserve,
            "yolo": self.yolo,
        }

    def run(self, question: str, *, report: bool = False) -> Result:
        """Single-shot: run a question with fresh state. Each call is independent."""
        collector = ReportCollector() if report else None

        async def _run():
            client = self.make_client(collector)
            try:
                exchange = await drive(
                    client, question, prompt_id="run", on_event=self._on_event()
                )
                return exchange, client.chat.get_history(), client.config.model
            finally:
                await client.aclose()

        exchange, history, model = asyncio.run(_run())

        report_dict = None
        if collector:
            report_dict = collector.build_report(
                task=question,
                model=model,
                provider=self.provider or "auto",
                settings=self._settings(),
                outcome=exchange.outcome,
                answer=exchange.answer or None,
                exit_code=0 if exchange.outcome == "success" else 1,
                turns=len(history),
                error_message=exchange.error,
            )

        return Result(
            answer=exchange.answer or None,
            outcome=exchange.outcome,
            history=history,
            error=exchange.error,
            report=report_dict,
            events=exchange.events,
        )

    def ask(self, question: str) -> Result:
        """Conversational: share context across questions (like the REPL)."""
        if self._runner is None:
            self._runner = asyncio.Runner()
        if self._client is None:
            self._client = self.make_client()
        self._asks += 1
        exchange = self._runner.run(
            drive(
                self._client,
                question,
                prompt_id=f"ask-{self._asks}",
                on_event=self._on_event(),
            )
        )
        return Result(
            answer=exchange.answer or None,
            outcome=exchange.outcome,
            history=self._client.chat.get_history(),
            error=exchange.error,
            events=exchange.events,
        )

    def compress(self, force: bool = True):
        """Compress the conversation history of the current ask() conversation."""
        if self._client is None or self._runner is None:
            return None
        return self._runner.run(self._client.try_compress(force=force))

    def reset(self) -> None:
        """Clear conversation state. Next ask() starts fresh."""
        if self._client is not None and self._runner is not None:
            self._runner.run(self._client.aclose())
        self._client = None
        self._asks = 0

    def close(self) -> None:
        self.reset()
        if self._runner is not None:
            self._runner.close()
            self._runner = None

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
