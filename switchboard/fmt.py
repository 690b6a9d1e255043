"""ANSI-formatted stderr output using Rich."""

from rich.console import Console
from rich.markup import escape
from rich.rule import Rule
from rich.text import Text

from .models import CompressionInfo, Event, EventType, ToolCall, ToolResponse

_console = Console(stderr=True)


def init(*, color: bool = False, no_color: bool = False) -> None:
    """Reconfigure the module-level console from CLI flags.

    Call once at startup, before any output.
    """
    global _console
    kwargs: dict = {"stderr": True}
    if color:
        kwargs["force_terminal"] = True
        kwargs["no_color"] = False
    if no_color:
        kwargs["no_color"] = True
    _console = Console(**kwargs)


# -- Exchange structure ------------------------------------------------------


def exchange_header(n: int, model: str) -> None:
    _console.print(Rule(f"Exchange {n} ({escape(model)})", style="cyan"))


def llm_timing(elapsed: float, finish_reason: str | None) -> None:
    style = "green" if finish_reason in ("stop", None) else "yellow"
    text = Text()
    text.append(f"  LLM responded in {elapsed:.1f}s", style=style)
    text.append(f"  finish_reason={escape(str(finish_reason))}", style=style)
    _console.print(text)


def completion(turns: int, exit_code: str) -> None:
    if exit_code == "ok":
        _console.print(
            Text(f"  ✓ Agent finished: {turns} turns", style="bold green")
        )
    else:
        _console.print(
            Text(f"  Agent finished: {turns} turns, exit={exit_code}", style="bold red")
        )


# -- Tool calls --------------------------------------------------------------


def tool_call(call: ToolCall) -> None:
    header = Text()
    header.append("  ▶ ", style="bold magenta")
    header.append(call.name, style="bold magenta")
    _console.print(header)
    for key, value in call.arguments.items():
        for line in str(value).splitlines() or [""]:
            _console.print(Text(f"    {key}: {line}", style="dim"))


def tool_result(response: ToolResponse, preview_chars: int = 200) -> None:
    if response.is_error:
        tool_error(response.name, response.output)
        return
    header = Text()
    header.append(f"  ✓ {response.name}", style="green")
    _console.print(header)
    preview = response.output[:preview_chars].replace("\n", " ")
    if preview:
        _console.print(Text(f"    {preview}", style="dim"))


def tool_error(name: str, msg: str) -> None:
    header = Text()
    header.append(f"  ✗ {name}", style="bold red")
    header.append(f"  {msg}", style="red")
    _console.print(header)


# -- Assistant text ----------------------------------------------------------


def thought(text: str) -> None:
    _console.print(Text(f"  [thinking] {text}", style="dim italic"))


def assistant_text(text: str) -> None:
    line = Text()
    line.append("  [assistant] ", style="blue")
    line.append(text)
    _console.print(line)


# -- Orchestrator events -----------------------------------------------------


def compressed(info: CompressionInfo) -> None:
    _console.print(
        Text(
            f"  History compressed: ~{info.original_token_count} -> "
            f"~{info.new_token_count} tokens",
            style="yellow",
        )
    )


def loop_detected(reason: str) -> None:
    line = Text()
    line.append("  ⚠ Loop detected: ", style="bold yellow")
    line.append(reason, style="yellow")
    _console.print(line)


def model_switched(model: str) -> None:
    _console.print(
        Text(f"  Switched to {model}; send a new message to continue.", style="yellow")
    )


def event(ev: Event) -> None:
    """Render one stream event that is not assistant text."""
    if ev.type == EventType.THOUGHT:
        thought(ev.value)
    elif ev.type == EventType.TOOL_CALL_REQUEST:
        tool_call(ev.value)
    elif ev.type == EventType.TOOL_CALL_RESPONSE:
        tool_result(ev.value)
    elif ev.type == EventType.ERROR:
        error(str(ev.value))
    elif ev.type == EventType.CHAT_COMPRESSED:
        compressed(ev.value)
    elif ev.type == EventType.LOOP_DETECTED:
        loop_detected(str(ev.value))
    elif ev.type == EventType.MODEL_SWITCHED:
        model_switched(str(ev.value))
    elif ev.type == EventType.MAX_SESSION_TURNS:
        warning(f"maximum session turns ({ev.value}) reached")


# -- Diagnostics -------------------------------------------------------------


def info(msg: str) -> None:
    _console.print(Text(f"  {msg}", style="dim"))


def warning(msg: str) -> None:
    line = Text()
    line.append("  ⚠ Warning: ", style="yellow")
    line.append(msg, style="yellow")
    _console.print(line)


def error(msg: str) -> None:
    line = Text()
    line.append("Error: ", style="bold red")
    line.append(msg, style="red")
    _console.print(line)


def repl_banner() -> None:
    _console.print(Text("Interactive mode. Type /exit or Ctrl-D to quit.", style="dim"))
