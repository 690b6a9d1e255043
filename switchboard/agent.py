import argparse
import asyncio
import logging
import os
import signal as _signal
import sys
import time
from importlib import metadata
from pathlib import Path

from . import fmt
from .client import AgentClient
from .config import (
    _UNSET,
    apply_config_to_args,
    config_to_session_kwargs,
    generate_config,
    load_config,
)
from .models import Event, EventType
from .providers import PROVIDERS
from .report import AgentError, ReportCollector
from .session import Session, drive
from .tools import ConfirmationDetails

logger = logging.getLogger(__name__)

# Args that map one-to-one onto Session keyword arguments.
_SESSION_KEYS = (
    "provider",
    "model",
    "api_key",
    "base_url",
    "proxy",
    "temperature",
    "max_output_tokens",
    "max_context_tokens",
    "max_session_turns",
    "max_turns",
    "auth_type",
    "fallback_model",
    "compression_threshold",
    "compression_preserve",
    "max_attempts",
    "initial_delay",
    "max_delay",
    "tool_output_budget",
    "system_prompt",
    "yolo",
    "quiet",
)


def build_parser():
    """Build and return the argument parser."""
    parser = argparse.ArgumentParser(
        prog="switchboard",
        usage="%(prog)s [options] <question>\n       %(prog)s --repl [options]",
        description="Talk to Gemini, Claude, OpenAI-compatible, DashScope and LiteLLM-routed models through one tool-calling conversation loop.",
    )
    parser.add_argument(
        "--version",
        action="store_true",
        help="Print the version and exit.",
    )
    parser.add_argument(
        "question", nargs="?", default=None, help="The question or task for the model."
    )
    parser.add_argument(
        "--repl",
        action="store_true",
        help="Start an interactive session instead of answering a single question.",
    )
    parser.add_argument(
        "--init-config",
        action="store_true",
        help="Print a commented config template and exit.",
    )
    parser.add_argument(
        "--project",
        action="store_true",
        help="With --init-config, print the project-level template.",
    )

    parser.add_argument(
        "--provider",
        choices=PROVIDERS,
        default=_UNSET,
        help="Backend to use (default: inferred from the model name).",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=_UNSET,
        help="Model identifier, e.g. gemini-2.5-pro or claude-sonnet-4-5.",
    )
    parser.add_argument(
        "--api-key",
        type=str,
        default=_UNSET,
        help="API key for the provider (overrides env var).",
    )
    parser.add_argument(
        "--base-url",
        default=_UNSET,
        help="Override the provider's API base URL.",
    )
    parser.add_argument(
        "--proxy",
        default=_UNSET,
        help="HTTP(S) proxy URL for provider requests.",
    )

    parser.add_argument(
        "--temperature",
        type=float,
        default=_UNSET,
        help="Sampling temperature (default: provider default).",
    )
    parser.add_argument(
        "--max-output-tokens",
        type=int,
        default=_UNSET,
        help="Maximum output tokens per response (default: provider default).",
    )
    parser.add_argument(
        "--max-context-tokens",
        type=int,
        default=_UNSET,
        help="Context window used for the compression threshold (default: per-model table).",
    )
    parser.add_argument(
        "--max-turns",
        type=int,
        default=_UNSET,
        help="Maximum tool and continuation rounds per message (default: 100).",
    )
    parser.add_argument(
        "--max-session-turns",
        type=int,
        default=_UNSET,
        help="Maximum messages per session, -1 for unlimited (default: -1).",
    )
    parser.add_argument(
        "--system-prompt",
        type=str,
        default=_UNSET,
        help="System instruction sent with every request.",
    )

    retry_group = parser.add_argument_group("retries and fallback")
    retry_group.add_argument(
        "--max-attempts",
        type=int,
        default=_UNSET,
        help="Attempts per request on rate-limit or server errors (default: 5).",
    )
    retry_group.add_argument(
        "--initial-delay",
        type=float,
        default=_UNSET,
        help="First backoff delay in seconds (default: 5).",
    )
    retry_group.add_argument(
        "--max-delay",
        type=float,
        default=_UNSET,
        help="Backoff delay cap in seconds (default: 30).",
    )
    retry_group.add_argument(
        "--auth-type",
        type=str,
        default=_UNSET,
        help='Authentication mode; "oauth-personal" enables the quota fallback.',
    )
    retry_group.add_argument(
        "--fallback-model",
        type=str,
        default=_UNSET,
        help="Model offered after persistent rate limiting (default: gemini-2.5-flash).",
    )

    history_group = parser.add_argument_group("history compression")
    history_group.add_argument(
        "--compression-threshold",
        type=float,
        default=_UNSET,
        help="Compress when history exceeds this fraction of the context window (default: 0.7).",
    )
    history_group.add_argument(
        "--compression-preserve",
        type=float,
        default=_UNSET,
        help="Fraction of the newest history kept verbatim (default: 0.3).",
    )

    parser.add_argument(
        "--tool-output-budget",
        type=int,
        default=_UNSET,
        help="Characters of tool output returned to the model (default: 20000).",
    )
    parser.add_argument(
        "--base-dir",
        type=str,
        default=".",
        help="Working directory for the shell tool (default: current directory).",
    )
    parser.add_argument(
        "--yolo",
        action="store_true",
        default=_UNSET,
        help="Run tools without asking for confirmation.",
    )
    parser.add_argument(
        "--report",
        type=str,
        default=None,
        metavar="FILE",
        help="Write a JSON run report to FILE. Incompatible with --repl.",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        default=_UNSET,
        help="Suppress all diagnostics; only print the final result.",
    )
    parser.add_argument(
        "--verbose-log",
        action="store_true",
        help="Log library activity (retries, repairs, compression) at INFO level.",
    )

    color_group = parser.add_mutually_exclusive_group()
    color_group.add_argument(
        "--color",
        action="store_true",
        default=_UNSET,
        help="Force ANSI color even when stderr is not a TTY.",
    )
    color_group.add_argument(
        "--no-color",
        action="store_true",
        default=_UNSET,
        help="Disable ANSI color even when stderr is a TTY.",
    )

    return parser


def main():
    parser = build_parser()
    args = parser.parse_args()

    # Handle --version first
    if args.version:
        try:
            version = metadata.version("switchboard")
        except metadata.PackageNotFoundError:
            version = "unknown"
        print(version)
        sys.exit(0)

    if args.init_config:
        print(generate_config(project=args.project))
        sys.exit(0)

    try:
        file_config = load_config(Path(args.base_dir))
    except AgentError as e:
        fmt.error(str(e))
        sys.exit(1)
    apply_config_to_args(args, file_config)
    args.verbose = not args.quiet

    logging.basicConfig(
        level=logging.INFO if args.verbose_log else logging.WARNING,
        format="%(levelname)s %(name)s: %(message)s",
        stream=sys.stderr,
    )

    if not args.repl and args.question is None:
        parser.error("question is required (or use --repl)")
    if args.report and args.repl:
        parser.error("--report is incompatible with --repl")
    if not args.model:
        parser.error("--model is required (or set 'model' in a config file)")

    fmt.init(color=args.color, no_color=args.no_color)

    report = ReportCollector() if args.report else None

    def _write_report(outcome, answer=None, exit_code=0, turns=0, error_message=None, model_id=None):
        if not report:
            return
        report.finalize(
            task=args.question or "",
            model=model_id or args.model,
            provider=args.provider or "auto",
            settings={
                key: getattr(args, key)
                for key in _SESSION_KEYS
                if key not in ("api_key", "system_prompt", "quiet")
            },
            outcome=outcome,
            answer=answer,
            exit_code=exit_code,
            turns=turns,
            error_message=error_message,
        )
        try:
            report.write(args.report)
        except OSError as e:
            fmt.error(f"Failed to write report to {args.report}: {e}")
            return
        if args.verbose:
            fmt.info(f"Report written to {args.report}")

    try:
        exit_code = asyncio.run(_run_main(args, report, _write_report))
    except AgentError as e:
        fmt.error(str(e))
        _write_report("error", exit_code=1, error_message=str(e))
        sys.exit(1)
    sys.exit(exit_code)


def _session_from_args(args) -> Session:
    kwargs = config_to_session_kwargs({key: getattr(args, key) for key in _SESSION_KEYS})
    interactive = sys.stdin.isatty()
    return Session(
        base_dir=args.base_dir,
        confirm=_confirm_tool if interactive else _decline_tool,
        fallback_handler=_confirm_fallback if interactive else None,
        **kwargs,
    )


# -- Interactive confirmation --------------------------------------------------


async def _ask_yes_no(question: str) -> bool:
    from prompt_toolkit import PromptSession

    try:
        answer = await PromptSession().prompt_async(f"{question} [y/N] ")
    except (EOFError, KeyboardInterrupt):
        return False
    return answer.strip().lower() in ("y", "yes")


async def _confirm_tool(details: ConfirmationDetails) -> bool:
    fmt.info(f"{details.title}\n    {details.prompt}")
    return await _ask_yes_no("Allow?")


async def _decline_tool(details: ConfirmationDetails) -> bool:
    fmt.warning(f"{details.tool_name} needs confirmation; rerun with --yolo to allow it")
    return False


async def _confirm_fallback(current: str, fallback: str, error: BaseException) -> bool:
    fmt.warning(f"{current} keeps hitting rate limits: {error}")
    return await _ask_yes_no(f"Switch to {fallback} for the rest of this session?")


# -- Event rendering -----------------------------------------------------------


class _Renderer:
    """Streams events to stderr, buffering text so it prints in whole blocks.

    Text that precedes a tool call is shown as assistant text; the text after
    the last tool result is the answer and goes to stdout at the end.
    """

    def __init__(self, verbose: bool):
        self.verbose = verbose
        self._text = ""
        self._thought = ""
        self._started = time.monotonic()

    def _flush_thought(self) -> None:
        if self._thought.strip() and self.verbose:
            fmt.thought(self._thought.strip())
        self._thought = ""

    def __call__(self, event: Event) -> None:
        if event.type == EventType.CONTENT:
            self._flush_thought()
            self._text += event.value
            return
        if event.type == EventType.THOUGHT:
            self._thought += event.value
            return
        self._flush_thought()
        if event.type == EventType.TOOL_CALL_REQUEST and self._text.strip():
            if self.verbose:
                fmt.assistant_text(self._text.strip())
            self._text = ""
        if event.type == EventType.DONE:
            if self.verbose:
                reason = event.value.get("finish_reason")
                fmt.llm_timing(
                    time.monotonic() - self._started,
                    reason.value if reason is not None else None,
                )
            self._started = time.monotonic()
            return
        if event.type == EventType.ERROR or self.verbose:
            fmt.event(event)

    def finish(self) -> None:
        self._flush_thought()


async def _run_turn(client: AgentClient, message, prompt_id: str, verbose: bool):
    """Run one request; Ctrl-C sets the abort signal instead of killing the process."""
    abort = asyncio.Event()
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(_signal.SIGINT, abort.set)
        handler_installed = True
    except (NotImplementedError, RuntimeError):
        handler_installed = False  # not supported on this platform
    renderer = _Renderer(verbose)
    try:
        exchange = await drive(client, message, abort, prompt_id=prompt_id, on_event=renderer)
    finally:
        renderer.finish()
        if handler_installed:
            loop.remove_signal_handler(_signal.SIGINT)
    return exchange


async def _run_main(args, report, _write_report) -> int:
    session = _session_from_args(args)
    client = session.make_client(report)
    try:
        if args.repl:
            await repl_loop(client, verbose=args.verbose, base_dir=args.base_dir)
            return 0

        exchange = await _run_turn(client, args.question, "main", args.verbose)
        turns = len(client.chat.get_history())
        model_id = client.config.model
    finally:
        await client.aclose()

    if exchange.answer:
        print(exchange.answer)

    if exchange.outcome == "success":
        exit_code = 0
    elif exchange.outcome in ("loop_detected", "max_session_turns"):
        exit_code = 2
    else:
        exit_code = 1
    if args.verbose:
        fmt.completion(turns, "ok" if exit_code == 0 else exchange.outcome)
    _write_report(
        exchange.outcome,
        answer=exchange.answer or None,
        exit_code=exit_code,
        turns=turns,
        error_message=exchange.error,
        model_id=model_id,
    )
    return exit_code


# -- REPL ----------------------------------------------------------------------


def _repl_help() -> None:
    """Print available REPL commands."""
    fmt.info(
        "Available commands:\n"
        "  /help              Show this help message\n"
        "  /clear             Reset the conversation and tool repair state\n"
        "  /compact           Summarize older history now\n"
        "  /exit, /quit       Exit the REPL\n"
        "  Ctrl-C during a reply aborts it"
    )


async def _repl_clear(client: AgentClient) -> None:
    dropped = len(client.chat.get_history())
    await client.reset_chat()
    fmt.info(f"context cleared ({dropped} turns removed)")


async def _repl_compact(client: AgentClient) -> None:
    """Force a summary of the older part of the history."""
    try:
        info = await client.try_compress(force=True)
    except AgentError as e:
        fmt.error(f"compression failed: {e}")
        return
    if info is None:
        fmt.info("nothing to compact")
        return
    saved = info.original_token_count - info.new_token_count
    fmt.info(
        f"compacted: {info.original_token_count} -> {info.new_token_count} tokens ({saved} saved)"
    )


async def repl_loop(client: AgentClient, *, verbose: bool, base_dir: str = ".") -> None:
    """Interactive read-eval-print loop."""
    from prompt_toolkit import PromptSession
    from prompt_toolkit.formatted_text import FormattedText
    from prompt_toolkit.history import FileHistory

    history_path = os.path.join(base_dir, ".switchboard", "repl_history")
    os.makedirs(os.path.dirname(history_path), exist_ok=True)
    session = PromptSession(
        history=FileHistory(history_path),
        enable_history_search=True,
    )
    prompt_text = FormattedText([("bold fg:ansigreen", "switchboard> ")])

    if verbose:
        fmt.repl_banner()

    count = 0
    while True:
        try:
            print(file=sys.stderr)  # blank line before prompt
            line = await session.prompt_async(prompt_text)
        except (EOFError, KeyboardInterrupt):
            print(file=sys.stderr)  # newline after ^D / ^C
            break

        line = line.strip()
        if not line:
            continue

        # Only known commands are intercepted; unknown /foo goes to the model
        if line in ("/exit", "/quit"):
            break
        cmd = line.split(None, 1)[0].lower()
        if cmd == "/help":
            _repl_help()
            continue
        elif cmd == "/clear":
            await _repl_clear(client)
            continue
        elif cmd == "/compact":
            await _repl_compact(client)
            continue

        count += 1
        if verbose:
            fmt.exchange_header(count, client.config.model)
        try:
            exchange = await _run_turn(client, line, f"repl-{count}", verbose)
        except AgentError as e:
            fmt.error(str(e))
            continue

        if exchange.answer:
            print(exchange.answer)
        if exchange.outcome == "aborted":
            fmt.warning("interrupted, reply aborted.")
        elif exchange.outcome == "max_session_turns":
            fmt.warning("session turn limit reached; use /clear to start over.")


if __name__ == "__main__":
    main()
