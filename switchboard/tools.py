"""Tool interface, registry, and the built-in shell tool."""

import asyncio
import os
import signal as _signal
import sys
from dataclasses import dataclass, field
from pathlib import Path

from .report import ToolExecutionError

MAX_TIMEOUT = 600
DEFAULT_TIMEOUT = 120
KILL_GRACE_SECONDS = 2.0
MAX_CAPTURE_BYTES = 1024 * 1024  # 1 MB

_JSON_TYPES: dict[str, type | tuple[type, ...]] = {
    "string": str,
    "integer": int,
    "number": (int, float),
    "boolean": bool,
    "object": dict,
    "array": list,
}


@dataclass
class ToolResult:
    """Outcome of one tool execution.

    ``llm_content`` goes back to the model; ``display`` is what the user sees
    (defaults to llm_content).
    """

    llm_content: str
    display: str | None = None
    is_error: bool = False

    def __post_init__(self):
        if self.display is None:
            self.display = self.llm_content


@dataclass
class ConfirmationDetails:
    tool_name: str
    title: str
    prompt: str
    params: dict = field(default_factory=dict)


class Tool:
    """Base class for something the model can call.

    Subclasses set ``name``, ``description`` and ``parameters`` (a JSON schema
    object) and implement ``execute``.
    """

    name = ""
    description = ""
    parameters: dict = {"type": "object", "properties": {}}

    def declaration(self) -> dict:
        return {
            "name": self.name,
            "description": self.description,
            "parameters": self.parameters,
        }

    def validate_tool_params(self, params: dict) -> str | None:
        """Return an error message, or None when ``params`` fit the schema."""
        if not isinstance(params, dict):
            return "parameters must be an object"
        properties = self.parameters.get("properties", {})
        for key in self.parameters.get("required", []):
            if params.get(key) is None:
                return f"missing required parameter {key!r}"
        for key, value in params.items():
            schema = properties.get(key)
            if schema is None or value is None:
                continue
            expected = _JSON_TYPES.get(schema.get("type"))
            if expected is None:
                continue
            # bool is an int subclass; a JSON true is not an integer
            if isinstance(value, bool) and expected is not bool:
                return f"parameter {key!r} must be {schema['type']}, got boolean"
            if not isinstance(value, expected):
                return f"parameter {key!r} must be {schema['type']}"
        return None

    def should_confirm_execute(self, params: dict) -> ConfirmationDetails | None:
        return None

    async def execute(self, params: dict, signal: asyncio.Event | None) -> ToolResult:
        raise NotImplementedError


class ToolRegistry:
    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        if tool.name in self._tools:
            raise ValueError(f"tool {tool.name!r} is already registered")
        self._tools[tool.name] = tool

    def get_tool(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def get_all_tools(self) -> list[Tool]:
        return list(self._tools.values())

    def get_function_declarations(self) -> list[dict]:
        return [t.declaration() for t in self._tools.values()]


def truncate_output(text: str, budget: int | None) -> str:
    """Keep the head and tail of ``text`` when it exceeds ``budget`` characters."""
    if not budget or len(text) <= budget:
        return text
    head = budget * 2 // 3
    tail = budget - head
    omitted = len(text) - head - tail
    return f"{text[:head]}\n\n[... {omitted} characters omitted ...]\n\n{text[-tail:]}"


# ---------------------------------------------------------------------------
# Process tracking
# ---------------------------------------------------------------------------


class ProcessTracker:
    """Remembers live child processes so an abort can terminate them.

    Children run in their own session, so signals go to the whole process
    group: SIGTERM first, SIGKILL once the grace window has passed.
    """

    def __init__(self, grace: float = KILL_GRACE_SECONDS):
        self.grace = grace
        self._procs: dict[int, asyncio.subprocess.Process] = {}

    @property
    def pids(self) -> list[int]:
        return list(self._procs)

    def track(self, proc: asyncio.subprocess.Process) -> None:
        self._procs[proc.pid] = proc

    def untrack(self, proc: asyncio.subprocess.Process) -> None:
        self._procs.pop(proc.pid, None)

    @staticmethod
    def _signal_group(proc, sig) -> None:
        if sys.platform == "win32":
            try:
                if sig == _signal.SIGTERM:
                    proc.terminate()
                else:
                    proc.kill()
            except ProcessLookupError:
                pass  # already exited
            return
        try:
            os.killpg(proc.pid, sig)
        except OSError:
            pass  # already exited

    async def terminate(self, proc: asyncio.subprocess.Process) -> None:
        if proc.returncode is None:
            self._signal_group(proc, _signal.SIGTERM)
            try:
                await asyncio.wait_for(proc.wait(), self.grace)
            except asyncio.TimeoutError:
                self._signal_group(proc, getattr(_signal, "SIGKILL", _signal.SIGTERM))
                await proc.wait()
        self.untrack(proc)

    async def terminate_all(self) -> None:
        for proc in list(self._procs.values()):
            await self.terminate(proc)


async def _read_capped(stream: asyncio.StreamReader) -> tuple[bytes, bool]:
    chunks: list[bytes] = []
    total = 0
    truncated = False
    while True:
        chunk = await stream.read(4096)
        if not chunk:
            break
        if truncated:
            continue  # keep draining so the child never blocks on a full pipe
        remaining = MAX_CAPTURE_BYTES - total
        chunks.append(chunk[:remaining])
        total += len(chunks[-1])
        if total >= MAX_CAPTURE_BYTES:
            truncated = True
    return b"".join(chunks), truncated


class ShellTool(Tool):
    name = "run_shell_command"
    description = (
        "Execute a shell command with /bin/sh -c and return its combined "
        "stdout and stderr. Use for builds, tests, git, and inspecting files."
    )
    parameters = {
        "type": "object",
        "properties": {
            "command": {
                "type": "string",
                "description": "The exact shell command to run.",
            },
            "description": {
                "type": "string",
                "description": "Short explanation of what the command does.",
            },
            "timeout": {
                "type": "integer",
                "description": f"Seconds before the command is killed (max {MAX_TIMEOUT}).",
            },
        },
        "required": ["command"],
    }

    def __init__(
        self,
        base_dir: str = ".",
        *,
        yolo: bool = False,
        tracker: ProcessTracker | None = None,
    ):
        self.base_dir = base_dir
        self.yolo = yolo
        self.tracker = tracker or ProcessTracker()

    def validate_tool_params(self, params: dict) -> str | None:
        error = super().validate_tool_params(params)
        if error:
            return error
        if not params["command"].strip():
            return "parameter 'command' must not be empty"
        return None

    def should_confirm_execute(self, params: dict) -> ConfirmationDetails | None:
        if self.yolo:
            return None
        return ConfirmationDetails(
            tool_name=self.name,
            title="Run shell command?",
            prompt=params.get("command", ""),
            params=params,
        )

    async def execute(self, params: dict, signal: asyncio.Event | None) -> ToolResult:
        base = Path(self.base_dir)
        if not base.is_dir():
            return ToolResult(
                f"error: base directory does not exist: {self.base_dir}", is_error=True
            )
        timeout = max(1, min(int(params.get("timeout") or DEFAULT_TIMEOUT), MAX_TIMEOUT))

        if sys.platform == "win32":
            argv = ["cmd.exe", "/c", params["command"]]
        else:
            argv = ["/bin/sh", "-c", params["command"]]
        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=self.base_dir,
                start_new_session=sys.platform != "win32",
            )
        except OSError as e:
            raise ToolExecutionError(f"failed to start shell command: {e}") from e

        self.tracker.track(proc)
        reader = asyncio.create_task(_read_capped(proc.stdout))
        waiter = asyncio.create_task(proc.wait())
        watched = {waiter}
        aborter = None
        if signal is not None:
            aborter = asyncio.create_task(signal.wait())
            watched.add(aborter)

        try:
            done, _ = await asyncio.wait(
                watched, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
            aborted = aborter is not None and aborter in done
            timed_out = waiter not in done and not aborted
            if waiter not in done:
                await self.tracker.terminate(proc)
            raw, truncated = await reader
        finally:
            if aborter is not None:
                aborter.cancel()
            waiter.cancel()
            if not reader.done():
                reader.cancel()
            if proc.returncode is None:
                # Cancelled mid-wait; the child group must not outlive us.
                await asyncio.shield(self.tracker.terminate(proc))
            self.tracker.untrack(proc)

        output = raw.decode("utf-8", errors="replace")
        lines: list[str] = []
        if aborted:
            lines.append("error: command aborted")
        elif timed_out:
            lines.append(f"error: command timed out after {timeout}s")
        elif proc.returncode != 0:
            lines.append(f"Exit code: {proc.returncode}")
        if output:
            lines.append(output)
        if truncated:
            lines.append("[output truncated at 1MB]")
        text = "\n".join(lines) if lines else "(no output)"
        return ToolResult(text, is_error=aborted or timed_out)
