"""Tool call execution: validation, confirmation, repair of malformed calls.

The adapter sits between the orchestrator and the ToolRegistry. It never
raises for a tool failure; every outcome comes back as a ToolResult so the
conversation can continue and the model can react.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable

from .models import ToolCall, ToolCallStatus, ToolResponse
from .report import ToolExecutionError
from .tools import ConfirmationDetails, Tool, ToolRegistry, ToolResult, truncate_output

logger = logging.getLogger(__name__)

ERROR_LOOP_THRESHOLD = 3

ConfirmCallback = Callable[[ConfirmationDetails], Awaitable[bool]]


@dataclass
class ValidationResult:
    is_valid: bool
    error: str | None = None


class ToolCallAdapter:
    """Validates and runs tool calls the same way for every backend."""

    def __init__(
        self,
        *,
        confirm: ConfirmCallback | None = None,
        output_budget: int | None = None,
    ):
        self.confirm = confirm
        self.output_budget = output_budget
        self._last_text = ""

    def set_message_content(self, text: str) -> None:
        """Remember the assistant text that accompanied the pending tool calls."""
        self._last_text = text or ""

    def reset(self) -> None:
        self._last_text = ""

    def validate_params(self, tool: Tool, params) -> ValidationResult:
        try:
            error = tool.validate_tool_params(params)
        except Exception as e:
            return ValidationResult(False, str(e) or type(e).__name__)
        if error is None:
            return ValidationResult(True)
        return ValidationResult(False, error)

    async def execute_call(
        self, tool: Tool, params, signal: asyncio.Event | None = None
    ) -> ToolResult:
        validation = self.validate_params(tool, params)
        if not validation.is_valid:
            return ToolResult(
                f"Parameter validation failed: {validation.error}", is_error=True
            )
        return await self._run(tool, params, signal)

    async def _run(
        self, tool: Tool, params: dict, signal: asyncio.Event | None
    ) -> ToolResult:
        try:
            details = tool.should_confirm_execute(params)
        except Exception as e:
            return ToolResult(f"error: {tool.name}: {e}", is_error=True)
        if details is not None:
            if self.confirm is None:
                logger.warning(
                    "%s requires confirmation but no prompt is available; proceeding",
                    tool.name,
                )
            elif not await self.confirm(details):
                return ToolResult(
                    f"User declined to run {tool.name}.", is_error=True
                )

        try:
            result = await self._execute(tool, params, signal)
        except ToolExecutionError as e:
            logger.warning("tool %s failed: %s", tool.name, e, exc_info=e.__cause__)
            return ToolResult(f"error: {e}", is_error=True)

        result.llm_content = truncate_output(result.llm_content, self.output_budget)
        return result

    @staticmethod
    async def _execute(tool: Tool, params: dict, signal: asyncio.Event | None) -> ToolResult:
        try:
            return await tool.execute(params, signal)
        except (asyncio.CancelledError, ToolExecutionError):
            raise
        except Exception as e:
            raise ToolExecutionError(f"{tool.name} failed: {e}") from e

    async def execute_tool_call(
        self,
        registry: ToolRegistry,
        call: ToolCall,
        signal: asyncio.Event | None = None,
    ) -> ToolResponse:
        """Run ``call`` through the registry and record its outcome on the call."""
        tool = registry.get_tool(call.name)
        if tool is None:
            result = ToolResult(f"error: unknown tool {call.name!r}", is_error=True)
        else:
            call.status = ToolCallStatus.EXECUTING
            result = await self.execute_call(tool, call.arguments, signal)
        response = ToolResponse(
            call_id=call.id,
            name=call.name,
            output=result.llm_content,
            is_error=result.is_error,
        )
        call.status = ToolCallStatus.ERROR if result.is_error else ToolCallStatus.COMPLETED
        call.result = response
        return response


# ---------------------------------------------------------------------------
# Repair of missing required arguments
# ---------------------------------------------------------------------------


class RecoveryParser:
    """Finds a value the model declared in its own text."""

    def recover(self, text: str) -> str | None:
        raise NotImplementedError


class TagRecoveryParser(RecoveryParser):
    """Reads the first ``<tag>value</tag>`` in the text."""

    def __init__(self, tag: str):
        self.tag = tag
        self._re = re.compile(rf"<{re.escape(tag)}>(.*?)</{re.escape(tag)}>", re.S)

    def recover(self, text: str) -> str | None:
        match = self._re.search(text or "")
        if match is None:
            return None
        value = match.group(1).strip()
        return value or None


@dataclass
class RepairRule:
    tool_name: str
    param: str
    parser: RecoveryParser
    instructions: str
    loop_message: str


SHELL_REPAIR_RULE = RepairRule(
    tool_name="run_shell_command",
    param="command",
    parser=TagRecoveryParser("shell_command"),
    instructions=(
        "Invalid tool call. You must declare your shell command using "
        "<shell_command>your_command_here</shell_command> before calling the tool, "
        'and then provide the same command in the "command" parameter. '
        "Example: <shell_command>ls -l</shell_command> followed by "
        'run_shell_command({"command": "ls -l"})'
    ),
    loop_message=(
        "Error loop detected. You are not following the required format for "
        "shell commands. You MUST use <shell_command>your_command_here</shell_command> "
        "before calling run_shell_command. Please use the `/clear` command to "
        "reset the conversation history."
    ),
)


class RepairState(str, Enum):
    CLEAN = "clean"
    REPAIRING = "repairing"
    ERROR_LOOP = "error_loop"


class RepairingToolCallAdapter(ToolCallAdapter):
    """Adapter for models that sometimes drop a required argument.

    When a call arrives without the argument a rule covers, the value is
    recovered from the latest assistant text. Unrecoverable calls get an
    instructive error; after ``threshold`` consecutive failures the tool is
    locked in ERROR_LOOP until ``reset()``. Counters live on this instance.
    """

    def __init__(
        self,
        *,
        rules: list[RepairRule] | None = None,
        threshold: int = ERROR_LOOP_THRESHOLD,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.threshold = threshold
        self.rules = {r.tool_name: r for r in (rules or [SHELL_REPAIR_RULE])}
        self._states: dict[str, RepairState] = {}
        self._errors: dict[str, int] = {}

    def state(self, tool_name: str) -> RepairState:
        return self._states.get(tool_name, RepairState.CLEAN)

    def error_count(self, tool_name: str) -> int:
        return self._errors.get(tool_name, 0)

    def reset(self) -> None:
        super().reset()
        self._states.clear()
        self._errors.clear()

    def _is_echo(self, value) -> bool:
        """The model pasted one of our error messages back as the argument."""
        if not isinstance(value, str):
            return False
        return "Invalid tool call" in value or "Error loop detected" in value

    def _fail(self, rule: RepairRule, reason: str) -> ToolResult:
        count = self._errors.get(rule.tool_name, 0) + 1
        self._errors[rule.tool_name] = count
        if count >= self.threshold:
            self._states[rule.tool_name] = RepairState.ERROR_LOOP
            logger.error(
                "%s: %d consecutive invalid calls, refusing further attempts",
                rule.tool_name,
                count,
            )
            return ToolResult(rule.loop_message, is_error=True)
        self._states[rule.tool_name] = RepairState.REPAIRING
        logger.warning("%s: unrecoverable call #%d (%s)", rule.tool_name, count, reason)
        return ToolResult(rule.instructions, is_error=True)

    async def execute_call(
        self, tool: Tool, params, signal: asyncio.Event | None = None
    ) -> ToolResult:
        rule = self.rules.get(tool.name)
        if rule is None:
            return await super().execute_call(tool, params, signal)
        if self.state(tool.name) is RepairState.ERROR_LOOP:
            return ToolResult(rule.loop_message, is_error=True)

        params = dict(params) if isinstance(params, dict) else {}
        value = params.get(rule.param)
        if self._is_echo(value):
            return self._fail(rule, "argument repeats an error message")

        if not isinstance(value, str) or not value.strip():
            self._states[tool.name] = RepairState.REPAIRING
            recovered = rule.parser.recover(self._last_text)
            if recovered is None:
                return self._fail(rule, f"missing {rule.param!r}")
            logger.info("%s: recovered %r from assistant text", tool.name, rule.param)
            params[rule.param] = recovered

        self._errors[tool.name] = 0
        self._states[tool.name] = RepairState.CLEAN
        return await super().execute_call(tool, params, signal)


def create_tool_adapter(provider: str, **kwargs) -> ToolCallAdapter:
    """Anthropic models get the repairing adapter; others the plain one."""
    if provider == "anthropic":
        return RepairingToolCallAdapter(**kwargs)
    return ToolCallAdapter(**kwargs)
