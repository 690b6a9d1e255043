"""Tests for switchboard.tool_adapter: validation, confirmation, argument repair."""

import asyncio
import logging

from switchboard.models import ToolCallStatus
from switchboard.report import ToolExecutionError
from switchboard.tool_adapter import (
    SHELL_REPAIR_RULE,
    RepairingToolCallAdapter,
    RepairState,
    TagRecoveryParser,
    ToolCallAdapter,
    create_tool_adapter,
)
from switchboard.tools import ConfirmationDetails, Tool, ToolRegistry, ToolResult

from helpers import EchoTool, FakeShellTool, call


def _run(coro):
    return asyncio.run(coro)


class ExplodingTool(Tool):
    name = "explode"
    parameters = {"type": "object", "properties": {}}

    async def execute(self, params, signal):
        raise RuntimeError("kaboom")


class ConfirmingTool(EchoTool):
    name = "guarded"

    def should_confirm_execute(self, params):
        return ConfirmationDetails(self.name, "Run guarded?", params["value"], params)


# ---------------------------------------------------------------------------
# ToolCallAdapter
# ---------------------------------------------------------------------------


class TestToolCallAdapter:
    def test_valid_call_executes(self):
        tool = EchoTool()
        result = _run(ToolCallAdapter().execute_call(tool, {"value": "hi"}))
        assert not result.is_error
        assert result.llm_content == "echo: hi"
        assert tool.calls == [{"value": "hi"}]

    def test_missing_parameter_is_reported_not_raised(self):
        tool = EchoTool()
        result = _run(ToolCallAdapter().execute_call(tool, {}))
        assert result.is_error
        assert result.llm_content.startswith("Parameter validation failed:")
        assert "value" in result.llm_content
        assert tool.calls == []

    def test_wrong_type_is_reported(self):
        result = _run(ToolCallAdapter().execute_call(EchoTool(), {"value": 3}))
        assert result.is_error
        assert "must be string" in result.llm_content

    def test_tool_exception_becomes_error_result(self, caplog):
        with caplog.at_level(logging.WARNING, logger="switchboard.tool_adapter"):
            result = _run(ToolCallAdapter().execute_call(ExplodingTool(), {}))
        assert result.is_error
        assert result.llm_content == "error: explode failed: kaboom"
        (record,) = caplog.records
        assert "explode failed: kaboom" in record.getMessage()
        assert isinstance(record.exc_info[1], RuntimeError)

    def test_tool_execution_error_passes_through(self):
        class Failing(EchoTool):
            async def execute(self, params, signal):
                raise ToolExecutionError("disk full")

        result = _run(ToolCallAdapter().execute_call(Failing(), {"value": "x"}))
        assert result.is_error
        assert result.llm_content == "error: disk full"

    def test_declined_confirmation(self):
        async def decline(details):
            return False

        tool = ConfirmingTool()
        result = _run(ToolCallAdapter(confirm=decline).execute_call(tool, {"value": "x"}))
        assert result.is_error
        assert "declined" in result.llm_content
        assert tool.calls == []

    def test_accepted_confirmation(self):
        seen = []

        async def accept(details):
            seen.append(details.title)
            return True

        tool = ConfirmingTool()
        result = _run(ToolCallAdapter(confirm=accept).execute_call(tool, {"value": "x"}))
        assert not result.is_error
        assert seen == ["Run guarded?"]

    def test_output_is_truncated_to_budget(self):
        class Loud(EchoTool):
            async def execute(self, params, signal):
                return ToolResult("a" * 500 + "b" * 500)

        result = _run(ToolCallAdapter(output_budget=300).execute_call(Loud(), {"value": "x"}))
        assert result.llm_content.startswith("a" * 200)
        assert result.llm_content.endswith("b" * 100)
        assert "characters omitted" in result.llm_content

    def test_execute_tool_call_updates_call(self):
        registry = ToolRegistry()
        registry.register(EchoTool())
        tool_call = call("echo", value="v")
        response = _run(ToolCallAdapter().execute_tool_call(registry, tool_call))
        assert response.call_id == tool_call.id
        assert response.output == "echo: v"
        assert tool_call.status == ToolCallStatus.COMPLETED
        assert tool_call.result is response

    def test_unknown_tool(self):
        tool_call = call("missing")
        response = _run(ToolCallAdapter().execute_tool_call(ToolRegistry(), tool_call))
        assert response.is_error
        assert "unknown tool" in response.output
        assert tool_call.status == ToolCallStatus.ERROR


# ---------------------------------------------------------------------------
# Recovery parser
# ---------------------------------------------------------------------------


class TestTagRecoveryParser:
    def test_reads_first_tag(self):
        parser = TagRecoveryParser("shell_command")
        text = "I will run <shell_command> ls -la </shell_command> then <shell_command>pwd</shell_command>"
        assert parser.recover(text) == "ls -la"

    def test_multiline_value(self):
        parser = TagRecoveryParser("shell_command")
        assert parser.recover("<shell_command>echo a\necho b</shell_command>") == "echo a\necho b"

    def test_missing_or_blank(self):
        parser = TagRecoveryParser("shell_command")
        assert parser.recover("no tag here") is None
        assert parser.recover("<shell_command>  </shell_command>") is None
        assert parser.recover(None) is None


# ---------------------------------------------------------------------------
# Repair state machine
# ---------------------------------------------------------------------------


class TestRepairingAdapter:
    def test_recovers_missing_argument_and_executes_once(self):
        tool = FakeShellTool()
        adapter = RepairingToolCallAdapter()
        adapter.set_message_content("Listing files. <shell_command>ls -l</shell_command>")
        result = _run(adapter.execute_call(tool, {}))
        assert not result.is_error
        assert tool.commands == ["ls -l"]
        assert adapter.state("run_shell_command") is RepairState.CLEAN
        assert adapter.error_count("run_shell_command") == 0

    def test_blank_argument_is_recovered(self):
        tool = FakeShellTool()
        adapter = RepairingToolCallAdapter()
        adapter.set_message_content("<shell_command>git status</shell_command>")
        _run(adapter.execute_call(tool, {"command": "   "}))
        assert tool.commands == ["git status"]

    def test_valid_call_passes_through(self):
        tool = FakeShellTool()
        adapter = RepairingToolCallAdapter()
        _run(adapter.execute_call(tool, {"command": "pwd"}))
        assert tool.commands == ["pwd"]

    def test_unrecoverable_call_returns_instructions(self):
        tool = FakeShellTool()
        adapter = RepairingToolCallAdapter()
        adapter.set_message_content("no declaration")
        result = _run(adapter.execute_call(tool, {}))
        assert result.is_error
        assert result.llm_content == SHELL_REPAIR_RULE.instructions
        assert adapter.state("run_shell_command") is RepairState.REPAIRING
        assert adapter.error_count("run_shell_command") == 1
        assert tool.commands == []

    def test_three_failures_enter_error_loop(self):
        tool = FakeShellTool()
        adapter = RepairingToolCallAdapter()
        for _ in range(2):
            _run(adapter.execute_call(tool, {}))
        result = _run(adapter.execute_call(tool, {}))
        assert result.llm_content == SHELL_REPAIR_RULE.loop_message
        assert adapter.state("run_shell_command") is RepairState.ERROR_LOOP

        # Even a well-formed call is rejected until reset.
        result = _run(adapter.execute_call(tool, {"command": "ls"}))
        assert result.is_error
        assert result.llm_content == SHELL_REPAIR_RULE.loop_message
        assert tool.commands == []

        adapter.reset()
        result = _run(adapter.execute_call(tool, {"command": "ls"}))
        assert not result.is_error
        assert tool.commands == ["ls"]

    def test_echoed_error_message_counts_as_failure(self):
        tool = FakeShellTool()
        adapter = RepairingToolCallAdapter()
        result = _run(adapter.execute_call(tool, {"command": SHELL_REPAIR_RULE.instructions}))
        assert result.is_error
        assert adapter.error_count("run_shell_command") == 1
        assert tool.commands == []

    def test_success_resets_counter(self):
        tool = FakeShellTool()
        adapter = RepairingToolCallAdapter()
        _run(adapter.execute_call(tool, {}))
        _run(adapter.execute_call(tool, {}))
        _run(adapter.execute_call(tool, {"command": "ls"}))
        assert adapter.error_count("run_shell_command") == 0
        _run(adapter.execute_call(tool, {}))
        assert adapter.state("run_shell_command") is RepairState.REPAIRING

    def test_counters_are_per_instance(self):
        tool = FakeShellTool()
        first = RepairingToolCallAdapter()
        for _ in range(3):
            _run(first.execute_call(tool, {}))
        second = RepairingToolCallAdapter()
        assert second.state("run_shell_command") is RepairState.CLEAN
        _run(second.execute_call(tool, {"command": "ls"}))
        assert tool.commands == ["ls"]

    def test_tools_without_rule_are_untouched(self):
        tool = EchoTool()
        adapter = RepairingToolCallAdapter()
        result = _run(adapter.execute_call(tool, {}))
        assert result.llm_content.startswith("Parameter validation failed:")
        assert adapter.error_count("echo") == 0


class TestCreateToolAdapter:
    def test_anthropic_gets_repairing_adapter(self):
        assert isinstance(create_tool_adapter("anthropic"), RepairingToolCallAdapter)

    def test_others_get_plain_adapter(self):
        adapter = create_tool_adapter("gemini", output_budget=10)
        assert type(adapter) is ToolCallAdapter
        assert adapter.output_budget == 10
