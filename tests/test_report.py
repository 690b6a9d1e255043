"""Tests for the JSON report feature (--report)."""

import json

import pytest

from switchboard import agent
from switchboard.report import ProviderError, ReportCollector

from helpers import StubAdapter, speaker, text_stream


# ---------------------------------------------------------------------------
# ReportCollector unit tests
# ---------------------------------------------------------------------------


def _build(rc, **overrides):
    kwargs = dict(
        task="hello",
        model="m",
        provider="gemini",
        settings={},
        outcome="success",
        answer="done",
        exit_code=0,
        turns=0,
    )
    kwargs.update(overrides)
    return rc.build_report(**kwargs)


class TestReportCollector:
    def test_empty_report(self):
        r = _build(ReportCollector())
        assert r["version"] == 1
        assert r["task"] == "hello"
        assert r["result"]["outcome"] == "success"
        assert r["result"]["answer"] == "done"
        assert "error_message" not in r["result"]
        assert r["stats"]["turns"] == 0
        assert r["stats"]["tool_calls_total"] == 0
        assert r["stats"]["api_requests"] == 0
        assert r["timeline"] == []

    def test_api_response_tracking(self):
        rc = ReportCollector()
        rc.record_api_response("m", 2.5, "tool_calls", prompt_tokens=100, completion_tokens=20)
        rc.record_api_response("m", 1.3, "stop", prompt_tokens=150)
        assert rc.api_requests == 2
        assert rc.total_api_time == pytest.approx(3.8)
        assert rc.prompt_tokens == 250
        assert rc.completion_tokens == 20
        assert rc.events[0]["finish_reason"] == "tool_calls"
        assert rc.events[1]["completion_tokens"] is None

    def test_api_error_counts_as_request(self):
        rc = ReportCollector()
        rc.record_api_error("m", 0.5, "503 unavailable")
        assert rc.api_requests == 1
        assert rc.api_errors == 1
        assert rc.events[0]["type"] == "api_error"

    def test_retries_and_fallbacks(self):
        rc = ReportCollector()
        rc.record_retry(1, 5.0, "429")
        rc.record_retry(2, 10.0, "429")
        rc.record_fallback("gemini-2.5-pro", "gemini-2.5-flash", False)
        rc.record_fallback("gemini-2.5-pro", "gemini-2.5-flash", True)
        stats = _build(rc)["stats"]
        assert stats["retries"] == 2
        # Only accepted switches count.
        assert stats["fallbacks"] == 1
        assert [e["accepted"] for e in rc.events if e["type"] == "fallback"] == [False, True]

    def test_tool_call_tracking(self):
        rc = ReportCollector()
        rc.record_tool_call("run_shell_command", {"command": "ls"}, True, 0.01, 500)
        rc.record_tool_call(
            "run_shell_command", {"command": "cat x"}, False, 0.02, 30, error="exit code 1"
        )
        rc.record_tool_call("echo", {"value": "v"}, True, 0.0, 7)
        stats = _build(rc)["stats"]
        assert stats["tool_calls_total"] == 3
        assert stats["tool_calls_succeeded"] == 2
        assert stats["tool_calls_failed"] == 1
        assert stats["tool_calls_by_name"]["run_shell_command"] == {"succeeded": 1, "failed": 1}
        assert rc.events[1]["error"] == "exit code 1"
        assert "error" not in rc.events[0]

    def test_compression_and_loops(self):
        rc = ReportCollector()
        rc.record_compression(9000, 2500)
        rc.record_loop("content repeated 10 times")
        stats = _build(rc)["stats"]
        assert stats["compressions"] == 1
        assert stats["loops_detected"] == 1
        assert rc.events[0] == {"type": "compression", "tokens_before": 9000, "tokens_after": 2500}

    def test_error_outcome(self):
        r = _build(
            ReportCollector(),
            outcome="error",
            answer=None,
            exit_code=1,
            error_message="upstream exploded",
        )
        assert r["result"]["exit_code"] == 1
        assert r["result"]["error_message"] == "upstream exploded"

    def test_write_creates_valid_json(self, tmp_path):
        rc = ReportCollector()
        rc.record_api_response("m", 1.0, "stop")
        rc.finalize(
            task="t",
            model="m",
            provider="gemini",
            settings={"max_turns": 5},
            outcome="success",
            answer="a",
            exit_code=0,
            turns=2,
        )
        path = tmp_path / "r.json"
        rc.write(str(path))
        data = json.loads(path.read_text())
        assert data["settings"] == {"max_turns": 5}
        assert data["stats"]["api_requests"] == 1


# ---------------------------------------------------------------------------
# --report + --repl validation
# ---------------------------------------------------------------------------


class TestReportCLIValidation:
    def test_report_with_repl_is_error(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))
        monkeypatch.setattr(
            "sys.argv",
            ["switchboard", "--repl", "--report", "out.json", "--model", "m", "--base-dir", str(tmp_path)],
        )
        with pytest.raises(SystemExit) as exc_info:
            agent.main()
        assert exc_info.value.code == 2

    def test_report_flag_parsed(self):
        args = agent.build_parser().parse_args(["--report", "/tmp/out.json", "hello"])
        assert args.report == "/tmp/out.json"

    def test_report_default_none(self):
        assert agent.build_parser().parse_args(["hello"]).report is None


# ---------------------------------------------------------------------------
# End to end through main()
# ---------------------------------------------------------------------------


class TestReportIntegration:
    @pytest.fixture
    def run_main(self, tmp_path, monkeypatch):
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "empty"))

        def run(adapter, *extra):
            monkeypatch.setattr(
                "switchboard.config.create_adapter",
                lambda provider, config, proxy=None: adapter,
            )
            monkeypatch.setattr(
                "sys.argv",
                [
                    "switchboard",
                    "--model",
                    "gemini-2.5-pro",
                    "--base-dir",
                    str(tmp_path),
                    "--initial-delay",
                    "0",
                    "--max-delay",
                    "0",
                    *extra,
                    "test task",
                ],
            )
            with pytest.raises(SystemExit) as exc_info:
                agent.main()
            return exc_info.value.code

        return run

    def test_report_written_on_success(self, tmp_path, run_main):
        report_path = tmp_path / "report.json"
        adapter = StubAdapter(replies=[speaker("user")], streams=[text_stream("final answer")])
        assert run_main(adapter, "-q", "--report", str(report_path)) == 0

        data = json.loads(report_path.read_text())
        assert data["version"] == 1
        assert data["task"] == "test task"
        assert data["model"] == "gemini-2.5-pro"
        assert data["result"]["outcome"] == "success"
        assert data["result"]["answer"] == "final answer"
        assert data["result"]["exit_code"] == 0
        assert data["stats"]["api_requests"] == 1
        assert "api_key" not in data["settings"]

    def test_report_written_on_error(self, tmp_path, run_main):
        report_path = tmp_path / "report.json"
        adapter = StubAdapter(streams=[ProviderError("connection refused", status_code=400)])
        assert run_main(adapter, "-q", "--report", str(report_path)) == 1

        data = json.loads(report_path.read_text())
        assert data["result"]["outcome"] == "error"
        assert "connection refused" in data["result"]["error_message"]
        assert data["stats"]["api_errors"] == 1

    def test_stdout_also_printed_when_report_active(self, tmp_path, run_main, capsys):
        adapter = StubAdapter(replies=[speaker("user")], streams=[text_stream("secret answer")])
        run_main(adapter, "-q", "--report", str(tmp_path / "r.json"))
        assert "secret answer" in capsys.readouterr().out

    def test_report_write_failure_does_not_crash(self, run_main, capsys):
        adapter = StubAdapter(replies=[speaker("user")], streams=[text_stream("answer")])
        assert run_main(adapter, "--report", "/no/such/dir/report.json") == 0
        assert "Failed to write report" in capsys.readouterr().err

    def test_no_report_prints_to_stdout(self, run_main, capsys):
        adapter = StubAdapter(replies=[speaker("user")], streams=[text_stream("visible answer")])
        run_main(adapter, "-q")
        captured = capsys.readouterr()
        assert captured.out.strip() == "visible answer"

    def test_quiet_keeps_stderr_clean(self, run_main, capsys):
        adapter = StubAdapter(replies=[speaker("user")], streams=[text_stream("hush")])
        run_main(adapter, "-q")
        assert capsys.readouterr().err == ""
