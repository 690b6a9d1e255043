"""Error taxonomy and JSON run reports."""

import json
from datetime import datetime, timezone


class AgentError(Exception):
    """Raised by the orchestrator or setup helpers for reportable runtime failures."""


class ConfigError(AgentError):
    """Raised for invalid configuration (missing model, bad API key, etc.)."""


class ProviderError(AgentError):
    """A backend returned an error response or the transport failed."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        retry_after: float | None = None,
    ):
        super().__init__(message)
        self.status_code = status_code
        self.retry_after = retry_after


class FatalSessionError(AgentError):
    """The session is in a state no operation may continue from."""


class ToolExecutionError(AgentError):
    """A tool failed while running. Captured into an error ToolResult."""


class ReportCollector:
    """Accumulates events during a run for JSON report output."""

    def __init__(self):
        self.events: list[dict] = []
        self.tool_stats: dict[str, dict[str, int]] = {}
        self.api_requests = 0
        self.api_errors = 0
        self.retries = 0
        self.fallbacks = 0
        self.compressions = 0
        self.loops_detected = 0
        self.total_api_time = 0.0
        self.total_tool_time = 0.0
        self.prompt_tokens = 0
        self.completion_tokens = 0

    def record_api_response(
        self,
        model: str,
        duration: float,
        finish_reason: str | None,
        *,
        prompt_tokens: int | None = None,
        completion_tokens: int | None = None,
    ):
        self.api_requests += 1
        self.total_api_time += duration
        if prompt_tokens:
            self.prompt_tokens += prompt_tokens
        if completion_tokens:
            self.completion_tokens += completion_tokens
        self.events.append(
            {
                "type": "api_response",
                "model": model,
                "duration_s": round(duration, 3),
                "finish_reason": finish_reason,
                "prompt_tokens": prompt_tokens,
                "completion_tokens": completion_tokens,
            }
        )

    def record_api_error(self, model: str, duration: float, error: str):
        self.api_requests += 1
        self.api_errors += 1
        self.total_api_time += duration
        self.events.append(
            {
                "type": "api_error",
                "model": model,
                "duration_s": round(duration, 3),
                "error": error,
            }
        )

    def record_retry(self, attempt: int, delay: float, error: str):
        self.retries += 1
        self.events.append(
            {
                "type": "retry",
                "attempt": attempt,
                "delay_s": round(delay, 3),
                "error": error,
            }
        )

    def record_fallback(self, from_model: str, to_model: str, accepted: bool):
        if accepted:
            self.fallbacks += 1
        self.events.append(
            {
                "type": "fallback",
                "from": from_model,
                "to": to_model,
                "accepted": accepted,
            }
        )

    def record_compression(self, tokens_before: int, tokens_after: int):
        self.compressions += 1
        self.events.append(
            {
                "type": "compression",
                "tokens_before": tokens_before,
                "tokens_after": tokens_after,
            }
        )

    def record_loop(self, reason: str):
        self.loops_detected += 1
        self.events.append({"type": "loop_detected", "reason": reason})

    def record_tool_call(
        self,
        name: str,
        arguments: dict | None,
        succeeded: bool,
        duration: float,
        result_length: int,
        error: str | None = None,
    ):
        self.total_tool_time += duration
        stats = self.tool_stats.setdefault(name, {"succeeded": 0, "failed": 0})
        if succeeded:
            stats["succeeded"] += 1
        else:
            stats["failed"] += 1
        event: dict = {
            "type": "tool_call",
            "name": name,
            "arguments": arguments,
            "succeeded": succeeded,
            "duration_s": round(duration, 3),
            "result_length": result_length,
        }
        if error is not None:
            event["error"] = error
        self.events.append(event)

    def build_report(
        self,
        *,
        task: str,
        model: str,
        provider: str,
        settings: dict,
        outcome: str,
        answer: str | None,
        exit_code: int,
        turns: int,
        error_message: str | None = None,
    ) -> dict:
        tool_calls_succeeded = sum(s["succeeded"] for s in self.tool_stats.values())
        tool_calls_failed = sum(s["failed"] for s in self.tool_stats.values())

        result: dict = {
            "outcome": outcome,
            "answer": answer,
            "exit_code": exit_code,
        }
        if error_message is not None:
            result["error_message"] = error_message

        return {
            "version": 1,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "task": task,
            "model": model,
            "provider": provider,
            "settings": settings,
            "result": result,
            "stats": {
                "turns": turns,
                "api_requests": self.api_requests,
                "api_errors": self.api_errors,
                "retries": self.retries,
                "fallbacks": self.fallbacks,
                "compressions": self.compressions,
                "loops_detected": self.loops_detected,
                "prompt_tokens": self.prompt_tokens,
                "completion_tokens": self.completion_tokens,
                "tool_calls_total": tool_calls_succeeded + tool_calls_failed,
                "tool_calls_succeeded": tool_calls_succeeded,
                "tool_calls_failed": tool_calls_failed,
                "tool_calls_by_name": dict(self.tool_stats),
                "total_api_time_s": round(self.total_api_time, 3),
                "total_tool_time_s": round(self.total_tool_time, 3),
            },
            "timeline": self.events,
        }

    def write(self, path: str):
        with open(path, "w", encoding="utf-8") as f:
            json.dump(self._last_report, f, indent=2)
            f.write("\n")

    def finalize(self, **kwargs) -> dict:
        """Build the report and keep it for write()."""
        self._last_report = self.build_report(**kwargs)
        return self._last_report
