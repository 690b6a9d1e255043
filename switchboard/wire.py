"""Per-vendor history codecs.

Each vendor gets a ``to_wire(turns)`` / ``from_wire(messages)`` pair that maps
between the provider-neutral Turn list and the vendor's message array, plus a
``tools_to_wire(declarations)`` helper for function schemas. Declarations use
the neutral ``{"name", "description", "parameters"}`` shape.
"""

import json
import logging
import uuid

from .models import MODEL, USER, Part, ToolCall, ToolResponse, Turn

logger = logging.getLogger(__name__)


def new_call_id() -> str:
    return f"call_{uuid.uuid4().hex[:24]}"


def parse_arguments(raw) -> dict:
    """Decode a tool-call argument payload. Malformed JSON yields {}."""
    if isinstance(raw, dict):
        return raw
    if not raw:
        return {}
    try:
        value = json.loads(raw)
    except json.JSONDecodeError:
        logger.warning("discarding malformed tool arguments: %.200s", raw)
        return {}
    return value if isinstance(value, dict) else {}


# ---------------------------------------------------------------------------
# OpenAI-compatible chat completions (openai, deepseek, openrouter, lmstudio)
# ---------------------------------------------------------------------------


def openai_to_wire(turns: list[Turn], system: str | None = None) -> list[dict]:
    messages: list[dict] = []
    if system:
        messages.append({"role": "system", "content": system})
    for turn in turns:
        texts = [p.text for p in turn.parts if p.is_text]
        if turn.role == USER:
            for p in turn.parts:
                if p.tool_result is not None:
                    messages.append(
                        {
                            "role": "tool",
                            "tool_call_id": p.tool_result.call_id,
                            "content": p.tool_result.output,
                        }
                    )
            if texts:
                messages.append({"role": "user", "content": "".join(texts)})
            continue

        msg: dict = {"role": "assistant", "content": "".join(texts) if texts else None}
        calls = turn.tool_calls()
        if calls:
            msg["tool_calls"] = [
                {
                    "id": c.id,
                    "type": "function",
                    "function": {
                        "name": c.name,
                        "arguments": json.dumps(c.arguments),
                    },
                }
                for c in calls
            ]
        messages.append(msg)
    return messages


def openai_from_wire(messages: list[dict]) -> list[Turn]:
    turns: list[Turn] = []
    call_names: dict[str, str] = {}
    for msg in messages:
        role = msg.get("role")
        if role == "system":
            continue
        if role == "assistant":
            parts: list[Part] = []
            if msg.get("content") is not None:
                parts.append(Part(text=msg["content"]))
            for tc in msg.get("tool_calls") or []:
                fn = tc.get("function", {})
                call = ToolCall(
                    id=tc.get("id") or new_call_id(),
                    name=fn.get("name", ""),
                    arguments=parse_arguments(fn.get("arguments")),
                )
                call_names[call.id] = call.name
                parts.append(Part(tool_call=call))
            turns.append(Turn(MODEL, parts))
        elif role == "tool":
            call_id = msg.get("tool_call_id", "")
            part = Part(
                tool_result=ToolResponse(
                    call_id=call_id,
                    name=call_names.get(call_id, ""),
                    output=msg.get("content") or "",
                )
            )
            # Consecutive tool messages answer one assistant turn.
            if turns and turns[-1].is_function_response():
                turns[-1].parts.append(part)
            else:
                turns.append(Turn(USER, [part]))
        else:
            turns.append(Turn(USER, [Part(text=msg.get("content") or "")]))
    return turns


def openai_tools_to_wire(declarations: list[dict]) -> list[dict]:
    return [{"type": "function", "function": d} for d in declarations]


# ---------------------------------------------------------------------------
# Anthropic messages
# ---------------------------------------------------------------------------


def anthropic_to_wire(turns: list[Turn]) -> list[dict]:
    """System instructions travel in the top-level ``system`` field instead."""
    messages: list[dict] = []
    for turn in turns:
        blocks: list[dict] = []
        for p in turn.parts:
            if p.is_text and p.text:
                blocks.append({"type": "text", "text": p.text})
            elif p.tool_call is not None:
                blocks.append(
                    {
                        "type": "tool_use",
                        "id": p.tool_call.id,
                        "name": p.tool_call.name,
                        "input": p.tool_call.arguments,
                    }
                )
            elif p.tool_result is not None:
                block = {
                    "type": "tool_result",
                    "tool_use_id": p.tool_result.call_id,
                    "content": p.tool_result.output,
                }
                if p.tool_result.is_error:
                    block["is_error"] = True
                blocks.append(block)
        # The API rejects empty content arrays.
        if not blocks:
            continue
        role = "assistant" if turn.role == MODEL else "user"
        messages.append({"role": role, "content": blocks})
    return messages


def anthropic_from_wire(messages: list[dict]) -> list[Turn]:
    turns: list[Turn] = []
    call_names: dict[str, str] = {}
    for msg in messages:
        role = MODEL if msg.get("role") == "assistant" else USER
        content = msg.get("content")
        if isinstance(content, str):
            turns.append(Turn(role, [Part(text=content)]))
            continue
        parts: list[Part] = []
        for block in content or []:
            kind = block.get("type")
            if kind == "text":
                parts.append(Part(text=block.get("text", "")))
            elif kind == "thinking":
                parts.append(Part(text=block.get("thinking", ""), thought=True))
            elif kind == "tool_use":
                call = ToolCall(
                    id=block.get("id") or new_call_id(),
                    name=block.get("name", ""),
                    arguments=block.get("input") or {},
                )
                call_names[call.id] = call.name
                parts.append(Part(tool_call=call))
            elif kind == "tool_result":
                raw = block.get("content", "")
                if isinstance(raw, list):
                    raw = "".join(b.get("text", "") for b in raw)
                call_id = block.get("tool_use_id", "")
                parts.append(
                    Part(
                        tool_result=ToolResponse(
                            call_id=call_id,
                            name=call_names.get(call_id, ""),
                            output=raw,
                            is_error=bool(block.get("is_error")),
                        )
                    )
                )
        turns.append(Turn(role, parts))
    return turns


def anthropic_tools_to_wire(declarations: list[dict]) -> list[dict]:
    return [
        {
            "name": d["name"],
            "description": d.get("description", ""),
            "input_schema": d.get("parameters") or {"type": "object", "properties": {}},
        }
        for d in declarations
    ]


# ---------------------------------------------------------------------------
# Gemini generateContent
# ---------------------------------------------------------------------------


def gemini_to_wire(turns: list[Turn]) -> list[dict]:
    contents: list[dict] = []
    for turn in turns:
        parts: list[dict] = []
        for p in turn.parts:
            if p.tool_call is not None:
                parts.append(
                    {
                        "functionCall": {
                            "id": p.tool_call.id,
                            "name": p.tool_call.name,
                            "args": p.tool_call.arguments,
                        }
                    }
                )
            elif p.tool_result is not None:
                key = "error" if p.tool_result.is_error else "output"
                parts.append(
                    {
                        "functionResponse": {
                            "id": p.tool_result.call_id,
                            "name": p.tool_result.name,
                            "response": {key: p.tool_result.output},
                        }
                    }
                )
            elif p.text is not None:
                part: dict = {"text": p.text}
                if p.thought:
                    part["thought"] = True
                parts.append(part)
        contents.append({"role": turn.role, "parts": parts})
    return contents


def gemini_from_wire(contents: list[dict]) -> list[Turn]:
    turns: list[Turn] = []
    # Gemini may omit ids; pair responses to calls by name, oldest first.
    unanswered: dict[str, list[str]] = {}
    for content in contents:
        role = MODEL if content.get("role") == MODEL else USER
        parts: list[Part] = []
        for raw in content.get("parts") or []:
            if "functionCall" in raw:
                fc = raw["functionCall"]
                call = ToolCall(
                    id=fc.get("id") or new_call_id(),
                    name=fc.get("name", ""),
                    arguments=fc.get("args") or {},
                )
                unanswered.setdefault(call.name, []).append(call.id)
                parts.append(Part(tool_call=call))
            elif "functionResponse" in raw:
                fr = raw["functionResponse"]
                name = fr.get("name", "")
                pending = unanswered.get(name) or []
                call_id = fr.get("id") or (pending[0] if pending else new_call_id())
                if call_id in pending:
                    pending.remove(call_id)
                response = fr.get("response") or {}
                is_error = "error" in response and "output" not in response
                output = response.get("error" if is_error else "output")
                if output is None:
                    output = json.dumps(response)
                parts.append(
                    Part(
                        tool_result=ToolResponse(
                            call_id=call_id,
                            name=name,
                            output=output if isinstance(output, str) else json.dumps(output),
                            is_error=is_error,
                        )
                    )
                )
            elif "text" in raw:
                parts.append(Part(text=raw["text"], thought=bool(raw.get("thought"))))
        turns.append(Turn(role, parts))
    return turns


def gemini_tools_to_wire(declarations: list[dict]) -> list[dict]:
    if not declarations:
        return []
    return [{"functionDeclarations": list(declarations)}]


# ---------------------------------------------------------------------------
# DashScope text generation (text only)
# ---------------------------------------------------------------------------


def dashscope_to_wire(turns: list[Turn], system: str | None = None) -> list[dict]:
    """Tool traffic is not representable; turns without text are dropped."""
    messages: list[dict] = []
    if system:
        messages.append({"role": "system", "content": system})
    for turn in turns:
        text = " ".join(p.text for p in turn.parts if p.is_text and p.text).strip()
        if not text:
            continue
        role = "assistant" if turn.role == MODEL else "user"
        messages.append({"role": role, "content": text})
    return messages


def dashscope_from_wire(messages: list[dict]) -> list[Turn]:
    return [
        Turn(MODEL if m["role"] == "assistant" else USER, [Part(text=m["content"])])
        for m in messages
        if m.get("role") != "system"
    ]
