"""Token estimates and per-model context limits."""

import json

import tiktoken

from .models import Turn

_encoder = tiktoken.get_encoding("cl100k_base")

DEFAULT_TOKEN_LIMIT = 1_048_576

# Longest prefix wins.
_TOKEN_LIMITS: dict[str, int] = {
    "gemini-1.5-pro": 2_097_152,
    "gemini-1.5-flash": 1_048_576,
    "gemini-2.0-flash": 1_048_576,
    "gemini-2.5-pro": 1_048_576,
    "gemini-2.5-flash": 1_048_576,
    "gemini-pro": 32_760,
    "claude": 200_000,
    "gpt-4o": 128_000,
    "gpt-4-turbo": 128_000,
    "gpt-4.1": 1_047_576,
    "gpt-4": 8_192,
    "gpt-3.5-turbo": 16_385,
    "o1": 200_000,
    "o3": 200_000,
    "o4": 200_000,
    "deepseek": 65_536,
    "qwen-long": 10_000_000,
    "qwen-turbo": 1_000_000,
    "qwen": 131_072,
}


def token_limit(model: str) -> int:
    """Context window size for ``model``, by longest matching prefix."""
    name = model.rsplit("/", 1)[-1].lower()
    best = None
    for prefix in _TOKEN_LIMITS:
        if name.startswith(prefix) and (best is None or len(prefix) > len(best)):
            best = prefix
    return _TOKEN_LIMITS[best] if best else DEFAULT_TOKEN_LIMIT


def count_text(text: str) -> int:
    return len(_encoder.encode(text))


def estimate_tokens(turns: list[Turn], system: str | None = None) -> int:
    """Count tokens across all turns using tiktoken."""
    total = 0
    for turn in turns:
        for part in turn.parts:
            if part.text:
                total += count_text(part.text)
            elif part.tool_call is not None:
                total += count_text(
                    part.tool_call.name + json.dumps(part.tool_call.arguments)
                )
            elif part.tool_result is not None:
                total += count_text(part.tool_result.output)
    if system:
        total += count_text(system)
    # Per-turn overhead (role, separators), ~4 tokens each
    total += 4 * len(turns)
    return total
