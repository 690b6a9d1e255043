"""Configuration file loading and merging for switchboard.

Reads TOML config from ~/.config/switchboard/config.toml (global) and
<base_dir>/switchboard.toml (project). Precedence: CLI > project > global > defaults.
"""

import argparse
import logging
import os
import sys
import tomllib
from pathlib import Path
from typing import Any, Awaitable, Callable

from .models import ProviderConfig
from .providers import PROVIDERS, ProviderAdapter, create_adapter, provider_for_model
from .report import ConfigError  # noqa: F401 (re-export)
from .retry import (
    DEFAULT_FALLBACK_MODEL,
    DEFAULT_INITIAL_DELAY,
    DEFAULT_MAX_ATTEMPTS,
    DEFAULT_MAX_DELAY,
)
from .tokens import token_limit

logger = logging.getLogger(__name__)

_UNSET = object()  # Sentinel for "not set by CLI"

COMPRESSION_TOKEN_THRESHOLD = 0.7
COMPRESSION_PRESERVE_THRESHOLD = 0.3
DEFAULT_TOOL_OUTPUT_BUDGET = 20_000


# --- Schema ---

CONFIG_KEYS: dict[str, type | tuple[type, ...]] = {
    "provider": str,
    "model": str,
    "api_key": str,
    "base_url": str,
    "proxy": str,
    "temperature": (int, float),
    "max_output_tokens": int,
    "max_context_tokens": int,
    "max_session_turns": int,
    "max_turns": int,
    "auth_type": str,
    "fallback_model": str,
    "compression_threshold": (int, float),
    "compression_preserve": (int, float),
    "max_attempts": int,
    "initial_delay": (int, float),
    "max_delay": (int, float),
    "tool_output_budget": int,
    "system_prompt": str,
    "yolo": bool,
    "color": bool,
    "quiet": bool,
}

_FRACTION_KEYS = ("compression_threshold", "compression_preserve")

# Argparse dest -> hardcoded default
_ARGPARSE_DEFAULTS: dict[str, Any] = {
    "provider": None,
    "model": None,
    "api_key": None,
    "base_url": None,
    "proxy": None,
    "temperature": None,
    "max_output_tokens": None,
    "max_context_tokens": None,
    "max_session_turns": -1,
    "max_turns": 100,
    "auth_type": None,
    "fallback_model": DEFAULT_FALLBACK_MODEL,
    "compression_threshold": COMPRESSION_TOKEN_THRESHOLD,
    "compression_preserve": COMPRESSION_PRESERVE_THRESHOLD,
    "max_attempts": DEFAULT_MAX_ATTEMPTS,
    "initial_delay": DEFAULT_INITIAL_DELAY,
    "max_delay": DEFAULT_MAX_DELAY,
    "tool_output_budget": DEFAULT_TOOL_OUTPUT_BUDGET,
    "system_prompt": None,
    "yolo": False,
    "color": False,
    "no_color": False,
    "quiet": False,
}


# --- Internal helpers ---


def global_config_dir() -> Path:
    """Return the global config directory, respecting XDG_CONFIG_HOME."""
    xdg = os.environ.get("XDG_CONFIG_HOME")
    if xdg:
        return Path(xdg) / "switchboard"
    return Path.home() / ".config" / "switchboard"


def _type_name(expected: type | tuple[type, ...]) -> str:
    if isinstance(expected, tuple):
        return " or ".join(t.__name__ for t in expected)
    return expected.__name__


def _validate_config(config: dict, source: str) -> None:
    """Validate types and ranges in a parsed config dict.

    Raises ConfigError for type mismatches or out-of-range values.
    Prints warnings for unknown keys.
    """
    for key, value in config.items():
        if key not in CONFIG_KEYS:
            print(f"warning: {source}: unknown config key {key!r}", file=sys.stderr)
            continue

        expected = CONFIG_KEYS[key]
        # bool is a subclass of int; reject bools for non-bool fields explicitly.
        if isinstance(value, bool) and expected is not bool:
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got bool"
            )
        if not isinstance(value, expected):
            raise ConfigError(
                f"{source}: {key!r} expected {_type_name(expected)}, got {type(value).__name__}"
            )

    if "provider" in config and config["provider"] not in PROVIDERS:
        raise ConfigError(
            f"{source}: unknown provider {config['provider']!r} "
            f"(expected one of {', '.join(PROVIDERS)})"
        )
    for key in _FRACTION_KEYS:
        if key in config and not 0 < config[key] < 1:
            raise ConfigError(f"{source}: {key!r} must be between 0 and 1")
    if "max_attempts" in config and config["max_attempts"] < 1:
        raise ConfigError(f"{source}: 'max_attempts' must be at least 1")


def _check_api_key_in_git(config: dict, config_path: Path) -> None:
    """Warn if api_key is set in a project config inside a git repo."""
    if "api_key" not in config:
        return
    parent = config_path.parent
    while parent != parent.parent:
        if (parent / ".git").exists():
            print(
                f"warning: {config_path}: 'api_key' in a git-tracked project config "
                f"may be committed accidentally. Consider using an environment variable.",
                file=sys.stderr,
            )
            return
        parent = parent.parent


def _load_single(path: Path, label: str) -> dict:
    """Load and validate a single TOML config file. Returns empty dict if missing."""
    if not path.is_file():
        return {}
    try:
        with open(path, "rb") as f:
            config = tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigError(f"{label}: invalid TOML: {e}") from e

    _validate_config(config, label)
    return {k: v for k, v in config.items() if k in CONFIG_KEYS}


# --- Public API ---


def load_config(base_dir: Path) -> dict:
    """Load and merge global + project config.

    Returns a flat dict with only the keys actually set in config files.
    """
    global_path = global_config_dir() / "config.toml"
    global_config = _load_single(global_path, str(global_path))

    project_path = Path(base_dir).resolve() / "switchboard.toml"
    project_config = _load_single(project_path, str(project_path))
    if project_config:
        _check_api_key_in_git(project_config, project_path)

    return {**global_config, **project_config}


def apply_config_to_args(args: argparse.Namespace, config: dict) -> None:
    """Apply config values to argparse namespace where CLI didn't set a value,
    then replace remaining _UNSET sentinels with the hardcoded defaults."""

    def _is_unset(dest: str) -> bool:
        return getattr(args, dest, _UNSET) is _UNSET

    # A single config key controls the mutually exclusive color pair.
    if "color" in config and _is_unset("color") and _is_unset("no_color"):
        args.color = config["color"]
        args.no_color = not config["color"]

    for key, value in config.items():
        if key == "color":
            continue
        if _is_unset(key):
            setattr(args, key, value)

    for dest, default in _ARGPARSE_DEFAULTS.items():
        if _is_unset(dest):
            setattr(args, dest, default)


def config_to_session_kwargs(config: dict) -> dict:
    """Convert a config dict to Session constructor kwargs.

    quiet -> verbose (inverted); color is a CLI concern and is dropped.
    """
    kwargs = {}
    for key, value in config.items():
        if key == "color":
            continue
        if key == "quiet":
            kwargs["verbose"] = not value
        else:
            kwargs[key] = value
    return kwargs


def generate_config(project: bool = False) -> str:
    """Return a commented-out template config string."""
    lines = [
        "# switchboard configuration file",
        f"# {'Project' if project else 'Global'} config: "
        f"{'<project>/switchboard.toml' if project else '~/.config/switchboard/config.toml'}",
        "#",
        "# CLI flags override these values. Only uncomment what you need.",
        "",
        "# --- Provider / model ---",
        f"# provider = \"gemini\"        # {' | '.join(PROVIDERS)}",
        '# model = "gemini-2.5-pro"',
        '# api_key = "..."             # prefer env vars; this is a fallback',
        '# base_url = "https://..."',
        '# proxy = "http://127.0.0.1:8080"',
        "",
        "# --- Generation parameters ---",
        "# temperature = 0.7",
        "# max_output_tokens = 8192",
        "# max_context_tokens = 131072  # overrides the built-in model limit table",
        "",
        "# --- Conversation ---",
        "# max_session_turns = -1        # -1 = unlimited",
        "# max_turns = 100               # tool/continuation rounds per message",
        "# compression_threshold = 0.7",
        "# compression_preserve = 0.3",
        "# tool_output_budget = 20000",
        '# system_prompt = "You are a helpful assistant."',
        "# yolo = false                  # run tools without confirmation",
        "",
        "# --- Retries and fallback ---",
        "# max_attempts = 5",
        "# initial_delay = 5.0",
        "# max_delay = 30.0",
        '# auth_type = "oauth-personal"  # enables quota fallback',
        f'# fallback_model = "{DEFAULT_FALLBACK_MODEL}"',
        "",
        "# --- UI ---",
        "# color = true       # true = force color, false = force no-color, absent = auto",
        "# quiet = false",
        "",
    ]
    return "\n".join(lines)


# --- Runtime configuration ---

FallbackHandler = Callable[[str, str, BaseException], Awaitable[bool]]


class AgentConfig:
    """Live settings for one conversation.

    The active model is the only mutable field; everything a provider binding
    needs is derived into an immutable ProviderConfig per model.
    """

    def __init__(
        self,
        *,
        model: str,
        provider: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        proxy: str | None = None,
        temperature: float | None = None,
        max_output_tokens: int | None = None,
        max_context_tokens: int | None = None,
        max_session_turns: int = -1,
        auth_type: str | None = None,
        fallback_model: str = DEFAULT_FALLBACK_MODEL,
        compression_threshold: float = COMPRESSION_TOKEN_THRESHOLD,
        compression_preserve: float = COMPRESSION_PRESERVE_THRESHOLD,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        initial_delay: float = DEFAULT_INITIAL_DELAY,
        max_delay: float = DEFAULT_MAX_DELAY,
        tool_output_budget: int | None = DEFAULT_TOOL_OUTPUT_BUDGET,
        fallback_handler: FallbackHandler | None = None,
    ):
        if not model:
            raise ConfigError("no model configured (use --model or set 'model')")
        if provider is not None and provider not in PROVIDERS:
            raise ConfigError(f"unknown provider {provider!r}")
        self._model = model
        self.initial_model = model
        self.provider = provider or provider_for_model(model)
        self.api_key = api_key
        self.base_url = base_url
        self.proxy = proxy
        self.temperature = temperature
        self.max_output_tokens = max_output_tokens
        self.max_context_tokens = max_context_tokens
        self.max_session_turns = max_session_turns
        self.auth_type = auth_type
        self.fallback_model = fallback_model
        self.compression_threshold = compression_threshold
        self.compression_preserve = compression_preserve
        self.max_attempts = max_attempts
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.tool_output_budget = tool_output_budget
        self.fallback_handler = fallback_handler

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        if model != self._model:
            logger.info("active model changed: %s -> %s", self._model, model)
        self._model = model

    def provider_for(self, model: str) -> str:
        """The configured provider serves the configured model; any other
        model (after a fallback) is routed by name."""
        if model == self.initial_model:
            return self.provider
        return provider_for_model(model)

    def provider_config(self, model: str) -> ProviderConfig:
        same_backend = self.provider_for(model) == self.provider
        return ProviderConfig(
            model=model,
            api_key=self.api_key if same_backend else None,
            base_url=self.base_url if same_backend else None,
            temperature=self.temperature,
            max_tokens=self.max_output_tokens,
        )

    def create_adapter(self, model: str) -> ProviderAdapter:
        return create_adapter(
            self.provider_for(model), self.provider_config(model), proxy=self.proxy
        )

    def token_limit(self, model: str) -> int:
        return self.max_context_tokens or token_limit(model)

    def retry_settings(self) -> dict:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "auth_type": self.auth_type,
        }
