"""switchboard: one conversation loop over many LLM providers."""

from .report import AgentError, ConfigError, FatalSessionError, ProviderError
from .session import Result, Session

__all__ = [
    "AgentError",
    "ConfigError",
    "FatalSessionError",
    "ProviderError",
    "Result",
    "Session",
]
