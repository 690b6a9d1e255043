"""Exponential backoff around provider calls, with a quota-driven model fallback."""

import asyncio
import logging
import random
import re
from typing import Awaitable, Callable, TypeVar

import httpx

logger = logging.getLogger(__name__)

T = TypeVar("T")

OAUTH_PERSONAL = "oauth-personal"
DEFAULT_FALLBACK_MODEL = "gemini-2.5-flash"

DEFAULT_MAX_ATTEMPTS = 5
DEFAULT_INITIAL_DELAY = 5.0
DEFAULT_MAX_DELAY = 30.0
JITTER = 0.3

_RATE_LIMIT_RE = re.compile(r"\b429\b|rate.?limit|quota|resource.?exhausted", re.I)
_SERVER_ERROR_RE = re.compile(r"\b5\d{2}\b|overloaded|service unavailable", re.I)


def status_of(error: BaseException) -> int | None:
    """HTTP status carried by an error, if any (ours, httpx's or litellm's)."""
    status = getattr(error, "status_code", None)
    if isinstance(status, int):
        return status
    response = getattr(error, "response", None)
    status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _litellm_error(error: BaseException, *names: str) -> bool:
    """True when ``error`` or its cause is one of litellm's typed exceptions."""
    import litellm

    types = tuple(getattr(litellm, name) for name in names)
    return isinstance(error, types) or isinstance(error.__cause__, types)


def is_rate_limit_error(error: BaseException) -> bool:
    if _litellm_error(error, "RateLimitError"):
        return True
    status = status_of(error)
    if status is not None:
        return status == 429
    return bool(_RATE_LIMIT_RE.search(str(error)))


def is_transient_error(error: BaseException) -> bool:
    """Rate-limit or server-class failure. Providers disagree on typed errors,
    so fall back to inspecting the message when no status is attached."""
    if _litellm_error(
        error, "RateLimitError", "ServiceUnavailableError", "InternalServerError"
    ):
        return True
    status = status_of(error)
    if status is not None:
        return status == 429 or 500 <= status < 600
    if isinstance(error.__cause__, httpx.TransportError):
        return True
    message = str(error)
    return bool(_RATE_LIMIT_RE.search(message) or _SERVER_ERROR_RE.search(message))


def backoff_delay(attempt: int, initial_delay: float, max_delay: float) -> float:
    """Delay before retry number ``attempt`` (1-based), jittered by +/-30%."""
    base = min(max_delay, initial_delay * (2 ** (attempt - 1)))
    return max(0.0, base + base * JITTER * random.uniform(-1, 1))


async def retry_with_backoff(
    fn: Callable[[], Awaitable[T]],
    *,
    max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    initial_delay: float = DEFAULT_INITIAL_DELAY,
    max_delay: float = DEFAULT_MAX_DELAY,
    should_retry: Callable[[BaseException], bool] = is_transient_error,
    on_persistent_429: Callable[[str | None, BaseException], Awaitable[str | None]]
    | None = None,
    auth_type: str | None = None,
    on_retry: Callable[[int, float, BaseException], None] | None = None,
) -> T:
    """Run ``fn`` until it succeeds, a non-retryable error occurs, or the
    attempt cap is reached.

    A rate-limit error that survives every attempt is offered to
    ``on_persistent_429`` when ``auth_type`` is the personal OAuth mode. If it
    returns a model id, the attempt counter resets and ``fn`` runs again;
    ``fn`` must read the active model itself so the stale request is not
    replayed. Otherwise the original error is raised.
    """
    if max_attempts < 1:
        raise ValueError("max_attempts must be at least 1")

    attempt = 0
    while True:
        attempt += 1
        try:
            return await fn()
        except Exception as error:
            if not should_retry(error):
                raise
            err = error

        if attempt >= max_attempts:
            if (
                on_persistent_429 is not None
                and auth_type == OAUTH_PERSONAL
                and is_rate_limit_error(err)
            ):
                fallback = await on_persistent_429(auth_type, err)
                if fallback:
                    logger.warning(
                        "rate limited after %d attempts, switched to %s",
                        attempt,
                        fallback,
                    )
                    attempt = 0
                    continue
            raise err

        delay = getattr(err, "retry_after", None)
        if delay is None:
            delay = backoff_delay(attempt, initial_delay, max_delay)
        logger.warning(
            "attempt %d/%d failed (%s), retrying in %.1fs",
            attempt,
            max_attempts,
            err,
            delay,
        )
        if on_retry is not None:
            on_retry(attempt, delay, err)
        await asyncio.sleep(delay)
