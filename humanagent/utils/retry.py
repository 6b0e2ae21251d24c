"""Generic *async* retry decorator with exponential back-off + jitter.

Call-sites stay concise while the policy (max attempts, back-off, metrics,
logging) lives in one place::

    @async_retry(provider="openai", retriable=is_retryable_http_exc)
    async def _call(...):
        ...
"""

from __future__ import annotations

import asyncio
import functools
import random
from typing import Awaitable
from typing import Callable
from typing import ParamSpec
from typing import TypeVar

from humanagent.config import get_settings
from humanagent.metrics import external_api_retry_total
from humanagent.utils.log import get_logger

log = get_logger(component="retry")

_T = TypeVar("_T")
_P = ParamSpec("_P")


def _default_retriable(exc: Exception) -> bool:  # noqa: D401 – small helper
    """Retry **everything** by default (caller can override)."""

    return True


def async_retry(
    *,
    max_attempts: int = 5,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    jitter: float = 0.25,
    retriable: Callable[[Exception], bool] | None = None,
    provider: str | None = None,  # Metric label only – optional
) -> Callable[[Callable[_P, Awaitable[_T]]], Callable[_P, Awaitable[_T]]]:
    """Decorate an *async* function so it is executed with retry semantics.

    Parameters
    ----------
    max_attempts:
        Inclusive – the *first* try counts. ``max_attempts=1`` disables retry.
    base_delay:
        Initial sleep in seconds (doubles on every retry).
    max_delay:
        Upper bound for back-off sleep.
    jitter:
        0-1.0 – percentage of random noise added/subtracted from delay.
    retriable:
        Callback deciding if *exc* is worth another attempt. Defaults to
        retrying **all** exceptions.
    provider:
        Optional string used for metrics label (e.g. "openai", "anthropic").
    """

    # Shrink retry delays when running inside the test harness.
    if get_settings().testing:
        base_delay = min(base_delay, 0.01)
        max_delay = min(max_delay, 0.05)

    retriable = retriable or _default_retriable

    def decorator(fn: Callable[_P, Awaitable[_T]]) -> Callable[_P, Awaitable[_T]]:
        @functools.wraps(fn)
        async def wrapper(*args: _P.args, **kwargs: _P.kwargs) -> _T:
            attempt = 1
            delay = base_delay

            while True:
                try:
                    return await fn(*args, **kwargs)
                except Exception as exc:
                    if attempt >= max_attempts or not retriable(exc):
                        log.warning(
                            "retry-exhausted",
                            provider=provider or fn.__module__,
                            function=fn.__name__,
                            attempts=attempt,
                            error=type(exc).__name__,
                        )
                        raise

                    sleep_for = delay * (1 + random.uniform(-jitter, jitter))
                    log.debug(
                        "retry",
                        provider=provider or fn.__module__,
                        function=fn.__name__,
                        attempt=attempt,
                        max_attempts=max_attempts,
                        sleep=sleep_for,
                    )
                    external_api_retry_total.labels(provider or fn.__module__, fn.__name__).inc()

                    await asyncio.sleep(sleep_for)

                    attempt += 1
                    delay = min(delay * 2, max_delay)

        return wrapper

    return decorator


# ---------------------------------------------------------------------------
#   Helpers for common HTTP status handling
# ---------------------------------------------------------------------------


def is_retryable_http_exc(exc: Exception) -> bool:  # noqa: D401 – helper
    """Return *True* if exception indicates a transient HTTP failure.

    Expects provider SDK errors to expose a ``status_code`` attribute akin to
    ``httpx.HTTPStatusError`` / ``openai.APIStatusError``.
    """

    status = getattr(exc, "status_code", None)
    if status is None:
        return True  # Network / parsing error → retry

    return status in {408, 429, 500, 502, 503, 504}


__all__ = [
    "async_retry",
    "is_retryable_http_exc",
]
