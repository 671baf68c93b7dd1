from __future__ import annotations

import logging
from typing import Any, Callable, TypeVar

from tenacity import RetryCallState, Retrying, retry_if_exception_type, retry_if_result, stop_after_attempt, wait_fixed

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _is_empty(result: Any) -> bool:
    # 0 and [] are valid answers (escrow days, empty inventory).
    if result is None or result is False:
        return True
    return isinstance(result, str) and not result.strip()


def _describe(state: RetryCallState) -> str:
    outcome = state.outcome
    if outcome is None:
        return "no outcome"
    if outcome.failed:
        exc = outcome.exception()
        return f"{type(exc).__name__}: {exc}"
    return "empty result"


def call_with_retry(
    func: Callable[..., T],
    *args: Any,
    attempts: int = 3,
    delay_seconds: float = 3.0,
    what: str | None = None,
    **kwargs: Any,
) -> T | None:
    """
    Call a remote operation, retrying on exceptions and empty results.

    Returns the first non-empty result, or None once `attempts` are exhausted.
    Exhaustion is logged here so call sites only decide what None means for them.
    """
    label = what or getattr(func, "__name__", "remote call")
    attempts = max(1, int(attempts))

    def _before_sleep(state: RetryCallState) -> None:
        logger.warning(
            "%s attempt %s/%s failed (%s); retrying in %.1fs",
            label,
            state.attempt_number,
            attempts,
            _describe(state),
            delay_seconds,
        )

    def _give_up(state: RetryCallState) -> None:
        logger.error("%s failed after %s attempt(s): %s", label, state.attempt_number, _describe(state))
        return None

    retrying = Retrying(
        stop=stop_after_attempt(attempts),
        wait=wait_fixed(delay_seconds),
        retry=retry_if_exception_type(Exception) | retry_if_result(_is_empty),
        before_sleep=_before_sleep,
        retry_error_callback=_give_up,
    )
    return retrying(func, *args, **kwargs)
