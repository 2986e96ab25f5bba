from __future__ import annotations

import logging
from functools import wraps
from typing import Any, Callable, Coroutine, ParamSpec, TypeVar

from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
)

from .exceptions import TransientError
from .logging_utils import log_event

P = ParamSpec("P")
T = TypeVar("T")

logger = logging.getLogger(__name__)


def _log_retry(operation: str) -> Callable[[RetryCallState], None]:
    def before_sleep(state: RetryCallState) -> None:
        outcome = state.outcome
        log_event(
            logger,
            logging.WARNING,
            "retry.transient",
            operation=operation,
            attempt=state.attempt_number,
            sleep_seconds=state.next_action.sleep if state.next_action else None,
            exc=outcome.exception() if outcome is not None else None,
        )

    return before_sleep


def retry_transient(
    max_attempts: int = 3,
    base_wait: float = 0.05,
    max_wait: float = 1.0,
    retry_on: tuple[type[BaseException], ...] = (TransientError,),
) -> Callable[[Callable[P, Coroutine[Any, Any, T]]], Callable[P, Coroutine[Any, Any, T]]]:
    """
    Retry an async call that failed with a transient error.

    Session backends wrap their I/O in this decorator. A sqlite store that
    finds the database locked by another writer raises
    ``SessionBackendTransientError``; the call is re-run with a short
    exponential backoff, so a dispatch only sees the error when the lock
    outlives every attempt. The defaults are sized for a store sitting on
    the update path: a few attempts well under a second in total.

    Args:
        max_attempts: Total attempts including the first call (default: 3)
        base_wait: Backoff multiplier in seconds (default: 0.05)
        max_wait: Cap on a single backoff sleep in seconds (default: 1.0)
        retry_on: Exception types that earn another attempt

    Each retry is logged as a ``retry.transient`` event. Once attempts run
    out the last exception propagates unchanged.
    """

    def decorator(
        func: Callable[P, Coroutine[Any, Any, T]],
    ) -> Callable[P, Coroutine[Any, Any, T]]:
        before_sleep = _log_retry(func.__qualname__)

        @wraps(func)
        async def wrapper(*args: P.args, **kwargs: P.kwargs) -> T:
            retrying = AsyncRetrying(
                stop=stop_after_attempt(max_attempts),
                wait=wait_exponential(multiplier=base_wait, max=max_wait),
                retry=retry_if_exception_type(retry_on),
                before_sleep=before_sleep,
                reraise=True,
            )
            return await retrying(func, *args, **kwargs)

        return wrapper

    return decorator
