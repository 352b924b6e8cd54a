"""Retry wrapper applied to every collaborator call.

Each attempt is bounded by the policy's per-attempt timeout. Transient
failures (including timeouts) are retried with capped exponential backoff;
permanent failures surface immediately. Once the budget is spent, or the
run is cancelled between attempts, the caller gets a `RetryExhaustedError`
carrying the attempt count and last error.
"""
from __future__ import annotations

import asyncio
import threading
from typing import Any, Awaitable, Callable, Optional, TypeVar

from payment_check.exceptions import PermanentError, RetryExhaustedError, TransientError
from payment_check.services.run_config import RetryPolicy
from payment_check.utils import get_logger
from payment_check.utils.backoff import compute_backoff_seconds

logger = get_logger(__name__)

T = TypeVar("T")

Sleep = Callable[[float], Awaitable[Any]]


def _abandon(
    cancel_event: Optional[threading.Event],
    operation: str,
    attempts: int,
    last_error: BaseException | None,
    log_context: dict[str, Any],
) -> bool:
    if cancel_event is None or not cancel_event.is_set():
        return False
    logger.info(
        "Collaborator call retry abandoned, run cancelled",
        operation=operation,
        attempt=attempts,
        error=str(last_error),
        **log_context,
    )
    return True


async def call_with_retry(
    operation: str,
    func: Callable[..., Awaitable[T]],
    *args: Any,
    policy: RetryPolicy,
    sleep: Sleep = asyncio.sleep,
    cancel_event: Optional[threading.Event] = None,
    **log_context: Any,
) -> T:
    attempts = 0
    last_error: BaseException | None = None

    while attempts < policy.max_attempts:
        attempts += 1
        try:
            return await asyncio.wait_for(func(*args), timeout=policy.attempt_timeout_seconds)
        except PermanentError:
            raise
        except asyncio.TimeoutError:
            last_error = TransientError(
                f"{operation} timed out after {policy.attempt_timeout_seconds}s"
            )
        except TransientError as e:
            last_error = e

        if attempts >= policy.max_attempts:
            break
        if _abandon(cancel_event, operation, attempts, last_error, log_context):
            break
        backoff = compute_backoff_seconds(
            attempts,
            base=policy.initial_backoff_seconds,
            factor=policy.backoff_multiplier,
            max_seconds=policy.max_backoff_seconds,
            jitter_pct=policy.jitter_pct,
        )
        logger.warning(
            "Collaborator call retry scheduled",
            operation=operation,
            attempt=attempts,
            backoff_seconds=round(backoff, 2),
            error=str(last_error),
            **log_context,
        )
        await sleep(backoff)
        if _abandon(cancel_event, operation, attempts, last_error, log_context):
            break

    raise RetryExhaustedError(operation, attempts, last_error)


__all__ = ["call_with_retry"]
