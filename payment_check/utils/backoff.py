"""Exponential backoff helpers with jitter."""
from __future__ import annotations

import random
from typing import Optional

from payment_check.config import RETRY_POLICY


def compute_backoff_seconds(attempt: int, *, base: Optional[float] = None, factor: Optional[float] = None, max_seconds: Optional[float] = None, jitter_pct: Optional[float] = None) -> float:
    """Compute exponential backoff delay with jitter.

    `attempt` is the 1-based number of the attempt that just failed; unset
    parameters fall back to the lookup retry policy.
    """
    defaults = RETRY_POLICY["lookup"]
    if attempt < 1:
        attempt = 1
    base = float(base if base is not None else defaults["initial_seconds"])
    factor = float(factor if factor is not None else defaults["multiplier"])
    max_seconds = float(max_seconds if max_seconds is not None else defaults["max_seconds"])
    jitter_pct = float(jitter_pct if jitter_pct is not None else defaults["jitter_pct"])

    delay = base * (factor ** (attempt - 1))
    delay = min(delay, max_seconds)
    if jitter_pct > 0:
        jitter_amount = delay * jitter_pct
        delay = random.uniform(delay - jitter_amount, delay + jitter_amount)
    return max(delay, 0.0)


__all__ = ["compute_backoff_seconds"]
