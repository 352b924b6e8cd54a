"""Exception taxonomy for payment status checks.

Collaborator failures are split into transient (retried by the caller's
retry policy) and permanent (recorded immediately). Neither ever aborts
sibling work; they are turned into recorded failures by the engine.
"""
from __future__ import annotations

from typing import Optional


class PaymentCheckError(Exception):
    """Base class for all payment check errors."""


class TransientError(PaymentCheckError):
    """Retryable collaborator failure (5xx, timeouts, connection resets)."""


class RetryExhaustedError(TransientError):
    """A transient failure that outlived its retry budget."""

    def __init__(self, operation: str, attempts: int, last_error: Optional[BaseException] = None):
        self.operation = operation
        self.attempts = attempts
        self.last_error = last_error
        detail = f": {last_error}" if last_error is not None else ""
        super().__init__(f"{operation} failed after {attempts} attempt(s){detail}")


class PermanentError(PaymentCheckError):
    """Non-retryable collaborator failure."""


class NotFoundError(PermanentError):
    """The payment (or its gateway) is unknown to the search index."""

    def __init__(self, payment_id: str, message: Optional[str] = None):
        self.payment_id = payment_id
        super().__init__(message or f"Payment not found: {payment_id}")


class ConfigurationError(PaymentCheckError):
    """Malformed run or service configuration."""


class InvalidRequestError(PaymentCheckError):
    """A run was requested with unusable input."""


class RunNotFoundError(PaymentCheckError):
    def __init__(self, run_id: str):
        self.run_id = run_id
        super().__init__(f"Run not found: {run_id}")


__all__ = [
    "PaymentCheckError",
    "TransientError",
    "RetryExhaustedError",
    "PermanentError",
    "NotFoundError",
    "ConfigurationError",
    "InvalidRequestError",
    "RunNotFoundError",
]
