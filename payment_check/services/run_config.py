"""Immutable per-run configuration.

A `RunConfig` is built once (from `payment_check.config` defaults plus any
request overrides), validated, persisted with the run and passed down to the
supervisor. Nothing in the engine reads process-wide settings directly.
"""
from __future__ import annotations

from dataclasses import asdict, dataclass, field, replace
from typing import Any, Mapping, Optional

from payment_check.config import PAYMENT_CHECK_SETTINGS, RETRY_POLICY
from payment_check.exceptions import ConfigurationError


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    initial_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 10.0
    attempt_timeout_seconds: float = 30.0
    jitter_pct: float = 0.0

    def validate(self, name: str = "retry") -> None:
        if self.max_attempts < 1:
            raise ConfigurationError(f"{name}.max_attempts must be >= 1 (got {self.max_attempts})")
        if self.initial_backoff_seconds < 0:
            raise ConfigurationError(f"{name}.initial_backoff_seconds must be >= 0")
        if self.backoff_multiplier < 1:
            raise ConfigurationError(f"{name}.backoff_multiplier must be >= 1")
        if self.max_backoff_seconds < self.initial_backoff_seconds:
            raise ConfigurationError(f"{name}.max_backoff_seconds must be >= initial_backoff_seconds")
        if self.attempt_timeout_seconds <= 0:
            raise ConfigurationError(f"{name}.attempt_timeout_seconds must be > 0")
        if not 0 <= self.jitter_pct < 1:
            raise ConfigurationError(f"{name}.jitter_pct must be in [0, 1)")

    @classmethod
    def from_settings(cls, settings: Mapping[str, int | float]) -> "RetryPolicy":
        return cls(
            max_attempts=int(settings["max_attempts"]),
            initial_backoff_seconds=float(settings["initial_seconds"]),
            backoff_multiplier=float(settings["multiplier"]),
            max_backoff_seconds=float(settings["max_seconds"]),
            attempt_timeout_seconds=float(settings["timeout_seconds"]),
            jitter_pct=float(settings.get("jitter_pct", 0.0)),
        )


@dataclass(frozen=True)
class RunConfig:
    max_parallel_lookups: int = 10
    max_payments_per_chunk: int = 5
    lookup_retry: RetryPolicy = field(default_factory=RetryPolicy)
    notify_retry: RetryPolicy = field(default_factory=RetryPolicy)
    trigger_retry: RetryPolicy = field(default_factory=RetryPolicy)
    run_deadline_seconds: Optional[float] = None
    abort_on_deadline: bool = False

    def validate(self) -> "RunConfig":
        if self.max_parallel_lookups < 1:
            raise ConfigurationError(
                f"max_parallel_lookups must be >= 1 (got {self.max_parallel_lookups})"
            )
        if self.max_payments_per_chunk < 1:
            raise ConfigurationError(
                f"max_payments_per_chunk must be >= 1 (got {self.max_payments_per_chunk})"
            )
        if self.run_deadline_seconds is not None and self.run_deadline_seconds <= 0:
            raise ConfigurationError("run_deadline_seconds must be > 0 when set")
        self.lookup_retry.validate("lookup_retry")
        self.notify_retry.validate("notify_retry")
        self.trigger_retry.validate("trigger_retry")
        return self

    def with_overrides(self, **overrides: Any) -> "RunConfig":
        """Return a validated copy with the non-None overrides applied."""
        changes = {k: v for k, v in overrides.items() if v is not None}
        return replace(self, **changes).validate()

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "RunConfig":
        return cls(
            max_parallel_lookups=int(data.get("max_parallel_lookups", 10)),
            max_payments_per_chunk=int(data.get("max_payments_per_chunk", 5)),
            lookup_retry=RetryPolicy(**(data.get("lookup_retry") or {})),
            notify_retry=RetryPolicy(**(data.get("notify_retry") or {})),
            trigger_retry=RetryPolicy(**(data.get("trigger_retry") or {})),
            run_deadline_seconds=data.get("run_deadline_seconds"),
            abort_on_deadline=bool(data.get("abort_on_deadline", False)),
        )


def default_run_config() -> RunConfig:
    """Build and validate the service-wide default from `payment_check.config`.

    Raises `ConfigurationError` on malformed settings; the application calls
    this during startup so a bad deployment never accepts a run.
    """
    deadline = PAYMENT_CHECK_SETTINGS.get("run_deadline_seconds")
    return RunConfig(
        max_parallel_lookups=int(PAYMENT_CHECK_SETTINGS["max_parallel_lookups"]),  # type: ignore[arg-type]
        max_payments_per_chunk=int(PAYMENT_CHECK_SETTINGS["max_payments_per_chunk"]),  # type: ignore[arg-type]
        lookup_retry=RetryPolicy.from_settings(RETRY_POLICY["lookup"]),
        notify_retry=RetryPolicy.from_settings(RETRY_POLICY["batch_notify"]),
        trigger_retry=RetryPolicy.from_settings(RETRY_POLICY["item_trigger"]),
        run_deadline_seconds=float(deadline) if deadline else None,
        abort_on_deadline=bool(PAYMENT_CHECK_SETTINGS.get("abort_on_deadline", False)),
    ).validate()


__all__ = ["RetryPolicy", "RunConfig", "default_run_config"]
