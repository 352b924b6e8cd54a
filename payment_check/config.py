"""Core application configuration & tunable orchestration rules.

All values that may evolve (concurrency bounds, chunk sizing, retry policies,
external service locations, queue behaviour) are centralized here so they can
be adjusted without diving into service logic. Values are read from the
environment once at import; per-run configuration is built from them by
`payment_check.services.run_config.default_run_config()` and validated at
startup.
"""
from __future__ import annotations

import os


def _env_float(name: str, default: float) -> float:
	return float(os.getenv(name, str(default)))


def _env_int(name: str, default: int) -> int:
	return int(os.getenv(name, str(default)))


def _env_bool(name: str, default: bool) -> bool:
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


_seed_env = os.getenv("INTEGRATIONS_RANDOM_SEED")
INTEGRATIONS_RANDOM_SEED: int | None = int(_seed_env) if _seed_env and _seed_env.strip() else None

# Simulated collaborators stand in for the search index / notify facade /
# status gateway when the real services are not reachable (local dev, demos).
USE_SIMULATED_GATEWAYS: bool = _env_bool("USE_SIMULATED_GATEWAYS", False)

# Probability of a simulated transient failure per call
MOCK_FAILURE_RATE: float = _env_float("MOCK_FAILURE_RATE", 0.1)

# --------------------------- Payment Status Check --------------------------- #
PAYMENT_CHECK_SETTINGS: dict[str, int | float | bool | None] = {
	# Lookups in flight at once (one wave = this many concurrent lookups)
	"max_parallel_lookups": _env_int("MAX_PARALLEL_LOOKUPS", 10),
	# Payments per chunk sent to a single gateway
	"max_payments_per_chunk": _env_int("MAX_PAYMENTS_PER_CHUNK", 5),
	# Advisory run deadline; None disables it
	"run_deadline_seconds": (
		_env_float("RUN_DEADLINE_SECONDS", 0) if os.getenv("RUN_DEADLINE_SECONDS") else None
	),
	# Turn the advisory deadline into a cancellation
	"abort_on_deadline": _env_bool("ABORT_ON_DEADLINE", False),
}

# ------------------------------- Retry Policy ----------------------------- #
# One policy per collaborator capability. Backoff grows by `multiplier` from
# `initial_seconds` and is capped at `max_seconds`; each attempt is bounded by
# `timeout_seconds`.
RETRY_POLICY: dict[str, dict[str, int | float]] = {
	"lookup": {
		"max_attempts": _env_int("LOOKUP_MAX_ATTEMPTS", 3),
		"initial_seconds": 1,
		"multiplier": 2.0,
		"max_seconds": 10,
		"timeout_seconds": _env_float("LOOKUP_TIMEOUT_SECONDS", 30),
		"jitter_pct": 0.10,
	},
	"batch_notify": {
		"max_attempts": _env_int("NOTIFY_MAX_ATTEMPTS", 3),
		"initial_seconds": 1,
		"multiplier": 2.0,
		"max_seconds": 10,
		"timeout_seconds": _env_float("NOTIFY_TIMEOUT_SECONDS", 30),
		"jitter_pct": 0.10,
	},
	"item_trigger": {
		"max_attempts": _env_int("TRIGGER_MAX_ATTEMPTS", 3),
		"initial_seconds": 1,
		"multiplier": 2.0,
		"max_seconds": 10,
		"timeout_seconds": _env_float("TRIGGER_TIMEOUT_SECONDS", 30),
		"jitter_pct": 0.10,
	},
}

# ---------------------------- External Services --------------------------- #
EXTERNAL_SERVICES: dict[str, dict[str, str]] = {
	"search_index": {
		"url": os.getenv("SEARCH_INDEX_URL", "http://localhost:9200"),
		"index": os.getenv("SEARCH_INDEX_NAME", "payments"),
	},
	"notify_facade": {
		"url": os.getenv("NOTIFY_FACADE_URL", "http://localhost:8080"),
	},
	"status_gateway": {
		"url": os.getenv("STATUS_GATEWAY_URL", "http://localhost:8080"),
	},
}

# --------------------------------- Queue ---------------------------------- #
QUEUE_SETTINGS: dict[str, dict[str, int] | int | float | str | bool] = {
	"priorities": {  # Lower number = higher priority
		"high": 0,     # runs resumed after a restart
		"normal": 5,
		"low": 10,
	},
	"warn_depth": 1000,
	"max_in_memory": 5000,
	"use_redis": _env_bool("USE_REDIS_QUEUE", False),
	"redis_url": os.getenv("REDIS_URL", "redis://localhost:6379/0"),
	"redis_ready_key": "payment_check:ready_queue",
	"redis_scheduled_key": "payment_check:scheduled_jobs",
	"redis_health_check_timeout": 2.0,
	"worker_poll_timeout": 5.0,
	# Re-attempts of a run whose execution raised unexpectedly
	"max_run_attempts": _env_int("PAYMENT_CHECK_MAX_RUN_ATTEMPTS", 3),
	"run_retry_delay_seconds": _env_float("PAYMENT_CHECK_RUN_RETRY_DELAY", 30.0),
}

if INTEGRATIONS_RANDOM_SEED is not None:
	import random
	random.seed(INTEGRATIONS_RANDOM_SEED)

__all__ = [
	"INTEGRATIONS_RANDOM_SEED",
	"USE_SIMULATED_GATEWAYS",
	"MOCK_FAILURE_RATE",
	# Setting groups
	"PAYMENT_CHECK_SETTINGS",
	"RETRY_POLICY",
	"EXTERNAL_SERVICES",
	"QUEUE_SETTINGS",
]
