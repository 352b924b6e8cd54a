"""Bounded-concurrency gateway lookup.

Payments are resolved in waves of `concurrency`: every lookup of a wave is
issued at once and the whole wave settles before the next one starts, so at
most `concurrency` lookups are ever in flight and the search index sees
bounded bursts. A failed lookup is recorded and never stops the stage.
"""
from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from typing import Optional, Sequence

from payment_check.exceptions import RetryExhaustedError
from payment_check.integrations.base import GatewayLookup
from payment_check.services.checkpoints import CheckpointStore
from payment_check.services.progress import ProgressTracker
from payment_check.services.retry import Sleep, call_with_retry
from payment_check.services.run_config import RetryPolicy
from payment_check.services.types import GatewayAssignment, GatewayName, PaymentId
from payment_check.utils import get_logger

logger = get_logger(__name__)

CANCELLED_LOOKUP_MESSAGE = "run cancelled before lookup"


@dataclass
class LookupOutcome:
    success_map: dict[PaymentId, GatewayName] = field(default_factory=dict)
    lookup_failed: list[PaymentId] = field(default_factory=list)

    @property
    def assignments(self) -> tuple[GatewayAssignment, ...]:
        """One assignment per resolved payment, in request order."""
        return tuple(GatewayAssignment(pid, gateway) for pid, gateway in self.success_map.items())


async def _lookup_one(
    lookup: GatewayLookup,
    payment_id: PaymentId,
    policy: RetryPolicy,
    sleep: Sleep,
    run_id: str,
    cancel_event: Optional[threading.Event],
) -> GatewayName:
    return await call_with_retry(
        "gateway_lookup",
        lookup.lookup_gateway,
        payment_id,
        policy=policy,
        sleep=sleep,
        cancel_event=cancel_event,
        run_id=run_id,
        payment_id=payment_id,
    )


async def run_lookup_stage(
    payment_ids: Sequence[PaymentId],
    lookup: GatewayLookup,
    *,
    concurrency: int,
    retry_policy: RetryPolicy,
    tracker: ProgressTracker,
    run_id: str,
    checkpoints: Optional[CheckpointStore] = None,
    cancel_event: Optional[threading.Event] = None,
    sleep: Sleep = asyncio.sleep,
) -> LookupOutcome:
    if concurrency < 1:
        raise ValueError(f"concurrency must be >= 1 (got {concurrency})")

    resolved: dict[PaymentId, GatewayName] = {}
    failed: dict[PaymentId, str] = {}

    if checkpoints is not None:
        log = await asyncio.to_thread(checkpoints.load_lookups, run_id)
        requested = set(payment_ids)
        resolved.update({pid: gw for pid, gw in log.resolved.items() if pid in requested})
        failed.update({pid: err for pid, err in log.failed.items() if pid in requested})
        if resolved or failed:
            logger.info(
                "Resuming lookup stage from checkpoint",
                run_id=run_id,
                resolved=len(resolved),
                failed=len(failed),
            )
            tracker.set_gateways_identified(len(set(resolved.values())))

    pending = [pid for pid in payment_ids if pid not in resolved and pid not in failed]
    waves = [pending[i:i + concurrency] for i in range(0, len(pending), concurrency)]

    for wave_index, wave in enumerate(waves):
        if cancel_event is not None and cancel_event.is_set():
            skipped = [pid for later in waves[wave_index:] for pid in later]
            logger.warning("Lookup stage cancelled", run_id=run_id, skipped=len(skipped))
            for pid in skipped:
                failed[pid] = CANCELLED_LOOKUP_MESSAGE
            break

        outcomes = await asyncio.gather(
            *(_lookup_one(lookup, pid, retry_policy, sleep, run_id, cancel_event) for pid in wave),
            return_exceptions=True,
        )

        wave_resolved: dict[PaymentId, GatewayName] = {}
        wave_failed: dict[PaymentId, str] = {}
        abandoned: set[PaymentId] = set()
        for payment_id, outcome in zip(wave, outcomes):
            if isinstance(outcome, BaseException):
                if isinstance(outcome, asyncio.CancelledError):
                    raise outcome
                logger.warning(
                    "Gateway lookup failed",
                    run_id=run_id,
                    payment_id=payment_id,
                    error=str(outcome),
                    error_type=type(outcome).__name__,
                )
                wave_failed[payment_id] = str(outcome)
                if isinstance(outcome, RetryExhaustedError) and cancel_event is not None and cancel_event.is_set():
                    abandoned.add(payment_id)
            else:
                wave_resolved[payment_id] = outcome

        resolved.update(wave_resolved)
        failed.update(wave_failed)
        if checkpoints is not None:
            # Lookups abandoned by a cancel are retried on resume
            settled_failed = {pid: err for pid, err in wave_failed.items() if pid not in abandoned}
            await asyncio.to_thread(checkpoints.record_lookups, run_id, wave_resolved, settled_failed)
        tracker.set_gateways_identified(len(set(resolved.values())))
        logger.debug(
            "Lookup wave settled",
            run_id=run_id,
            wave=wave_index + 1,
            waves=len(waves),
            resolved=len(wave_resolved),
            failed=len(wave_failed),
        )

    # Request order, so downstream planning is independent of settle order
    return LookupOutcome(
        success_map={pid: resolved[pid] for pid in payment_ids if pid in resolved},
        lookup_failed=[pid for pid in payment_ids if pid in failed],
    )


__all__ = ["run_lookup_stage", "LookupOutcome", "CANCELLED_LOOKUP_MESSAGE"]
