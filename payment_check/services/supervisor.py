"""Orchestration supervisor: lookup, plan, fan out per gateway, aggregate.

Phases advance INITIALIZING -> ES_LOOKUP -> GATEWAY_PROCESSING ->
AGGREGATING -> COMPLETED. Gateway branches run concurrently and are isolated
from one another: an exception escaping one branch is converted into a
sentinel failure for that gateway only.

The final `CheckStatusResult` accounts for every requested payment exactly
once; there is no "run failed" outcome separate from "completed with
failures".
"""
from __future__ import annotations

import asyncio
import threading
import time
from typing import Optional, Sequence

from payment_check.integrations.base import BatchNotifier, GatewayLookup, StatusTrigger
from payment_check.models.db.enums import FailureStage, RunPhase
from payment_check.services.checkpoints import CheckpointStore, ChunkOutcome
from payment_check.services.gateway_branch import GatewayBranchProcessor
from payment_check.services.lookup_stage import run_lookup_stage
from payment_check.services.planner import chunk_count, plan_chunks
from payment_check.services.progress import ProgressTracker
from payment_check.services.retry import Sleep
from payment_check.services.run_config import RunConfig
from payment_check.services.types import BranchResult, CheckStatusResult, Chunk, FailedChunk, PaymentId
from payment_check.utils import get_logger, log_performance

logger = get_logger(__name__)


class PaymentCheckSupervisor:
    def __init__(
        self,
        lookup: GatewayLookup,
        notifier: BatchNotifier,
        trigger: StatusTrigger,
        *,
        checkpoints: Optional[CheckpointStore] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.lookup = lookup
        self.notifier = notifier
        self.trigger = trigger
        self.checkpoints = checkpoints
        self._sleep = sleep

    async def run(
        self,
        run_id: str,
        payment_ids: Sequence[PaymentId],
        config: RunConfig,
        tracker: Optional[ProgressTracker] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> CheckStatusResult:
        config.validate()
        tracker = tracker or ProgressTracker()
        cancel_event = cancel_event or threading.Event()
        started = time.monotonic()

        tracker.set_total_payments(len(payment_ids))
        logger.info("Starting payment status check", run_id=run_id, payments=len(payment_ids))

        watchdog = self._arm_deadline(run_id, config, tracker, cancel_event)
        try:
            tracker.set_phase(RunPhase.ES_LOOKUP)
            lookup = await run_lookup_stage(
                payment_ids,
                self.lookup,
                concurrency=config.max_parallel_lookups,
                retry_policy=config.lookup_retry,
                tracker=tracker,
                run_id=run_id,
                checkpoints=self.checkpoints,
                cancel_event=cancel_event,
                sleep=self._sleep,
            )
            logger.info(
                "Gateway lookup complete",
                run_id=run_id,
                resolved=len(lookup.success_map),
                failed=len(lookup.lookup_failed),
                gateways=len(set(lookup.success_map.values())),
            )

            plan = plan_chunks(lookup.success_map, config.max_payments_per_chunk)
            tracker.register_plan({gateway: len(chunks) for gateway, chunks in plan.items()})
            logger.info("Created chunks", run_id=run_id, chunks=chunk_count(plan), gateways=len(plan))

            tracker.set_phase(RunPhase.GATEWAY_PROCESSING)
            branches = await self._process_gateways(run_id, plan, config, tracker, cancel_event)

            tracker.set_phase(RunPhase.AGGREGATING)
            result = CheckStatusResult.from_branches(branches, lookup.lookup_failed)
        finally:
            if watchdog is not None:
                watchdog.cancel()

        if cancel_event.is_set():
            tracker.mark_cancelled()
        tracker.set_phase(RunPhase.COMPLETED)

        duration_ms = (time.monotonic() - started) * 1000
        logger.info(
            "Payment status check complete",
            run_id=run_id,
            gateways_successful=len(result.successful),
            gateways_with_failures=len(result.failed),
            lookup_failures=len(result.gateway_lookup_failed),
            cancelled=cancel_event.is_set(),
        )
        log_performance("payment_status_check", duration_ms, {"run_id": run_id, "payments": len(payment_ids)})
        return result

    async def _process_gateways(
        self,
        run_id: str,
        plan: dict[str, list[Chunk]],
        config: RunConfig,
        tracker: ProgressTracker,
        cancel_event: threading.Event,
    ) -> list[BranchResult]:
        replayed: dict[str, dict[int, ChunkOutcome]] = {}
        if self.checkpoints is not None:
            logged = await asyncio.to_thread(self.checkpoints.load_chunks, run_id)
            for (gateway, chunk_index), outcome in logged.items():
                replayed.setdefault(gateway, {})[chunk_index] = outcome

        gateways = list(plan)
        processors = [
            GatewayBranchProcessor(
                gateway,
                plan[gateway],
                self.notifier,
                self.trigger,
                notify_retry=config.notify_retry,
                trigger_retry=config.trigger_retry,
                tracker=tracker,
                run_id=run_id,
                checkpoints=self.checkpoints,
                replayed=replayed.get(gateway),
                cancel_event=cancel_event,
                sleep=self._sleep,
            )
            for gateway in gateways
        ]
        outcomes = await asyncio.gather(*(p.run() for p in processors), return_exceptions=True)

        results: list[BranchResult] = []
        for gateway, outcome in zip(gateways, outcomes):
            if isinstance(outcome, BranchResult):
                results.append(outcome)
                continue
            if isinstance(outcome, asyncio.CancelledError):
                raise outcome
            logger.error(
                "Gateway branch failed unexpectedly",
                run_id=run_id,
                gateway=gateway,
                error=str(outcome),
                error_type=type(outcome).__name__,
            )
            results.append(self._branch_failure(gateway, plan[gateway], outcome, tracker))
        return results

    @staticmethod
    def _branch_failure(gateway: str, chunks: list[Chunk], error: BaseException, tracker: ProgressTracker) -> BranchResult:
        payment_ids = tuple(pid for chunk in chunks for pid in chunk)
        tracker.record_chunks(gateway, tracker.gateway_chunks_remaining(gateway), failed=True)
        return BranchResult(
            gateway=gateway,
            successful_payment_ids=(),
            failed_chunks=(
                FailedChunk(-1, payment_ids, f"Gateway branch failed: {error}", FailureStage.BRANCH),
            ),
        )

    @staticmethod
    def _arm_deadline(
        run_id: str,
        config: RunConfig,
        tracker: ProgressTracker,
        cancel_event: threading.Event,
    ) -> Optional[asyncio.TimerHandle]:
        if config.run_deadline_seconds is None:
            return None

        def _on_deadline() -> None:
            tracker.mark_deadline_exceeded()
            if config.abort_on_deadline:
                logger.warning("Run deadline exceeded, cancelling run", run_id=run_id, deadline_seconds=config.run_deadline_seconds)
                cancel_event.set()
            else:
                logger.warning("Run deadline exceeded", run_id=run_id, deadline_seconds=config.run_deadline_seconds)

        return asyncio.get_running_loop().call_later(config.run_deadline_seconds, _on_deadline)


__all__ = ["PaymentCheckSupervisor"]
