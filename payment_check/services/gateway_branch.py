"""Per-gateway branch: sequential chunk processing for one gateway.

Per chunk, a batch pre-notify call carries the whole chunk; only if it
succeeds are the chunk's payments triggered one at a time, in order. Chunk
N+1 never starts before both stages of chunk N have settled.

Collaborator failures (`PaymentCheckError`) are recorded as failed chunks.
Anything else escapes `run()` and is handled by the supervisor.
"""
from __future__ import annotations

import asyncio
import threading
from typing import Mapping, Optional, Sequence

from payment_check.exceptions import PaymentCheckError, RetryExhaustedError
from payment_check.integrations.base import BatchNotifier, StatusTrigger
from payment_check.models.db.enums import FailureStage
from payment_check.services.checkpoints import CheckpointStore, ChunkOutcome
from payment_check.services.progress import ProgressTracker
from payment_check.services.retry import Sleep, call_with_retry
from payment_check.services.run_config import RetryPolicy
from payment_check.services.types import BranchResult, Chunk, FailedChunk, PaymentId
from payment_check.utils import get_logger

logger = get_logger(__name__)

CANCELLED_CHUNK_MESSAGE = "run cancelled before processing"


class GatewayBranchProcessor:
    def __init__(
        self,
        gateway: str,
        chunks: Sequence[Chunk],
        notifier: BatchNotifier,
        trigger: StatusTrigger,
        *,
        notify_retry: RetryPolicy,
        trigger_retry: RetryPolicy,
        tracker: ProgressTracker,
        run_id: str,
        checkpoints: Optional[CheckpointStore] = None,
        replayed: Optional[Mapping[int, ChunkOutcome]] = None,
        cancel_event: Optional[threading.Event] = None,
        sleep: Sleep = asyncio.sleep,
    ):
        self.gateway = gateway
        self.chunks = [tuple(chunk) for chunk in chunks]
        self.notifier = notifier
        self.trigger = trigger
        self.notify_retry = notify_retry
        self.trigger_retry = trigger_retry
        self.tracker = tracker
        self.run_id = run_id
        self.checkpoints = checkpoints
        self.replayed = dict(replayed or {})
        self.cancel_event = cancel_event
        self._sleep = sleep

    def _cancelled(self) -> bool:
        return self.cancel_event is not None and self.cancel_event.is_set()

    async def run(self) -> BranchResult:
        logger.info(
            "Processing gateway branch",
            run_id=self.run_id,
            gateway=self.gateway,
            chunks=len(self.chunks),
        )
        successful: list[PaymentId] = []
        failed_chunks: list[FailedChunk] = []

        for chunk_index, chunk in enumerate(self.chunks):
            if self._cancelled():
                outcome = ChunkOutcome(failed_chunks=(
                    FailedChunk(chunk_index, chunk, CANCELLED_CHUNK_MESSAGE, FailureStage.CANCELLED),
                ))
            elif chunk_index in self.replayed:
                self.tracker.start_chunk(self.gateway, chunk_index)
                outcome = self.replayed[chunk_index]
                logger.debug(
                    "Chunk replayed from checkpoint",
                    run_id=self.run_id,
                    gateway=self.gateway,
                    chunk_index=chunk_index,
                )
            else:
                self.tracker.start_chunk(self.gateway, chunk_index)
                outcome, interrupted = await self._process_chunk(chunk_index, chunk)
                # A chunk cut short by cancellation is not settled work
                if self.checkpoints is not None and not interrupted:
                    await asyncio.to_thread(self.checkpoints.record_chunk, self.run_id, self.gateway, chunk_index, outcome)

            successful.extend(outcome.successful_payment_ids)
            failed_chunks.extend(outcome.failed_chunks)
            self.tracker.record_chunk(self.gateway, failed=outcome.failed)

        logger.info(
            "Gateway branch completed",
            run_id=self.run_id,
            gateway=self.gateway,
            successful=len(successful),
            failed_chunks=len(failed_chunks),
        )
        return BranchResult(
            gateway=self.gateway,
            successful_payment_ids=tuple(successful),
            failed_chunks=tuple(failed_chunks),
        )

    async def _process_chunk(self, chunk_index: int, chunk: Chunk) -> tuple[ChunkOutcome, bool]:
        log_context = {"run_id": self.run_id, "gateway": self.gateway, "chunk_index": chunk_index}
        logger.debug(
            "Processing chunk",
            chunk=f"{chunk_index + 1}/{len(self.chunks)}",
            payment_count=len(chunk),
            **log_context,
        )

        try:
            await call_with_retry(
                "batch_notify",
                self.notifier.batch_notify,
                self.gateway,
                list(chunk),
                policy=self.notify_retry,
                sleep=self._sleep,
                cancel_event=self.cancel_event,
                **log_context,
            )
        except PaymentCheckError as e:
            if isinstance(e, RetryExhaustedError) and self._cancelled():
                logger.warning("Batch notify abandoned, run cancelled", error=str(e), **log_context)
                return ChunkOutcome(failed_chunks=(
                    FailedChunk(chunk_index, chunk, CANCELLED_CHUNK_MESSAGE, FailureStage.CANCELLED),
                )), True
            logger.error("Batch notify failed, skipping chunk", error=str(e), **log_context)
            return ChunkOutcome(failed_chunks=(
                FailedChunk(chunk_index, chunk, f"Batch notify failed: {e}", FailureStage.BATCH_NOTIFY),
            )), False

        triggered: list[PaymentId] = []
        trigger_failed: list[PaymentId] = []
        last_error: Optional[PaymentCheckError] = None
        not_attempted: tuple[PaymentId, ...] = ()
        abandoned = False

        for position, payment_id in enumerate(chunk):
            if self._cancelled():
                not_attempted = chunk[position:]
                break
            try:
                await call_with_retry(
                    "item_trigger",
                    self.trigger.trigger_status_check,
                    self.gateway,
                    payment_id,
                    policy=self.trigger_retry,
                    sleep=self._sleep,
                    cancel_event=self.cancel_event,
                    payment_id=payment_id,
                    **log_context,
                )
                triggered.append(payment_id)
            except PaymentCheckError as e:
                logger.warning("Status trigger failed", payment_id=payment_id, error=str(e), **log_context)
                trigger_failed.append(payment_id)
                last_error = e
                abandoned = abandoned or (isinstance(e, RetryExhaustedError) and self._cancelled())

        failed: list[FailedChunk] = []
        if trigger_failed:
            failed.append(FailedChunk(
                chunk_index,
                tuple(trigger_failed),
                f"Status trigger failed for {len(trigger_failed)} payment(s): {last_error}",
                FailureStage.ITEM_TRIGGER,
            ))
        if not_attempted:
            failed.append(FailedChunk(chunk_index, not_attempted, CANCELLED_CHUNK_MESSAGE, FailureStage.CANCELLED))

        logger.debug(
            "Chunk settled",
            successful=len(triggered),
            failed=len(trigger_failed),
            cancelled=len(not_attempted),
            **log_context,
        )
        # Triggers abandoned mid-retry by a cancel are not settled either
        return ChunkOutcome(successful_payment_ids=tuple(triggered), failed_chunks=tuple(failed)), bool(not_attempted) or abandoned


__all__ = ["GatewayBranchProcessor", "CANCELLED_CHUNK_MESSAGE"]
