"""Live progress for one run.

The tracker is the only state written by more than one concurrent task.
All writes and reads go through one lock, so a snapshot never observes a
half-applied update: a chunk is counted completed (and, if it failed,
failed) in a single critical section.
"""
from __future__ import annotations

import threading

from payment_check.models.db.enums import RunPhase
from payment_check.services.types import GatewayChunkProgress, ProgressSnapshot


class ProgressTracker:
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._total_payments = 0
        self._gateways_identified = 0
        self._chunks_total = 0
        self._chunks_completed = 0
        self._chunks_failed = 0
        self._phase = RunPhase.INITIALIZING
        self._cancelled = False
        self._deadline_exceeded = False
        self._gateway_totals: dict[str, int] = {}
        self._gateway_completed: dict[str, int] = {}
        self._gateway_current: dict[str, int] = {}

    # ----------------------------- writers ----------------------------- #
    def set_phase(self, phase: RunPhase) -> None:
        with self._lock:
            if phase.rank < self._phase.rank:
                raise ValueError(f"Phase cannot move backwards: {self._phase.value} -> {phase.value}")
            self._phase = phase

    def set_total_payments(self, total: int) -> None:
        with self._lock:
            self._total_payments = total

    def set_gateways_identified(self, count: int) -> None:
        with self._lock:
            self._gateways_identified = count

    def register_plan(self, chunks_per_gateway: dict[str, int]) -> None:
        with self._lock:
            self._gateway_totals = dict(chunks_per_gateway)
            self._gateway_completed = {gw: 0 for gw in chunks_per_gateway}
            self._gateway_current = {gw: 0 for gw in chunks_per_gateway}
            self._chunks_total = sum(chunks_per_gateway.values())

    def start_chunk(self, gateway: str, chunk_index: int) -> None:
        with self._lock:
            self._gateway_current[gateway] = chunk_index

    def record_chunk(self, gateway: str, *, failed: bool) -> None:
        """Count one settled chunk for `gateway`."""
        self.record_chunks(gateway, 1, failed=failed)

    def record_chunks(self, gateway: str, count: int, *, failed: bool) -> None:
        if count <= 0:
            return
        with self._lock:
            remaining = self._gateway_totals.get(gateway, 0) - self._gateway_completed.get(gateway, 0)
            count = min(count, remaining)
            if count <= 0:
                return
            self._gateway_completed[gateway] = self._gateway_completed.get(gateway, 0) + count
            self._chunks_completed += count
            if failed:
                self._chunks_failed += count

    def mark_cancelled(self) -> None:
        with self._lock:
            self._cancelled = True

    def mark_deadline_exceeded(self) -> None:
        with self._lock:
            self._deadline_exceeded = True

    # ----------------------------- readers ----------------------------- #
    @property
    def phase(self) -> RunPhase:
        with self._lock:
            return self._phase

    def gateway_chunks_remaining(self, gateway: str) -> int:
        with self._lock:
            return self._gateway_totals.get(gateway, 0) - self._gateway_completed.get(gateway, 0)

    def snapshot(self) -> ProgressSnapshot:
        with self._lock:
            gateways = {
                gw: GatewayChunkProgress(
                    total_chunks=total,
                    completed_chunks=self._gateway_completed.get(gw, 0),
                    current_chunk_index=self._gateway_current.get(gw, 0),
                )
                for gw, total in self._gateway_totals.items()
            }
            return ProgressSnapshot(
                total_payments=self._total_payments,
                gateways_identified=self._gateways_identified,
                chunks_total=self._chunks_total,
                chunks_completed=self._chunks_completed,
                chunks_failed=self._chunks_failed,
                phase=self._phase,
                cancelled=self._cancelled,
                deadline_exceeded=self._deadline_exceeded,
                gateways=gateways,
            )


__all__ = ["ProgressTracker"]
