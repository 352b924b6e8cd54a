"""Value types shared by the orchestration engine.

Everything here is immutable once built: branch accumulators are private
lists that are frozen into tuples when handed to the supervisor.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Iterable, Mapping

from payment_check.models.db.enums import FailureStage, RunPhase

PaymentId = str
GatewayName = str
Chunk = tuple[PaymentId, ...]


@dataclass(frozen=True, slots=True)
class GatewayAssignment:
    payment_id: PaymentId
    gateway_name: GatewayName


@dataclass(frozen=True, slots=True)
class FailedChunk:
    chunk_index: int
    payment_ids: tuple[PaymentId, ...]
    error_message: str
    stage: FailureStage

    def to_dict(self) -> dict[str, Any]:
        return {
            "chunk_index": self.chunk_index,
            "payment_ids": list(self.payment_ids),
            "error_message": self.error_message,
            "stage": self.stage.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FailedChunk":
        return cls(
            chunk_index=int(data["chunk_index"]),
            payment_ids=tuple(data.get("payment_ids") or ()),
            error_message=str(data.get("error_message") or ""),
            stage=FailureStage(data["stage"]),
        )


@dataclass(frozen=True, slots=True)
class BranchResult:
    gateway: GatewayName
    successful_payment_ids: tuple[PaymentId, ...] = ()
    failed_chunks: tuple[FailedChunk, ...] = ()

    def payment_ids(self) -> list[PaymentId]:
        ids = list(self.successful_payment_ids)
        for failed in self.failed_chunks:
            ids.extend(failed.payment_ids)
        return ids


@dataclass(frozen=True, slots=True)
class GatewayChunkProgress:
    total_chunks: int
    completed_chunks: int
    current_chunk_index: int

    def to_dict(self) -> dict[str, int]:
        return {
            "total_chunks": self.total_chunks,
            "completed_chunks": self.completed_chunks,
            "current_chunk_index": self.current_chunk_index,
        }


@dataclass(frozen=True, slots=True)
class ProgressSnapshot:
    total_payments: int = 0
    gateways_identified: int = 0
    chunks_total: int = 0
    chunks_completed: int = 0
    chunks_failed: int = 0
    phase: RunPhase = RunPhase.INITIALIZING
    cancelled: bool = False
    deadline_exceeded: bool = False
    gateways: Mapping[GatewayName, GatewayChunkProgress] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_payments": self.total_payments,
            "gateways_identified": self.gateways_identified,
            "chunks_total": self.chunks_total,
            "chunks_completed": self.chunks_completed,
            "chunks_failed": self.chunks_failed,
            "phase": self.phase.value,
            "cancelled": self.cancelled,
            "deadline_exceeded": self.deadline_exceeded,
            "gateways": {name: p.to_dict() for name, p in self.gateways.items()},
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProgressSnapshot":
        gateways = {
            name: GatewayChunkProgress(
                total_chunks=int(p.get("total_chunks", 0)),
                completed_chunks=int(p.get("completed_chunks", 0)),
                current_chunk_index=int(p.get("current_chunk_index", 0)),
            )
            for name, p in (data.get("gateways") or {}).items()
        }
        return cls(
            total_payments=int(data.get("total_payments", 0)),
            gateways_identified=int(data.get("gateways_identified", 0)),
            chunks_total=int(data.get("chunks_total", 0)),
            chunks_completed=int(data.get("chunks_completed", 0)),
            chunks_failed=int(data.get("chunks_failed", 0)),
            phase=RunPhase(data.get("phase", RunPhase.INITIALIZING.value)),
            cancelled=bool(data.get("cancelled", False)),
            deadline_exceeded=bool(data.get("deadline_exceeded", False)),
            gateways=gateways,
        )


@dataclass(frozen=True, slots=True)
class CheckStatusResult:
    """Terminal outcome of one run.

    Every requested payment id appears exactly once across `successful`,
    the `failed` chunks and `gateway_lookup_failed`.
    """
    successful: Mapping[GatewayName, tuple[PaymentId, ...]] = field(default_factory=dict)
    failed: Mapping[GatewayName, tuple[FailedChunk, ...]] = field(default_factory=dict)
    gateway_lookup_failed: tuple[PaymentId, ...] = ()

    @classmethod
    def from_branches(cls, branches: Iterable[BranchResult], lookup_failed: Iterable[PaymentId]) -> "CheckStatusResult":
        successful: dict[GatewayName, tuple[PaymentId, ...]] = {}
        failed: dict[GatewayName, tuple[FailedChunk, ...]] = {}
        for branch in branches:
            if branch.successful_payment_ids:
                successful[branch.gateway] = tuple(branch.successful_payment_ids)
            if branch.failed_chunks:
                failed[branch.gateway] = tuple(branch.failed_chunks)
        return cls(successful=successful, failed=failed, gateway_lookup_failed=tuple(lookup_failed))

    def accounted_ids(self) -> list[PaymentId]:
        """All payment ids in the result, duplicates included."""
        ids: list[PaymentId] = []
        for payment_ids in self.successful.values():
            ids.extend(payment_ids)
        for chunks in self.failed.values():
            for chunk in chunks:
                ids.extend(chunk.payment_ids)
        ids.extend(self.gateway_lookup_failed)
        return ids

    def unaccounted(self, payment_ids: Iterable[PaymentId]) -> set[PaymentId]:
        return set(payment_ids) - set(self.accounted_ids())

    def to_dict(self) -> dict[str, Any]:
        return {
            "successful": {gw: list(ids) for gw, ids in self.successful.items()},
            "failed": {gw: [c.to_dict() for c in chunks] for gw, chunks in self.failed.items()},
            "gateway_lookup_failed": list(self.gateway_lookup_failed),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "CheckStatusResult":
        return cls(
            successful={gw: tuple(ids) for gw, ids in (data.get("successful") or {}).items()},
            failed={
                gw: tuple(FailedChunk.from_dict(c) for c in chunks)
                for gw, chunks in (data.get("failed") or {}).items()
            },
            gateway_lookup_failed=tuple(data.get("gateway_lookup_failed") or ()),
        )


__all__ = [
    "PaymentId",
    "GatewayName",
    "Chunk",
    "GatewayAssignment",
    "FailedChunk",
    "BranchResult",
    "GatewayChunkProgress",
    "ProgressSnapshot",
    "CheckStatusResult",
]
