"""Checkpoint log for crash-resumable runs.

The engine records every settled unit of work (a lookup wave, a chunk) under
the run id. When a run is restarted after a crash the supervisor reloads the
log and skips the units already recorded, so collaborators are only called
again for work that never settled.

Store methods block; the engine calls them through `asyncio.to_thread`.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Callable, Mapping

from sqlalchemy.orm import Session

from payment_check.models.db.checkpoints import ChunkCheckpoint, LookupCheckpoint
from payment_check.services.types import FailedChunk, GatewayName, PaymentId
from payment_check.utils import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class LookupLog:
    resolved: Mapping[PaymentId, GatewayName] = field(default_factory=dict)
    failed: Mapping[PaymentId, str] = field(default_factory=dict)

    def settled(self) -> set[PaymentId]:
        return set(self.resolved) | set(self.failed)


@dataclass(frozen=True)
class ChunkOutcome:
    successful_payment_ids: tuple[PaymentId, ...] = ()
    failed_chunks: tuple[FailedChunk, ...] = ()

    @property
    def failed(self) -> bool:
        return bool(self.failed_chunks)


class CheckpointStore(ABC):
    @abstractmethod
    def record_lookups(self, run_id: str, resolved: Mapping[PaymentId, GatewayName], failed: Mapping[PaymentId, str]) -> None:
        """Persist one settled lookup wave."""

    @abstractmethod
    def load_lookups(self, run_id: str) -> LookupLog:
        ...

    @abstractmethod
    def record_chunk(self, run_id: str, gateway: GatewayName, chunk_index: int, outcome: ChunkOutcome) -> None:
        ...

    @abstractmethod
    def load_chunks(self, run_id: str) -> dict[tuple[GatewayName, int], ChunkOutcome]:
        ...


class InMemoryCheckpointStore(CheckpointStore):
    """Process-local store; used by tests and when no database is wired in."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._lookups: dict[str, dict[PaymentId, tuple[GatewayName | None, str | None]]] = {}
        self._chunks: dict[str, dict[tuple[GatewayName, int], ChunkOutcome]] = {}

    def record_lookups(self, run_id, resolved, failed):
        with self._lock:
            entries = self._lookups.setdefault(run_id, {})
            for payment_id, gateway in resolved.items():
                entries[payment_id] = (gateway, None)
            for payment_id, error in failed.items():
                entries[payment_id] = (None, error)

    def load_lookups(self, run_id):
        with self._lock:
            entries = dict(self._lookups.get(run_id, {}))
        return LookupLog(
            resolved={pid: gw for pid, (gw, _) in entries.items() if gw is not None},
            failed={pid: err or "" for pid, (gw, err) in entries.items() if gw is None},
        )

    def record_chunk(self, run_id, gateway, chunk_index, outcome):
        with self._lock:
            self._chunks.setdefault(run_id, {})[(gateway, chunk_index)] = outcome

    def load_chunks(self, run_id):
        with self._lock:
            return dict(self._chunks.get(run_id, {}))


class SqlCheckpointStore(CheckpointStore):
    """Checkpoint log stored in the `lookup_checkpoints` / `chunk_checkpoints` tables.

    Each call opens a short-lived session from `session_factory` so the store
    can be shared by every branch of a run.
    """

    def __init__(self, session_factory: Callable[[], Session]):
        self._session_factory = session_factory

    def record_lookups(self, run_id, resolved, failed):
        if not resolved and not failed:
            return
        session = self._session_factory()
        try:
            existing = {
                row.payment_id: row
                for row in session.query(LookupCheckpoint).filter(
                    LookupCheckpoint.run_id == run_id,
                    LookupCheckpoint.payment_id.in_(list(resolved) + list(failed)),
                )
            }
            entries = [(pid, gw, None) for pid, gw in resolved.items()]
            entries += [(pid, None, err) for pid, err in failed.items()]
            for payment_id, gateway, error in entries:
                row = existing.get(payment_id)
                if row is None:
                    row = LookupCheckpoint(run_id=run_id, payment_id=payment_id)
                    session.add(row)
                row.gateway_name = gateway
                row.error_message = error
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def load_lookups(self, run_id):
        session = self._session_factory()
        try:
            rows = session.query(LookupCheckpoint).filter(LookupCheckpoint.run_id == run_id).order_by(LookupCheckpoint.id).all()
            return LookupLog(
                resolved={r.payment_id: r.gateway_name for r in rows if r.gateway_name is not None},
                failed={r.payment_id: r.error_message or "" for r in rows if r.gateway_name is None},
            )
        finally:
            session.close()

    def record_chunk(self, run_id, gateway, chunk_index, outcome):
        session = self._session_factory()
        try:
            row = session.query(ChunkCheckpoint).filter_by(run_id=run_id, gateway=gateway, chunk_index=chunk_index).first()
            if row is None:
                row = ChunkCheckpoint(run_id=run_id, gateway=gateway, chunk_index=chunk_index)
                session.add(row)
            row.successful_payment_ids = list(outcome.successful_payment_ids)
            row.failed_chunks = [c.to_dict() for c in outcome.failed_chunks]
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def load_chunks(self, run_id):
        session = self._session_factory()
        try:
            rows = session.query(ChunkCheckpoint).filter(ChunkCheckpoint.run_id == run_id).all()
            return {
                (r.gateway, r.chunk_index): ChunkOutcome(
                    successful_payment_ids=tuple(r.successful_payment_ids or ()),
                    failed_chunks=tuple(FailedChunk.from_dict(c) for c in (r.failed_chunks or ())),
                )
                for r in rows
            }
        finally:
            session.close()


__all__ = [
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "SqlCheckpointStore",
    "LookupLog",
    "ChunkOutcome",
]
