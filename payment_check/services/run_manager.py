"""Run lifecycle: the boundary between callers and the orchestration engine.

`start` persists a run and enqueues it; the worker thread later calls
`execute`, which drives the supervisor to completion on a private event loop.
`progress` and `result` are non-blocking reads: live state comes from the
in-process registry, finished runs from the `check_runs` table. A run leaves
the registry once its final state is persisted.
"""
from __future__ import annotations

import asyncio
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Callable, Iterable, Optional

from sqlalchemy.orm import Session

from payment_check.database import SessionLocal
from payment_check.exceptions import InvalidRequestError, RunNotFoundError
from payment_check.integrations import Collaborators, build_collaborators
from payment_check.jobs.check_job import PaymentCheckJob
from payment_check.models.db.check_runs import CheckRun
from payment_check.models.db.enums import RunPhase, RunStatus
from payment_check.services.checkpoints import CheckpointStore, SqlCheckpointStore
from payment_check.services.progress import ProgressTracker
from payment_check.services.run_config import RunConfig, default_run_config
from payment_check.services.supervisor import PaymentCheckSupervisor
from payment_check.services.types import CheckStatusResult, PaymentId, ProgressSnapshot
from payment_check.utils import get_logger, log_business_event

if TYPE_CHECKING:  # pragma: no cover
    from payment_check.jobs.worker import RunQueue

logger = get_logger(__name__)

RUN_ID_PREFIX = "payment-check-"


@dataclass
class _RunState:
    tracker: ProgressTracker = field(default_factory=ProgressTracker)
    cancel_event: threading.Event = field(default_factory=threading.Event)


def _normalize_payment_ids(payment_ids: Iterable[PaymentId]) -> list[PaymentId]:
    ids = list(payment_ids or [])
    if not ids:
        raise InvalidRequestError("payment_ids must not be empty")
    for payment_id in ids:
        if not isinstance(payment_id, str) or not payment_id.strip():
            raise InvalidRequestError("payment_ids must be non-empty strings")
    # First occurrence wins
    return list(dict.fromkeys(ids))


class RunManager:
    def __init__(
        self,
        queue: "RunQueue",
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        collaborators: Optional[Collaborators] = None,
        default_config: Optional[RunConfig] = None,
        checkpoints: Optional[CheckpointStore] = None,
    ):
        self.queue = queue
        self._session_factory = session_factory
        self.collaborators = collaborators or build_collaborators()
        self.default_config = (default_config or default_run_config()).validate()
        self.checkpoints = checkpoints if checkpoints is not None else SqlCheckpointStore(session_factory)
        self._runs: dict[str, _RunState] = {}
        self._lock = threading.Lock()

    # ----------------------------- registry ----------------------------- #
    def _state(self, run_id: str, *, create: bool = False) -> Optional[_RunState]:
        with self._lock:
            state = self._runs.get(run_id)
            if state is None and create:
                state = self._runs[run_id] = _RunState()
            return state

    def _evict(self, run_id: str) -> Optional[_RunState]:
        with self._lock:
            return self._runs.pop(run_id, None)

    def _load_run(self, session: Session, run_id: str) -> CheckRun:
        run = session.get(CheckRun, run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return run

    # ----------------------------- boundary ----------------------------- #
    def start(
        self,
        payment_ids: Iterable[PaymentId],
        config: Optional[RunConfig] = None,
        *,
        correlation_id: Optional[str] = None,
    ) -> str:
        """Persist and enqueue a run; returns its id without waiting for any work."""
        ids = _normalize_payment_ids(payment_ids)
        run_config = (config or self.default_config).validate()
        run_id = f"{RUN_ID_PREFIX}{uuid.uuid4()}"

        session = self._session_factory()
        try:
            session.add(CheckRun(
                id=run_id,
                payment_ids=ids,
                config=run_config.to_dict(),
                status=RunStatus.PENDING,
                phase=RunPhase.INITIALIZING,
                correlation_id=correlation_id,
            ))
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

        state = self._state(run_id, create=True)
        assert state is not None
        state.tracker.set_total_payments(len(ids))

        self.queue.enqueue(PaymentCheckJob(run_id=run_id, correlation_id=correlation_id))
        log_business_event(
            "payment_check_started",
            {"payment_count": len(ids), "max_payments_per_chunk": run_config.max_payments_per_chunk},
            run_id=run_id,
            request_id=correlation_id,
        )
        return run_id

    def progress(self, run_id: str) -> ProgressSnapshot:
        state = self._state(run_id)
        if state is not None:
            return state.tracker.snapshot()
        session = self._session_factory()
        try:
            run = self._load_run(session, run_id)
            if run.progress:
                return ProgressSnapshot.from_dict(run.progress)
            return ProgressSnapshot(total_payments=len(run.payment_ids or []), phase=run.phase)
        finally:
            session.close()

    def result(self, run_id: str) -> Optional[CheckStatusResult]:
        """Final result, or None while the run has not completed."""
        session = self._session_factory()
        try:
            run = self._load_run(session, run_id)
            if run.status != RunStatus.COMPLETED or not run.result:
                return None
            return CheckStatusResult.from_dict(run.result)
        finally:
            session.close()

    def status(self, run_id: str) -> RunStatus:
        session = self._session_factory()
        try:
            return self._load_run(session, run_id).status
        finally:
            session.close()

    def error_message(self, run_id: str) -> Optional[str]:
        session = self._session_factory()
        try:
            return self._load_run(session, run_id).error_message
        finally:
            session.close()

    def cancel(self, run_id: str) -> bool:
        """Request cancellation; False when the run has already finished."""
        status = self.status(run_id)
        if status in (RunStatus.COMPLETED, RunStatus.FAILED):
            logger.info("Cancel ignored for finished run", run_id=run_id, status=status.value)
            return False
        state = self._state(run_id, create=True)
        assert state is not None
        state.cancel_event.set()
        logger.info("Run cancellation requested", run_id=run_id)
        return True

    # ----------------------------- execution ----------------------------- #
    def execute(self, run_id: str, *, attempt: int = 1) -> Optional[CheckStatusResult]:
        """Drive one run to completion on a fresh event loop (worker thread)."""
        session = self._session_factory()
        try:
            run = self._load_run(session, run_id)
            if run.status in (RunStatus.COMPLETED, RunStatus.FAILED):
                logger.info("Skipping finished run", run_id=run_id, status=run.status.value)
                self._evict(run_id)
                return None
            payment_ids = list(run.payment_ids or [])
            config = RunConfig.from_dict(run.config or {})
            run.status = RunStatus.RUNNING
            run.started_at = datetime.now(timezone.utc)
            run.attempt_count = (run.attempt_count or 0) + 1
            session.commit()
        finally:
            session.close()

        state = self._state(run_id, create=True)
        assert state is not None
        # Phases only move forward, so every attempt gets a fresh tracker
        state.tracker = ProgressTracker()
        supervisor = PaymentCheckSupervisor(
            self.collaborators.lookup,
            self.collaborators.notifier,
            self.collaborators.trigger,
            checkpoints=self.checkpoints,
        )

        try:
            result = asyncio.run(supervisor.run(run_id, payment_ids, config, state.tracker, state.cancel_event))
        except Exception as e:
            self._record_attempt_error(run_id, state.tracker, str(e))
            raise

        snapshot = state.tracker.snapshot()
        self._persist_completion(run_id, result, snapshot)
        self._evict(run_id)
        log_business_event(
            "payment_check_completed",
            {
                "attempt": attempt,
                "payment_count": len(payment_ids),
                "gateways_successful": len(result.successful),
                "gateways_with_failures": len(result.failed),
                "lookup_failures": len(result.gateway_lookup_failed),
                "chunks_failed": snapshot.chunks_failed,
                "cancelled": snapshot.cancelled,
            },
            run_id=run_id,
        )
        return result

    def _persist_completion(self, run_id: str, result: CheckStatusResult, snapshot: ProgressSnapshot) -> None:
        session = self._session_factory()
        try:
            run = self._load_run(session, run_id)
            run.status = RunStatus.COMPLETED
            run.phase = snapshot.phase
            run.progress = snapshot.to_dict()
            run.result = result.to_dict()
            run.error_message = None
            run.completed_at = datetime.now(timezone.utc)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _record_attempt_error(self, run_id: str, tracker: ProgressTracker, error: str) -> None:
        # Back to PENDING: the worker decides whether another attempt follows
        session = self._session_factory()
        try:
            run = self._load_run(session, run_id)
            run.status = RunStatus.PENDING
            run.phase = tracker.phase
            run.progress = tracker.snapshot().to_dict()
            run.error_message = error
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def mark_failed(self, run_id: str, error: str) -> None:
        session = self._session_factory()
        try:
            run = self._load_run(session, run_id)
            run.status = RunStatus.FAILED
            run.error_message = error
            run.completed_at = datetime.now(timezone.utc)
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
        self._evict(run_id)
        log_business_event("payment_check_failed", {"error": error}, run_id=run_id)

    def resume_incomplete(self) -> int:
        """Re-enqueue runs a previous process left PENDING or RUNNING."""
        session = self._session_factory()
        try:
            runs = (
                session.query(CheckRun)
                .filter(CheckRun.status.in_([RunStatus.PENDING, RunStatus.RUNNING]))
                .order_by(CheckRun.created_at)
                .all()
            )
            pending = [(run.id, run.correlation_id, len(run.payment_ids or [])) for run in runs]
        finally:
            session.close()

        for run_id, correlation_id, payment_count in pending:
            state = self._state(run_id, create=True)
            assert state is not None
            state.tracker.set_total_payments(payment_count)
            self.queue.enqueue(PaymentCheckJob(run_id=run_id, priority="high", correlation_id=correlation_id))
        if pending:
            logger.info("Resuming incomplete runs", count=len(pending))
        return len(pending)


__all__ = ["RunManager", "RUN_ID_PREFIX"]
