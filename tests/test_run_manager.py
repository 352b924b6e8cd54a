import pytest

from payment_check.database import SessionLocal
from payment_check.exceptions import InvalidRequestError, PermanentError, RunNotFoundError
from payment_check.integrations import Collaborators
from payment_check.jobs.queue import PriorityDelayQueue
from payment_check.jobs.worker import PaymentCheckWorker
from payment_check.models.db import CheckRun
from payment_check.models.db.enums import FailureStage, RunPhase, RunStatus
from payment_check.services.checkpoints import SqlCheckpointStore
from payment_check.services.run_manager import RUN_ID_PREFIX, RunManager


@pytest.fixture()
def queue():
    return PriorityDelayQueue()


@pytest.fixture()
def build_manager(queue, fast_config):
    def _build(services, config=None):
        return RunManager(
            queue,
            session_factory=SessionLocal,
            collaborators=Collaborators(lookup=services, notifier=services, trigger=services),
            default_config=config or fast_config,
            checkpoints=SqlCheckpointStore(SessionLocal),
        )
    return _build


def test_start_persists_and_enqueues_without_running(build_manager, fake_services, queue, db_session):
    services = fake_services({"p1": "A"})
    manager = build_manager(services)
    run_id = manager.start(["p1", "p2", "p1"], correlation_id="req-42")

    assert run_id.startswith(RUN_ID_PREFIX)
    assert services.lookup_calls == []
    assert manager.status(run_id) == RunStatus.PENDING
    assert manager.result(run_id) is None
    assert manager.progress(run_id).total_payments == 2

    row = db_session.get(CheckRun, run_id)
    assert row.payment_ids == ["p1", "p2"]
    assert row.correlation_id == "req-42"
    job = queue.dequeue(block=False)
    assert job.run_id == run_id and job.priority == "normal"


@pytest.mark.parametrize("payment_ids", [[], ["p1", ""], ["  "]])
def test_start_rejects_unusable_input(build_manager, fake_services, payment_ids):
    manager = build_manager(fake_services({}))
    with pytest.raises(InvalidRequestError):
        manager.start(payment_ids)


def test_execute_completes_and_persists_result(build_manager, fake_services, config_factory):
    services = fake_services(
        {"p1": "A", "p2": "A", "p3": "A"},
        trigger_errors={"p2": PermanentError("rejected")},
    )
    manager = build_manager(services, config_factory(max_payments_per_chunk=5))
    run_id = manager.start(["p1", "p2", "p3", "p4"])
    manager.execute(run_id)

    assert manager.status(run_id) == RunStatus.COMPLETED
    result = manager.result(run_id)
    assert result.successful == {"A": ("p1", "p3")}
    assert result.failed["A"][0].stage == FailureStage.ITEM_TRIGGER
    assert result.gateway_lookup_failed == ("p4",)
    assert manager.progress(run_id).phase == RunPhase.COMPLETED

    # A fresh manager (process restart) reads the same state back from the database
    reloaded = build_manager(fake_services({}))
    assert reloaded.result(run_id) == result
    assert reloaded.progress(run_id).chunks_completed == 1
    assert reloaded.progress(run_id).chunks_failed == 1


def test_execute_is_idempotent_for_finished_runs(build_manager, fake_services):
    services = fake_services({"p1": "A"})
    manager = build_manager(services)
    run_id = manager.start(["p1"])
    manager.execute(run_id)
    manager.execute(run_id)
    assert services.trigger_calls == [("A", "p1")]


def test_cancel_before_execution_reports_everything(build_manager, fake_services):
    services = fake_services({"p1": "A", "p2": "B"})
    manager = build_manager(services)
    run_id = manager.start(["p1", "p2"])
    assert manager.cancel(run_id) is True
    result = manager.execute(run_id)

    assert services.lookup_calls == []
    assert sorted(result.accounted_ids()) == ["p1", "p2"]
    assert manager.progress(run_id).cancelled is True
    assert manager.cancel(run_id) is False


def test_unknown_run_raises(build_manager, fake_services):
    manager = build_manager(fake_services({}))
    for call in (manager.status, manager.progress, manager.result, manager.cancel, manager.execute):
        with pytest.raises(RunNotFoundError):
            call("payment-check-missing")


def test_resume_incomplete_requeues_at_high_priority(build_manager, fake_services, queue, db_session):
    manager = build_manager(fake_services({"p1": "A"}))
    run_id = manager.start(["p1"])
    queue.purge()
    row = db_session.get(CheckRun, run_id)
    row.status = RunStatus.RUNNING
    db_session.commit()

    restarted = build_manager(fake_services({"p1": "A"}))
    assert restarted.resume_incomplete() >= 1
    resumed = [queue.dequeue(block=False) for _ in range(queue.depth())]
    ours = [job for job in resumed if job.run_id == run_id]
    assert len(ours) == 1 and ours[0].priority == "high"
    assert restarted.progress(run_id).total_payments == 1


class _BrokenPlanner(Exception):
    pass


def test_worker_requeues_then_fails_run(build_manager, fake_services, queue, monkeypatch):
    manager = build_manager(fake_services({"p1": "A"}))
    run_id = manager.start(["p1"])
    job = queue.dequeue(block=False)

    def broken(*args, **kwargs):
        raise _BrokenPlanner("planner crashed")

    monkeypatch.setattr("payment_check.services.supervisor.plan_chunks", broken)
    worker = PaymentCheckWorker(queue, manager, poll_timeout=0.1, max_attempts=2, retry_delay_seconds=0.0)

    worker.process(job)
    assert manager.status(run_id) == RunStatus.PENDING
    assert "planner crashed" in manager.error_message(run_id)
    retry = queue.dequeue(block=False)
    assert (retry.run_id, retry.attempt, retry.priority) == (run_id, 2, "low")

    worker.process(retry)
    assert manager.status(run_id) == RunStatus.FAILED
    assert queue.dequeue(block=False) is None
    assert manager.result(run_id) is None


def test_finished_runs_leave_the_in_process_registry(build_manager, fake_services, queue, monkeypatch):
    manager = build_manager(fake_services({"p1": "A", "p2": "B"}))
    run_ids = [manager.start(["p1", "p2"]) for _ in range(3)]
    assert len(manager._runs) == 3

    for run_id in run_ids:
        manager.execute(run_id)
        assert manager.result(run_id).successful == {"A": ("p1",), "B": ("p2",)}
        assert manager.progress(run_id).phase == RunPhase.COMPLETED
    assert manager._runs == {}

    failing = manager.start(["p1"])
    monkeypatch.setattr("payment_check.services.supervisor.plan_chunks", lambda *a, **k: 1 / 0)
    with pytest.raises(ZeroDivisionError):
        manager.execute(failing)
    assert failing in manager._runs
    manager.mark_failed(failing, "gave up")
    assert manager._runs == {}
    assert manager.progress(failing).phase == RunPhase.ES_LOOKUP
