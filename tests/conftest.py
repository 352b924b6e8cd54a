import asyncio
import os
import sys
import time
from pathlib import Path
from typing import Callable, Optional

import pytest
from fastapi.testclient import TestClient

# File-based SQLite so the worker thread and the test thread share one database.
# Must be set before payment_check.database is imported.
SQLALCHEMY_TEST_URL = "sqlite+pysqlite:///./test_payment_check.db"
os.environ.setdefault("DATABASE_URL", SQLALCHEMY_TEST_URL)
os.environ.setdefault("LOG_LEVEL", "WARNING")

# Ensure project root on sys.path so 'payment_check' resolves without an install
ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from payment_check.main import app  # noqa: E402
from payment_check.database import Base, SessionLocal, engine  # noqa: E402
from payment_check.api import deps  # noqa: E402
from payment_check.exceptions import NotFoundError, TransientError  # noqa: E402
from payment_check.integrations import Collaborators  # noqa: E402
from payment_check.integrations.base import BatchNotifier, GatewayLookup, StatusTrigger  # noqa: E402
from payment_check.integrations.simulated import SimulatedGatewayServices  # noqa: E402
from payment_check.jobs.queue import PriorityDelayQueue  # noqa: E402
from payment_check.jobs.worker import PaymentCheckWorker  # noqa: E402
from payment_check.models.db.enums import RunStatus  # noqa: E402
from payment_check.services.checkpoints import SqlCheckpointStore  # noqa: E402
from payment_check.services.run_config import RetryPolicy, RunConfig  # noqa: E402
from payment_check.services.run_manager import RunManager  # noqa: E402


class FakeGatewayServices(GatewayLookup, BatchNotifier, StatusTrigger):
    """Scriptable collaborator double that records every call with timestamps.

    `gateways` maps payment id -> gateway; ids missing from it are NotFound.
    The `*_errors` maps hold the exception raised on every call for a key,
    `flaky` holds how many transient failures a key suffers before succeeding.
    """

    def __init__(
        self,
        gateways: dict[str, str],
        *,
        lookup_errors: Optional[dict[str, Exception]] = None,
        notify_errors: Optional[dict[str, Exception]] = None,
        trigger_errors: Optional[dict[str, Exception]] = None,
        flaky: Optional[dict[str, int]] = None,
        delay: float = 0.0,
        on_trigger: Optional[Callable[[str, str], None]] = None,
    ):
        self.gateways = dict(gateways)
        self.lookup_errors = dict(lookup_errors or {})
        self.notify_errors = dict(notify_errors or {})
        self.trigger_errors = dict(trigger_errors or {})
        self.flaky = dict(flaky or {})
        self.delay = delay
        self.on_trigger = on_trigger
        self.lookup_calls: list[str] = []
        self.notify_calls: list[tuple[str, tuple[str, ...]]] = []
        self.trigger_calls: list[tuple[str, str]] = []
        # (kind, gateway, key, started, finished)
        self.timeline: list[tuple[str, str, str, float, float]] = []
        self.in_flight = 0
        self.max_in_flight = 0

    def _maybe_fail(self, key: str, errors: dict[str, Exception]) -> None:
        if key in errors:
            raise errors[key]
        remaining = self.flaky.get(key, 0)
        if remaining > 0:
            self.flaky[key] = remaining - 1
            raise TransientError(f"flaky failure for {key}")

    async def lookup_gateway(self, payment_id: str) -> str:
        started = time.monotonic()
        self.lookup_calls.append(payment_id)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            await asyncio.sleep(self.delay)
            self._maybe_fail(payment_id, self.lookup_errors)
            if payment_id not in self.gateways:
                raise NotFoundError(payment_id)
            return self.gateways[payment_id]
        finally:
            self.in_flight -= 1
            self.timeline.append(("lookup", self.gateways.get(payment_id, ""), payment_id, started, time.monotonic()))

    async def batch_notify(self, gateway: str, payment_ids: list[str]) -> None:
        started = time.monotonic()
        self.notify_calls.append((gateway, tuple(payment_ids)))
        try:
            await asyncio.sleep(self.delay)
            self._maybe_fail(gateway, self.notify_errors)
        finally:
            self.timeline.append(("notify", gateway, ",".join(payment_ids), started, time.monotonic()))

    async def trigger_status_check(self, gateway: str, payment_id: str) -> None:
        started = time.monotonic()
        self.trigger_calls.append((gateway, payment_id))
        try:
            await asyncio.sleep(self.delay)
            if self.on_trigger is not None:
                self.on_trigger(gateway, payment_id)
            self._maybe_fail(payment_id, self.trigger_errors)
        finally:
            self.timeline.append(("trigger", gateway, payment_id, started, time.monotonic()))


class ExplodingNotifier(BatchNotifier):
    """Raises an error outside the collaborator taxonomy."""

    def __init__(self, gateway: str, inner: BatchNotifier):
        self.gateway = gateway
        self.inner = inner

    async def batch_notify(self, gateway: str, payment_ids: list[str]) -> None:
        if gateway == self.gateway:
            raise RuntimeError(f"unexpected failure in {gateway} branch")
        await self.inner.batch_notify(gateway, payment_ids)


FAST_RETRY = RetryPolicy(
    max_attempts=3,
    initial_backoff_seconds=0.0,
    backoff_multiplier=1.0,
    max_backoff_seconds=0.0,
    attempt_timeout_seconds=5.0,
)


def make_config(**overrides) -> RunConfig:
    base = RunConfig(lookup_retry=FAST_RETRY, notify_retry=FAST_RETRY, trigger_retry=FAST_RETRY)
    return base.with_overrides(**overrides)


@pytest.fixture()
def fast_config() -> RunConfig:
    return make_config()


@pytest.fixture()
def fake_services() -> Callable[..., FakeGatewayServices]:
    def _create(gateways: dict[str, str], **kwargs) -> FakeGatewayServices:
        return FakeGatewayServices(gateways, **kwargs)
    return _create


@pytest.fixture()
def config_factory() -> Callable[..., RunConfig]:
    return make_config


@pytest.fixture()
def exploding_notifier() -> Callable[[str, BatchNotifier], ExplodingNotifier]:
    return ExplodingNotifier


@pytest.fixture(scope="session", autouse=True)
def create_test_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()
    try:
        os.remove("test_payment_check.db")
    except OSError:
        pass


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="session")
def run_queue(create_test_db):
    queue = PriorityDelayQueue()
    yield queue
    queue.shutdown()


@pytest.fixture()
def services() -> SimulatedGatewayServices:
    """Default collaborators for API tests: ids starting with "unknown" are not found, every other call succeeds."""
    return SimulatedGatewayServices(failure_rate=0.0, latency_seconds=(0.0, 0.0))


@pytest.fixture()
def run_manager(run_queue, services, fast_config):
    """Run manager wired to the fake collaborators, with a live worker thread.

    The production app builds these in lifespan. Tests bypass lifespan so we replicate here.
    """
    run_queue.purge()
    manager = RunManager(
        run_queue,
        session_factory=SessionLocal,
        collaborators=Collaborators(lookup=services, notifier=services, trigger=services),
        default_config=fast_config,
        checkpoints=SqlCheckpointStore(SessionLocal),
    )
    worker = PaymentCheckWorker(run_queue, manager, poll_timeout=0.1, retry_delay_seconds=0.0)
    app.state.run_manager = manager  # type: ignore[attr-defined]
    app.state.queue = run_queue  # type: ignore[attr-defined]
    app.state.worker = worker  # type: ignore[attr-defined]
    worker.start()
    yield manager
    worker.stop(timeout=2.0)
    run_queue.purge()


@pytest.fixture()
def wait_for_run():
    def _wait(manager: RunManager, run_id: str, timeout: float = 10.0) -> RunStatus:
        deadline = time.time() + timeout
        while time.time() < deadline:
            status = manager.status(run_id)
            if status in (RunStatus.COMPLETED, RunStatus.FAILED):
                return status
            time.sleep(0.05)
        raise AssertionError(f"run {run_id} did not finish within {timeout}s")
    return _wait


# Override dependency
def _override_get_db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


app.dependency_overrides[deps.get_db] = _override_get_db


@pytest.fixture()
def client():
    return TestClient(app)
