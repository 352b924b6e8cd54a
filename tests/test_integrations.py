import asyncio
import random
from contextlib import asynccontextmanager

import aiohttp
import pytest
from aiohttp import web
from aiohttp import test_utils

from payment_check.exceptions import NotFoundError, PermanentError, TransientError
from payment_check.integrations import SimulatedGatewayServices, build_collaborators
from payment_check.integrations import http as http_module
from payment_check.integrations.http import classify_status
from payment_check.integrations.notify_facade import NotifyFacadeClient
from payment_check.integrations.search_index import SearchIndexGatewayLookup
from payment_check.integrations.simulated import determine_gateway
from payment_check.integrations.status_gateway import StatusGatewayClient
from payment_check.models.db.enums import FailureStage
from payment_check.services.gateway_branch import GatewayBranchProcessor
from payment_check.services.progress import ProgressTracker


class FakeRequest:
    """Stands in for integrations.http.request and records each call."""

    def __init__(self, status, body=None):
        self.status = status
        self.body = body
        self.calls = []

    async def __call__(self, method, url, **kwargs):
        self.calls.append((method, url, kwargs))
        return self.status, self.body


@pytest.mark.parametrize("status, expected", [
    (200, None),
    (204, None),
    (500, TransientError),
    (503, TransientError),
    (408, TransientError),
    (429, TransientError),
    (400, PermanentError),
    (409, PermanentError),
])
def test_status_classification(status, expected):
    error = classify_status(status, "ctx")
    if expected is None:
        assert error is None
    else:
        assert type(error) is expected


def test_search_index_reads_gateway_name(monkeypatch):
    fake = FakeRequest(200, {"_source": {"gatewayName": "adyen"}})
    monkeypatch.setattr("payment_check.integrations.search_index.request", fake)
    lookup = SearchIndexGatewayLookup(base_url="http://es:9200/", index="payments")
    assert asyncio.run(lookup.lookup_gateway("pay/1")) == "adyen"
    method, url, _ = fake.calls[0]
    assert method == "GET"
    assert url == "http://es:9200/payments/_doc/pay%2F1"


@pytest.mark.parametrize("status, body, expected", [
    (404, None, NotFoundError),
    (200, {"_source": {}}, NotFoundError),
    (502, None, TransientError),
    (403, None, PermanentError),
])
def test_search_index_errors(monkeypatch, status, body, expected):
    monkeypatch.setattr("payment_check.integrations.search_index.request", FakeRequest(status, body))
    lookup = SearchIndexGatewayLookup(base_url="http://es:9200", index="payments")
    with pytest.raises(expected):
        asyncio.run(lookup.lookup_gateway("p1"))


def test_notify_facade_payload(monkeypatch):
    fake = FakeRequest(202)
    monkeypatch.setattr("payment_check.integrations.notify_facade.request", fake)
    asyncio.run(NotifyFacadeClient(base_url="http://facade").batch_notify("stripe", ["p1", "p2"]))
    method, url, kwargs = fake.calls[0]
    assert (method, url) == ("POST", "http://facade/api/v1/payments/notify")
    assert kwargs["json"] == {"gatewayName": "stripe", "paymentIds": ["p1", "p2"]}


def test_notify_facade_server_error_is_transient(monkeypatch):
    monkeypatch.setattr("payment_check.integrations.notify_facade.request", FakeRequest(500))
    with pytest.raises(TransientError):
        asyncio.run(NotifyFacadeClient(base_url="http://facade").batch_notify("stripe", ["p1"]))


def test_status_gateway_sends_gateway_header(monkeypatch):
    fake = FakeRequest(200)
    monkeypatch.setattr("payment_check.integrations.status_gateway.request", fake)
    asyncio.run(StatusGatewayClient(base_url="http://gw").trigger_status_check("paypal", "p7"))
    method, url, kwargs = fake.calls[0]
    assert (method, url) == ("POST", "http://gw/api/v1/payments/p7/check-status")
    assert kwargs["headers"] == {"X-Gateway-Name": "paypal"}


def test_connection_errors_become_transient(monkeypatch):
    @asynccontextmanager
    async def refusing_session(timeout_seconds):
        raise aiohttp.ClientConnectionError("connection refused")
        yield  # pragma: no cover

    monkeypatch.setattr(http_module, "client_session", refusing_session)
    with pytest.raises(TransientError):
        asyncio.run(http_module.request("GET", "http://nowhere", context="gateway lookup", timeout_seconds=1.0))


def test_determine_gateway_is_stable():
    assert determine_gateway("PAY-Stripe-001") == "stripe"
    hashed = determine_gateway("pay_000123")
    assert hashed in ("stripe", "adyen", "paypal")
    assert determine_gateway("pay_000123") == hashed


def test_simulated_successes_are_sticky():
    services = SimulatedGatewayServices(failure_rate=0.5, latency_seconds=(0.0, 0.0), rng=random.Random(7))

    async def eventually(call, *args):
        for _ in range(50):
            try:
                return await call(*args)
            except TransientError:
                continue
        raise AssertionError("never succeeded")

    async def scenario():
        gateway = await eventually(services.lookup_gateway, "adyen-55")
        await eventually(services.batch_notify, gateway, ["adyen-55"])
        await eventually(services.trigger_status_check, gateway, "adyen-55")
        # Once succeeded, the same call never fails again
        for _ in range(20):
            assert await services.lookup_gateway("adyen-55") == "adyen"
            await services.trigger_status_check(gateway, "adyen-55")
        with pytest.raises(NotFoundError):
            await services.lookup_gateway("unknown-1")

    asyncio.run(scenario())
    assert services.snapshot()["triggered_payments"] == 1


def test_build_collaborators_selects_implementation():
    simulated = build_collaborators(use_simulated=True)
    assert isinstance(simulated.lookup, SimulatedGatewayServices)
    assert simulated.lookup is simulated.notifier is simulated.trigger
    real = build_collaborators(use_simulated=False)
    assert isinstance(real.lookup, SearchIndexGatewayLookup)
    assert isinstance(real.notifier, NotifyFacadeClient)
    assert isinstance(real.trigger, StatusGatewayClient)


def _gateway_app(trigger_bodies):
    """Notify facade and status gateway on one aiohttp app; trigger replies come from `trigger_bodies`."""
    trigger_calls = []

    async def notify(request):
        return web.json_response({"accepted": True}, status=202)

    async def trigger(request):
        payment_id = request.match_info["payment_id"]
        trigger_calls.append(payment_id)
        return web.Response(text=trigger_bodies[payment_id], content_type="application/json")

    app = web.Application()
    app.router.add_post("/api/v1/payments/notify", notify)
    app.router.add_post("/api/v1/payments/{payment_id}/check-status", trigger)
    return app, trigger_calls


def test_malformed_json_body_is_transient():
    app, _ = _gateway_app({"p1": "{not json"})

    async def scenario():
        async with test_utils.TestServer(app) as server:
            url = str(server.make_url("/api/v1/payments/p1/check-status"))
            with pytest.raises(TransientError):
                await http_module.request("POST", url, context="status trigger", timeout_seconds=2.0)

    asyncio.run(scenario())


def test_malformed_trigger_reply_fails_only_that_payment(fast_config):
    app, trigger_calls = _gateway_app({"p1": "{}", "p2": "{not json"})

    async def scenario():
        async with test_utils.TestServer(app) as server:
            base_url = str(server.make_url("/"))
            processor = GatewayBranchProcessor(
                "A",
                [("p1",), ("p2",)],
                NotifyFacadeClient(base_url=base_url, timeout_seconds=2.0),
                StatusGatewayClient(base_url=base_url, timeout_seconds=2.0),
                notify_retry=fast_config.notify_retry,
                trigger_retry=fast_config.trigger_retry,
                tracker=tracker,
                run_id="run-http",
            )
            return await processor.run()

    tracker = ProgressTracker()
    tracker.register_plan({"A": 2})
    result = asyncio.run(scenario())

    assert result.successful_payment_ids == ("p1",)
    assert len(result.failed_chunks) == 1
    failed = result.failed_chunks[0]
    assert (failed.chunk_index, failed.payment_ids, failed.stage) == (1, ("p2",), FailureStage.ITEM_TRIGGER)
    assert trigger_calls.count("p2") == fast_config.trigger_retry.max_attempts
