import json

import httpx
import pytest

from signalgate.errors import BrokerRejected, BrokerTimeout, BrokerUnavailable
from signalgate.execution.live import LiveBroker
from signalgate.gateway.handler import _order_ref, build_gateway

ACCOUNT = "001-001-1"
FILL = {"id": "12", "orderID": "11", "units": "2", "price": "1.1050", "pl": "0.0000", "commission": "0.10"}


class FakeBrokerApi:
    """Records requests and answers with canned responses keyed by (method, path suffix)."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], object] = {}

    def route(self, method: str, suffix: str, response) -> None:
        self.routes[(method, suffix)] = response

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        for (method, suffix), response in self.routes.items():
            if request.method == method and request.url.path.endswith(suffix):
                if isinstance(response, Exception):
                    raise response
                if callable(response):
                    return response(request)
                return response
        return httpx.Response(404, json={"errorMessage": "not found"})

    def calls(self, method: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.method == method]


@pytest.fixture
def api() -> FakeBrokerApi:
    return FakeBrokerApi()


@pytest.fixture
def broker(make_settings, api: FakeBrokerApi) -> LiveBroker:
    settings = make_settings(
        broker={"type": "live"},
        BROKER_API_KEY="token-1",
        BROKER_ACCOUNT_ID=ACCOUNT,
    )
    return LiveBroker(settings, transport=httpx.MockTransport(api.handler))


@pytest.mark.asyncio
async def test_market_order_fill(broker: LiveBroker, api: FakeBrokerApi) -> None:
    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.Response(201, json={"orderFillTransaction": FILL}))

    result = await broker.place_order("o-1", "EURUSD", "buy", 2.0)

    assert result.fill_price == pytest.approx(1.105)
    assert result.filled_quantity == 2.0
    assert result.fees == pytest.approx(0.1)
    assert result.broker_order_ref == "11"
    request = api.calls("POST")[0]
    assert request.headers["Authorization"] == "Bearer token-1"
    order = json.loads(request.content)["order"]
    assert order["instrument"] == "EUR_USD"
    assert order["units"] == "2"
    assert order["type"] == "MARKET"
    assert order["clientExtensions"]["id"] == "o-1"
    await broker.close()


@pytest.mark.asyncio
async def test_sell_sends_negative_units_and_maps_instrument(broker: LiveBroker, api: FakeBrokerApi) -> None:
    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.Response(201, json={"orderFillTransaction": FILL}))
    await broker.place_order("o-1", "XAUUSD", "sell", 1.5)
    order = json.loads(api.calls("POST")[0].content)["order"]
    assert order["instrument"] == "XAU_USD"
    assert order["units"] == "-1.5"


@pytest.mark.asyncio
async def test_close_uses_position_endpoint(broker: LiveBroker, api: FakeBrokerApi) -> None:
    api.route(
        "PUT",
        f"/accounts/{ACCOUNT}/positions/XAU_USD/close",
        httpx.Response(200, json={"longOrderFillTransaction": FILL}),
    )
    result = await broker.place_order("o-1", "XAUUSD", "close", 1.0)
    assert result.action == "close"
    body = json.loads(api.calls("PUT")[0].content)
    assert body["longUnits"] == "ALL"
    assert body["longClientExtensions"]["id"] == "o-1"


@pytest.mark.asyncio
async def test_retry_finds_existing_order_by_client_id(broker: LiveBroker, api: FakeBrokerApi) -> None:
    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.ReadTimeout("slow"))
    with pytest.raises(BrokerTimeout):
        await broker.place_order("o-1", "EURUSD", "buy", 2.0)

    api.route(
        "GET",
        f"/accounts/{ACCOUNT}/orders/@o-1",
        httpx.Response(200, json={"order": {"state": "FILLED", "fillingTransactionID": "12"}}),
    )
    api.route("GET", f"/accounts/{ACCOUNT}/transactions/12", httpx.Response(200, json={"transaction": FILL}))

    result = await broker.place_order("o-1", "EURUSD", "buy", 2.0)

    assert result.fill_price == pytest.approx(1.105)
    assert len(api.calls("POST")) == 1


@pytest.mark.asyncio
async def test_resubmit_looks_up_before_posting_on_a_fresh_broker(make_settings, api: FakeBrokerApi) -> None:
    settings = make_settings(broker={"type": "live"}, BROKER_API_KEY="token-1", BROKER_ACCOUNT_ID=ACCOUNT)
    api.route(
        "GET",
        f"/accounts/{ACCOUNT}/orders/@o-1",
        httpx.Response(200, json={"order": {"state": "FILLED", "fillingTransactionID": "12"}}),
    )
    api.route("GET", f"/accounts/{ACCOUNT}/transactions/12", httpx.Response(200, json={"transaction": FILL}))
    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.Response(201, json={"orderFillTransaction": FILL}))

    # no earlier attempt in this process
    fresh = LiveBroker(settings, transport=httpx.MockTransport(api.handler))
    result = await fresh.place_order("o-1", "EURUSD", "buy", 2.0, resubmit=True)

    assert result.fill_price == pytest.approx(1.105)
    assert api.calls("POST") == []
    await fresh.close()


@pytest.mark.asyncio
async def test_redelivery_after_restart_does_not_submit_twice(make_settings, signed, api: FakeBrokerApi) -> None:
    settings = make_settings(broker={"type": "live"}, BROKER_API_KEY="token-1", BROKER_ACCOUNT_ID=ACCOUNT)
    payload = {"symbol": "EURUSD", "action": "buy", "quantity": 2, "price_hint": 1.1, "alert_id": "crash-1"}

    # first process claims the key, reaches the broker, then dies before recording the outcome
    first = build_gateway(settings, transport=httpx.MockTransport(api.handler))
    first.caps.dedup.begin("alert:crash-1", alert_ref="crash-1")
    order_ref = _order_ref("alert:crash-1")
    api.route(
        "GET",
        f"/accounts/{ACCOUNT}/orders/@{order_ref}",
        httpx.Response(200, json={"order": {"state": "FILLED", "fillingTransactionID": "12"}}),
    )
    api.route("GET", f"/accounts/{ACCOUNT}/transactions/12", httpx.Response(200, json={"transaction": FILL}))
    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.Response(201, json={"orderFillTransaction": FILL}))

    second = build_gateway(settings, transport=httpx.MockTransport(api.handler))
    body, headers = signed(payload)
    response = await second.handle(body, headers)

    assert response.status_code == 200
    assert response.body["outcome"] == "dispatched"
    assert api.calls("POST") == []
    assert second.caps.dedup.get("alert:crash-1").attempts == 2
    await first.close()
    await second.close()


@pytest.mark.asyncio
async def test_market_order_carries_stop_and_target(broker: LiveBroker, api: FakeBrokerApi) -> None:
    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.Response(201, json={"orderFillTransaction": FILL}))
    await broker.place_order("o-1", "EURUSD", "buy", 2.0, stop_loss=1.09, take_profit=1.125)
    order = json.loads(api.calls("POST")[0].content)["order"]
    assert order["stopLossOnFill"] == {"price": "1.09"}
    assert order["takeProfitOnFill"] == {"price": "1.125"}


@pytest.mark.asyncio
async def test_retry_submits_again_when_broker_never_saw_order(broker: LiveBroker, api: FakeBrokerApi) -> None:
    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.ConnectError("refused"))
    with pytest.raises(BrokerUnavailable):
        await broker.place_order("o-1", "EURUSD", "buy", 2.0)

    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.Response(201, json={"orderFillTransaction": FILL}))
    result = await broker.place_order("o-1", "EURUSD", "buy", 2.0)

    assert result.filled_quantity == 2.0
    assert len(api.calls("POST")) == 2
    assert api.calls("GET")[0].url.path.endswith("/orders/@o-1")


@pytest.mark.asyncio
async def test_cancelled_order_found_on_retry_is_rejected(broker: LiveBroker, api: FakeBrokerApi) -> None:
    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.Response(503, json={"errorMessage": "busy"}))
    with pytest.raises(BrokerUnavailable):
        await broker.place_order("o-1", "EURUSD", "buy", 2.0)
    api.route(
        "GET",
        f"/accounts/{ACCOUNT}/orders/@o-1",
        httpx.Response(200, json={"order": {"state": "CANCELLED", "cancelledReason": "MARKET_HALTED"}}),
    )
    with pytest.raises(BrokerRejected) as exc:
        await broker.place_order("o-1", "EURUSD", "buy", 2.0)
    assert exc.value.detail["reason"] == "MARKET_HALTED"


@pytest.mark.asyncio
async def test_failure_classification(broker: LiveBroker, api: FakeBrokerApi) -> None:
    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.Response(400, json={"errorMessage": "bad units"}))
    with pytest.raises(BrokerRejected) as exc:
        await broker.place_order("o-1", "EURUSD", "buy", 2.0)
    assert not exc.value.retryable

    api.route("POST", f"/accounts/{ACCOUNT}/orders", httpx.Response(429, json={"errorMessage": "slow down"}))
    with pytest.raises(BrokerUnavailable) as exc:
        await broker.place_order("o-2", "EURUSD", "buy", 2.0)
    assert exc.value.retryable

    api.route(
        "POST",
        f"/accounts/{ACCOUNT}/orders",
        httpx.Response(201, json={"orderCancelTransaction": {"reason": "INSUFFICIENT_MARGIN"}}),
    )
    with pytest.raises(BrokerRejected) as exc:
        await broker.place_order("o-3", "EURUSD", "buy", 2.0)
    assert exc.value.detail["reason"] == "INSUFFICIENT_MARGIN"


@pytest.mark.asyncio
async def test_account_summary(broker: LiveBroker, api: FakeBrokerApi) -> None:
    api.route(
        "GET",
        f"/accounts/{ACCOUNT}/summary",
        httpx.Response(
            200,
            json={"account": {"balance": "10250.5", "pl": "250.5", "unrealizedPL": "-3.2", "openTradeCount": 1}},
        ),
    )
    api.route(
        "GET",
        f"/accounts/{ACCOUNT}/openPositions",
        httpx.Response(
            200,
            json={
                "positions": [
                    {
                        "instrument": "XAU_USD",
                        "long": {"units": "2", "averagePrice": "2300.0"},
                        "short": {"units": "0"},
                        "unrealizedPL": "-3.2",
                    }
                ]
            },
        ),
    )
    summary = await broker.get_account_summary()
    assert summary.balance == pytest.approx(10250.5)
    assert summary.starting_balance == pytest.approx(10000.0)
    assert summary.positions["XAU_USD"]["quantity"] == 2.0
    assert summary.unrealized_pnl == pytest.approx(-3.2)


@pytest.mark.asyncio
async def test_health_check_reports_outage(broker: LiveBroker, api: FakeBrokerApi) -> None:
    api.route("GET", f"/accounts/{ACCOUNT}/summary", httpx.ConnectError("down"))
    health = await broker.health_check()
    assert health.healthy is False
    assert health.broker_type == "live"
