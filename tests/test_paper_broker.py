import pytest

from signalgate.config.settings import PaperConfig
from signalgate.errors import BrokerRejected, BrokerUnavailable
from signalgate.execution.paper import PaperBroker


@pytest.mark.asyncio
async def test_buy_then_sell_updates_balance_and_pnl() -> None:
    broker = PaperBroker(PaperConfig(starting_balance=1000.0))
    buy = await broker.place_order("o-1", "BTCUSD", "buy", 2.0, price=100.0)
    assert buy.fill_price == 100.0
    assert broker.balance == pytest.approx(800.0)

    sell = await broker.place_order("o-2", "BTCUSD", "sell", 1.0, price=150.0)
    assert sell.realized_pnl == pytest.approx(50.0)
    assert broker.balance == pytest.approx(950.0)
    summary = await broker.get_account_summary()
    assert summary.positions["BTCUSD"]["quantity"] == pytest.approx(1.0)
    assert summary.realized_pnl == pytest.approx(50.0)
    assert summary.total_trades == 2


@pytest.mark.asyncio
async def test_repeated_order_ref_does_not_fill_twice() -> None:
    broker = PaperBroker(PaperConfig(starting_balance=1000.0))
    first = await broker.place_order("o-1", "BTCUSD", "buy", 1.0, price=100.0)
    again = await broker.place_order("o-1", "BTCUSD", "buy", 1.0, price=100.0)
    assert again is first
    assert broker.balance == pytest.approx(900.0)


@pytest.mark.asyncio
async def test_insufficient_balance_is_rejected() -> None:
    broker = PaperBroker(PaperConfig(starting_balance=50.0))
    with pytest.raises(BrokerRejected) as exc:
        await broker.place_order("o-1", "BTCUSD", "buy", 1.0, price=100.0)
    assert exc.value.detail["reason"] == "INSUFFICIENT_BALANCE"
    assert broker.balance == 50.0
    with pytest.raises(BrokerRejected):
        await broker.place_order("o-1", "BTCUSD", "buy", 1.0, price=1.0)


@pytest.mark.asyncio
async def test_sell_without_position_is_rejected() -> None:
    broker = PaperBroker(PaperConfig())
    with pytest.raises(BrokerRejected) as exc:
        await broker.place_order("o-1", "ETHUSD", "sell", 1.0, price=10.0)
    assert exc.value.detail["reason"] == "NO_POSITION"


@pytest.mark.asyncio
async def test_oversized_sell_is_clamped_and_close_sells_everything() -> None:
    broker = PaperBroker(PaperConfig(starting_balance=1000.0))
    await broker.place_order("o-1", "ETHUSD", "buy", 3.0, price=10.0)
    sell = await broker.place_order("o-2", "ETHUSD", "sell", 1.0, price=10.0)
    assert sell.filled_quantity == 1.0
    close = await broker.place_order("o-3", "ETHUSD", "close", 0.1, price=10.0)
    assert close.filled_quantity == pytest.approx(2.0)
    assert "ETHUSD" not in broker.positions

    await broker.place_order("o-4", "ETHUSD", "buy", 1.0, price=10.0)
    clamped = await broker.place_order("o-5", "ETHUSD", "sell", 5.0, price=10.0)
    assert clamped.filled_quantity == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_slippage_and_fees() -> None:
    broker = PaperBroker(PaperConfig(starting_balance=1000.0, slippage_bps=10.0, fee_pct=0.1))
    buy = await broker.place_order("o-1", "BTCUSD", "buy", 1.0, price=100.0)
    assert buy.fill_price == pytest.approx(100.1)
    assert buy.fees == pytest.approx(0.1001)
    assert broker.balance == pytest.approx(1000.0 - 100.1 - 0.1001)


@pytest.mark.asyncio
async def test_disabled_paper_broker_is_unavailable() -> None:
    broker = PaperBroker(PaperConfig(), enabled=False)
    with pytest.raises(BrokerUnavailable):
        await broker.place_order("o-1", "BTCUSD", "buy", 1.0, price=1.0)
    health = await broker.health_check()
    assert not health.healthy


@pytest.mark.asyncio
async def test_stop_and_target_are_recorded_on_the_fill() -> None:
    broker = PaperBroker(PaperConfig(starting_balance=1000.0))
    result = await broker.place_order("o-1", "BTCUSD", "buy", 1.0, price=100.0, stop_loss=95.0, take_profit=110.0)
    assert result.raw == {"stop_loss": 95.0, "take_profit": 110.0}
    # a resubmitted reference still returns the cached fill
    again = await broker.place_order("o-1", "BTCUSD", "buy", 1.0, price=100.0, resubmit=True)
    assert again is result
