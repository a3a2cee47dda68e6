from pathlib import Path

import orjson
import pytest

from signalgate.errors import LedgerError
from signalgate.ledger.entries import LedgerStatus
from signalgate.ledger.store import TradeLedger


def _fill(ledger, symbol, action, qty, price, fees=0.0, pnl=0.0):
    entry = ledger.open_entry(
        symbol,
        action,
        qty,
        alert_id=f"{symbol}-{action}-{qty}",
        idempotency_key=f"k-{symbol}-{action}",
    )
    ledger.transition(entry.entry_id, LedgerStatus.SUBMITTED)
    return ledger.transition(
        entry.entry_id,
        LedgerStatus.FILLED,
        fill_price=price,
        filled_quantity=qty,
        fees=fees,
        realized_pnl=pnl,
    )


def test_every_transition_is_an_appended_version(workspace_tmp_path: Path) -> None:
    ledger = TradeLedger(workspace_tmp_path)
    entry = _fill(ledger, "BTCUSD", "buy", 1.0, 100.0)

    lines = (workspace_tmp_path / "trades.jsonl").read_bytes().splitlines()
    statuses = [orjson.loads(line)["status"] for line in lines]
    assert statuses == ["new", "submitted", "filled"]
    assert ledger.get(entry.entry_id).version == 3
    assert len(ledger.entries()) == 1


def test_terminal_entries_refuse_transitions(workspace_tmp_path: Path) -> None:
    ledger = TradeLedger(workspace_tmp_path)
    entry = _fill(ledger, "BTCUSD", "buy", 1.0, 100.0)
    with pytest.raises(LedgerError):
        ledger.transition(entry.entry_id, LedgerStatus.ERROR)


def test_new_cannot_jump_to_filled(workspace_tmp_path: Path) -> None:
    ledger = TradeLedger(workspace_tmp_path)
    entry = ledger.open_entry("BTCUSD", "buy", 1.0)
    with pytest.raises(LedgerError):
        ledger.transition(entry.entry_id, LedgerStatus.FILLED)
    with pytest.raises(LedgerError):
        ledger.transition("missing", LedgerStatus.SUBMITTED)


def test_reload_folds_versions(workspace_tmp_path: Path) -> None:
    ledger = TradeLedger(workspace_tmp_path)
    entry = _fill(ledger, "BTCUSD", "buy", 1.0, 100.0)
    reloaded = TradeLedger(workspace_tmp_path)
    latest = reloaded.get(entry.entry_id)
    assert latest.status == LedgerStatus.FILLED
    assert latest.fill_price == 100.0
    assert reloaded.versions_written() == 3


def test_correction_supersedes_original(workspace_tmp_path: Path) -> None:
    ledger = TradeLedger(workspace_tmp_path)
    entry = _fill(ledger, "BTCUSD", "buy", 1.0, 100.0)
    correction = ledger.append_correction(entry.entry_id, "broker reported a different price", fill_price=99.0)

    assert correction.corrects == entry.entry_id
    assert correction.entry_id != entry.entry_id
    assert correction.extra["correction_reason"] == "broker reported a different price"
    assert ledger.get(entry.entry_id).fill_price == 100.0
    summary = ledger.account_summary(1000.0)
    assert summary.balance == pytest.approx(901.0)
    assert summary.total_trades == 1


def test_queries(workspace_tmp_path: Path) -> None:
    ledger = TradeLedger(workspace_tmp_path)
    first = _fill(ledger, "BTCUSD", "buy", 1.0, 100.0)
    _fill(ledger, "ETHUSD", "buy", 2.0, 10.0, fees=0.5)

    assert ledger.find_by_alert("BTCUSD-buy-1.0")[0].entry_id == first.entry_id
    assert len(ledger.find_by_idempotency_key("k-ETHUSD-buy")) == 1
    assert [e.symbol for e in ledger.tail(1)] == ["ETHUSD"]

    by_symbol = ledger.sum_by_symbol()
    assert by_symbol["ETHUSD"]["buy_notional"] == pytest.approx(20.0)
    assert by_symbol["ETHUSD"]["fees"] == pytest.approx(0.5)
    by_day = ledger.sum_by_day()
    assert len(by_day) == 1
    assert next(iter(by_day.values()))["trades"] == 2


def test_account_summary_round_trip(workspace_tmp_path: Path) -> None:
    ledger = TradeLedger(workspace_tmp_path)
    _fill(ledger, "BTCUSD", "buy", 2.0, 100.0, fees=1.0, pnl=-1.0)
    _fill(ledger, "BTCUSD", "sell", 1.0, 120.0, fees=1.0, pnl=19.0)
    rejected = ledger.open_entry("ETHUSD", "buy", 1.0)
    ledger.transition(rejected.entry_id, LedgerStatus.SUBMITTED)
    ledger.transition(rejected.entry_id, LedgerStatus.REJECTED, error_detail="no funds")

    summary = ledger.account_summary(1000.0)
    # 1000 - 200 - 1 + 120 - 1
    assert summary.balance == pytest.approx(918.0)
    assert summary.positions == {"BTCUSD": {"quantity": 1.0, "avg_price": 100.0}}
    assert summary.realized_pnl == pytest.approx(18.0)
    assert summary.total_trades == 2
    assert summary.source == "ledger"


def test_write_failure_raises_and_keeps_view(workspace_tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    ledger = TradeLedger(workspace_tmp_path)
    entry = ledger.open_entry("BTCUSD", "buy", 1.0)

    def broken(payload: bytes) -> None:
        raise OSError("disk full")

    monkeypatch.setattr(ledger, "_write", broken)
    with pytest.raises(LedgerError):
        ledger.transition(entry.entry_id, LedgerStatus.SUBMITTED)
    assert ledger.get(entry.entry_id).status == LedgerStatus.NEW
