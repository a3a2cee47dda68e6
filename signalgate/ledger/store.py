"""Append-only trade ledger."""

from __future__ import annotations

import threading
from collections import defaultdict
from dataclasses import replace
from datetime import date
from pathlib import Path
from typing import Any, Iterable
from uuid import uuid4

import orjson
import structlog

from signalgate.errors import LedgerError
from signalgate.ledger.entries import (
    ALLOWED_TRANSITIONS,
    LedgerStatus,
    TradeLedgerEntry,
    new_entry,
)
from signalgate.models import AccountSummary, utc_now

log = structlog.get_logger(__name__)


class TradeLedger:
    """Append-only store of ledger entry versions.

    Every status change is a new line in ``trades.jsonl``. Readers see the
    latest version of each entry; the file itself is never rewritten.
    """

    def __init__(self, ledger_path: str | Path) -> None:
        self.ledger_path = Path(ledger_path)
        self.ledger_path.mkdir(parents=True, exist_ok=True)
        self.entries_file = self.ledger_path / "trades.jsonl"
        self._lock = threading.Lock()
        self._latest: dict[str, TradeLedgerEntry] = {}
        self._versions_written = 0
        self._load()

    def _load(self) -> None:
        for entry in self.iter_versions():
            self._latest[entry.entry_id] = entry
            self._versions_written += 1

    def iter_versions(self) -> Iterable[TradeLedgerEntry]:
        """Iterate every persisted version, oldest first."""
        if not self.entries_file.exists():
            return iter(())

        def _iter() -> Iterable[TradeLedgerEntry]:
            with open(self.entries_file, "rb") as handle:
                for lineno, line in enumerate(handle, start=1):
                    if not line.strip():
                        continue
                    try:
                        yield TradeLedgerEntry.from_dict(orjson.loads(line))
                    except (orjson.JSONDecodeError, KeyError, ValueError) as exc:
                        log.warning(
                            "ledger_line_skipped",
                            path=str(self.entries_file),
                            line=lineno,
                            error=str(exc),
                        )

        return _iter()

    def _write(self, payload: bytes) -> None:
        with open(self.entries_file, "ab") as handle:
            handle.write(payload + b"\n")

    def append_version(self, entry: TradeLedgerEntry) -> TradeLedgerEntry:
        """Persist one version and make it the visible one.

        Raises ``LedgerError`` when the write fails; the in-memory view is only
        updated after the line is on disk.
        """
        payload = orjson.dumps(entry.to_dict())
        with self._lock:
            current = self._latest.get(entry.entry_id)
            if current is not None and current.version >= entry.version:
                return current
            try:
                self._write(payload)
            except OSError as exc:
                raise LedgerError(f"ledger write failed for {entry.entry_id}: {exc}") from exc
            self._latest[entry.entry_id] = entry
            self._versions_written += 1
        return entry

    def open_entry(self, symbol: str, action: str, quantity: float, **fields: Any) -> TradeLedgerEntry:
        """Append the ``new`` version of an entry."""
        entry = new_entry(symbol, action, quantity, **fields)
        return self.append_version(entry)

    def next_version(self, entry_id: str, status: LedgerStatus, **fields: Any) -> TradeLedgerEntry:
        """Build the next version without writing it."""
        current = self._latest.get(entry_id)
        if current is None:
            raise LedgerError(f"unknown ledger entry {entry_id}")
        status = LedgerStatus(status)
        if status not in ALLOWED_TRANSITIONS[current.status]:
            raise LedgerError(
                f"illegal transition {current.status.value} -> {status.value} for {entry_id}"
            )
        return current.evolve(status=status, **fields)

    def transition(self, entry_id: str, status: LedgerStatus, **fields: Any) -> TradeLedgerEntry:
        """Append a new version with the given status."""
        return self.append_version(self.next_version(entry_id, status, **fields))

    def append_correction(self, entry_id: str, reason: str, **fields: Any) -> TradeLedgerEntry:
        """Append a new entry that supersedes ``entry_id``.

        The original is left untouched; the correction copies its fields, applies
        the overrides and records the reason.
        """
        original = self._latest.get(entry_id)
        if original is None:
            raise LedgerError(f"unknown ledger entry {entry_id}")
        if "status" in fields:
            fields["status"] = LedgerStatus(fields["status"])
        now = utc_now()
        correction = replace(
            original,
            entry_id=str(uuid4()),
            version=1,
            created_at=now,
            updated_at=now,
            corrects=entry_id,
            extra={**original.extra, "correction_reason": reason},
            **fields,
        )
        return self.append_version(correction)

    def get(self, entry_id: str) -> TradeLedgerEntry | None:
        return self._latest.get(entry_id)

    def entries(self) -> list[TradeLedgerEntry]:
        """Latest version of every entry, in creation order."""
        with self._lock:
            return list(self._latest.values())

    def find_by_alert(self, alert_id: str) -> list[TradeLedgerEntry]:
        return [e for e in self.entries() if e.alert_id == alert_id]

    def find_by_idempotency_key(self, key: str) -> list[TradeLedgerEntry]:
        return [e for e in self.entries() if e.idempotency_key == key]

    def tail(self, limit: int = 50) -> list[TradeLedgerEntry]:
        if limit <= 0:
            return []
        return self.entries()[-limit:]

    def versions_written(self) -> int:
        return self._versions_written

    def _effective(self) -> list[TradeLedgerEntry]:
        """Entries that count toward totals: superseded originals drop out."""
        entries = self.entries()
        corrected = {e.corrects for e in entries if e.corrects}
        return [e for e in entries if e.entry_id not in corrected]

    def sum_by_symbol(self, day: date | None = None) -> dict[str, dict[str, float]]:
        """Filled quantity, notional, fees and realized P&L per symbol."""
        totals: dict[str, dict[str, float]] = defaultdict(
            lambda: {
                "trades": 0,
                "buy_quantity": 0.0,
                "sell_quantity": 0.0,
                "buy_notional": 0.0,
                "sell_notional": 0.0,
                "fees": 0.0,
                "realized_pnl": 0.0,
            }
        )
        for entry in self._effective():
            if entry.status != LedgerStatus.FILLED:
                continue
            if day is not None and entry.updated_at.date() != day:
                continue
            bucket = totals[entry.symbol]
            bucket["trades"] += 1
            side = "buy" if entry.action == "buy" else "sell"
            bucket[f"{side}_quantity"] += entry.filled_quantity
            bucket[f"{side}_notional"] += entry.notional
            bucket["fees"] += entry.fees
            bucket["realized_pnl"] += entry.realized_pnl
        return dict(totals)

    def sum_by_day(self) -> dict[str, dict[str, float]]:
        """Filled trades, notional, fees and realized P&L per UTC day."""
        totals: dict[str, dict[str, float]] = defaultdict(
            lambda: {"trades": 0, "notional": 0.0, "fees": 0.0, "realized_pnl": 0.0}
        )
        for entry in self._effective():
            if entry.status != LedgerStatus.FILLED:
                continue
            bucket = totals[entry.updated_at.date().isoformat()]
            bucket["trades"] += 1
            bucket["notional"] += entry.notional
            bucket["fees"] += entry.fees
            bucket["realized_pnl"] += entry.realized_pnl
        return dict(sorted(totals.items()))

    def account_summary(self, starting_balance: float, broker_type: str = "ledger") -> AccountSummary:
        """Balance derived from filled entries.

        balance = start - sum(buy cost) - fees + sum(sell proceeds)
        """
        balance = starting_balance
        realized = 0.0
        trades = 0
        positions: dict[str, dict[str, float]] = {}
        for entry in self._effective():
            if entry.status != LedgerStatus.FILLED or entry.fill_price is None:
                continue
            trades += 1
            balance -= entry.fees
            realized += entry.realized_pnl
            position = positions.setdefault(entry.symbol, {"quantity": 0.0, "avg_price": 0.0})
            if entry.action == "buy":
                balance -= entry.notional
                new_qty = position["quantity"] + entry.filled_quantity
                if new_qty > 0:
                    position["avg_price"] = (
                        position["quantity"] * position["avg_price"] + entry.notional
                    ) / new_qty
                position["quantity"] = new_qty
            else:
                balance += entry.notional
                position["quantity"] = max(0.0, position["quantity"] - entry.filled_quantity)
        open_positions = {
            symbol: {"quantity": round(p["quantity"], 10), "avg_price": round(p["avg_price"], 10)}
            for symbol, p in positions.items()
            if p["quantity"] > 1e-12
        }
        return AccountSummary(
            source="ledger",
            broker_type=broker_type,
            starting_balance=starting_balance,
            balance=balance,
            positions=open_positions,
            realized_pnl=realized,
            total_trades=trades,
        )
