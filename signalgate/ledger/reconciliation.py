"""Queue ledger versions that could not be written after a confirmed fill."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any

import orjson
import structlog

from signalgate.errors import LedgerError
from signalgate.ledger.entries import TradeLedgerEntry
from signalgate.ledger.store import TradeLedger
from signalgate.models import format_timestamp, utc_now

log = structlog.get_logger(__name__)


class ReconciliationQueue:
    """Persist fills the ledger missed so they survive a restart.

    Items go to ``reconciliation.jsonl`` under the state path. If even that
    write fails the item stays in memory and is reported by ``pending()``.
    The queue length is loaded once and then kept in step with ``enqueue``
    and ``replay``, so ``count()`` never touches the disk.
    """

    def __init__(self, state_path: str | Path | None) -> None:
        self._file: Path | None = None
        if state_path is not None:
            path = Path(state_path)
            path.mkdir(parents=True, exist_ok=True)
            self._file = path / "reconciliation.jsonl"
        self._lock = threading.Lock()
        self._memory: list[dict[str, Any]] = []
        self._count = len(self._load_file())

    def enqueue(self, entry: TradeLedgerEntry, reason: str) -> dict[str, Any]:
        item = {
            "queued_at": format_timestamp(utc_now()),
            "reason": reason,
            "entry": entry.to_dict(),
        }
        log.critical(
            "ledger_write_failed_after_fill",
            entry_id=entry.entry_id,
            order_ref=entry.order_ref,
            symbol=entry.symbol,
            reason=reason,
        )
        with self._lock:
            self._count += 1
            if self._file is None:
                self._memory.append(item)
                return item
            try:
                with open(self._file, "ab") as handle:
                    handle.write(orjson.dumps(item) + b"\n")
            except OSError as exc:
                log.critical(
                    "reconciliation_write_failed",
                    entry_id=entry.entry_id,
                    path=str(self._file),
                    error=str(exc),
                )
                self._memory.append(item)
        return item

    def _load_file(self) -> list[dict[str, Any]]:
        if self._file is None or not self._file.exists():
            return []
        items = []
        try:
            with open(self._file, "rb") as handle:
                for line in handle:
                    if line.strip():
                        items.append(orjson.loads(line))
        except (OSError, orjson.JSONDecodeError) as exc:
            log.error("reconciliation_read_failed", path=str(self._file), error=str(exc))
        return items

    def pending(self) -> list[dict[str, Any]]:
        with self._lock:
            return self._load_file() + list(self._memory)

    def count(self) -> int:
        return self._count

    def replay(self, ledger: TradeLedger) -> int:
        """Append queued versions to the ledger. Returns how many were applied.

        Items that still fail to write stay queued.
        """
        with self._lock:
            memory_items = list(self._memory)
            items = self._load_file() + memory_items
            if not items:
                self._count = 0
                return 0
            remaining: list[dict[str, Any]] = []
            applied = 0
            for item in items:
                entry = TradeLedgerEntry.from_dict(item["entry"])
                try:
                    ledger.append_version(entry)
                except LedgerError as exc:
                    log.error("reconciliation_replay_failed", entry_id=entry.entry_id, error=str(exc))
                    remaining.append(item)
                    continue
                applied += 1
            self._memory = []
            if self._file is not None:
                try:
                    with open(self._file, "wb") as handle:
                        for item in remaining:
                            handle.write(orjson.dumps(item) + b"\n")
                except OSError as exc:
                    log.error("reconciliation_rewrite_failed", path=str(self._file), error=str(exc))
                    # the old file is still intact; replaying it again is harmless
                    self._memory = [item for item in remaining if item in memory_items]
                    self._count = len(items) - len(memory_items) + len(self._memory)
                else:
                    self._count = len(remaining)
            else:
                self._memory = remaining
                self._count = len(remaining)
        if applied:
            log.info("reconciliation_replayed", applied=applied, remaining=len(remaining))
        return applied
