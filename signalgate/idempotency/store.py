"""Idempotency store: one terminal outcome per key, retained across restarts."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

import orjson
import structlog

from signalgate.config.settings import DedupConfig
from signalgate.errors import DuplicateConflict
from signalgate.models import format_timestamp, parse_timestamp, utc_now
from signalgate.utils.locks import KeyedLocks

log = structlog.get_logger(__name__)

# journal lines allowed beyond twice the live record count before a rewrite
COMPACT_SLACK = 100

PENDING = "pending"
ACCEPTED = "accepted"
REJECTED = "rejected"


@dataclass
class IdempotencyRecord:
    key: str
    first_seen_at: datetime
    updated_at: datetime
    outcome: str = PENDING
    alert_ref: str | None = None
    attempts: int = 1
    transient: bool = False
    detail: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "first_seen_at": format_timestamp(self.first_seen_at),
            "updated_at": format_timestamp(self.updated_at),
            "outcome": self.outcome,
            "alert_ref": self.alert_ref,
            "attempts": self.attempts,
            "transient": self.transient,
            "detail": self.detail,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "IdempotencyRecord":
        return cls(
            key=data["key"],
            first_seen_at=parse_timestamp(data["first_seen_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            outcome=data.get("outcome", PENDING),
            alert_ref=data.get("alert_ref"),
            attempts=int(data.get("attempts", 1)),
            transient=bool(data.get("transient", False)),
            detail=data.get("detail") or {},
        )

    def original_outcome(self) -> dict[str, Any]:
        """What a replay is told about the first attempt."""
        return {
            "outcome": self.outcome,
            "first_seen_at": format_timestamp(self.first_seen_at),
            "attempts": self.attempts,
            **self.detail,
        }


class IdempotencyStore:
    """Key-addressed record store with atomic insert-if-absent.

    Every transition is appended to ``idempotency.jsonl``; the journal is
    compacted on load, dropping records past retention. Records loaded from
    disk in the ``pending`` state belong to a previous process and are
    therefore stale.
    """

    def __init__(self, config: DedupConfig, state_path: str | Path | None = None) -> None:
        self.config = config
        self.enabled = config.enabled
        self.retention = timedelta(hours=config.retention_hours)
        self.pending_timeout = timedelta(seconds=config.pending_timeout_sec)
        self.max_retries = config.max_retries
        self._locks = KeyedLocks()
        self._file_lock = threading.Lock()
        self._records: dict[str, IdempotencyRecord] = {}
        self._live: set[str] = set()
        self._journal_lines = 0
        self._file: Path | None = None
        if state_path is not None:
            path = Path(state_path)
            path.mkdir(parents=True, exist_ok=True)
            self._file = path / "idempotency.jsonl"
            self._load()

    def _load(self) -> None:
        if self._file is None or not self._file.exists():
            return
        now = utc_now()
        with open(self._file, "rb") as handle:
            for line in handle:
                if not line.strip():
                    continue
                self._journal_lines += 1
                try:
                    record = IdempotencyRecord.from_dict(orjson.loads(line))
                except (orjson.JSONDecodeError, KeyError, ValueError) as exc:
                    log.warning("idempotency_line_skipped", error=str(exc))
                    continue
                self._records[record.key] = record
        expired = [k for k, r in self._records.items() if self._expired(r, now)]
        for key in expired:
            del self._records[key]
        self._compact()
        log.info("idempotency_loaded", size=len(self._records), dropped=len(expired))

    def _compact(self) -> None:
        if self._file is None:
            return
        tmp = self._file.with_suffix(".jsonl.tmp")
        with self._file_lock:
            try:
                with open(tmp, "wb") as handle:
                    records = list(self._records.values())
                    for record in records:
                        handle.write(orjson.dumps(record.to_dict()) + b"\n")
                tmp.replace(self._file)
                self._journal_lines = len(records)
            except OSError as exc:
                log.error("idempotency_compact_failed", path=str(self._file), error=str(exc))

    def _persist(self, record: IdempotencyRecord) -> None:
        if self._file is None:
            return
        payload = orjson.dumps(record.to_dict())
        with self._file_lock:
            try:
                with open(self._file, "ab") as handle:
                    handle.write(payload + b"\n")
                self._journal_lines += 1
            except OSError as exc:
                log.error("idempotency_write_failed", key=record.key, error=str(exc))

    def _expired(self, record: IdempotencyRecord, now: datetime) -> bool:
        return now - record.first_seen_at > self.retention

    def _is_stale(self, record: IdempotencyRecord, now: datetime) -> bool:
        if record.key not in self._live:
            return True
        return now - record.updated_at > self.pending_timeout

    def get(self, key: str) -> IdempotencyRecord | None:
        return self._records.get(key)

    def begin(self, key: str, alert_ref: str | None = None, now: datetime | None = None) -> IdempotencyRecord:
        """Claim ``key`` for a new attempt or raise ``DuplicateConflict``."""
        now = now or utc_now()
        with self._locks.hold(key):
            record = self._records.get(key)
            if record is not None and self._expired(record, now):
                record = None
            if record is None:
                record = IdempotencyRecord(
                    key=key,
                    first_seen_at=now,
                    updated_at=now,
                    alert_ref=alert_ref,
                )
                self._records[key] = record
                self._live.add(key)
                self._persist(record)
                return record

            if record.outcome == ACCEPTED:
                retryable = False
            elif record.outcome == PENDING:
                retryable = self._is_stale(record, now)
            else:
                retryable = record.transient

            if retryable and record.attempts <= self.max_retries:
                record.attempts += 1
                record.outcome = PENDING
                record.updated_at = now
                record.transient = False
                self._live.add(key)
                self._persist(record)
                log.info("idempotency_retry", key=key, attempt=record.attempts)
                return record

            log.info("duplicate_alert", key=key, outcome=record.outcome, attempts=record.attempts)
            raise DuplicateConflict(key, record.original_outcome())

    def complete(
        self,
        key: str,
        outcome: str,
        transient: bool = False,
        detail: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> IdempotencyRecord | None:
        """Record the terminal outcome for ``key``."""
        if outcome not in (ACCEPTED, REJECTED):
            raise ValueError(f"unknown idempotency outcome {outcome!r}")
        now = now or utc_now()
        with self._locks.hold(key):
            record = self._records.get(key)
            if record is None:
                return None
            record.outcome = outcome
            record.transient = transient
            record.updated_at = now
            if detail:
                record.detail = dict(detail)
            self._live.discard(key)
            self._persist(record)
            return record

    def purge_expired(self, now: datetime | None = None) -> int:
        now = now or utc_now()
        expired = [k for k, r in list(self._records.items()) if self._expired(r, now)]
        for key in expired:
            with self._locks.hold(key):
                record = self._records.get(key)
                if record is not None and self._expired(record, now):
                    del self._records[key]
                    self._live.discard(key)
            self._locks.discard(key)
        if expired:
            self._compact()
        return len(expired)

    def compact_if_grown(self) -> bool:
        """Rewrite the journal once superseded lines dominate it."""
        if self._file is None:
            return False
        if self._journal_lines <= 2 * len(self._records) + COMPACT_SLACK:
            return False
        before = self._journal_lines
        self._compact()
        log.info("idempotency_compacted", lines_before=before, lines_after=self._journal_lines)
        return True

    def __len__(self) -> int:
        return len(self._records)

    def stats(self) -> dict[str, Any]:
        records = list(self._records.values())
        return {
            "enabled": self.enabled,
            "size": len(records),
            "journal_lines": self._journal_lines,
            "pending": sum(1 for r in records if r.outcome == PENDING),
            "retention_hours": self.config.retention_hours,
            "sample_keys": [r.key for r in records[-5:]],
        }
