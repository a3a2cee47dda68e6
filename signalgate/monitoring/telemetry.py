"""Per-attempt telemetry journal."""

from __future__ import annotations

import threading
from collections import Counter, deque
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

import orjson
import structlog

from signalgate.models import AuthMode, Outcome, format_timestamp, utc_now

log = structlog.get_logger(__name__)


@dataclass
class TelemetryRecord:
    """One inbound attempt, as it ended."""

    outcome: Outcome
    http_status: int
    auth_mode: AuthMode = AuthMode.NONE
    received_at: datetime = field(default_factory=utc_now)
    alert_id: str | None = None
    symbol: str | None = None
    action: str | None = None
    idempotency_key: str | None = None
    reason: str | None = None
    remote_ip: str | None = None
    user_agent: str | None = None
    latency_ms: float = 0.0

    def to_dict(self) -> dict[str, Any]:
        data = asdict(self)
        data["outcome"] = self.outcome.value
        data["auth_mode"] = self.auth_mode.value
        data["received_at"] = format_timestamp(self.received_at)
        data["latency_ms"] = round(self.latency_ms, 3)
        return data


class TelemetryRecorder:
    """Append telemetry records to a JSONL journal and keep a live summary.

    Recording never raises: a journal write failure is logged and the
    in-memory counters are still updated.
    """

    def __init__(self, telemetry_path: str | Path | None, tail_size: int = 200) -> None:
        self._file: Path | None = None
        if telemetry_path is not None:
            path = Path(telemetry_path)
            path.mkdir(parents=True, exist_ok=True)
            self._file = path / "telemetry.jsonl"
        self._lock = threading.Lock()
        self._counts: Counter[str] = Counter()
        self._tail: deque[dict[str, Any]] = deque(maxlen=tail_size)
        self._last: dict[str, Any] | None = None
        self._last_at: datetime | None = None
        self._write_failures = 0

    @property
    def path(self) -> Path | None:
        return self._file

    def record(self, record: TelemetryRecord) -> None:
        data = record.to_dict()
        with self._lock:
            self._counts[data["outcome"]] += 1
            self._tail.append(data)
            self._last = data
            self._last_at = utc_now()
            if self._file is None:
                return
            try:
                with open(self._file, "ab") as handle:
                    handle.write(orjson.dumps(data) + b"\n")
            except OSError as exc:
                self._write_failures += 1
                log.error("telemetry_write_failed", path=str(self._file), error=str(exc))

    def count(self, outcome: Outcome | str) -> int:
        return self._counts.get(str(outcome), 0)

    def total(self) -> int:
        return sum(self._counts.values())

    def last_record(self) -> dict[str, Any] | None:
        return dict(self._last) if self._last else None

    def last_age_sec(self) -> float | None:
        """Seconds since the last attempt was recorded, None if nothing yet."""
        if self._last_at is None:
            return None
        return (utc_now() - self._last_at).total_seconds()

    def tail(self, limit: int = 50) -> list[dict[str, Any]]:
        with self._lock:
            items = list(self._tail)
        return items[-limit:] if limit > 0 else []

    def summary(self) -> dict[str, Any]:
        with self._lock:
            counts = {outcome.value: self._counts.get(outcome.value, 0) for outcome in Outcome}
            last = dict(self._last) if self._last else None
        age = self.last_age_sec()
        return {
            "total": sum(counts.values()),
            "by_outcome": counts,
            "last_record": last,
            "last_age_sec": round(age, 3) if age is not None else None,
            "write_failures": self._write_failures,
        }

    def load_records(self) -> list[dict[str, Any]]:
        """Read the whole journal back (used by tests and offline inspection)."""
        if self._file is None or not self._file.exists():
            return []
        records = []
        with open(self._file, "rb") as handle:
            for line in handle:
                if not line.strip():
                    continue
                try:
                    records.append(orjson.loads(line))
                except orjson.JSONDecodeError:
                    continue
        return records
