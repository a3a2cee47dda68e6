"""Per-symbol cooldown between confirmed dispatches."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable
from uuid import uuid4

import structlog

from signalgate.config.settings import CooldownConfig
from signalgate.errors import CooldownBlocked
from signalgate.models import format_timestamp, utc_now
from signalgate.utils.locks import KeyedLocks

log = structlog.get_logger(__name__)


@dataclass
class CooldownClaim:
    symbol: str
    claimed_at: datetime
    token: str = field(default_factory=lambda: uuid4().hex)
    settled: bool = False


class CooldownGuard:
    """Block a symbol until ``seconds`` have passed since its last confirmed dispatch.

    ``claim`` marks the symbol in flight so a concurrent alert for the same
    symbol is blocked before either reaches the broker. Only ``commit`` moves
    ``last_execution_at``.
    """

    def __init__(self, config: CooldownConfig, clock: Callable[[], datetime] = utc_now) -> None:
        self.config = config
        self.seconds = config.seconds
        self._clock = clock
        self._locks = KeyedLocks()
        self._last_execution: dict[str, datetime] = {}
        self._in_flight: dict[str, CooldownClaim] = {}

    def remaining(self, symbol: str, now: datetime | None = None) -> float:
        last = self._last_execution.get(symbol)
        if last is None:
            return 0.0
        now = now or self._clock()
        return max(0.0, self.seconds - (now - last).total_seconds())

    def claim(self, symbol: str) -> CooldownClaim:
        now = self._clock()
        with self._locks.hold(symbol):
            if self.seconds <= 0:
                return CooldownClaim(symbol=symbol, claimed_at=now)
            if symbol in self._in_flight:
                log.info("cooldown_blocked", symbol=symbol, in_flight=True)
                raise CooldownBlocked(symbol, self.seconds)
            remaining = self.remaining(symbol, now)
            if remaining > 0:
                log.info("cooldown_blocked", symbol=symbol, retry_after_sec=round(remaining, 3))
                raise CooldownBlocked(symbol, remaining)
            claim = CooldownClaim(symbol=symbol, claimed_at=now)
            self._in_flight[symbol] = claim
            return claim

    def commit(self, claim: CooldownClaim) -> None:
        """Record a confirmed dispatch for the claimed symbol."""
        with self._locks.hold(claim.symbol):
            if claim.settled:
                return
            claim.settled = True
            if self.seconds <= 0:
                return
            self._last_execution[claim.symbol] = self._clock()
            if self._in_flight.get(claim.symbol) is claim:
                del self._in_flight[claim.symbol]

    def release(self, claim: CooldownClaim) -> None:
        """Drop the claim without recording a dispatch."""
        with self._locks.hold(claim.symbol):
            if claim.settled:
                return
            claim.settled = True
            if self._in_flight.get(claim.symbol) is claim:
                del self._in_flight[claim.symbol]

    def last_execution_at(self, symbol: str) -> datetime | None:
        return self._last_execution.get(symbol)

    def active_count(self) -> int:
        now = self._clock()
        return sum(1 for s in list(self._last_execution) if self.remaining(s, now) > 0)

    def purge_expired(self) -> int:
        now = self._clock()
        expired = [s for s in list(self._last_execution) if self.remaining(s, now) <= 0]
        for symbol in expired:
            with self._locks.hold(symbol):
                if self.remaining(symbol, now) <= 0:
                    self._last_execution.pop(symbol, None)
            if symbol not in self._in_flight:
                self._locks.discard(symbol)
        return len(expired)

    def stats(self) -> dict[str, object]:
        now = self._clock()
        active = {
            symbol: round(self.remaining(symbol, now), 3)
            for symbol in list(self._last_execution)
            if self.remaining(symbol, now) > 0
        }
        return {
            "enabled": self.seconds > 0,
            "seconds": self.seconds,
            "active": active,
            "in_flight": sorted(self._in_flight),
            "last_execution_at": {
                symbol: format_timestamp(ts) for symbol, ts in list(self._last_execution.items())
            },
        }
