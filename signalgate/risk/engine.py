"""Deterministic risk engine with hard limits and capacity reservations."""

from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from uuid import uuid4

import structlog

from signalgate.config.settings import RiskConfig
from signalgate.errors import RiskDenied
from signalgate.models import Action, Alert, format_timestamp, utc_now
from signalgate.utils.locks import KeyedLocks

log = structlog.get_logger(__name__)


@dataclass
class SymbolRisk:
    position_qty: float = 0.0
    avg_price: float = 0.0
    reserved: float = 0.0
    last_price: float | None = None

    @property
    def open_exposure(self) -> float:
        return self.position_qty * self.avg_price


@dataclass
class Reservation:
    """Capacity held for one alert between the risk check and the broker result."""

    symbol: str
    action: Action
    quantity: float
    price: float
    notional: float
    opens_position: bool
    reservation_id: str = field(default_factory=lambda: uuid4().hex)
    settled: bool = False


@dataclass(frozen=True)
class RiskCheckResult:
    approved: bool
    reasons: list[str] = field(default_factory=list)


def _next_midnight(now: datetime) -> datetime:
    day = now.astimezone(timezone.utc).date() + timedelta(days=1)
    return datetime.combine(day, time(0, 0), tzinfo=timezone.utc)


def _parse_hhmm(value: str) -> time:
    hours, minutes = value.split(":")
    return time(int(hours), int(minutes))


class RiskEngine:
    """Evaluate alerts against hard limits and reserve capacity on pass.

    Symbol-level state is guarded by a per-symbol lock; the aggregate counters
    by one short lock, always taken after the symbol lock. ``equity`` is the
    account value the position-size percentage is measured against; realized
    P&L is added to it as fills are confirmed.
    """

    def __init__(self, config: RiskConfig, equity: float | None = None) -> None:
        self.config = config
        self.equity = equity
        self._symbol_locks = KeyedLocks()
        self._aggregate_lock = threading.Lock()
        self._symbols: dict[str, SymbolRisk] = {}
        self._total_reserved = 0.0
        self._pending_new: dict[str, int] = {}
        self._open_reservations: dict[str, Reservation] = {}
        self._daily_loss = 0.0
        self._daily_realized_pnl = 0.0
        self._reset_at = _next_midnight(utc_now())
        self._hours = None
        if config.trading_hours_start and config.trading_hours_end:
            self._hours = (
                _parse_hhmm(config.trading_hours_start),
                _parse_hhmm(config.trading_hours_end),
            )

    def _state(self, symbol: str) -> SymbolRisk:
        state = self._symbols.get(symbol)
        if state is None:
            state = self._symbols.setdefault(symbol, SymbolRisk())
        return state

    def _maybe_reset_daily(self, now: datetime) -> None:
        if now >= self._reset_at:
            log.info(
                "risk_daily_reset",
                daily_loss=round(self._daily_loss, 8),
                daily_realized_pnl=round(self._daily_realized_pnl, 8),
            )
            self._daily_loss = 0.0
            self._daily_realized_pnl = 0.0
            self._reset_at = _next_midnight(now)

    def _inside_trading_window(self, now: datetime) -> bool:
        now = now.astimezone(timezone.utc)
        if now.weekday() not in self.config.trading_days:
            return False
        if self._hours is None:
            return True
        start, end = self._hours
        current = now.time()
        if start <= end:
            return start <= current < end
        return current >= start or current < end

    def _total_exposure(self) -> float:
        return sum(state.open_exposure for state in self._symbols.values())

    def _open_position_count(self) -> int:
        return sum(1 for state in self._symbols.values() if state.position_qty > 0)

    def last_price(self, symbol: str) -> float | None:
        state = self._symbols.get(symbol)
        return state.last_price if state else None

    def evaluate(self, alert: Alert, price: float, now: datetime | None = None) -> RiskCheckResult:
        """Run every check without reserving anything."""
        now = now or utc_now()
        with self._symbol_locks.hold(alert.symbol), self._aggregate_lock:
            reasons = self._reasons(alert, price, now)
        return RiskCheckResult(approved=not reasons, reasons=reasons)

    def _reasons(self, alert: Alert, price: float, now: datetime) -> list[str]:
        reasons: list[str] = []
        self._maybe_reset_daily(now)

        if not self.config.trading_enabled:
            reasons.append("TRADING_DISABLED")

        if not self._inside_trading_window(now):
            reasons.append("OUTSIDE_TRADING_HOURS")

        if alert.increases_risk and self._daily_loss >= self.config.max_daily_loss:
            reasons.append("DAILY_LOSS_LIMIT")

        if alert.stop_loss is not None:
            distance = abs(alert.stop_loss - price) * 100 / price
            if distance > self.config.max_stop_distance_pct:
                reasons.append("STOP_LOSS_TOO_WIDE")

        if not alert.increases_risk:
            return reasons

        if self.config.require_stop_loss and alert.stop_loss is None:
            reasons.append("STOP_LOSS_REQUIRED")
        if self.config.require_take_profit and alert.take_profit is None:
            reasons.append("TAKE_PROFIT_REQUIRED")

        state = self._state(alert.symbol)
        notional = alert.quantity * price
        limit = self.config.max_position_pct
        if limit is not None and self.equity is not None:
            if self.equity <= 0 or notional / self.equity * 100 > limit:
                reasons.append("POSITION_SIZE_LIMIT")
        opens_new = state.position_qty <= 0 and alert.symbol not in self._pending_new
        if opens_new:
            open_count = self._open_position_count() + len(self._pending_new)
            if open_count >= self.config.max_positions:
                reasons.append("MAX_POSITIONS_REACHED")

        if state.open_exposure + state.reserved + notional > self.config.max_symbol_exposure:
            reasons.append("SYMBOL_EXPOSURE_LIMIT")

        if self._total_exposure() + self._total_reserved + notional > self.config.max_total_exposure:
            reasons.append("AGGREGATE_EXPOSURE_LIMIT")

        return reasons

    def reserve(self, alert: Alert, price: float, now: datetime | None = None) -> Reservation:
        """Check limits and hold capacity, or raise ``RiskDenied``."""
        now = now or utc_now()
        with self._symbol_locks.hold(alert.symbol):
            with self._aggregate_lock:
                reasons = self._reasons(alert, price, now)
                if reasons:
                    log.info("risk_denied", symbol=alert.symbol, action=alert.action.value, reasons=reasons)
                    raise RiskDenied(reasons)
                state = self._state(alert.symbol)
                notional = alert.quantity * price if alert.increases_risk else 0.0
                opens_position = alert.increases_risk and state.position_qty <= 0
                reservation = Reservation(
                    symbol=alert.symbol,
                    action=alert.action,
                    quantity=alert.quantity,
                    price=price,
                    notional=notional,
                    opens_position=opens_position,
                )
                state.reserved += notional
                self._total_reserved += notional
                if opens_position:
                    self._pending_new[alert.symbol] = self._pending_new.get(alert.symbol, 0) + 1
                self._open_reservations[reservation.reservation_id] = reservation
        return reservation

    def _drop_hold(self, reservation: Reservation) -> None:
        state = self._state(reservation.symbol)
        state.reserved = max(0.0, state.reserved - reservation.notional)
        self._total_reserved = max(0.0, self._total_reserved - reservation.notional)
        if reservation.opens_position:
            remaining = self._pending_new.get(reservation.symbol, 0) - 1
            if remaining > 0:
                self._pending_new[reservation.symbol] = remaining
            else:
                self._pending_new.pop(reservation.symbol, None)
        self._open_reservations.pop(reservation.reservation_id, None)

    def confirm(
        self,
        reservation: Reservation,
        fill_price: float,
        filled_quantity: float,
        realized_pnl: float | None = None,
        fees: float = 0.0,
        now: datetime | None = None,
    ) -> float:
        """Apply a fill and drop the hold. Returns the realized P&L booked."""
        now = now or utc_now()
        with self._symbol_locks.hold(reservation.symbol):
            with self._aggregate_lock:
                if reservation.settled:
                    return 0.0
                reservation.settled = True
                self._drop_hold(reservation)
                self._maybe_reset_daily(now)
                state = self._state(reservation.symbol)
                state.last_price = fill_price
                computed = -fees
                if reservation.action == Action.BUY:
                    new_qty = state.position_qty + filled_quantity
                    if new_qty > 0:
                        state.avg_price = (
                            state.position_qty * state.avg_price + filled_quantity * fill_price
                        ) / new_qty
                    state.position_qty = new_qty
                else:
                    closed = min(filled_quantity, state.position_qty)
                    computed += (fill_price - state.avg_price) * closed
                    state.position_qty = max(0.0, state.position_qty - closed)
                    if state.position_qty <= 0:
                        state.position_qty = 0.0
                        state.avg_price = 0.0
                pnl = computed if realized_pnl is None else realized_pnl
                self._daily_realized_pnl += pnl
                if self.equity is not None:
                    self.equity += pnl
                if pnl < 0:
                    self._daily_loss += -pnl
        return pnl

    def release(self, reservation: Reservation) -> None:
        """Drop the hold with no change to positions."""
        with self._symbol_locks.hold(reservation.symbol):
            with self._aggregate_lock:
                if reservation.settled:
                    return
                reservation.settled = True
                self._drop_hold(reservation)

    def open_reservation_count(self) -> int:
        return len(self._open_reservations)

    def stats(self) -> dict[str, object]:
        with self._aggregate_lock:
            symbols = {
                symbol: {
                    "position_qty": round(state.position_qty, 10),
                    "avg_price": round(state.avg_price, 10),
                    "open_exposure": round(state.open_exposure, 8),
                    "reserved": round(state.reserved, 8),
                }
                for symbol, state in self._symbols.items()
                if state.position_qty > 0 or state.reserved > 0
            }
            return {
                "enabled": self.config.enabled,
                "trading_enabled": self.config.trading_enabled,
                "limits": {
                    "max_total_exposure": self.config.max_total_exposure,
                    "max_symbol_exposure": self.config.max_symbol_exposure,
                    "max_daily_loss": self.config.max_daily_loss,
                    "max_positions": self.config.max_positions,
                    "max_position_pct": self.config.max_position_pct,
                    "require_stop_loss": self.config.require_stop_loss,
                    "require_take_profit": self.config.require_take_profit,
                    "max_stop_distance_pct": self.config.max_stop_distance_pct,
                },
                "equity": None if self.equity is None else round(self.equity, 8),
                "total_exposure": round(self._total_exposure(), 8),
                "total_reserved": round(self._total_reserved, 8),
                "open_positions": self._open_position_count(),
                "open_reservations": len(self._open_reservations),
                "daily_loss": round(self._daily_loss, 8),
                "daily_realized_pnl": round(self._daily_realized_pnl, 8),
                "reset_at": format_timestamp(self._reset_at),
                "symbols": symbols,
            }
