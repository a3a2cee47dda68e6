"""Paper broker: immediate simulated fills against a virtual balance."""

from __future__ import annotations

from dataclasses import dataclass

import structlog

from signalgate.config.settings import PaperConfig
from signalgate.errors import BrokerError, BrokerRejected, BrokerUnavailable
from signalgate.execution.base import BrokerAdapter, BrokerHealth, OrderResult
from signalgate.models import AccountSummary


@dataclass
class PaperPosition:
    quantity: float = 0.0
    avg_price: float = 0.0
    last_price: float = 0.0


class PaperBroker(BrokerAdapter):
    """Simulated broker with average-cost positions.

    Slippage moves the fill against the order by ``slippage_bps``; the fee is
    ``fee_pct`` percent of the filled notional. Results and rejections are
    cached by order reference, so a repeated call never fills twice.
    """

    broker_type = "paper"

    def __init__(self, config: PaperConfig, enabled: bool = True) -> None:
        self.config = config
        self.enabled = enabled
        self.starting_balance = config.starting_balance
        self.balance = config.starting_balance
        self.realized_pnl = 0.0
        self.positions: dict[str, PaperPosition] = {}
        self._results: dict[str, OrderResult] = {}
        self._rejections: dict[str, BrokerError] = {}
        self.log = structlog.get_logger(__name__)

    def _slipped(self, price: float, buying: bool) -> float:
        slip = price * self.config.slippage_bps / 10_000
        return price + slip if buying else price - slip

    def _fee(self, notional: float) -> float:
        return notional * self.config.fee_pct / 100

    async def place_order(
        self,
        order_ref: str,
        symbol: str,
        action: str,
        quantity: float,
        price: float | None = None,
        *,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        resubmit: bool = False,
    ) -> OrderResult:
        if not self.enabled:
            raise BrokerUnavailable("Paper trading is disabled")
        cached = self._results.get(order_ref)
        if cached is not None:
            return cached
        rejection = self._rejections.get(order_ref)
        if rejection is not None:
            raise rejection
        try:
            result = self._fill(order_ref, symbol, action.lower(), quantity, price)
        except BrokerRejected as exc:
            self._rejections[order_ref] = exc
            self.log.info("paper_order_rejected", order_ref=order_ref, symbol=symbol, reason=exc.message)
            raise
        if stop_loss is not None or take_profit is not None:
            result.raw = {"stop_loss": stop_loss, "take_profit": take_profit}
        self._results[order_ref] = result
        self.log.info(
            "paper_order_filled",
            order_ref=order_ref,
            symbol=symbol,
            action=action,
            quantity=result.filled_quantity,
            fill_price=result.fill_price,
            balance=round(self.balance, 8),
        )
        return result

    def _fill(
        self,
        order_ref: str,
        symbol: str,
        action: str,
        quantity: float,
        price: float | None,
    ) -> OrderResult:
        if price is None or price <= 0:
            raise BrokerRejected("Paper fill needs a positive reference price", reason="NO_PRICE")
        position = self.positions.get(symbol)

        if action == "buy":
            fill_price = self._slipped(price, buying=True)
            notional = quantity * fill_price
            fee = self._fee(notional)
            if notional + fee > self.balance:
                raise BrokerRejected(
                    f"Insufficient balance for {symbol}: need {notional + fee:.2f}, have {self.balance:.2f}",
                    reason="INSUFFICIENT_BALANCE",
                )
            if position is None:
                position = self.positions.setdefault(symbol, PaperPosition())
            new_qty = position.quantity + quantity
            position.avg_price = (position.quantity * position.avg_price + notional) / new_qty
            position.quantity = new_qty
            position.last_price = fill_price
            self.balance -= notional + fee
            realized = -fee
            filled = quantity
        elif action in ("sell", "close"):
            if position is None or position.quantity <= 0:
                raise BrokerRejected(f"No open position for {symbol}", reason="NO_POSITION")
            filled = position.quantity if action == "close" else min(quantity, position.quantity)
            fill_price = self._slipped(price, buying=False)
            notional = filled * fill_price
            fee = self._fee(notional)
            realized = (fill_price - position.avg_price) * filled - fee
            self.balance += notional - fee
            position.quantity -= filled
            position.last_price = fill_price
            if position.quantity <= 1e-12:
                del self.positions[symbol]
        else:
            raise BrokerRejected(f"Unsupported action {action!r}", reason="BAD_ACTION")

        self.realized_pnl += realized
        return OrderResult(
            order_ref=order_ref,
            broker_order_ref=f"paper-{order_ref}",
            symbol=symbol,
            action=action,
            requested_quantity=quantity,
            filled_quantity=filled,
            fill_price=fill_price,
            fees=fee,
            realized_pnl=realized,
            broker_type=self.broker_type,
        )

    async def get_account_summary(self) -> AccountSummary:
        if not self.enabled:
            raise BrokerUnavailable("Paper trading is disabled")
        unrealized = sum(
            (p.last_price - p.avg_price) * p.quantity for p in self.positions.values()
        )
        return AccountSummary(
            source="broker",
            broker_type=self.broker_type,
            starting_balance=self.starting_balance,
            balance=self.balance,
            positions={
                symbol: {"quantity": p.quantity, "avg_price": p.avg_price, "last_price": p.last_price}
                for symbol, p in self.positions.items()
            },
            realized_pnl=self.realized_pnl,
            unrealized_pnl=unrealized,
            total_trades=len(self._results),
        )

    async def health_check(self) -> BrokerHealth:
        if not self.enabled:
            return BrokerHealth(self.broker_type, healthy=False, detail="paper trading disabled")
        return BrokerHealth(self.broker_type, healthy=True, latency_ms=0.0)
