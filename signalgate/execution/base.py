"""Broker adapter interface and shared result types."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from signalgate.models import AccountSummary, format_timestamp, utc_now


@dataclass
class OrderResult:
    """A filled order as reported by a broker."""

    order_ref: str
    symbol: str
    action: str
    requested_quantity: float
    filled_quantity: float
    fill_price: float
    broker_type: str
    broker_order_ref: str | None = None
    fees: float = 0.0
    realized_pnl: float = 0.0
    status: str = "filled"
    filled_at: datetime = field(default_factory=utc_now)
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_ref": self.order_ref,
            "broker_order_ref": self.broker_order_ref,
            "symbol": self.symbol,
            "action": self.action,
            "status": self.status,
            "requested_quantity": self.requested_quantity,
            "filled_quantity": self.filled_quantity,
            "fill_price": self.fill_price,
            "fees": round(self.fees, 8),
            "realized_pnl": round(self.realized_pnl, 8),
            "broker_type": self.broker_type,
            "filled_at": format_timestamp(self.filled_at),
        }


@dataclass
class BrokerHealth:
    broker_type: str
    healthy: bool
    latency_ms: float | None = None
    detail: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "broker_type": self.broker_type,
            "healthy": self.healthy,
            "latency_ms": round(self.latency_ms, 2) if self.latency_ms is not None else None,
            "detail": self.detail,
        }


class BrokerAdapter(ABC):
    """Uniform order-execution interface.

    ``place_order`` must be idempotent per ``order_ref``: repeating a call with
    the same reference never produces a second fill. ``resubmit`` tells the
    adapter the reference may already have reached the broker, possibly from
    an earlier process. Failures are raised as ``BrokerError`` subclasses.
    """

    broker_type: str = "unknown"

    async def connect(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
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
        raise NotImplementedError

    @abstractmethod
    async def get_account_summary(self) -> AccountSummary:
        raise NotImplementedError

    @abstractmethod
    async def health_check(self) -> BrokerHealth:
        raise NotImplementedError
