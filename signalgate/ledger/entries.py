"""Trade ledger entry definitions and serialization helpers."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import StrEnum
from typing import Any
from uuid import uuid4

from signalgate.models import format_timestamp, parse_timestamp, utc_now


class LedgerStatus(StrEnum):
    """Execution lifecycle of an accepted alert."""

    NEW = "new"
    SUBMITTED = "submitted"
    FILLED = "filled"
    REJECTED = "rejected"
    ERROR = "error"

    @property
    def terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({LedgerStatus.FILLED, LedgerStatus.REJECTED, LedgerStatus.ERROR})

ALLOWED_TRANSITIONS: dict[LedgerStatus, frozenset[LedgerStatus]] = {
    LedgerStatus.NEW: frozenset({LedgerStatus.SUBMITTED, LedgerStatus.ERROR}),
    LedgerStatus.SUBMITTED: TERMINAL_STATUSES,
    LedgerStatus.FILLED: frozenset(),
    LedgerStatus.REJECTED: frozenset(),
    LedgerStatus.ERROR: frozenset(),
}


@dataclass(frozen=True)
class TradeLedgerEntry:
    """One version of a ledger entry. The latest version per entry_id wins."""

    entry_id: str
    symbol: str
    action: str
    quantity: float
    status: LedgerStatus
    created_at: datetime
    updated_at: datetime
    alert_id: str | None = None
    idempotency_key: str | None = None
    order_ref: str | None = None
    price: float | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    fill_price: float | None = None
    filled_quantity: float = 0.0
    fees: float = 0.0
    realized_pnl: float = 0.0
    broker_type: str | None = None
    broker_order_ref: str | None = None
    error_detail: str | None = None
    corrects: str | None = None
    version: int = 1
    extra: dict[str, Any] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.status.terminal

    @property
    def notional(self) -> float:
        """Filled notional, zero unless the entry filled."""
        if self.status != LedgerStatus.FILLED or self.fill_price is None:
            return 0.0
        return self.filled_quantity * self.fill_price

    def evolve(self, **changes: Any) -> "TradeLedgerEntry":
        """Next version with the given fields changed."""
        return replace(self, version=self.version + 1, updated_at=utc_now(), **changes)

    def to_dict(self) -> dict[str, Any]:
        return {
            "entry_id": self.entry_id,
            "version": self.version,
            "alert_id": self.alert_id,
            "idempotency_key": self.idempotency_key,
            "order_ref": self.order_ref,
            "symbol": self.symbol,
            "action": self.action,
            "quantity": self.quantity,
            "price": self.price,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "fill_price": self.fill_price,
            "filled_quantity": self.filled_quantity,
            "fees": self.fees,
            "realized_pnl": self.realized_pnl,
            "broker_type": self.broker_type,
            "status": self.status.value,
            "broker_order_ref": self.broker_order_ref,
            "created_at": format_timestamp(self.created_at),
            "updated_at": format_timestamp(self.updated_at),
            "error_detail": self.error_detail,
            "corrects": self.corrects,
            "extra": self.extra,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TradeLedgerEntry":
        return cls(
            entry_id=data["entry_id"],
            version=int(data.get("version", 1)),
            alert_id=data.get("alert_id"),
            idempotency_key=data.get("idempotency_key"),
            order_ref=data.get("order_ref"),
            symbol=data["symbol"],
            action=data["action"],
            quantity=float(data["quantity"]),
            price=data.get("price"),
            stop_loss=data.get("stop_loss"),
            take_profit=data.get("take_profit"),
            fill_price=data.get("fill_price"),
            filled_quantity=float(data.get("filled_quantity") or 0.0),
            fees=float(data.get("fees") or 0.0),
            realized_pnl=float(data.get("realized_pnl") or 0.0),
            broker_type=data.get("broker_type"),
            status=LedgerStatus(data["status"]),
            broker_order_ref=data.get("broker_order_ref"),
            created_at=parse_timestamp(data["created_at"]),
            updated_at=parse_timestamp(data["updated_at"]),
            error_detail=data.get("error_detail"),
            corrects=data.get("corrects"),
            extra=data.get("extra") or {},
        )


def new_entry(
    symbol: str,
    action: str,
    quantity: float,
    *,
    alert_id: str | None = None,
    idempotency_key: str | None = None,
    order_ref: str | None = None,
    price: float | None = None,
    stop_loss: float | None = None,
    take_profit: float | None = None,
    broker_type: str | None = None,
    corrects: str | None = None,
    status: LedgerStatus = LedgerStatus.NEW,
    **extra: Any,
) -> TradeLedgerEntry:
    """Create the first version of an entry with a fresh UUID."""
    now = utc_now()
    return TradeLedgerEntry(
        entry_id=str(uuid4()),
        symbol=symbol,
        action=action,
        quantity=quantity,
        status=status,
        created_at=now,
        updated_at=now,
        alert_id=alert_id,
        idempotency_key=idempotency_key,
        order_ref=order_ref,
        price=price,
        stop_loss=stop_loss,
        take_profit=take_profit,
        broker_type=broker_type,
        corrects=corrects,
        extra=extra,
    )
