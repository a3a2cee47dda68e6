"""Shared data models."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import StrEnum


class Action(StrEnum):
    """Alert actions accepted by the gateway."""

    BUY = "buy"
    SELL = "sell"
    CLOSE = "close"


class AuthMode(StrEnum):
    """How an inbound request was authenticated."""

    HMAC = "hmac"
    BODY_SECRET = "body_secret"
    DISABLED = "disabled"
    NONE = "none"


class Outcome(StrEnum):
    """Terminal outcome of one inbound attempt, as recorded by telemetry."""

    AUTH_FAIL = "auth_fail"
    VALIDATION_FAIL = "validation_fail"
    DUPLICATE = "duplicate"
    RATE_LIMITED = "rate_limited"
    RISK_DENIED = "risk_denied"
    COOLDOWN_BLOCKED = "cooldown_blocked"
    DISPATCHED = "dispatched"
    BROKER_ERROR = "broker_error"
    INTERNAL_ERROR = "internal_error"


def utc_now() -> datetime:
    """Return a timezone-aware UTC timestamp."""
    return datetime.now(timezone.utc)


def format_timestamp(ts: datetime) -> str:
    """Format timestamp as ISO-8601 with Z suffix."""
    return ts.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    return datetime.fromisoformat(value.replace("Z", "+00:00"))


@dataclass(frozen=True)
class Alert:
    """A validated inbound trade signal."""

    symbol: str
    action: Action
    quantity: float
    timestamp: datetime
    price_hint: float | None = None
    alert_id: str | None = None
    stop_loss: float | None = None
    take_profit: float | None = None
    received_at: datetime = field(default_factory=utc_now)

    @property
    def increases_risk(self) -> bool:
        return self.action == Action.BUY

    def describe(self) -> dict[str, object]:
        """Loggable view (never contains secrets)."""
        return {
            "symbol": self.symbol,
            "action": self.action.value,
            "quantity": self.quantity,
            "price_hint": self.price_hint,
            "alert_id": self.alert_id,
            "stop_loss": self.stop_loss,
            "take_profit": self.take_profit,
            "timestamp": format_timestamp(self.timestamp),
        }


@dataclass
class AccountSummary:
    """Balance and positions, either from a broker or derived from the ledger."""

    source: str
    broker_type: str
    starting_balance: float
    balance: float
    positions: dict[str, dict[str, float]] = field(default_factory=dict)
    realized_pnl: float = 0.0
    unrealized_pnl: float = 0.0
    total_trades: int = 0
    as_of: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, object]:
        return {
            "source": self.source,
            "broker_type": self.broker_type,
            "starting_balance": round(self.starting_balance, 8),
            "balance": round(self.balance, 8),
            "positions": self.positions,
            "realized_pnl": round(self.realized_pnl, 8),
            "unrealized_pnl": round(self.unrealized_pnl, 8),
            "total_trades": self.total_trades,
            "as_of": format_timestamp(self.as_of),
        }
