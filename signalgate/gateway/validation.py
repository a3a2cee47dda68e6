"""Alert payload parsing and validation."""

from __future__ import annotations

import math
from datetime import datetime, timezone
from typing import Any

import orjson
from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictFloat,
    StrictInt,
    StrictStr,
    ValidationError,
    field_validator,
)

from signalgate.config.settings import ValidationConfig
from signalgate.errors import ValidationFailure
from signalgate.models import Action, Alert, utc_now

# Epoch values at or above this are milliseconds.
MS_THRESHOLD = 10**10


class AlertPayload(BaseModel):
    """Structural shape of an inbound alert."""

    model_config = ConfigDict(extra="ignore", str_strip_whitespace=True)

    symbol: StrictStr
    action: Action
    # JSON booleans and numeric strings are not quantities.
    quantity: StrictFloat | StrictInt
    price_hint: StrictFloat | StrictInt | None = Field(
        default=None, validation_alias=AliasChoices("price_hint", "price")
    )
    stop_loss: StrictFloat | StrictInt | None = Field(
        default=None, validation_alias=AliasChoices("stop_loss", "stopLoss")
    )
    take_profit: StrictFloat | StrictInt | None = Field(
        default=None, validation_alias=AliasChoices("take_profit", "takeProfit")
    )
    alert_id: str | None = None
    timestamp: StrictFloat | StrictInt | StrictStr | None = None

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        # "BINANCE:BTCUSD" -> "BTCUSD"
        v = v.rsplit(":", 1)[-1].strip().upper()
        if not v:
            raise ValueError("symbol must be a non-empty string")
        return v

    @field_validator("action", mode="before")
    @classmethod
    def normalize_action(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @field_validator("quantity")
    @classmethod
    def validate_quantity(cls, v: float) -> float:
        if not math.isfinite(v) or v <= 0:
            raise ValueError("quantity must be a finite number greater than 0")
        return float(v)

    @field_validator("price_hint", "stop_loss", "take_profit")
    @classmethod
    def validate_price(cls, v: float | None) -> float | None:
        if v is None:
            return v
        if not math.isfinite(v) or v <= 0:
            raise ValueError("price must be a finite number greater than 0")
        return float(v)

    @field_validator("alert_id", mode="before")
    @classmethod
    def normalize_alert_id(cls, v: Any) -> Any:
        if isinstance(v, bool):
            raise ValueError("alert_id must be a string")
        if isinstance(v, int):
            v = str(v)
        if isinstance(v, str) and not v.strip():
            raise ValueError("alert_id must be a non-empty string")
        return v


def _field_errors(exc: ValidationError) -> dict[str, str]:
    errors: dict[str, str] = {}
    for error in exc.errors():
        loc = error.get("loc", ())
        # union members add their type name after the field; report the field
        name = str(loc[0]) if loc else "body"
        message = error.get("msg", "invalid value")
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        errors.setdefault(name, message)
    return errors


def parse_timestamp_value(value: float | str | None, received_at: datetime) -> datetime:
    """Epoch seconds or milliseconds, or ISO-8601; absent means receipt time."""
    if value is None:
        return received_at
    if isinstance(value, str):
        text = value.strip()
        try:
            value = float(text)
        except ValueError:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
            if parsed.tzinfo is None:
                parsed = parsed.replace(tzinfo=timezone.utc)
            return parsed.astimezone(timezone.utc)
    if not math.isfinite(value) or value < 0:
        raise ValueError("timestamp must be a non-negative epoch value")
    if value >= MS_THRESHOLD:
        value = value / 1000
    return datetime.fromtimestamp(value, tz=timezone.utc)


class PayloadValidator:
    """Turn a raw body into an ``Alert`` or raise ``ValidationFailure``.

    Structural checks always run; policy checks (symbol allow-list, alert age
    and future skew) only when validation is enabled.
    """

    def __init__(self, config: ValidationConfig) -> None:
        self.config = config
        self.enabled = config.enabled
        self.allowed_symbols = set(config.allowed_symbols)

    @staticmethod
    def parse_body(raw_body: bytes) -> dict[str, Any]:
        try:
            payload = orjson.loads(raw_body)
        except orjson.JSONDecodeError as exc:
            raise ValidationFailure({"body": f"invalid JSON: {exc}"}) from exc
        if not isinstance(payload, dict):
            raise ValidationFailure({"body": "alert must be a JSON object"})
        return payload

    def validate(self, payload: dict[str, Any], now: datetime | None = None) -> Alert:
        now = now or utc_now()
        try:
            model = AlertPayload.model_validate(payload)
        except ValidationError as exc:
            raise ValidationFailure(_field_errors(exc)) from exc

        errors: dict[str, str] = {}
        if model.quantity > self.config.max_quantity:
            errors["quantity"] = f"quantity exceeds maximum of {self.config.max_quantity:g}"

        try:
            timestamp = parse_timestamp_value(model.timestamp, now)
        except (ValueError, OverflowError, OSError) as exc:
            errors["timestamp"] = str(exc)
            timestamp = now

        if self.enabled:
            if self.allowed_symbols and model.symbol not in self.allowed_symbols:
                errors["symbol"] = f"symbol {model.symbol} is not allowed"
            age = (now - timestamp).total_seconds()
            if age > self.config.max_alert_age_sec:
                errors["timestamp"] = f"alert is older than {self.config.max_alert_age_sec}s"
            elif -age > self.config.max_future_skew_sec:
                errors["timestamp"] = f"alert is more than {self.config.max_future_skew_sec}s in the future"

        if errors:
            raise ValidationFailure(errors)

        return Alert(
            symbol=model.symbol,
            action=model.action,
            quantity=model.quantity,
            timestamp=timestamp,
            price_hint=model.price_hint,
            alert_id=model.alert_id,
            stop_loss=model.stop_loss,
            take_profit=model.take_profit,
            received_at=now,
        )
