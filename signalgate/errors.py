"""Error taxonomy for the alert pipeline.

Every pipeline stage signals rejection by raising one of these. The gateway
handler is the only place that turns them into HTTP responses and telemetry
outcomes.
"""

from __future__ import annotations

from typing import Any

from signalgate.models import Outcome


class GatewayError(Exception):
    """Base class for terminal pipeline rejections."""

    code = "internal_error"
    outcome = Outcome.INTERNAL_ERROR
    http_status = 500

    def __init__(self, message: str, **detail: Any) -> None:
        super().__init__(message)
        self.message = message
        self.detail = detail

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status": "error", "error": self.code, "message": self.message}
        body.update(self.detail)
        return body


class AuthenticationFailure(GatewayError):
    code = "authentication_failed"
    outcome = Outcome.AUTH_FAIL
    http_status = 401


class ValidationFailure(GatewayError):
    code = "validation_failed"
    outcome = Outcome.VALIDATION_FAIL
    http_status = 400

    def __init__(self, errors: dict[str, str], message: str = "Invalid alert payload") -> None:
        super().__init__(message, errors=errors)
        self.errors = errors


class DuplicateConflict(GatewayError):
    code = "duplicate"
    outcome = Outcome.DUPLICATE
    http_status = 409

    def __init__(self, idempotency_key: str, original: dict[str, Any] | None = None) -> None:
        super().__init__(
            "Alert already processed",
            idempotency_key=idempotency_key,
            original=original or {},
        )
        self.idempotency_key = idempotency_key
        self.original = original or {}


class RateLimitExceeded(GatewayError):
    code = "rate_limited"
    outcome = Outcome.RATE_LIMITED
    http_status = 429

    def __init__(self, retry_after_sec: float) -> None:
        super().__init__("Rate limit exceeded", retry_after_sec=round(retry_after_sec, 3))
        self.retry_after_sec = retry_after_sec


class RiskDenied(GatewayError):
    code = "risk_denied"
    outcome = Outcome.RISK_DENIED
    http_status = 429

    def __init__(self, reasons: list[str]) -> None:
        super().__init__("Risk check failed", reasons=list(reasons))
        self.reasons = list(reasons)


class CooldownBlocked(GatewayError):
    code = "cooldown_blocked"
    outcome = Outcome.COOLDOWN_BLOCKED
    http_status = 429

    def __init__(self, symbol: str, retry_after_sec: float) -> None:
        super().__init__(
            f"Cooldown active for {symbol}",
            symbol=symbol,
            retry_after_sec=round(retry_after_sec, 3),
        )
        self.symbol = symbol
        self.retry_after_sec = retry_after_sec


class InternalError(GatewayError):
    code = "internal_error"
    outcome = Outcome.INTERNAL_ERROR
    http_status = 500


class BrokerError(GatewayError):
    """Order execution failure, classified for retry and rollback."""

    code = "broker_error"
    outcome = Outcome.BROKER_ERROR
    http_status = 503
    retryable = False


class BrokerTimeout(BrokerError):
    code = "broker_timeout"
    retryable = True


class BrokerUnavailable(BrokerError):
    code = "broker_unavailable"
    retryable = True


class BrokerRejected(BrokerError):
    code = "broker_rejected"
    http_status = 200
    retryable = False


class LedgerError(RuntimeError):
    """Illegal ledger operation or failed ledger write."""
