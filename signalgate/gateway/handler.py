"""Alert pipeline: one inbound request in, one terminal outcome out."""

from __future__ import annotations

import asyncio
import hashlib
import math
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Mapping
from uuid import uuid4

import httpx
import structlog

from signalgate import __version__
from signalgate.config.settings import Settings
from signalgate.errors import (
    BrokerError,
    BrokerRejected,
    BrokerTimeout,
    BrokerUnavailable,
    CooldownBlocked,
    GatewayError,
    InternalError,
    LedgerError,
    RateLimitExceeded,
    RiskDenied,
    ValidationFailure,
)
from signalgate.execution.base import BrokerAdapter, OrderResult
from signalgate.gateway.registry import Capabilities, resolve_capabilities
from signalgate.gateway.stages import GateChain, GateHolds
from signalgate.idempotency.keys import derive_key
from signalgate.idempotency.store import ACCEPTED, REJECTED
from signalgate.ledger.entries import LedgerStatus, TradeLedgerEntry
from signalgate.models import Alert, AuthMode, Outcome, format_timestamp, utc_now
from signalgate.monitoring.logging import request_context
from signalgate.monitoring.metrics import Metrics
from signalgate.monitoring.telemetry import TelemetryRecord

log = structlog.get_logger(__name__)

# Rejections that will not change on a redelivery.
FINAL_REJECTIONS = (RiskDenied, CooldownBlocked, BrokerRejected)


@dataclass
class GatewayResponse:
    status_code: int
    body: dict[str, Any]
    headers: dict[str, str] = field(default_factory=dict)


@dataclass
class _Attempt:
    """Mutable context for one inbound request."""

    auth_mode: AuthMode = AuthMode.NONE
    alert: Alert | None = None
    key: str | None = None
    dedup_open: bool = False
    holds: GateHolds | None = None
    entry: TradeLedgerEntry | None = None


def _order_ref(key: str) -> str:
    return "sg-" + hashlib.sha256(key.encode("utf-8")).hexdigest()[:24]


class GatewayHandler:
    """Compose the pipeline stages for each inbound alert.

    Rate limiter, body size, signature, payload, deduplication, then the risk
    and cooldown gates in configured order, broker dispatch, ledger and
    telemetry. Stages raise ``GatewayError``s; this class is the only place
    they become responses. Every call records exactly one telemetry record.
    """

    def __init__(self, settings: Settings, capabilities: Capabilities) -> None:
        self.settings = settings
        self.caps = capabilities
        self.metrics: Metrics = capabilities.metrics
        self.chain = GateChain(
            settings.gateway.gate_order,
            risk=capabilities.risk.service if capabilities.risk.enabled else None,
            cooldown=capabilities.cooldown.service if capabilities.cooldown.enabled else None,
        )
        self.started_at = utc_now()
        self._started_monotonic = time.monotonic()
        self._last_fill_price: dict[str, float] = {}

    # Lifecycle

    async def startup(self) -> None:
        await self.caps.broker.connect()
        if self.caps.fallback_broker.enabled:
            await self.caps.fallback_broker.service.connect()
        self.maintain()
        log.info(
            "gateway_started",
            version=__version__,
            broker_type=self.caps.broker.broker_type,
            gate_order=self.settings.gateway.gate_order,
        )

    def maintain(self, now: datetime | None = None) -> dict[str, int]:
        """Drop expired state, compact the journal and replay missed fills."""
        now = now or utc_now()
        report = {
            "dedup_purged": self.caps.dedup.purge_expired(now),
            "dedup_compacted": int(self.caps.dedup.compact_if_grown()),
            "cooldowns_purged": 0,
            "reconciled": 0,
        }
        if self.caps.cooldown.enabled:
            report["cooldowns_purged"] = self.caps.cooldown.service.purge_expired()
        if self.caps.ledger.enabled and self.caps.reconciliation.count():
            report["reconciled"] = self.caps.reconciliation.replay(self.caps.ledger.service)
        self.refresh_gauges()
        if any(report.values()):
            log.info("maintenance_done", **report)
        return report

    async def run_maintenance(self, interval_sec: float | None = None) -> None:
        """Call ``maintain`` every ``interval_sec`` until cancelled."""
        interval = interval_sec or self.settings.gateway.maintenance_interval_sec
        while True:
            await asyncio.sleep(interval)
            try:
                self.maintain()
            except (OSError, LedgerError) as exc:
                log.error("maintenance_failed", error=str(exc))

    async def close(self) -> None:
        await self.caps.broker.close()
        if self.caps.fallback_broker.enabled:
            await self.caps.fallback_broker.service.close()

    # Pipeline

    async def handle(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        remote_ip: str | None = None,
        user_agent: str | None = None,
    ) -> GatewayResponse:
        with request_context(uuid4().hex[:16], remote_ip):
            return await self._handle(raw_body, headers, remote_ip, user_agent)

    async def _handle(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        remote_ip: str | None,
        user_agent: str | None,
    ) -> GatewayResponse:
        start = time.perf_counter()
        received_at = utc_now()
        attempt = _Attempt()
        response: GatewayResponse | None = None
        reason: str | None = None
        outcome = Outcome.INTERNAL_ERROR
        try:
            response, outcome = await self._process(raw_body, headers, attempt)
        except GatewayError as exc:
            response = self._error_response(exc)
            outcome = exc.outcome
            reason = self._reason(exc)
            self._settle_failure(attempt, exc)
        except Exception as exc:
            log.exception("pipeline_unexpected_error", idempotency_key=attempt.key)
            error = InternalError("Internal error while processing alert")
            response = self._error_response(error)
            outcome = error.outcome
            reason = f"{type(exc).__name__}: {exc}"
            self._settle_failure(attempt, error)
        finally:
            latency_ms = (time.perf_counter() - start) * 1000
            if response is None:
                response = self._error_response(InternalError("Request aborted"))
                self._settle_failure(attempt, InternalError("Request aborted"))
            if reason is None and response.body.get("status") == "rejected":
                reason = response.body.get("execution", {}).get("reason")
            alert = attempt.alert
            self.caps.telemetry.record(
                TelemetryRecord(
                    outcome=outcome,
                    http_status=response.status_code,
                    auth_mode=attempt.auth_mode,
                    received_at=received_at,
                    alert_id=alert.alert_id if alert else None,
                    symbol=alert.symbol if alert else None,
                    action=alert.action.value if alert else None,
                    idempotency_key=attempt.key,
                    reason=reason,
                    remote_ip=remote_ip,
                    user_agent=user_agent,
                    latency_ms=latency_ms,
                )
            )
            self.metrics.alerts_total.labels(outcome=outcome.value).inc()
            self.metrics.alert_latency_ms.observe(latency_ms)
            self.refresh_gauges()
        return response

    async def _process(
        self,
        raw_body: bytes,
        headers: Mapping[str, str],
        attempt: _Attempt,
    ) -> tuple[GatewayResponse, Outcome]:
        retry_after = self.caps.rate_limit.try_acquire()
        if retry_after > 0:
            log.warning("rate_limited", retry_after_sec=round(retry_after, 3))
            raise RateLimitExceeded(retry_after)

        max_bytes = self.settings.server.max_body_bytes
        if len(raw_body) > max_bytes:
            raise ValidationFailure({"body": f"body exceeds {max_bytes} bytes"})

        payload: dict[str, Any] | None = None
        parse_error: ValidationFailure | None = None
        try:
            payload = self.caps.validator.parse_body(raw_body)
        except ValidationFailure as exc:
            parse_error = exc

        attempt.auth_mode = self.caps.signature.service.verify(raw_body, headers, payload)
        if parse_error is not None:
            raise parse_error
        payload.pop("secret", None)

        alert = self.caps.validator.validate(payload)
        attempt.alert = alert
        attempt.key = derive_key(alert, self.settings.dedup.time_bucket_sec)

        resubmit = False
        if self.caps.dedup.enabled:
            record = self.caps.dedup.begin(attempt.key, alert_ref=alert.alert_id)
            attempt.dedup_open = True
            order_ref = _order_ref(attempt.key)
            # a retried key may already have reached the broker, possibly from
            # a process that has since exited
            resubmit = record.attempts > 1
        else:
            order_ref = f"sg-{uuid4().hex[:24]}"

        price = self.reference_price(alert)
        attempt.holds = self.chain.run(alert, price)

        ledger = self.caps.ledger.service if self.caps.ledger.enabled else None
        if ledger is not None:
            prior = ledger.find_by_idempotency_key(attempt.key)
            extra = {"retry_of": prior[-1].entry_id} if prior else {}
            try:
                attempt.entry = ledger.open_entry(
                    alert.symbol,
                    alert.action.value,
                    alert.quantity,
                    alert_id=alert.alert_id,
                    idempotency_key=attempt.key,
                    order_ref=order_ref,
                    price=price,
                    stop_loss=alert.stop_loss,
                    take_profit=alert.take_profit,
                    broker_type=self.caps.broker.broker_type,
                    **extra,
                )
                attempt.entry = ledger.transition(attempt.entry.entry_id, LedgerStatus.SUBMITTED)
            except LedgerError as exc:
                log.error("ledger_write_failed", stage="pre_dispatch", error=str(exc))
                raise InternalError("Trade ledger unavailable", retryable=True) from exc

        log.info(
            "alert_accepted",
            idempotency_key=attempt.key,
            order_ref=order_ref,
            auth_mode=attempt.auth_mode.value,
            reference_price=price,
            **alert.describe(),
        )

        try:
            result, used_fallback = await self._dispatch(alert, order_ref, price, resubmit=resubmit)
        except BrokerRejected as exc:
            return self._broker_rejected(attempt, exc), Outcome.BROKER_ERROR

        return self._filled(attempt, result, used_fallback), Outcome.DISPATCHED

    async def _dispatch(
        self,
        alert: Alert,
        order_ref: str,
        price: float,
        resubmit: bool = False,
    ) -> tuple[OrderResult, bool]:
        """Place the order with bounded timeout and retries on the same reference.

        Every attempt after the first, and the first one too when ``resubmit``
        is set, asks the broker to look the reference up before submitting.
        """
        broker_cfg = self.settings.broker
        attempts = 1 + broker_cfg.retry_attempts
        last_error: BrokerError | None = None
        for attempt in range(attempts):
            start = time.perf_counter()
            try:
                result = await asyncio.wait_for(
                    self.caps.broker.place_order(
                        order_ref,
                        alert.symbol,
                        alert.action.value,
                        alert.quantity,
                        price=price,
                        stop_loss=alert.stop_loss,
                        take_profit=alert.take_profit,
                        resubmit=resubmit or attempt > 0,
                    ),
                    timeout=broker_cfg.order_timeout_sec,
                )
                self.metrics.broker_latency_ms.observe((time.perf_counter() - start) * 1000)
                return result, False
            except asyncio.TimeoutError:
                last_error = BrokerTimeout(
                    f"Broker did not answer within {broker_cfg.order_timeout_sec}s"
                )
            except BrokerError as exc:
                if not exc.retryable:
                    self.metrics.broker_errors_total.labels(code=exc.code).inc()
                    raise
                last_error = exc
            self.metrics.broker_errors_total.labels(code=last_error.code).inc()
            log.warning(
                "broker_attempt_failed",
                order_ref=order_ref,
                attempt=attempt + 1,
                max_attempts=attempts,
                error=last_error.message,
            )
            if attempt + 1 < attempts:
                self.metrics.broker_retries_total.inc()
                await asyncio.sleep(broker_cfg.retry_backoff_sec * (2**attempt))

        fallback = self.caps.fallback_broker
        if fallback.enabled:
            log.warning("broker_fallback_to_paper", order_ref=order_ref, error=last_error.message)
            result = await fallback.service.place_order(
                order_ref,
                alert.symbol,
                alert.action.value,
                alert.quantity,
                price=price,
                stop_loss=alert.stop_loss,
                take_profit=alert.take_profit,
            )
            return result, True

        raise last_error or BrokerUnavailable("Broker unavailable")

    def _filled(self, attempt: _Attempt, result: OrderResult, used_fallback: bool) -> GatewayResponse:
        alert = attempt.alert
        attempt.holds.commit(
            fill_price=result.fill_price,
            filled_quantity=result.filled_quantity,
            realized_pnl=result.realized_pnl,
            fees=result.fees,
        )
        if result.fill_price > 0:
            self._last_fill_price[alert.symbol] = result.fill_price

        reconciliation_pending = False
        entry_id = attempt.entry.entry_id if attempt.entry else None
        if attempt.entry is not None:
            ledger = self.caps.ledger.service
            version = ledger.next_version(
                attempt.entry.entry_id,
                LedgerStatus.FILLED,
                fill_price=result.fill_price,
                filled_quantity=result.filled_quantity,
                fees=result.fees,
                realized_pnl=result.realized_pnl,
                broker_order_ref=result.broker_order_ref,
                broker_type=result.broker_type,
            )
            try:
                attempt.entry = ledger.append_version(version)
            except LedgerError as exc:
                self.caps.reconciliation.enqueue(version, reason=str(exc))
                reconciliation_pending = True

        if attempt.dedup_open:
            self.caps.dedup.complete(
                attempt.key,
                ACCEPTED,
                detail={
                    "status": Outcome.DISPATCHED.value,
                    "http_status": 200,
                    "entry_id": entry_id,
                    "order_ref": result.order_ref,
                    "fill_price": result.fill_price,
                },
            )
            attempt.dedup_open = False

        log.info(
            "alert_dispatched",
            idempotency_key=attempt.key,
            entry_id=entry_id,
            order_ref=result.order_ref,
            fill_price=result.fill_price,
            filled_quantity=result.filled_quantity,
            broker_type=result.broker_type,
            fallback=used_fallback,
            reconciliation_pending=reconciliation_pending,
        )
        body: dict[str, Any] = {
            "status": "success",
            "outcome": Outcome.DISPATCHED.value,
            "message": "Alert dispatched",
            "alert_id": alert.alert_id,
            "idempotency_key": attempt.key,
            "auth_mode": attempt.auth_mode.value,
            "entry_id": entry_id,
            "execution": result.to_dict(),
            "reconciliation_pending": reconciliation_pending,
        }
        if used_fallback:
            body["fallback"] = True
        return GatewayResponse(200, body)

    def _broker_rejected(self, attempt: _Attempt, exc: BrokerRejected) -> GatewayResponse:
        reason = exc.detail.get("reason") or exc.message
        self._settle_failure(attempt, exc)
        log.warning(
            "broker_rejected",
            idempotency_key=attempt.key,
            symbol=attempt.alert.symbol,
            reason=reason,
        )
        body = {
            "status": "rejected",
            "outcome": Outcome.BROKER_ERROR.value,
            "message": exc.message,
            "alert_id": attempt.alert.alert_id,
            "idempotency_key": attempt.key,
            "auth_mode": attempt.auth_mode.value,
            "entry_id": attempt.entry.entry_id if attempt.entry else None,
            "execution": {"status": "rejected", "reason": reason},
        }
        return GatewayResponse(exc.http_status, body)

    def _settle_failure(self, attempt: _Attempt, exc: GatewayError) -> None:
        """Release holds, close the ledger entry and record the dedup outcome."""
        if attempt.holds is not None:
            attempt.holds.rollback()

        if attempt.entry is not None and not attempt.entry.terminal:
            status = LedgerStatus.REJECTED if isinstance(exc, BrokerRejected) else LedgerStatus.ERROR
            try:
                attempt.entry = self.caps.ledger.service.transition(
                    attempt.entry.entry_id, status, error_detail=exc.message
                )
            except LedgerError as ledger_exc:
                log.error(
                    "ledger_write_failed",
                    stage="failure",
                    entry_id=attempt.entry.entry_id,
                    error=str(ledger_exc),
                )

        if attempt.dedup_open and attempt.key is not None:
            transient = not isinstance(exc, FINAL_REJECTIONS)
            self.caps.dedup.complete(
                attempt.key,
                REJECTED,
                transient=transient,
                detail={
                    "status": exc.outcome.value,
                    "http_status": exc.http_status,
                    "error": exc.code,
                    "reason": self._reason(exc),
                },
            )
            attempt.dedup_open = False

    @staticmethod
    def _reason(exc: GatewayError) -> str:
        if isinstance(exc, RiskDenied):
            return ",".join(exc.reasons)
        return exc.message

    @staticmethod
    def _error_response(exc: GatewayError) -> GatewayResponse:
        body = exc.to_dict()
        body["outcome"] = exc.outcome.value
        headers: dict[str, str] = {}
        retry_after = getattr(exc, "retry_after_sec", None)
        if retry_after is not None:
            headers["Retry-After"] = str(max(1, math.ceil(retry_after)))
        return GatewayResponse(exc.http_status, body, headers)

    # Reads

    def reference_price(self, alert: Alert) -> float:
        """Price used for exposure and paper fills."""
        if alert.price_hint is not None:
            return alert.price_hint
        last = self._last_fill_price.get(alert.symbol)
        if last is not None:
            return last
        configured = self.settings.gateway.reference_prices.get(alert.symbol)
        if configured is not None:
            return configured
        return self.settings.gateway.default_reference_price

    def refresh_gauges(self) -> None:
        if self.caps.risk.enabled:
            self.metrics.risk_reservations_open.set(self.caps.risk.service.open_reservation_count())
        if self.caps.cooldown.enabled:
            self.metrics.cooldowns_active.set(self.caps.cooldown.service.active_count())
        self.metrics.dedup_store_size.set(len(self.caps.dedup))
        self.metrics.reconciliation_pending.set(self.caps.reconciliation.count())

    def uptime_sec(self) -> float:
        return time.monotonic() - self._started_monotonic

    async def health(self) -> dict[str, Any]:
        try:
            broker_health = await asyncio.wait_for(
                self.caps.broker.health_check(),
                timeout=self.settings.broker.order_timeout_sec,
            )
            broker = broker_health.to_dict()
        except (asyncio.TimeoutError, BrokerError, httpx.HTTPError) as exc:
            broker = {
                "broker_type": self.caps.broker.broker_type,
                "healthy": False,
                "detail": str(exc) or type(exc).__name__,
            }
        pending = self.caps.reconciliation.count()
        healthy = broker["healthy"] and pending == 0
        ledger = self.caps.ledger
        return {
            "status": "healthy" if healthy else "degraded",
            "version": __version__,
            "started_at": format_timestamp(self.started_at),
            "uptime_sec": round(self.uptime_sec(), 3),
            "features": self.settings.feature_flags(),
            "gate_order": self.chain.describe(),
            "broker": broker,
            "risk": self.caps.risk.service.stats() if self.caps.risk.enabled else {"enabled": False},
            "deduplication": self.caps.dedup.stats(),
            "cooldown": (
                self.caps.cooldown.service.stats() if self.caps.cooldown.enabled else {"enabled": False}
            ),
            "rate_limit": self.caps.rate_limit.stats(),
            "telemetry": self.caps.telemetry.summary(),
            "ledger": {
                "enabled": ledger.enabled,
                "entries": len(ledger.service.entries()) if ledger.enabled else 0,
            },
            "reconciliation_pending": pending,
        }

    async def account(self) -> GatewayResponse:
        broker = self.caps.broker
        try:
            summary = await asyncio.wait_for(
                broker.get_account_summary(),
                timeout=self.settings.broker.order_timeout_sec,
            )
            return GatewayResponse(200, {"status": "success", "account": summary.to_dict()})
        except (asyncio.TimeoutError, BrokerError, httpx.HTTPError) as exc:
            log.warning("account_summary_unavailable", broker_type=broker.broker_type, error=str(exc))
            if not self.caps.ledger.enabled:
                error = BrokerUnavailable("Broker account summary unavailable")
                return self._error_response(error)
            summary = self.caps.ledger.service.account_summary(
                self.settings.paper.starting_balance,
                broker_type=broker.broker_type,
            )
            return GatewayResponse(
                200,
                {
                    "status": "success",
                    "account": summary.to_dict(),
                    "warning": "broker unreachable; summary derived from the trade ledger",
                },
            )

    def trades(self, limit: int = 50) -> list[dict[str, Any]]:
        if not self.caps.ledger.enabled:
            return []
        return [entry.to_dict() for entry in self.caps.ledger.service.tail(limit)]


def build_gateway(
    settings: Settings,
    broker: BrokerAdapter | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    metrics: Metrics | None = None,
) -> GatewayHandler:
    """Resolve capabilities and assemble the handler."""
    capabilities = resolve_capabilities(settings, broker=broker, transport=transport, metrics=metrics)
    return GatewayHandler(settings, capabilities)
