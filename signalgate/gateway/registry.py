"""Resolve optional services once at startup."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Generic, TypeVar

import httpx
import structlog

from signalgate.config.settings import Settings
from signalgate.execution.base import BrokerAdapter
from signalgate.execution.factory import create_broker, create_fallback_broker
from signalgate.gateway.signature import SignatureVerifier
from signalgate.gateway.validation import PayloadValidator
from signalgate.idempotency.store import IdempotencyStore
from signalgate.ledger.reconciliation import ReconciliationQueue
from signalgate.ledger.store import TradeLedger
from signalgate.monitoring.metrics import Metrics
from signalgate.monitoring.telemetry import TelemetryRecorder
from signalgate.risk.cooldown import CooldownGuard
from signalgate.risk.engine import RiskEngine
from signalgate.risk.rate_limit import RateLimiter

log = structlog.get_logger(__name__)

T = TypeVar("T")


@dataclass(frozen=True)
class Capability(Generic[T]):
    """An optional service and whether the pipeline should use it."""

    name: str
    enabled: bool
    service: T | None = None

    @classmethod
    def off(cls, name: str) -> "Capability[T]":
        return cls(name=name, enabled=False, service=None)


@dataclass
class Capabilities:
    signature: Capability[SignatureVerifier]
    validator: PayloadValidator
    dedup: IdempotencyStore
    risk: Capability[RiskEngine]
    cooldown: Capability[CooldownGuard]
    rate_limit: RateLimiter
    ledger: Capability[TradeLedger]
    reconciliation: ReconciliationQueue
    telemetry: TelemetryRecorder
    broker: BrokerAdapter
    fallback_broker: Capability[BrokerAdapter]
    metrics: Metrics = field(default_factory=Metrics)

    def flags(self) -> dict[str, bool]:
        return {
            "auth": self.signature.enabled,
            "validation": self.validator.enabled,
            "deduplication": self.dedup.enabled,
            "risk_engine": self.risk.enabled,
            "cooldown": self.cooldown.enabled,
            "trade_ledger": self.ledger.enabled,
            "paper_fallback": self.fallback_broker.enabled,
        }


def resolve_capabilities(
    settings: Settings,
    broker: BrokerAdapter | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    metrics: Metrics | None = None,
) -> Capabilities:
    storage = settings.storage

    signature = Capability(
        "auth",
        settings.auth.enabled,
        SignatureVerifier(settings.auth, settings.webhook_secret),
    )
    risk: Capability[Any] = (
        Capability("risk_engine", True, RiskEngine(settings.risk, equity=settings.paper.starting_balance))
        if settings.risk.enabled
        else Capability.off("risk_engine")
    )
    cooldown: Capability[Any] = (
        Capability("cooldown", True, CooldownGuard(settings.cooldown))
        if settings.cooldown.enabled
        else Capability.off("cooldown")
    )
    ledger: Capability[Any] = (
        Capability("trade_ledger", True, TradeLedger(storage.ledger_path))
        if settings.ledger.enabled
        else Capability.off("trade_ledger")
    )
    fallback = create_fallback_broker(settings)
    fallback_cap: Capability[Any] = (
        Capability("paper_fallback", True, fallback)
        if fallback is not None
        else Capability.off("paper_fallback")
    )

    capabilities = Capabilities(
        signature=signature,
        validator=PayloadValidator(settings.validation),
        dedup=IdempotencyStore(settings.dedup, storage.state_path),
        risk=risk,
        cooldown=cooldown,
        rate_limit=RateLimiter(settings.rate_limit),
        ledger=ledger,
        reconciliation=ReconciliationQueue(storage.state_path),
        telemetry=TelemetryRecorder(
            storage.telemetry_path,
            tail_size=settings.monitoring.telemetry_tail_size,
        ),
        broker=broker or create_broker(settings, transport=transport),
        fallback_broker=fallback_cap,
        metrics=metrics or Metrics(),
    )
    log.info("capabilities_resolved", **capabilities.flags())
    return capabilities
