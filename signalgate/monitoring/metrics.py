"""Prometheus metrics definitions."""

from __future__ import annotations

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class Metrics:
    """Expose gateway metrics for monitoring.

    Each instance owns its registry so several gateways (tests, reloads) can
    coexist in one process.
    """

    def __init__(self, registry: CollectorRegistry | None = None) -> None:
        self.registry = registry or CollectorRegistry()

        self.alerts_total = Counter(
            "alerts_total",
            "Inbound alert attempts by terminal outcome",
            ["outcome"],
            registry=self.registry,
        )
        self.alert_latency_ms = Histogram(
            "alert_latency_ms",
            "End-to-end handler latency (ms)",
            buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
            registry=self.registry,
        )

        self.broker_latency_ms = Histogram(
            "broker_latency_ms",
            "Broker place_order latency (ms)",
            buckets=(5, 10, 25, 50, 100, 250, 500, 1000, 2500, 5000, 10000),
            registry=self.registry,
        )
        self.broker_retries_total = Counter(
            "broker_retries_total",
            "Broker submissions retried after a retryable failure",
            registry=self.registry,
        )
        self.broker_errors_total = Counter(
            "broker_errors_total",
            "Broker failures by error code",
            ["code"],
            registry=self.registry,
        )

        self.risk_reservations_open = Gauge(
            "risk_reservations_open",
            "Risk reservations awaiting confirm/release",
            registry=self.registry,
        )
        self.cooldowns_active = Gauge(
            "cooldowns_active",
            "Symbols currently inside their cooldown window",
            registry=self.registry,
        )
        self.reconciliation_pending = Gauge(
            "reconciliation_pending",
            "Ledger versions waiting to be replayed",
            registry=self.registry,
        )
        self.dedup_store_size = Gauge(
            "dedup_store_size",
            "Idempotency records retained",
            registry=self.registry,
        )

    def start(self, port: int) -> None:
        start_http_server(port, registry=self.registry)
