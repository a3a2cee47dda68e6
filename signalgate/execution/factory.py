"""Broker adapter factory."""

from __future__ import annotations

import httpx
import structlog

from signalgate.config.settings import Settings
from signalgate.execution.base import BrokerAdapter
from signalgate.execution.live import LiveBroker
from signalgate.execution.paper import PaperBroker

log = structlog.get_logger(__name__)

LIVE_TYPES = ("live", "oanda")


def create_broker(
    settings: Settings,
    transport: httpx.AsyncBaseTransport | None = None,
) -> BrokerAdapter:
    """Build the configured broker; unknown types fall back to paper."""
    broker_type = settings.broker.type
    if broker_type in LIVE_TYPES:
        log.info("broker_selected", broker_type="live", environment=settings.live.environment)
        return LiveBroker(settings, transport=transport)
    if broker_type != "paper":
        log.warning("unknown_broker_type", broker_type=broker_type, fallback="paper")
    log.info("broker_selected", broker_type="paper")
    return PaperBroker(settings.paper, enabled=settings.broker.paper_trading_enabled)


def create_fallback_broker(settings: Settings) -> BrokerAdapter | None:
    """Paper broker used when a live broker is unavailable, if configured."""
    if not settings.broker.paper_fallback or settings.broker.type not in LIVE_TYPES:
        return None
    return PaperBroker(settings.paper, enabled=True)
