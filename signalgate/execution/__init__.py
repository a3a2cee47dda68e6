"""Broker adapters."""

from signalgate.execution.base import BrokerAdapter, BrokerHealth, OrderResult
from signalgate.execution.factory import create_broker, create_fallback_broker
from signalgate.execution.live import LiveBroker
from signalgate.execution.paper import PaperBroker

__all__ = [
    "BrokerAdapter",
    "BrokerHealth",
    "LiveBroker",
    "OrderResult",
    "PaperBroker",
    "create_broker",
    "create_fallback_broker",
]
