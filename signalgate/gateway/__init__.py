"""Alert ingestion pipeline."""

from signalgate.gateway.handler import GatewayHandler, GatewayResponse, build_gateway
from signalgate.gateway.registry import Capabilities, Capability, resolve_capabilities
from signalgate.gateway.stages import GateChain, GateHolds

__all__ = [
    "Capabilities",
    "Capability",
    "GateChain",
    "GateHolds",
    "GatewayHandler",
    "GatewayResponse",
    "build_gateway",
    "resolve_capabilities",
]
