"""Pre-dispatch gates: rate limiting, risk limits and per-symbol cooldown."""

from signalgate.risk.cooldown import CooldownClaim, CooldownGuard
from signalgate.risk.engine import Reservation, RiskEngine
from signalgate.risk.rate_limit import RateLimiter

__all__ = [
    "CooldownClaim",
    "CooldownGuard",
    "RateLimiter",
    "Reservation",
    "RiskEngine",
]
