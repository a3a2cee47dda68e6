"""Configured pre-dispatch gate chain and the holds it produces."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Callable

import structlog

from signalgate.models import Alert
from signalgate.risk.cooldown import CooldownClaim, CooldownGuard
from signalgate.risk.engine import Reservation, RiskEngine

log = structlog.get_logger(__name__)


@dataclass
class GateHolds:
    """Everything the gates reserved for one alert.

    Settled exactly once: ``commit`` after a broker fill, ``rollback`` on any
    other exit. Both are safe to call more than once.
    """

    risk: RiskEngine | None = None
    cooldown: CooldownGuard | None = None
    reservation: Reservation | None = None
    claim: CooldownClaim | None = None
    settled: bool = False

    def commit(
        self,
        fill_price: float,
        filled_quantity: float,
        realized_pnl: float | None = None,
        fees: float = 0.0,
    ) -> None:
        if self.settled:
            return
        self.settled = True
        if self.reservation is not None and self.risk is not None:
            self.risk.confirm(
                self.reservation,
                fill_price=fill_price,
                filled_quantity=filled_quantity,
                realized_pnl=realized_pnl,
                fees=fees,
            )
        if self.claim is not None and self.cooldown is not None:
            self.cooldown.commit(self.claim)

    def rollback(self) -> None:
        if self.settled:
            return
        self.settled = True
        if self.reservation is not None and self.risk is not None:
            self.risk.release(self.reservation)
        if self.claim is not None and self.cooldown is not None:
            self.cooldown.release(self.claim)


class GateChain:
    """Risk and cooldown gates resolved once, in the configured order.

    The combined effect is the logical AND of both gates; the order only
    decides which rejection an alert failing both sees, and which hold is
    taken first.
    """

    def __init__(
        self,
        order: list[str],
        risk: RiskEngine | None = None,
        cooldown: CooldownGuard | None = None,
    ) -> None:
        self.order = list(order)
        self.risk = risk
        self.cooldown = cooldown
        stages: dict[str, Callable[[Alert, float, GateHolds], None]] = {
            "risk": self._risk_stage,
            "cooldown": self._cooldown_stage,
        }
        unknown = [name for name in self.order if name not in stages]
        if unknown:
            raise ValueError(f"unknown gate stage(s): {unknown}")
        self._stages = [stages[name] for name in self.order]

    def _risk_stage(self, alert: Alert, price: float, holds: GateHolds) -> None:
        if self.risk is not None:
            holds.reservation = self.risk.reserve(alert, price)

    def _cooldown_stage(self, alert: Alert, price: float, holds: GateHolds) -> None:
        if self.cooldown is not None:
            holds.claim = self.cooldown.claim(alert.symbol)

    def run(self, alert: Alert, price: float) -> GateHolds:
        """Pass every gate or raise; holds taken so far are released on failure."""
        holds = GateHolds(risk=self.risk, cooldown=self.cooldown)
        try:
            for stage in self._stages:
                stage(alert, price, holds)
        except BaseException:
            holds.rollback()
            raise
        return holds

    def describe(self) -> list[dict[str, object]]:
        active = {"risk": self.risk is not None, "cooldown": self.cooldown is not None}
        return [{"stage": name, "enabled": active[name]} for name in self.order]
