"""Live REST brokerage adapter (v20-style account/order endpoints)."""

from __future__ import annotations

import time
from typing import Any

import httpx
import structlog

from signalgate.config.settings import Settings
from signalgate.errors import BrokerRejected, BrokerTimeout, BrokerUnavailable
from signalgate.execution.base import BrokerAdapter, BrokerHealth, OrderResult
from signalgate.models import AccountSummary

RETRYABLE_STATUS = {429, 500, 502, 503, 504}


def _units(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


class LiveBroker(BrokerAdapter):
    """Market orders over ``httpx.AsyncClient``.

    Every order carries its order reference as the client id. When the
    reference was submitted earlier by this process, or the caller passes
    ``resubmit`` because an earlier process may have sent it, ``place_order``
    first looks the order up by that id and only submits again when the
    broker has never seen it.
    """

    broker_type = "live"

    def __init__(self, settings: Settings, transport: httpx.AsyncBaseTransport | None = None) -> None:
        self.settings = settings
        self.base_url = settings.live_base_url
        self.account_id = settings.broker_account_id
        self.instrument_map = {k.upper(): v for k, v in settings.live.instrument_map.items()}
        self.http = httpx.AsyncClient(
            base_url=self.base_url,
            timeout=settings.broker.order_timeout_sec,
            headers={
                "Authorization": f"Bearer {settings.broker_api_key}",
                "Content-Type": "application/json",
                "Accept-Datetime-Format": "RFC3339",
            },
            transport=transport,
        )
        self._attempted: set[str] = set()
        self.log = structlog.get_logger(__name__)

    async def close(self) -> None:
        await self.http.aclose()

    def instrument(self, symbol: str) -> str:
        mapped = self.instrument_map.get(symbol.upper())
        if mapped:
            return mapped
        if "_" not in symbol and len(symbol) == 6:
            return f"{symbol[:3]}_{symbol[3:]}"
        return symbol

    async def _request(self, method: str, path: str, json: dict[str, Any] | None = None) -> httpx.Response:
        start = time.perf_counter()
        try:
            response = await self.http.request(method, path, json=json)
        except httpx.TimeoutException as exc:
            self.log.warning("broker_request_timeout", method=method, path=path)
            raise BrokerTimeout(f"Broker request timed out: {method} {path}") from exc
        except httpx.TransportError as exc:
            self.log.warning("broker_transport_error", method=method, path=path, error=str(exc))
            raise BrokerUnavailable(f"Broker unreachable: {exc}") from exc
        latency_ms = (time.perf_counter() - start) * 1000
        self.log.info(
            "broker_response",
            method=method,
            path=path,
            status_code=response.status_code,
            latency_ms=round(latency_ms, 2),
        )
        return response

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        try:
            data = response.json()
        except ValueError:
            return response.text[:200]
        if isinstance(data, dict):
            return str(data.get("errorMessage") or data.get("rejectReason") or data)[:200]
        return str(data)[:200]

    def _raise_for_status(self, response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        message = self._error_message(response)
        if response.status_code in RETRYABLE_STATUS:
            raise BrokerUnavailable(
                f"Broker returned {response.status_code}: {message}",
                status_code=response.status_code,
            )
        raise BrokerRejected(
            f"Broker rejected request ({response.status_code}): {message}",
            status_code=response.status_code,
        )

    async def _lookup(self, order_ref: str) -> dict[str, Any] | None:
        """Find an order by client id; None when the broker has no such order."""
        response = await self._request(
            "GET", f"/v3/accounts/{self.account_id}/orders/@{order_ref}"
        )
        if response.status_code == 404:
            return None
        self._raise_for_status(response)
        return response.json().get("order")

    async def _fill_from_order(
        self,
        order_ref: str,
        symbol: str,
        action: str,
        quantity: float,
        order: dict[str, Any],
    ) -> OrderResult:
        state = order.get("state")
        if state in ("CANCELLED", "REJECTED"):
            raise BrokerRejected(
                f"Order {order_ref} was {state.lower()} by the broker",
                reason=order.get("cancelledReason") or state,
            )
        if state != "FILLED":
            raise BrokerUnavailable(f"Order {order_ref} is still {state}")
        tx_id = order.get("fillingTransactionID")
        response = await self._request(
            "GET", f"/v3/accounts/{self.account_id}/transactions/{tx_id}"
        )
        self._raise_for_status(response)
        return self._result(order_ref, symbol, action, quantity, response.json().get("transaction", {}))

    def _result(
        self,
        order_ref: str,
        symbol: str,
        action: str,
        quantity: float,
        fill: dict[str, Any],
    ) -> OrderResult:
        return OrderResult(
            order_ref=order_ref,
            broker_order_ref=str(fill.get("orderID") or fill.get("id") or ""),
            symbol=symbol,
            action=action,
            requested_quantity=quantity,
            filled_quantity=abs(_units(fill.get("units"))) or quantity,
            fill_price=_units(fill.get("price")),
            fees=abs(_units(fill.get("commission"))),
            realized_pnl=_units(fill.get("pl")),
            broker_type=self.broker_type,
            raw=fill,
        )

    async def place_order(
        self,
        order_ref: str,
        symbol: str,
        action: str,
        quantity: float,
        price: float | None = None,
        *,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        resubmit: bool = False,
    ) -> OrderResult:
        action = action.lower()
        if resubmit or order_ref in self._attempted:
            existing = await self._lookup(order_ref)
            if existing is not None:
                self.log.info("broker_order_found_on_retry", order_ref=order_ref, state=existing.get("state"))
                return await self._fill_from_order(order_ref, symbol, action, quantity, existing)
        self._attempted.add(order_ref)

        instrument = self.instrument(symbol)
        extensions = {"id": order_ref, "tag": "signalgate"}
        if action == "close":
            path = f"/v3/accounts/{self.account_id}/positions/{instrument}/close"
            response = await self._request(
                "PUT", path, json={"longUnits": "ALL", "longClientExtensions": extensions}
            )
            fill_key, reject_key, cancel_key = (
                "longOrderFillTransaction",
                "longOrderRejectTransaction",
                "longOrderCancelTransaction",
            )
        else:
            units = quantity if action == "buy" else -quantity
            body = {
                "order": {
                    "type": "MARKET",
                    "instrument": instrument,
                    "units": format(units, ".10g"),
                    "timeInForce": "FOK",
                    "positionFill": "DEFAULT",
                    "clientExtensions": extensions,
                }
            }
            if stop_loss is not None:
                body["order"]["stopLossOnFill"] = {"price": format(stop_loss, ".10g")}
            if take_profit is not None:
                body["order"]["takeProfitOnFill"] = {"price": format(take_profit, ".10g")}
            response = await self._request("POST", f"/v3/accounts/{self.account_id}/orders", json=body)
            fill_key, reject_key, cancel_key = (
                "orderFillTransaction",
                "orderRejectTransaction",
                "orderCancelTransaction",
            )

        self._raise_for_status(response)
        data = response.json()
        if fill_key in data:
            return self._result(order_ref, symbol, action, quantity, data[fill_key])
        for key in (reject_key, cancel_key):
            if key in data:
                tx = data[key]
                reason = tx.get("rejectReason") or tx.get("reason") or "UNKNOWN"
                raise BrokerRejected(f"Order {order_ref} not filled: {reason}", reason=reason)
        raise BrokerUnavailable(f"Order {order_ref} accepted without a fill transaction")

    async def get_account_summary(self) -> AccountSummary:
        response = await self._request("GET", f"/v3/accounts/{self.account_id}/summary")
        self._raise_for_status(response)
        account = response.json().get("account", {})
        response = await self._request("GET", f"/v3/accounts/{self.account_id}/openPositions")
        self._raise_for_status(response)
        positions: dict[str, dict[str, float]] = {}
        for pos in response.json().get("positions", []):
            long_units = _units(pos.get("long", {}).get("units"))
            short_units = _units(pos.get("short", {}).get("units"))
            net = long_units + short_units
            if net == 0:
                continue
            side = pos["long"] if long_units else pos["short"]
            positions[pos["instrument"]] = {
                "quantity": net,
                "avg_price": _units(side.get("averagePrice")),
                "unrealized_pnl": _units(pos.get("unrealizedPL")),
            }
        balance = _units(account.get("balance"))
        realized = _units(account.get("pl"))
        return AccountSummary(
            source="broker",
            broker_type=self.broker_type,
            starting_balance=balance - realized,
            balance=balance,
            positions=positions,
            realized_pnl=realized,
            unrealized_pnl=_units(account.get("unrealizedPL")),
            total_trades=int(_units(account.get("openTradeCount"))),
        )

    async def health_check(self) -> BrokerHealth:
        start = time.perf_counter()
        try:
            response = await self._request("GET", f"/v3/accounts/{self.account_id}/summary")
            self._raise_for_status(response)
        except (BrokerTimeout, BrokerUnavailable, BrokerRejected) as exc:
            return BrokerHealth(self.broker_type, healthy=False, detail=exc.message)
        return BrokerHealth(
            self.broker_type,
            healthy=True,
            latency_ms=(time.perf_counter() - start) * 1000,
        )
