"""Webhook and operator HTTP API."""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager, suppress
from typing import Any

import structlog
from fastapi import FastAPI, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from signalgate import __version__
from signalgate.config.settings import Settings, load_settings
from signalgate.gateway.handler import GatewayHandler, GatewayResponse, build_gateway

log = structlog.get_logger(__name__)


def _json(response: GatewayResponse) -> JSONResponse:
    return JSONResponse(
        status_code=response.status_code,
        content=response.body,
        headers=response.headers or None,
    )


def create_app(
    settings: Settings | None = None,
    gateway: GatewayHandler | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = settings or (gateway.settings if gateway else load_settings())
    gateway = gateway or build_gateway(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> Any:
        """Lifespan context manager for startup/shutdown."""
        await gateway.startup()
        maintenance = asyncio.create_task(gateway.run_maintenance(), name="signalgate-maintenance")
        app.state.maintenance_task = maintenance
        try:
            yield
        finally:
            maintenance.cancel()
            with suppress(asyncio.CancelledError):
                await maintenance
            await gateway.close()
            log.info("gateway_stopped")

    app = FastAPI(
        title="signalgate",
        description="Trade-alert webhook gateway",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.gateway = gateway
    app.state.settings = settings
    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.server.allowed_origin],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
    )

    async def receive_alert(request: Request) -> JSONResponse:
        raw_body = await request.body()
        response = await gateway.handle(
            raw_body,
            request.headers,
            remote_ip=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )
        return _json(response)

    app.add_api_route("/webhook/tradingview", receive_alert, methods=["POST"])
    app.add_api_route("/api/webhook/tradingview", receive_alert, methods=["POST"])

    @app.get("/webhook/tradingview")
    async def webhook_info() -> dict[str, Any]:
        """Readiness message for senders probing the webhook URL."""
        return {
            "status": "ready",
            "message": "POST TradingView alerts to this endpoint",
            "signature_header": settings.auth.header_name if settings.auth.enabled else None,
        }

    @app.get("/health")
    async def health() -> dict[str, Any]:
        """Get gateway health and component stats."""
        return await gateway.health()

    @app.get("/api/account")
    async def account() -> JSONResponse:
        """Broker account summary, or the ledger-derived one when the broker is down."""
        return _json(await gateway.account())

    @app.get("/api/trades")
    async def trades(
        limit: int = Query(default=50, ge=1, le=1000, description="Number of recent entries"),
    ) -> dict[str, Any]:
        """Latest trade ledger entries."""
        items = gateway.trades(limit)
        return {"count": len(items), "trades": items}

    @app.get("/api/telemetry")
    async def telemetry(
        tail: int = Query(default=20, ge=0, le=1000, description="Number of recent records"),
    ) -> dict[str, Any]:
        """Telemetry summary with the most recent attempts."""
        recorder = gateway.caps.telemetry
        return {"summary": recorder.summary(), "recent": recorder.tail(tail)}

    @app.get("/")
    async def root() -> dict[str, Any]:
        """Root endpoint with API info."""
        return {
            "name": "signalgate",
            "version": __version__,
            "broker_type": gateway.caps.broker.broker_type,
            "endpoints": {
                "webhook": "POST /webhook/tradingview",
                "webhook_alias": "POST /api/webhook/tradingview",
                "health": "GET /health",
                "account": "GET /api/account",
                "trades": "GET /api/trades?limit=N",
                "telemetry": "GET /api/telemetry?tail=N",
            },
        }

    return app
