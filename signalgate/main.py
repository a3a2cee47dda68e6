"""Process entry point for the gateway."""

from __future__ import annotations

import argparse
import atexit
import sys
from pathlib import Path

import structlog
import uvicorn

from signalgate import __version__
from signalgate.api.app import create_app
from signalgate.config.settings import load_settings
from signalgate.gateway.handler import build_gateway
from signalgate.monitoring.logging import configure_logging, settings_secrets
from signalgate.monitoring.metrics import Metrics
from signalgate.utils.single_instance import GatewayAlreadyRunning, StorageLock

log = structlog.get_logger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="signalgate", description="Trade-alert webhook gateway")
    parser.add_argument("--config", default=None, help="Path to config YAML (default: $CONFIG_PATH or config.yaml)")
    parser.add_argument("--host", default=None, help="Override server.host")
    parser.add_argument("--port", type=int, default=None, help="Override server.port")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    settings = load_settings(args.config)
    if args.host:
        settings.server.host = args.host
    if args.port:
        settings.server.port = args.port

    configure_logging(
        settings.monitoring.log_level,
        settings.storage.logs_path,
        settings.monitoring,
        secrets=settings_secrets(settings),
    )

    errors = settings.validate_for_startup()
    if errors:
        log.error("settings_validation_failed", errors=errors)
        return 2

    lock = StorageLock(Path(settings.storage.state_path) / "gateway.lock", port=settings.server.port)
    try:
        lock.acquire()
    except GatewayAlreadyRunning as exc:
        log.error("another_instance_running", lock_path=exc.lock_path, holder=exc.holder)
        return 1
    atexit.register(lock.release)

    metrics = Metrics()
    if settings.monitoring.metrics_enabled:
        metrics.start(settings.monitoring.metrics_port)
        log.info("metrics_exporter_started", port=settings.monitoring.metrics_port)

    gateway = build_gateway(settings, metrics=metrics)
    app = create_app(settings, gateway)
    log.info(
        "server_starting",
        host=settings.server.host,
        port=settings.server.port,
        features=settings.feature_flags(),
    )
    uvicorn.run(app, host=settings.server.host, port=settings.server.port, log_level="info")
    return 0


if __name__ == "__main__":
    sys.exit(main())
