from __future__ import annotations

import re
import shutil
from pathlib import Path
from typing import Any, Callable
from uuid import uuid4

import orjson
import pytest

from signalgate.config.settings import Settings
from signalgate.gateway.signature import sign

TEST_SECRET = "test-webhook-secret"


def _safe_node_name(name: str) -> str:
    # Windows-safe-ish: keep alnum, dash, underscore, dot.
    name = re.sub(r"[^A-Za-z0-9._-]+", "_", name).strip("._")
    return name or "test"


@pytest.fixture
def workspace_tmp_path(request: pytest.FixtureRequest) -> Path:
    """Temp dir rooted in the workspace (not system temp)."""
    root = Path.cwd() / ".pytest_tmp_workspace" / _safe_node_name(request.node.name) / uuid4().hex
    root.mkdir(parents=True, exist_ok=True)
    try:
        yield root
    finally:
        shutil.rmtree(root, ignore_errors=True)


def build_settings(root: Path, **sections: Any) -> Settings:
    """Settings isolated from the environment, with storage under ``root``."""
    config: dict[str, Any] = {
        "rate_limit": {"max_requests": 1000, "window_sec": 60},
        "cooldown": {"seconds": 0},
        "broker": {"retry_attempts": 0, "retry_backoff_sec": 0.0, "order_timeout_sec": 2},
        "storage": {
            "ledger_path": str(root / "ledger"),
            "state_path": str(root / "state"),
            "telemetry_path": str(root / "telemetry"),
            "logs_path": str(root / "logs"),
        },
    }
    for name, values in sections.items():
        if isinstance(values, dict) and isinstance(config.get(name), dict):
            config[name] = {**config[name], **values}
        else:
            config[name] = values
    config.setdefault("TRADINGVIEW_WEBHOOK_SECRET", TEST_SECRET)
    return Settings(_env_file=None, **config)


@pytest.fixture
def make_settings(workspace_tmp_path: Path) -> Callable[..., Settings]:
    def _make(**sections: Any) -> Settings:
        return build_settings(workspace_tmp_path, **sections)

    return _make


@pytest.fixture
def signed() -> Callable[..., tuple[bytes, dict[str, str]]]:
    """Body bytes plus a valid signature header."""

    def _signed(payload: dict[str, Any], secret: str = TEST_SECRET) -> tuple[bytes, dict[str, str]]:
        body = orjson.dumps(payload)
        return body, {"X-TradingView-Signature": sign(secret, body)}

    return _signed
