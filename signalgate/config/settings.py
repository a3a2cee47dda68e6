"""
Configuration management with Pydantic validation.

Loads settings from YAML config file and environment variables.
"""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Literal

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, PydanticBaseSettingsSource

GateName = Literal["risk", "cooldown"]

_HHMM = re.compile(r"^([01]\d|2[0-3]):[0-5]\d$")


class ServerConfig(BaseModel):
    """HTTP server configuration."""

    host: str = "0.0.0.0"
    port: int = Field(default=3014, ge=1, le=65535)
    max_body_bytes: int = Field(default=64 * 1024, ge=256, le=10 * 1024 * 1024)
    allowed_origin: str = "*"


class AuthConfig(BaseModel):
    """Webhook signature verification."""

    enabled: bool = True
    header_name: str = "X-TradingView-Signature"
    # Fallback for senders that cannot compute an HMAC header.
    allow_body_secret: bool = True


class ValidationConfig(BaseModel):
    """Alert payload validation policy."""

    enabled: bool = True
    allowed_symbols: list[str] = Field(default_factory=list)
    max_quantity: float = Field(default=1_000_000.0, gt=0)
    max_alert_age_sec: int = Field(default=24 * 3600, ge=60, le=7 * 24 * 3600)
    max_future_skew_sec: int = Field(default=300, ge=0, le=3600)

    @field_validator("allowed_symbols")
    @classmethod
    def normalize_symbols(cls, v: list[str]) -> list[str]:
        return [s.strip().upper() for s in v if s and s.strip()]


class DedupConfig(BaseModel):
    """Idempotency / redelivery detection."""

    enabled: bool = True
    retention_hours: int = Field(default=48, ge=24, le=72)
    time_bucket_sec: int = Field(default=60, ge=1, le=3600)
    max_retries: int = Field(default=1, ge=0, le=5)
    pending_timeout_sec: int = Field(default=120, ge=5, le=3600)


class RiskConfig(BaseModel):
    """Risk gate configuration - contains hard limits."""

    enabled: bool = True
    trading_enabled: bool = True
    max_total_exposure: float = Field(default=100_000.0, gt=0)
    max_symbol_exposure: float = Field(default=25_000.0, gt=0)
    max_daily_loss: float = Field(default=1_000.0, gt=0)
    max_positions: int = Field(default=5, ge=1, le=100)
    # percent of account equity a single order may commit
    max_position_pct: float | None = Field(default=None, gt=0, le=100)
    require_stop_loss: bool = False
    require_take_profit: bool = False
    max_stop_distance_pct: float = Field(default=10.0, gt=0, le=100)
    trading_hours_start: str | None = None
    trading_hours_end: str | None = None
    trading_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5, 6])

    @field_validator("trading_hours_start", "trading_hours_end")
    @classmethod
    def validate_hhmm(cls, v: str | None) -> str | None:
        if v is None:
            return v
        if not _HHMM.match(v):
            raise ValueError(f"expected HH:MM, got {v!r}")
        return v

    @field_validator("trading_days")
    @classmethod
    def validate_days(cls, v: list[int]) -> list[int]:
        bad = [d for d in v if d < 0 or d > 6]
        if bad:
            raise ValueError(f"trading_days must be 0 (Mon) .. 6 (Sun), got {bad}")
        return sorted(set(v))

    @field_validator("max_symbol_exposure")
    @classmethod
    def validate_symbol_exposure(cls, v: float, info) -> float:
        total = info.data.get("max_total_exposure")
        if total is not None and v > total:
            raise ValueError(
                f"max_symbol_exposure ({v}) cannot exceed max_total_exposure ({total})"
            )
        return v


class CooldownConfig(BaseModel):
    """Per-symbol cooldown between confirmed dispatches."""

    seconds: float = Field(default=180.0, ge=0, le=24 * 3600)

    @property
    def enabled(self) -> bool:
        return self.seconds > 0


class RateLimitConfig(BaseModel):
    """Inbound throughput bound, independent of symbol."""

    max_requests: int = Field(default=10, ge=1, le=100_000)
    window_sec: float = Field(default=60.0, gt=0, le=3600)
    mode: Literal["fixed", "sliding"] = "sliding"


class GatewayConfig(BaseModel):
    """Pipeline composition."""

    gate_order: list[GateName] = Field(default_factory=lambda: ["cooldown", "risk"])
    default_reference_price: float = Field(default=1.0, gt=0)
    reference_prices: dict[str, float] = Field(default_factory=dict)
    # purge, journal compaction and reconciliation replay
    maintenance_interval_sec: float = Field(default=60.0, gt=0)

    @field_validator("gate_order")
    @classmethod
    def validate_gate_order(cls, v: list[str]) -> list[str]:
        if sorted(v) != ["cooldown", "risk"]:
            raise ValueError(f"gate_order must list 'risk' and 'cooldown' exactly once, got {v}")
        return v

    @field_validator("reference_prices")
    @classmethod
    def normalize_prices(cls, v: dict[str, float]) -> dict[str, float]:
        for symbol, price in v.items():
            if price <= 0:
                raise ValueError(f"reference price for {symbol} must be positive")
        return {k.upper(): float(p) for k, p in v.items()}


class BrokerConfig(BaseModel):
    """Broker selection and dispatch policy."""

    type: str = "paper"
    paper_trading_enabled: bool = True
    paper_fallback: bool = False
    order_timeout_sec: float = Field(default=10.0, gt=0, le=120)
    retry_attempts: int = Field(default=2, ge=0, le=10)
    retry_backoff_sec: float = Field(default=0.5, ge=0.0, le=30.0)

    @field_validator("type")
    @classmethod
    def normalize_type(cls, v: str) -> str:
        return (v or "paper").strip().lower()


class PaperConfig(BaseModel):
    """Paper broker simulation configuration."""

    starting_balance: float = Field(default=10_000.0, gt=0)
    slippage_bps: float = Field(default=0.0, ge=0.0, le=100.0)
    fee_pct: float = Field(default=0.0, ge=0.0, le=1.0)


class LiveBrokerConfig(BaseModel):
    """REST brokerage connection settings."""

    environment: Literal["practice", "live"] = "practice"
    practice_url: str = "https://api-fxpractice.oanda.com"
    live_url: str = "https://api-fxtrade.oanda.com"
    instrument_map: dict[str, str] = Field(default_factory=lambda: {"XAUUSD": "XAU_USD"})


class LedgerConfig(BaseModel):
    """Trade ledger toggle."""

    enabled: bool = True


class StorageConfig(BaseModel):
    """Storage paths configuration."""

    ledger_path: str = "./data/ledger"
    state_path: str = "./data/state"
    telemetry_path: str = "./data/telemetry"
    logs_path: str = "./logs"


class MonitoringConfig(BaseModel):
    """Monitoring configuration."""

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"
    metrics_enabled: bool = False
    metrics_port: int = Field(default=9090, ge=1024, le=65535)
    telemetry_tail_size: int = Field(default=200, ge=10, le=10_000)
    error_log_max_bytes: int = Field(default=5_000_000, ge=100_000, le=50_000_000)
    error_log_backup_count: int = Field(default=3, ge=1, le=20)


class Settings(BaseSettings):
    """Main application settings."""

    # Secrets from environment
    webhook_secret: str = Field(default="", alias="TRADINGVIEW_WEBHOOK_SECRET")
    broker_api_key: str = Field(default="", alias="BROKER_API_KEY")
    broker_account_id: str = Field(default="", alias="BROKER_ACCOUNT_ID")

    # Sub-configurations
    server: ServerConfig = Field(default_factory=ServerConfig)
    auth: AuthConfig = Field(default_factory=AuthConfig)
    validation: ValidationConfig = Field(default_factory=ValidationConfig)
    dedup: DedupConfig = Field(default_factory=DedupConfig)
    risk: RiskConfig = Field(default_factory=RiskConfig)
    cooldown: CooldownConfig = Field(default_factory=CooldownConfig)
    rate_limit: RateLimitConfig = Field(default_factory=RateLimitConfig)
    gateway: GatewayConfig = Field(default_factory=GatewayConfig)
    broker: BrokerConfig = Field(default_factory=BrokerConfig)
    paper: PaperConfig = Field(default_factory=PaperConfig)
    live: LiveBrokerConfig = Field(default_factory=LiveBrokerConfig)
    ledger: LedgerConfig = Field(default_factory=LedgerConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)

    model_config = {
        "env_file": ".env",
        "env_file_encoding": "utf-8",
        "extra": "ignore",
        "env_nested_delimiter": "__",
        "populate_by_name": True,
    }

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Config file values arrive as init kwargs; the environment outranks them.
        return env_settings, dotenv_settings, init_settings, file_secret_settings

    @property
    def live_base_url(self) -> str:
        """Get the brokerage REST URL for the configured environment."""
        if self.live.environment == "live":
            return self.live.live_url
        return self.live.practice_url

    def feature_flags(self) -> dict[str, bool]:
        """Flags reported by the health endpoint."""
        return {
            "auth": self.auth.enabled,
            "validation": self.validation.enabled,
            "deduplication": self.dedup.enabled,
            "risk_engine": self.risk.enabled,
            "cooldown": self.cooldown.enabled,
            "trade_ledger": self.ledger.enabled,
            "paper_trading": self.broker.paper_trading_enabled,
            "paper_fallback": self.broker.paper_fallback,
        }

    def validate_for_startup(self) -> list[str]:
        """Validate settings are usable. Returns list of errors."""
        errors = []
        if self.auth.enabled and not self.webhook_secret:
            errors.append("TRADINGVIEW_WEBHOOK_SECRET not set while auth is enabled")
        if self.broker.type in ("live", "oanda"):
            if not self.broker_api_key:
                errors.append("BROKER_API_KEY not set")
            if not self.broker_account_id:
                errors.append("BROKER_ACCOUNT_ID not set")
        if self.broker.type == "paper" and not self.broker.paper_trading_enabled:
            errors.append("broker type is paper but paper trading is disabled")
        return errors


def load_settings(config_path: str | Path | None = None) -> Settings:
    """
    Load settings from YAML config file and environment variables.

    Priority (highest to lowest):
    1. Environment variables, including nested ones such as ``AUTH__ENABLED``
    2. The .env file next to the config file
    3. Config file values
    4. Default values

    Sections merge key by key, so an environment override of one nested
    field leaves the rest of that section from the file.
    """
    config_data = {}

    if config_path is None:
        config_path = os.environ.get("CONFIG_PATH", "config.yaml")

    config_file = Path(config_path)
    if config_file.exists():
        with open(config_file) as f:
            config_data = yaml.safe_load(f) or {}

    env_path = config_file.parent / ".env"
    return Settings(**config_data, _env_file=env_path)


def create_default_config(path: str | Path = "config.yaml") -> None:
    """Create a default configuration file."""
    default_config = {
        "server": {
            "host": "0.0.0.0",
            "port": 3014,
            "max_body_bytes": 65536,
            "allowed_origin": "*",
        },
        "auth": {
            "enabled": True,
            "header_name": "X-TradingView-Signature",
            "allow_body_secret": True,
        },
        "validation": {
            "enabled": True,
            "allowed_symbols": [],
            "max_quantity": 1000000.0,
            "max_alert_age_sec": 86400,
            "max_future_skew_sec": 300,
        },
        "dedup": {
            "enabled": True,
            "retention_hours": 48,
            "time_bucket_sec": 60,
            "max_retries": 1,
            "pending_timeout_sec": 120,
        },
        "risk": {
            "enabled": True,
            "trading_enabled": True,
            "max_total_exposure": 100000.0,
            "max_symbol_exposure": 25000.0,
            "max_daily_loss": 1000.0,
            "max_positions": 5,
            "max_position_pct": None,
            "require_stop_loss": False,
            "require_take_profit": False,
            "max_stop_distance_pct": 10.0,
            "trading_hours_start": None,
            "trading_hours_end": None,
            "trading_days": [0, 1, 2, 3, 4, 5, 6],
        },
        "cooldown": {"seconds": 180},
        "rate_limit": {"max_requests": 10, "window_sec": 60, "mode": "sliding"},
        "gateway": {
            "gate_order": ["cooldown", "risk"],
            "default_reference_price": 1.0,
            "reference_prices": {},
            "maintenance_interval_sec": 60,
        },
        "broker": {
            "type": "paper",
            "paper_trading_enabled": True,
            "paper_fallback": False,
            "order_timeout_sec": 10,
            "retry_attempts": 2,
            "retry_backoff_sec": 0.5,
        },
        "paper": {"starting_balance": 10000.0, "slippage_bps": 0.0, "fee_pct": 0.0},
        "live": {"environment": "practice"},
        "ledger": {"enabled": True},
        "storage": {
            "ledger_path": "./data/ledger",
            "state_path": "./data/state",
            "telemetry_path": "./data/telemetry",
            "logs_path": "./logs",
        },
        "monitoring": {
            "log_level": "INFO",
            "metrics_enabled": False,
            "metrics_port": 9090,
            "error_log_max_bytes": 5000000,
            "error_log_backup_count": 3,
        },
    }

    with open(path, "w") as f:
        yaml.dump(default_config, f, default_flow_style=False, sort_keys=False)
