"""Configuration management for the bot trade backend.

Rules:
- YAML provides defaults for non-secret config.
- .env / environment variables override YAML for deployment-specific keys.
- Admin changes to the bot trade settings are written to a runtime overrides
  file and merged on top at read time (no restart, no YAML edits).
"""

from __future__ import annotations

import json
import os
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import BaseModel, Field, ValidationError, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _normalize_profit_mode(v: str) -> str:
    return str(v).strip().lower()


def _normalize_environment(v: str) -> str:
    if str(v).upper() not in {"DEV", "STAGING", "PROD"}:
        raise ValueError("Environment must be 'DEV', 'STAGING' or 'PROD'")
    return str(v).upper()


def _normalize_log_level(v: str) -> str:
    valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
    if str(v).upper() not in valid:
        raise ValueError(f"Log level must be one of: {sorted(valid)}")
    return str(v).upper()


class TimeProfitEntry(BaseModel):
    """One row of the timer -> profit percentage table."""

    time_hours: int = Field(..., ge=1, le=24 * 30)
    profit_percentage: Decimal = Field(..., ge=0, le=1000)


def _default_time_profit_table() -> List[TimeProfitEntry]:
    return [
        TimeProfitEntry(time_hours=1, profit_percentage=Decimal("2")),
        TimeProfitEntry(time_hours=3, profit_percentage=Decimal("5")),
        TimeProfitEntry(time_hours=6, profit_percentage=Decimal("10")),
        TimeProfitEntry(time_hours=12, profit_percentage=Decimal("15")),
        TimeProfitEntry(time_hours=24, profit_percentage=Decimal("20")),
    ]


class BotTradeSettings(BaseModel):
    """Limits and odds for simulated bot trades (editable from the admin back-office)."""

    min_trade_amount: Decimal = Field(default=Decimal("10"), gt=0)
    max_trade_amount: Decimal = Field(default=Decimal("100000"), gt=0)
    daily_trade_limit: int = Field(default=5, ge=1, le=1000)
    bot_profit_mode: str = Field(default="profit")
    """"profit" -> 85% win rate, "lose" -> 15%, anything else -> 50%."""
    time_profit_table: List[TimeProfitEntry] = Field(default_factory=_default_time_profit_table)
    # never below 8: a basket needs at least eight tokens
    min_coins: int = Field(default=8, ge=8, le=500)
    default_profit_percent: Decimal = Field(default=Decimal("10"), ge=0, le=1000)

    @field_validator("bot_profit_mode")
    @classmethod
    def normalize_profit_mode(cls, v: str) -> str:
        return _normalize_profit_mode(v)

    @field_validator("max_trade_amount")
    @classmethod
    def validate_max_trade_amount(cls, v: Decimal, info) -> Decimal:
        if "min_trade_amount" in info.data and v < info.data["min_trade_amount"]:
            raise ValueError("max_trade_amount must be greater than or equal to min_trade_amount")
        return v

    @field_validator("time_profit_table")
    @classmethod
    def validate_time_profit_table(cls, v: List[TimeProfitEntry]) -> List[TimeProfitEntry]:
        seen = set()
        for entry in v:
            if entry.time_hours in seen:
                raise ValueError(f"duplicate time_hours in time_profit_table: {entry.time_hours}")
            seen.add(entry.time_hours)
        return sorted(v, key=lambda e: e.time_hours)

    def profit_percent_for(self, timer_hours: int) -> Decimal:
        for entry in self.time_profit_table:
            if entry.time_hours == timer_hours:
                return entry.profit_percentage
        return self.default_profit_percent


class BotTokenEntry(BaseModel):
    """One row of the selectable token catalog."""

    symbol: str = Field(..., min_length=1, max_length=20)
    name: str = ""
    image_url: Optional[str] = None
    status: str = Field(default="active")

    @field_validator("symbol")
    @classmethod
    def normalize_symbol(cls, v: str) -> str:
        v = v.strip().upper()
        if not v:
            raise ValueError("symbol must not be blank")
        return v

    @field_validator("status")
    @classmethod
    def validate_status(cls, v: str) -> str:
        v = str(v).strip().lower()
        if v not in {"active", "inactive"}:
            raise ValueError("status must be 'active' or 'inactive'")
        return v


def _default_bot_tokens() -> List[BotTokenEntry]:
    names = {
        "BTC": "Bitcoin",
        "ETH": "Ethereum",
        "BNB": "BNB",
        "SOL": "Solana",
        "XRP": "XRP",
        "ADA": "Cardano",
        "DOGE": "Dogecoin",
        "TRX": "TRON",
        "DOT": "Polkadot",
        "LTC": "Litecoin",
        "AVAX": "Avalanche",
        "LINK": "Chainlink",
    }
    return [BotTokenEntry(symbol=s, name=n) for s, n in names.items()]


class DatabaseConfig(BaseModel):
    path: str = Field(default="data/bot_trade.db")


class APIConfig(BaseModel):
    host: str = Field(default="0.0.0.0")
    port: int = Field(default=8000, ge=1024, le=65535)
    cors_origins: List[str] = Field(default=["http://localhost:3000", "http://localhost:5173"])


class LifecycleConfig(BaseModel):
    """Per-owner settlement loop timing."""

    tick_interval_seconds: float = Field(default=1.0, gt=0, le=60)
    discovery_interval_seconds: float = Field(default=5.0, gt=0, le=3600)


class MonitoringConfig(BaseModel):
    metrics_path: str = Field(default="data/metrics.json")


class KillSwitchConfig(BaseModel):
    state_path: str = Field(default="data/killswitch.json")


class BotTradeAppConfig(BaseSettings):
    """Main configuration class.

    YAML is parsed as base config, then env overrides are re-applied explicitly.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_nested_delimiter="__",
        extra="ignore",
    )

    environment: str = Field(default="DEV")
    log_level: str = Field(default="INFO")
    json_logs: bool = Field(default=True)
    runtime_config_path: str = Field(default="data/runtime_config.json")

    bot_trade: BotTradeSettings = Field(default_factory=BotTradeSettings)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    api: APIConfig = Field(default_factory=APIConfig)
    lifecycle: LifecycleConfig = Field(default_factory=LifecycleConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    kill_switch: KillSwitchConfig = Field(default_factory=KillSwitchConfig)
    bot_tokens: List[BotTokenEntry] = Field(default_factory=_default_bot_tokens)

    @field_validator("environment")
    @classmethod
    def validate_environment(cls, v: str) -> str:
        return _normalize_environment(v)

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        return _normalize_log_level(v)

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "BotTradeAppConfig":
        """Load configuration from YAML, then apply env overrides on top."""
        if not yaml_path.exists():
            raise FileNotFoundError(f"Configuration file not found: {yaml_path}")

        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        try:
            base = cls.model_validate(data)
        except ValidationError as e:
            raise ValueError(f"Configuration validation error: {e}")

        return base.with_env_overrides()

    def with_env_overrides(self) -> "BotTradeAppConfig":
        if os.getenv("ENVIRONMENT"):
            self.environment = _normalize_environment(os.environ["ENVIRONMENT"])

        if os.getenv("LOG_LEVEL"):
            self.log_level = _normalize_log_level(os.environ["LOG_LEVEL"])

        if os.getenv("DATABASE__PATH"):
            self.database.path = os.environ["DATABASE__PATH"]

        if os.getenv("RUNTIME_CONFIG_PATH"):
            self.runtime_config_path = os.environ["RUNTIME_CONFIG_PATH"]

        mode = os.getenv("BOT_TRADE__BOT_PROFIT_MODE")
        if mode is not None:
            self.bot_trade.bot_profit_mode = _normalize_profit_mode(mode)

        return self


def load_config(config_path: Optional[Path] = None) -> BotTradeAppConfig:
    """Load configuration from YAML + .env (env wins).

    With no explicit path and no config file on disk, built-in defaults are used.
    """
    load_dotenv(dotenv_path=Path(".env"))

    if config_path is None:
        possible_paths = [Path("config/default.yaml"), Path("config/config.yaml"), Path("config.yaml")]
        for path in possible_paths:
            if path.exists():
                config_path = path
                break
        else:
            return BotTradeAppConfig().with_env_overrides()

    return BotTradeAppConfig.from_yaml(config_path)


_config: Optional[BotTradeAppConfig] = None


def get_config() -> BotTradeAppConfig:
    global _config
    if _config is None:
        _config = load_config()
    return _config


def reload_config(config_path: Optional[Path] = None) -> BotTradeAppConfig:
    global _config
    _config = load_config(config_path)
    return _config


# --------- Runtime overrides (admin settings screen, no YAML edits) ---------
def load_runtime_overrides(path: Path) -> Dict[str, Any]:
    """Read the overrides file. Missing or unreadable file -> {}."""
    if not path.exists():
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}
    except (json.JSONDecodeError, OSError):
        return {}


def save_runtime_overrides(path: Path, overrides: Dict[str, Any]) -> Dict[str, Any]:
    """Merge overrides into the file and return the merged content."""
    path.parent.mkdir(parents=True, exist_ok=True)
    current = load_runtime_overrides(path)
    current.update({k: v for k, v in overrides.items() if v is not None})
    tmp = path.with_suffix(".tmp")
    with open(tmp, "w", encoding="utf-8") as f:
        json.dump(current, f, indent=2, default=str)
    tmp.replace(path)
    return current


def get_effective_bot_settings(config: BotTradeAppConfig) -> BotTradeSettings:
    """Bot trade settings with runtime overrides applied over YAML/env values.

    Overrides that fail validation are ignored as a whole.
    """
    overrides = load_runtime_overrides(Path(config.runtime_config_path))
    if not overrides:
        return config.bot_trade
    merged = {**config.bot_trade.model_dump(), **overrides}
    try:
        return BotTradeSettings.model_validate(merged)
    except ValidationError:
        return config.bot_trade
