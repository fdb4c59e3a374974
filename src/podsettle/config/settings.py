"""TOML config loading, profiles and environment secrets."""

from __future__ import annotations

import logging
import os
import tomllib
from decimal import Decimal
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

# Default config search path (project root or cwd)
_CONFIG_DIR = Path(__file__).resolve().parent.parent.parent.parent / "config"
_CWD_CONFIG = Path.cwd() / "config"

ENV_SETTLEMENT_KEY = "PODSETTLE_SETTLEMENT_KEY"
ENV_RPC_URL = "PODSETTLE_RPC_URL"
ENV_WS_URL = "PODSETTLE_WS_URL"
ENV_CONTRACT_ADDRESS = "PODSETTLE_CONTRACT_ADDRESS"


def _load_toml(path: Path) -> dict[str, Any]:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Override values take precedence."""
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _find_config_dir(config_dir: Path | None = None) -> Path:
    if config_dir is not None:
        return config_dir
    if _CWD_CONFIG.exists():
        return _CWD_CONFIG
    return _CONFIG_DIR


def load_config(profile: str | None = None, config_dir: Path | None = None) -> dict[str, Any]:
    """Load merged config from default.toml and optional profile overlay."""
    directory = _find_config_dir(config_dir)
    default_path = directory / "default.toml"
    if not default_path.exists():
        return {}
    base = _load_toml(default_path)
    if profile:
        profile_path = directory / f"{profile}.toml"
        if profile_path.exists():
            overlay = _load_toml(profile_path)
            base = _deep_merge(base, overlay)
    return base


def get_settings(profile: str | None = None, config_dir: Path | None = None) -> Settings:
    """Return Settings instance from merged config. Loads .env into the environment first."""
    load_dotenv()
    raw = load_config(profile, config_dir)
    settings = Settings.from_dict(raw)
    settings.validate()
    return settings


class Settings:
    """Application settings from TOML config; secrets come from the environment."""

    def __init__(
        self,
        *,
        chain: dict[str, Any] | None = None,
        oracle: dict[str, Any] | None = None,
        lifecycle: dict[str, Any] | None = None,
        listener: dict[str, Any] | None = None,
        storage: dict[str, Any] | None = None,
        api: dict[str, Any] | None = None,
        logging: dict[str, Any] | None = None,
    ):
        self.chain = chain or {}
        self.oracle = oracle or {}
        self.lifecycle = lifecycle or {}
        self.listener = listener or {}
        self.storage = storage or {}
        self.api = api or {}
        self.logging = logging or {}

    @classmethod
    def from_dict(cls, raw: dict[str, Any]) -> Settings:
        return cls(
            chain=raw.get("chain"),
            oracle=raw.get("oracle"),
            lifecycle=raw.get("lifecycle"),
            listener=raw.get("listener"),
            storage=raw.get("storage"),
            api=raw.get("api"),
            logging=raw.get("logging"),
        )

    def validate(self) -> None:
        if self.initial_delay_sec >= self.final_delay_sec:
            raise ValueError(
                f"lifecycle.initial_delay_sec ({self.initial_delay_sec}) must be less than "
                f"lifecycle.final_delay_sec ({self.final_delay_sec})"
            )
        if self.sample_max_attempts < 1:
            raise ValueError("lifecycle.sample_max_attempts must be at least 1")

    # Convenience accessors with defaults
    @property
    def db_path(self) -> str:
        return self.storage.get("db_path", "data/podsettle.duckdb")

    @property
    def rpc_url(self) -> str:
        return os.environ.get(ENV_RPC_URL) or self.chain.get("rpc_url", "http://127.0.0.1:8545")

    @property
    def ws_url(self) -> str:
        return os.environ.get(ENV_WS_URL) or self.chain.get("ws_url", "ws://127.0.0.1:8546")

    @property
    def contract_address(self) -> str:
        return os.environ.get(ENV_CONTRACT_ADDRESS) or self.chain.get("contract_address", "")

    @property
    def abi_path(self) -> str | None:
        return self.chain.get("abi_path") or None

    @property
    def settlement_key(self) -> str | None:
        return os.environ.get(ENV_SETTLEMENT_KEY) or None

    @property
    def replay_blocks(self) -> int:
        return int(self.chain.get("replay_blocks", 12))

    @property
    def receipt_timeout_sec(self) -> float:
        return float(self.chain.get("receipt_timeout_sec", 120.0))

    @property
    def rpc_timeout_sec(self) -> float:
        return float(self.chain.get("rpc_timeout_sec", 30.0))

    @property
    def gas_margin_pct(self) -> int:
        return int(self.chain.get("gas_margin_pct", 10))

    @property
    def oracle_base_url(self) -> str:
        return self.oracle.get("base_url", "https://api.dexscreener.com")

    @property
    def oracle_timeout_sec(self) -> float:
        return float(self.oracle.get("timeout_sec", 10.0))

    @property
    def initial_delay_sec(self) -> float:
        return float(self.lifecycle.get("initial_delay_sec", 300))

    @property
    def final_delay_sec(self) -> float:
        return float(self.lifecycle.get("final_delay_sec", 660))

    @property
    def sample_max_attempts(self) -> int:
        return int(self.lifecycle.get("sample_max_attempts", 3))

    @property
    def sample_retry_base_sec(self) -> float:
        return float(self.lifecycle.get("sample_retry_base_sec", 5.0))

    @property
    def sample_retry_max_sec(self) -> float:
        return float(self.lifecycle.get("sample_retry_max_sec", 60.0))

    @property
    def no_change_threshold(self) -> Decimal:
        return Decimal(str(self.lifecycle.get("no_change_threshold", "0")))

    @property
    def reconnect_base_delay_sec(self) -> float:
        return float(self.listener.get("reconnect_base_delay_sec", 1.0))

    @property
    def reconnect_max_delay_sec(self) -> float:
        return float(self.listener.get("reconnect_max_delay_sec", 60.0))

    @property
    def reconnect_max_retries(self) -> int:
        return int(self.listener.get("reconnect_max_retries", 0))

    @property
    def cors_origins(self) -> list[str]:
        return list(self.api.get("cors_origins") or ["http://localhost:3000"])

    @property
    def logging_level(self) -> str:
        return self.logging.get("level", "INFO").upper()

    @property
    def logging_format(self) -> str:
        return self.logging.get("format", "console")

    @property
    def logging_level_num(self) -> int:
        return getattr(logging, self.logging_level, logging.INFO)


def configure_logging(settings: Settings) -> None:
    """Configure structlog with settings. Call once at application entry."""
    import structlog

    processors = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
    ]
    if settings.logging_format == "json":
        processors.append(structlog.processors.format_exc_info)
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(settings.logging_level_num),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )
