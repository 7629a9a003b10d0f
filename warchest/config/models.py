# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

"""Central configuration module for Warchest.

Defines Pydantic models for config.json and provides load / save helpers
with a module-level singleton cache.  Every recognised option is listed
here together with its default; components receive the section model they
need rather than loose keyword bags.
"""

from __future__ import annotations

import json
import logging
import signal
from pathlib import Path
from typing import Any

from pydantic import BaseModel, field_validator, model_validator

from warchest.exceptions import ConfigError

logger = logging.getLogger("warchest.config")

# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------


class EndpointConfig(BaseModel):
    """Connection hints forwarded to every spawned worker."""

    rpc_endpoint: str | None = None
    data_endpoint: str | None = None
    store_path: str | None = None
    wallet_ids: list[str] = []


class ForkConfig(BaseModel):
    default_timeout_ms: int = 30_000
    stop_grace_ms: int = 5_000
    exit_wait_ms: int = 2_000  # reap window for one-shot workers after reply
    lock_dir: str | None = None
    python_executable: str | None = None  # None = sys.executable


class WatchdogConfig(BaseModel):
    tick_ms: int = 5_000
    stale_ms: int = 60_000
    restart_cooldown_ms: int = 60_000
    startup_grace_ms: int = 30_000
    heartbeat_alert_interval_ms: int = 30_000

    @field_validator("tick_ms", "stale_ms")
    @classmethod
    def _positive(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("must be positive")
        return v


class ConnectionConfig(BaseModel):
    stale_after_ms: int = 20_000
    min_restart_gap_ms: int = 30_000
    base_backoff_ms: int = 2_000
    max_backoff_ms: int = 5 * 60_000
    unsubscribe_timeout_ms: int = 2_500
    check_interval_ms: int = 5_000
    error_window_ms: int = 60_000
    open_attempts: int = 3


class ShutdownConfig(BaseModel):
    grace_ms: int = 5_000
    wait_ms: int = 8_000
    force_wait_ms: int = 2_000
    stop_signal: str = "SIGTERM"
    force_signal: str = "SIGKILL"
    poll_interval_ms: int = 200

    @field_validator("stop_signal", "force_signal")
    @classmethod
    def _known_signal(cls, v: str) -> str:
        if not hasattr(signal, v):
            raise ValueError(f"unknown signal: {v}")
        return v


class SessionConfig(BaseModel):
    service_name: str = "warchest-service"
    max_attempts: int = 5
    backoff_step_ms: int = 1_000
    backoff_cap_ms: int = 5_000


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str | None = None  # None = <data_dir>/logs
    json_file: bool = True


class AlertConfig(BaseModel):
    capacity: int = 8


class WorkerCategoryConfig(BaseModel):
    """One supervised worker category (e.g. ``sellOps``)."""

    worker_path: str
    enabled: bool = True
    per_wallet: bool = False
    lock_tag: str | None = None  # PID tag guarding a singleton resource
    payload: dict[str, Any] = {}
    env: dict[str, str] = {}
    stale_ms: int | None = None  # per-category override of WatchdogConfig


class WarchestConfig(BaseModel):
    version: int = 1
    service_instance_id: str | None = None
    endpoints: EndpointConfig = EndpointConfig()
    fork: ForkConfig = ForkConfig()
    watchdog: WatchdogConfig = WatchdogConfig()
    connection: ConnectionConfig = ConnectionConfig()
    shutdown: ShutdownConfig = ShutdownConfig()
    session: SessionConfig = SessionConfig()
    logging: LoggingConfig = LoggingConfig()
    alerts: AlertConfig = AlertConfig()
    workers: dict[str, WorkerCategoryConfig] = {}

    @model_validator(mode="after")
    def _per_wallet_needs_wallets(self) -> WarchestConfig:
        for name, category in self.workers.items():
            if category.enabled and category.per_wallet and not self.endpoints.wallet_ids:
                logger.warning(
                    "Worker category %s is per-wallet but no wallet_ids are configured",
                    name,
                )
        return self


# ---------------------------------------------------------------------------
# Singleton cache
# ---------------------------------------------------------------------------

_config: WarchestConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def invalidate_cache() -> None:
    """Reset the module-level singleton cache."""
    global _config, _config_path, _config_mtime
    _config = None
    _config_path = None
    _config_mtime = 0.0


def get_config_path(data_dir: Path | None = None) -> Path:
    """Return the path to config.json inside *data_dir*."""
    if data_dir is None:
        from warchest.paths import get_data_dir

        data_dir = get_data_dir()
    return data_dir / "config.json"


def load_config(path: Path | None = None) -> WarchestConfig:
    """Load configuration from disk, returning cached instance when possible.

    When the file does not exist the default configuration is returned.
    The cache is invalidated when the file's mtime changes.

    Raises:
        ConfigError: If the file exists but cannot be parsed or validated.
    """
    global _config, _config_path, _config_mtime

    if path is None:
        path = get_config_path()

    if _config is not None and _config_path == path:
        try:
            disk_mtime = path.stat().st_mtime
        except OSError:
            disk_mtime = 0.0
        if disk_mtime == _config_mtime:
            return _config
        logger.debug("Config file changed on disk (mtime %.3f -> %.3f); reloading", _config_mtime, disk_mtime)

    if path.is_file():
        logger.debug("Loading config from %s", path)
        try:
            data: dict[str, Any] = json.loads(path.read_text(encoding="utf-8"))
            config = WarchestConfig.model_validate(data)
        except json.JSONDecodeError as exc:
            logger.error("Failed to parse %s: %s", path, exc)
            raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
        except ValueError as exc:
            logger.error("Failed to load config from %s: %s", path, exc)
            raise ConfigError(f"Invalid config in {path}: {exc}") from exc
    else:
        logger.info("Config file not found at %s; using defaults", path)
        config = WarchestConfig()

    _config = config
    _config_path = path
    try:
        _config_mtime = path.stat().st_mtime
    except OSError:
        _config_mtime = 0.0
    return config


def save_config(config: WarchestConfig, path: Path | None = None) -> None:
    """Persist *config* to disk as pretty-printed JSON."""
    global _config, _config_path, _config_mtime

    if path is None:
        path = get_config_path()

    path.parent.mkdir(parents=True, exist_ok=True)
    payload = config.model_dump(mode="json")
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    logger.debug("Config saved to %s", path)

    _config = config
    _config_path = path
    try:
        _config_mtime = path.stat().st_mtime
    except OSError:
        _config_mtime = 0.0
