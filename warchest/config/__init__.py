# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

from warchest.config.models import (
    AlertConfig,
    ConnectionConfig,
    EndpointConfig,
    ForkConfig,
    LoggingConfig,
    SessionConfig,
    ShutdownConfig,
    WarchestConfig,
    WatchdogConfig,
    WorkerCategoryConfig,
    get_config_path,
    invalidate_cache,
    load_config,
    save_config,
)
