# Warchest - Trading Bot Worker Supervision
# Copyright (C) 2026 Warchest Authors
# SPDX-License-Identifier: Apache-2.0
"""Warchest: process supervision for trading bot background workers."""

__version__ = "0.4.0"
