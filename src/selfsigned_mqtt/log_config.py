"""
Apply log level from the command line or env.

Single log level for the whole process (session, TLS factory, paho).
An explicit level (e.g. --log-level) takes precedence over SELFSIGNED_MQTT_LOG_LEVEL.
"""

from __future__ import annotations

import logging
import os
from typing import Optional

LOG_LEVEL_ENV = "SELFSIGNED_MQTT_LOG_LEVEL"


def _parse_level(raw: str) -> int:
    if not raw or not str(raw).strip():
        return logging.INFO
    raw = str(raw).strip().upper()
    if raw.isdigit():
        return int(raw)
    return int(getattr(logging, raw, logging.INFO))


def resolve_level(explicit: Optional[str] = None) -> int:
    """
    Resolve log level: explicit value if given, else SELFSIGNED_MQTT_LOG_LEVEL env, else INFO.
    """
    if explicit:
        return _parse_level(explicit)
    raw = os.environ.get(LOG_LEVEL_ENV, "").strip()
    return _parse_level(raw) if raw else logging.INFO


def apply_log_level(explicit: Optional[str] = None) -> int:
    """Set root logger level so all loggers use the resolved level; returns it."""
    level = resolve_level(explicit)
    logging.getLogger().setLevel(level)
    return level
