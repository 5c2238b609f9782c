# File: src/fleetpark/config.py
"""
Engine configuration and logging setup

Settings come from, in increasing precedence:
1. EngineConfig defaults
2. a YAML file (``FLEETPARK_CONFIG`` or the path passed to load_config)
3. ``FLEETPARK_*`` environment variables, plus ``DATABASE_URL``
"""

from dataclasses import dataclass, fields
from typing import Any, Dict, Optional
import logging
import os
import sys

import yaml


@dataclass(frozen=True)
class EngineConfig:
    """Runtime settings of the reservation engine"""
    database_url: str = "sqlite:///./fleetpark.db"
    redis_url: Optional[str] = None
    mongo_url: Optional[str] = None
    lock_timeout_seconds: float = 10.0
    retry_attempts: int = 3
    retry_backoff_seconds: float = 0.05
    currency: str = "BRL"
    event_topic: str = "reservation-events"
    notification_topic: str = "notifications"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def __post_init__(self):
        if self.retry_attempts < 1:
            raise ValueError("retry_attempts must be at least 1")
        if self.retry_backoff_seconds < 0:
            raise ValueError("retry_backoff_seconds cannot be negative")
        if self.lock_timeout_seconds <= 0:
            raise ValueError("lock_timeout_seconds must be positive")


def _coerce(name: str, raw: Any) -> Any:
    """Convert a raw YAML/env value to the type of the EngineConfig field"""
    if raw is None or raw == "":
        return None
    if name in ("retry_attempts",):
        return int(raw)
    if name in ("lock_timeout_seconds", "retry_backoff_seconds"):
        return float(raw)
    return str(raw)


def load_config(path: Optional[str] = None, environ: Optional[Dict[str, str]] = None) -> EngineConfig:
    """
    Build an EngineConfig from an optional YAML file and the environment

    Unknown YAML keys are rejected so a typo does not silently fall back
    to a default.
    """
    env = os.environ if environ is None else environ
    path = path or env.get("FLEETPARK_CONFIG")

    values: Dict[str, Any] = {}
    known = {f.name for f in fields(EngineConfig)}

    if path:
        with open(path, "r", encoding="utf-8") as handle:
            document = yaml.safe_load(handle) or {}
        if not isinstance(document, dict):
            raise ValueError(f"Configuration file {path} must contain a mapping")
        unknown = set(document) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys in {path}: {', '.join(sorted(unknown))}")
        values.update(document)

    if env.get("DATABASE_URL"):
        values["database_url"] = env["DATABASE_URL"]

    for name in known:
        env_value = env.get(f"FLEETPARK_{name.upper()}")
        if env_value is not None:
            values[name] = env_value

    coerced = {name: _coerce(name, value) for name, value in values.items()}
    # Required string fields keep their default when blanked out
    coerced = {k: v for k, v in coerced.items() if v is not None or k in ("redis_url", "mongo_url", "log_file")}
    return EngineConfig(**coerced)


def setup_logging(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """Setup application logging configuration"""
    handlers = [logging.StreamHandler(sys.stdout)]
    if log_file:
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )
    return logging.getLogger("fleetpark")
