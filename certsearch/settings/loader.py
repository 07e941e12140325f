from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

import yaml

from certsearch.backend import DEFAULT_DATABASE_URL
from certsearch.query_builder import MAX_BATCH_SIZE
from certsearch.scan_loop import POLL_INTERVAL_S

logger = logging.getLogger(__name__)

LOG_FORMATS = ("text", "json")
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL")


# -----------------------------
# Models
# -----------------------------

@dataclass(frozen=True)
class RuntimeSettings:
    database_url: str
    log_level: str
    log_format: str


@dataclass(frozen=True)
class AppSettings:
    poll_interval_s: float
    batch_size: int
    connect_timeout_s: int


@dataclass(frozen=True)
class Settings:
    runtime: RuntimeSettings
    app: AppSettings


# -----------------------------
# Helpers
# -----------------------------

def _read_yaml(path: str) -> dict:
    p = Path(path)
    if not p.exists():
        logger.error("YAML config not found: %s", path)
        raise FileNotFoundError(path)

    try:
        content = p.read_text(encoding="utf-8")
        logger.debug("YAML config read: %s bytes", len(content))
        return yaml.safe_load(content) or {}
    except yaml.YAMLError as exc:
        logger.error("YAML parse error: %s", exc)
        raise ValueError(f"invalid YAML in {path}: {exc}") from exc


def _optional_dict(data: dict, key: str) -> dict:
    v = data.get(key, {})
    if v is None:
        return {}
    if not isinstance(v, dict):
        logger.error("Config section '%s' is not a dict", key)
        raise KeyError(f"invalid section: {key}")
    return v


# -----------------------------
# Public API
# -----------------------------

def load_settings(yaml_path: Optional[str] = None) -> Settings:
    """
    Единая точка загрузки настроек.

    Runtime (ENV):
      DATABASE_URL, LOG_LEVEL, LOG_FORMAT

    App (YAML, необязательный): путь из аргумента или APP_CONFIG_PATH:
      scan.poll_interval_s, scan.batch_size, db.connect_timeout_s
    """
    # ---- runtime (ENV) ----
    database_url = os.getenv("DATABASE_URL") or DEFAULT_DATABASE_URL
    log_level = os.getenv("LOG_LEVEL", "INFO").upper()
    if log_level not in LOG_LEVELS:
        logger.error("LOG_LEVEL must be one of %s, got %r", LOG_LEVELS, log_level)
        raise ValueError(f"LOG_LEVEL must be one of {LOG_LEVELS}")
    log_format = os.getenv("LOG_FORMAT", "text").lower()
    if log_format not in LOG_FORMATS:
        logger.error("LOG_FORMAT must be one of %s, got %r", LOG_FORMATS, log_format)
        raise ValueError(f"LOG_FORMAT must be one of {LOG_FORMATS}")

    runtime = RuntimeSettings(database_url=database_url, log_level=log_level, log_format=log_format)

    # ---- app (YAML) ----
    path = yaml_path or os.getenv("APP_CONFIG_PATH")
    data: dict = {}
    if path:
        logger.info("Loading YAML config: %s", path)
        data = _read_yaml(path)
    else:
        logger.debug("No YAML config given, using defaults")

    scan = _optional_dict(data, "scan")
    db = _optional_dict(data, "db")

    app = AppSettings(
        poll_interval_s=float(scan.get("poll_interval_s", POLL_INTERVAL_S)),
        batch_size=int(scan.get("batch_size", MAX_BATCH_SIZE)),
        connect_timeout_s=int(db.get("connect_timeout_s", 10)),
    )
    if app.connect_timeout_s <= 0:
        logger.error("db.connect_timeout_s must be > 0")
        raise ValueError("db.connect_timeout_s must be > 0")

    logger.info(
        "Settings loaded: poll_interval_s=%s, batch_size=%s, connect_timeout_s=%s, log_format=%s",
        app.poll_interval_s,
        app.batch_size,
        app.connect_timeout_s,
        runtime.log_format,
    )
    return Settings(runtime=runtime, app=app)
