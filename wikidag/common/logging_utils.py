"""
Shared logging configuration helpers.

Uses the `logging` section of `config.yaml` plus an optional LOG_LEVEL
environment override to configure console and file handlers for a build run.
"""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Any, Dict

import yaml

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# SQLAlchemy logs every statement at INFO when echo is enabled; keep it
# quiet unless the config asks for it explicitly.
DEFAULT_LOGGER_LEVELS = {
    "sqlalchemy.engine": "WARNING",
    "aiosqlite": "WARNING",
}


def _load_yaml(path: str) -> Dict[str, Any]:
    if not os.path.exists(path):
        return {}
    with open(path, "r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def build_logging_config(logging_cfg: Dict[str, Any]) -> Dict[str, Any]:
    """
    Translate the `logging` config section into a dictConfig mapping.

    Recognised keys: `level`, `format`, `file`, and `loggers` (a mapping of
    logger name to level for per-module overrides).
    """
    env_level = os.getenv("LOG_LEVEL")
    level_name = (env_level or logging_cfg.get("level") or "INFO").upper()
    log_format = logging_cfg.get("format", DEFAULT_FORMAT)
    log_file = logging_cfg.get("file")

    handlers: Dict[str, Any] = {
        "console": {
            "class": "logging.StreamHandler",
            "formatter": "standard",
            "level": level_name,
        },
    }
    root_handlers = ["console"]

    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers["file"] = {
            "class": "logging.FileHandler",
            "formatter": "standard",
            "level": level_name,
            "filename": log_file,
            "encoding": "utf-8",
        }
        root_handlers.append("file")

    logger_levels = dict(DEFAULT_LOGGER_LEVELS)
    logger_levels.update(logging_cfg.get("loggers", {}) or {})

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"standard": {"format": log_format}},
        "handlers": handlers,
        "loggers": {
            name: {"level": str(level).upper()} for name, level in logger_levels.items()
        },
        "root": {"level": level_name, "handlers": root_handlers},
    }


def setup_logging(config_path: str = "config.yaml") -> None:
    """Initialize application-wide logging from config.yaml."""
    config = _load_yaml(config_path)
    logging_cfg = config.get("logging", {}) if isinstance(config, dict) else {}
    logging.config.dictConfig(build_logging_config(logging_cfg or {}))
