"""Process-wide logging setup for the API and the ingestion scripts.

`configs/logging.yaml` (or `RESOCACHE_LOGGING_CONFIG`) wins when present. Otherwise the
`resocache` logger tree logs at `RESOCACHE_LOG_LEVEL` (default INFO) to stderr, while
third-party loggers stay at WARNING.
"""

from __future__ import annotations

import logging.config
import os
from pathlib import Path
from typing import Any

import yaml

from resocache.settings import project_root

# Thread names matter here: media lookups and image dispatch log from worker pools.
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(threadName)s | %(name)s | %(message)s"

# Chatty dependencies: httpx/httpcore log every request, redis logs connection churn.
QUIET_LOGGERS = ("httpx", "httpcore", "redis", "uvicorn.access")


def default_logging_config(level: str = "INFO") -> dict[str, Any]:
    app_level = level.upper()
    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {"standard": {"format": LOG_FORMAT}},
        "handlers": {
            "console": {
                "class": "logging.StreamHandler",
                "formatter": "standard",
                "stream": "ext://sys.stderr",
            }
        },
        "loggers": {
            "resocache": {"level": app_level},
            **{name: {"level": "WARNING"} for name in QUIET_LOGGERS},
        },
        "root": {"level": "WARNING", "handlers": ["console"]},
    }


def configure_logging(logging_config_path: str | Path | None = None) -> None:
    candidate = logging_config_path or os.getenv("RESOCACHE_LOGGING_CONFIG", "configs/logging.yaml")
    path = Path(candidate)
    if not path.is_absolute():
        path = project_root() / path

    if path.exists():
        config: dict[str, Any] = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        logging.config.dictConfig(config)
        return

    logging.config.dictConfig(default_logging_config(os.getenv("RESOCACHE_LOG_LEVEL", "INFO")))
