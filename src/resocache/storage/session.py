"""Database engine helpers."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url

from resocache.settings import AppConfig, get_config, project_root


def _prepare_sqlite_path(url: str) -> str:
    parsed = make_url(url)
    database = parsed.database
    if not database or database == ":memory:":
        return url
    path = Path(database)
    if not path.is_absolute():
        path = project_root() / path
    path.parent.mkdir(parents=True, exist_ok=True)
    return parsed.set(database=str(path)).render_as_string(hide_password=False)


def create_engine_from_config(config: Optional[AppConfig] = None) -> Engine:
    """Create an engine from `store.database_url` (overridable with DATABASE_URL)."""

    resolved = config or get_config()
    url = os.environ.get("DATABASE_URL", resolved.store.database_url)
    # SQLAlchemy 2.x doesn't accept the 'postgres://' scheme some hosts hand out.
    if url.startswith("postgres://"):
        url = url.replace("postgres://", "postgresql+psycopg2://", 1)

    if url.startswith("sqlite"):
        # API worker threads share the engine; SQLite connections are per-thread otherwise.
        return create_engine(
            _prepare_sqlite_path(url),
            connect_args={"check_same_thread": False},
            future=True,
        )
    return create_engine(url, pool_pre_ping=True, future=True)
