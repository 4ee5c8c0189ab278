from __future__ import annotations

import os
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field


def project_root() -> Path:
    return Path(__file__).resolve().parents[2]


def _resolve_path(root: Path, value: str | Path) -> Path:
    path = Path(value)
    return path if path.is_absolute() else (root / path)


class AppSection(BaseModel):
    name: str = "resocache"
    timezone: str = "America/Los_Angeles"


class PathsSection(BaseModel):
    cache_dir: Path = Path("data/cache")
    ledger_path: Path = Path("data/cache/ingest_ledger.jsonl")


class CacheSection(BaseModel):
    enabled: bool = True
    ttl_seconds: int = 86400


class ResoSection(BaseModel):
    host: str = "https://api-trestle.corelogic.com"
    token_path: str = "/trestle/oidc/connect/token"
    odata_path: str = "/trestle/odata"
    scope: str = "api"
    resource: str = "Property"
    media_resource: str = "Media"
    request_timeout_seconds: int = 30
    max_retries: int = 2
    retry_backoff_seconds: float = 1.0
    backoff_multiplier: float = 2.0
    max_backoff_seconds: float = 30.0
    respect_retry_after: bool = True
    page_delay_seconds: float = 0.15
    max_records: int = 1_000_000
    page_size: int = 1000
    token_refresh_margin_seconds: int = 60

    @property
    def token_url(self) -> str:
        return self.host.rstrip("/") + self.token_path

    @property
    def odata_root(self) -> str:
        return self.host.rstrip("/") + self.odata_path


class StoreSection(BaseModel):
    database_url: str = "sqlite:///data/listings.db"
    index_page_size: int = 100


class QueueSection(BaseModel):
    redis_url: str = "redis://localhost:6379/0"
    queue_name: str = "resocache:image-build"
    batch_size: int = 10
    inter_batch_delay_seconds: float = 0.05
    image_width: int = 400


class IngestionSection(BaseModel):
    default_window_hours: int = 24
    default_statuses: list[str] = Field(default_factory=lambda: ["Active", "Pending"])
    select_fields: list[str] = Field(default_factory=list)
    expand_media: bool = True


class CorsSection(BaseModel):
    allow_origins: list[str] = Field(default_factory=lambda: ["http://localhost:8000"])


class ApiSection(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    media_lookup_concurrency: int = 8
    default_page_limit: int = 24
    cors: CorsSection = Field(default_factory=CorsSection)


class AppConfig(BaseModel):
    app: AppSection = Field(default_factory=AppSection)
    paths: PathsSection = Field(default_factory=PathsSection)
    cache: CacheSection = Field(default_factory=CacheSection)
    reso: ResoSection = Field(default_factory=ResoSection)
    store: StoreSection = Field(default_factory=StoreSection)
    queue: QueueSection = Field(default_factory=QueueSection)
    ingestion: IngestionSection = Field(default_factory=IngestionSection)
    api: ApiSection = Field(default_factory=ApiSection)

    def resolve_paths(self, root: Optional[Path] = None) -> "AppConfig":
        repo_root = project_root() if root is None else root
        updated_paths = self.paths.model_copy(
            update={
                "cache_dir": _resolve_path(repo_root, self.paths.cache_dir),
                "ledger_path": _resolve_path(repo_root, self.paths.ledger_path),
            }
        )
        return self.model_copy(update={"paths": updated_paths})


def _maybe_load_dotenv() -> None:
    try:
        from dotenv import load_dotenv  # type: ignore
    except Exception:
        return

    load_dotenv()


def load_config(config_path: str | Path | None = None) -> AppConfig:
    _maybe_load_dotenv()

    root = project_root()
    candidate = config_path or os.getenv("RESOCACHE_CONFIG", "configs/config.yaml")
    path = _resolve_path(root, candidate)
    if not path.exists():
        path = root / "configs/config.example.yaml"

    data: dict[str, Any] = {}
    if path.exists():
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    return AppConfig.model_validate(data).resolve_paths(root)


_CONFIG: AppConfig | None = None


def get_config() -> AppConfig:
    global _CONFIG
    if _CONFIG is None:
        _CONFIG = load_config()
    return _CONFIG
