from __future__ import annotations

import _bootstrap  # noqa: F401

import argparse
import json
import threading
from datetime import datetime, timedelta, timezone
from typing import Optional

from resocache.ingestion.errors import ResoCacheError
from resocache.ingestion.ledger import read_latest_ledger_entry
from resocache.ingestion.orchestrator import IngestionOrchestrator, IngestScope
from resocache.ingestion.reso_client import ResoQueryClient
from resocache.logging_config import configure_logging
from resocache.settings import AppConfig, get_config
from resocache.storage.listing_store import ListingStore
from resocache.storage.session import create_engine_from_config
from resocache.utils.time import parse_datetime


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description="Ingest one scope of RESO listings into the local cache (safe to re-run)."
    )
    parser.add_argument("--city", default=None, help="City to ingest (case-insensitive match).")
    parser.add_argument("--county", default=None, help="County/parish to ingest (case-insensitive match).")
    parser.add_argument(
        "--status",
        nargs="*",
        default=None,
        help="StandardStatus values (default: config ingestion.default_statuses).",
    )
    parser.add_argument("--property-type", nargs="*", default=None, help="PropertyType values.")
    parser.add_argument("--special-condition", nargs="*", default=None, help="SpecialListingConditions values.")
    parser.add_argument("--since", default=None, help="ModificationTimestamp lower bound (ISO 8601, inclusive).")
    parser.add_argument("--until", default=None, help="ModificationTimestamp upper bound (ISO 8601, exclusive).")
    parser.add_argument(
        "--window-hours",
        type=int,
        default=None,
        help="Window size when --since is omitted (default: config ingestion.default_window_hours).",
    )
    parser.add_argument(
        "--resume",
        action="store_true",
        help="Start from the end of the last successful run for the same city/county in the ledger.",
    )
    parser.add_argument("--timeout", type=float, default=None, help="Cancel the run after N seconds.")
    parser.add_argument("--no-cache", action="store_true", help="Disable the on-disk metadata cache.")
    parser.add_argument("--init-db", action="store_true", help="Create the listings table/index if missing.")
    return parser.parse_args()


def _override_config(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    updated = config
    if args.no_cache:
        updated = updated.model_copy(update={"cache": updated.cache.model_copy(update={"enabled": False})})
    return updated.resolve_paths()


def _resume_start(config: AppConfig, args: argparse.Namespace) -> Optional[datetime]:
    def same_scope(entry: dict) -> bool:
        scope = entry.get("scope") or {}
        return bool(entry.get("ok")) and scope.get("city") == args.city and scope.get("county") == args.county

    entry = read_latest_ledger_entry(config.paths.ledger_path, match=same_scope)
    if entry is None:
        return None
    until = (entry.get("scope") or {}).get("modified_until")
    return parse_datetime(until) if until else None


def build_scope(config: AppConfig, args: argparse.Namespace) -> IngestScope:
    until = parse_datetime(args.until) if args.until else datetime.now(timezone.utc)
    since: Optional[datetime] = parse_datetime(args.since) if args.since else None
    if since is None and args.resume:
        since = _resume_start(config, args)
    if since is None:
        hours = int(args.window_hours or config.ingestion.default_window_hours)
        if hours <= 0:
            raise SystemExit("--window-hours must be > 0")
        since = until - timedelta(hours=hours)
    if until <= since:
        raise SystemExit("--until must be greater than --since")

    return IngestScope(
        city=args.city,
        county=args.county,
        statuses=args.status if args.status is not None else list(config.ingestion.default_statuses),
        property_types=args.property_type or [],
        special_conditions=args.special_condition or [],
        modified_since=since,
        modified_until=until,
    )


def main() -> None:
    args = parse_args()
    configure_logging()

    config = _override_config(get_config(), args)
    scope = build_scope(config, args)

    store = ListingStore(create_engine_from_config(config), index_page_size=config.store.index_page_size)
    if args.init_db:
        store.create_schema()

    cancel_event = threading.Event()
    timer: Optional[threading.Timer] = None
    if args.timeout:
        timer = threading.Timer(args.timeout, cancel_event.set)
        timer.daemon = True
        timer.start()

    client = ResoQueryClient(config=config)
    try:
        counts = IngestionOrchestrator(client, store, config=config).ingest(scope, cancel_event=cancel_event)
    except ResoCacheError as exc:
        raise SystemExit(f"[ingest] failed: {exc}") from exc
    finally:
        if timer is not None:
            timer.cancel()
        client.close()

    print(json.dumps({"scope": scope.describe(), **counts.as_dict()}, ensure_ascii=False))


if __name__ == "__main__":
    main()
