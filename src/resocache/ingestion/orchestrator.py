"""Ingest one scope: fetch every matching upstream record, normalize, conditionally upsert.

Ingestion is deliberately sequential (rate limits upstream, cursor order within a fetch).
An upsert or normalization failure aborts the rest of the scope with `IngestError`; upserts
that already committed stay, and re-running the same scope is safe because every write is
conditional on `ModEpoch`.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional, Sequence

from pydantic import BaseModel, Field

from resocache.ingestion.errors import (
    IngestError,
    OperationCancelled,
    RecordNormalizationError,
    StoreError,
    classify_ingest_error,
)
from resocache.ingestion.ledger import safe_append_ledger_entry
from resocache.ingestion.normalizer import normalize_listing
from resocache.ingestion.odata_filter import And, AnyOf, IEq, In, Range
from resocache.ingestion.reso_client import ODataQuery, ResoQueryClient
from resocache.settings import AppConfig, get_config
from resocache.storage.listing_store import ListingStore, WriteOutcome
from resocache.utils.time import isoformat_z

logger = logging.getLogger(__name__)


class IngestScope(BaseModel):
    """Filter predicates that define one ingestion run."""

    city: Optional[str] = None
    county: Optional[str] = None
    statuses: list[str] = Field(default_factory=list)
    property_types: list[str] = Field(default_factory=list)
    special_conditions: list[str] = Field(default_factory=list)
    modified_since: Optional[datetime] = None
    modified_until: Optional[datetime] = None

    @classmethod
    def for_window(
        cls,
        hours: int,
        city: Optional[str] = None,
        statuses: Sequence[str] = (),
        now: Optional[datetime] = None,
        **extra: Any,
    ) -> "IngestScope":
        """Scope covering the `hours` before `now` (UTC)."""

        if hours <= 0:
            raise ValueError("hours must be > 0")
        end = now or datetime.now(timezone.utc)
        return cls(
            city=city,
            statuses=list(statuses),
            modified_since=end - timedelta(hours=hours),
            modified_until=end,
            **extra,
        )

    def describe(self) -> dict[str, Any]:
        data = self.model_dump(exclude_defaults=True)
        for key in ("modified_since", "modified_until"):
            if isinstance(data.get(key), datetime):
                data[key] = isoformat_z(data[key])
        return data


@dataclass
class IngestCounts:
    fetched: int = 0
    written: int = 0
    skipped: int = 0

    def as_dict(self) -> dict[str, int]:
        return asdict(self)


def build_query(
    scope: IngestScope,
    select: Sequence[str] = (),
    page_size: Optional[int] = None,
    expand_media: bool = True,
) -> ODataQuery:
    """Translate a scope into Property query options."""

    time_range = None
    if scope.modified_since is not None or scope.modified_until is not None:
        # Inclusive start / exclusive end so adjacent windows never double-count.
        time_range = Range("ModificationTimestamp", ge=scope.modified_since, lt=scope.modified_until)

    expression = And(
        IEq("City", scope.city) if scope.city else None,
        IEq("CountyOrParish", scope.county) if scope.county else None,
        In("StandardStatus", scope.statuses) if scope.statuses else None,
        In("PropertyType", scope.property_types) if scope.property_types else None,
        AnyOf("SpecialListingConditions", scope.special_conditions) if scope.special_conditions else None,
        time_range,
    )
    return ODataQuery(
        filter=expression if expression.children else None,
        select=tuple(select),
        orderby="ModificationTimestamp asc",
        top=page_size,
        expand=("Media",) if expand_media else (),
        count=True,
    )


class IngestionOrchestrator:
    def __init__(
        self,
        client: ResoQueryClient,
        store: ListingStore,
        config: Optional[AppConfig] = None,
        ledger_path: Optional[Path] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.config = config or get_config()
        self.ledger_path = ledger_path if ledger_path is not None else self.config.paths.ledger_path

    def ingest(self, scope: IngestScope, cancel_event: Optional[threading.Event] = None) -> IngestCounts:
        settings = self.config
        query = build_query(
            scope,
            select=settings.ingestion.select_fields,
            page_size=settings.reso.page_size,
            expand_media=settings.ingestion.expand_media,
        )
        started = time.time()
        counts = IngestCounts()
        logger.info("Ingest started for scope %s.", scope.describe())

        try:
            result = self.client.fetch_all(settings.reso.resource, query, cancel_event=cancel_event)
            counts.fetched = len(result.records)

            for raw in result.records:
                if cancel_event is not None and cancel_event.is_set():
                    raise OperationCancelled(
                        f"Ingest cancelled after {counts.written + counts.skipped} of {counts.fetched} upserts."
                    )
                try:
                    record = normalize_listing(raw, now=int(started))
                    outcome = self.store.upsert(record)
                except (RecordNormalizationError, StoreError) as exc:
                    raise IngestError(
                        f"Ingest aborted: {exc}",
                        fetched=counts.fetched,
                        written=counts.written,
                        skipped=counts.skipped,
                        listing_key=raw.get("ListingKey") if isinstance(raw, dict) else None,
                    ) from exc

                if outcome is WriteOutcome.WRITTEN:
                    counts.written += 1
                else:
                    counts.skipped += 1
        except Exception as exc:
            info = classify_ingest_error(exc)
            logger.error("Ingest failed (%s): %s", info.code, info.message)
            self._record_run(scope, counts, started, error_code=info.code, error_message=info.message)
            raise

        logger.info(
            "Ingest finished: fetched=%s written=%s skipped=%s in %.1fs.",
            counts.fetched,
            counts.written,
            counts.skipped,
            time.time() - started,
        )
        self._record_run(scope, counts, started)
        return counts

    def _record_run(
        self,
        scope: IngestScope,
        counts: IngestCounts,
        started: float,
        error_code: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        entry: dict[str, Any] = {
            "started_at": isoformat_z(datetime.fromtimestamp(started, tz=timezone.utc)),
            "duration_seconds": round(time.time() - started, 3),
            "scope": scope.describe(),
            "ok": error_code is None,
            **counts.as_dict(),
        }
        if error_code is not None:
            entry["error_code"] = error_code
            entry["error"] = error_message
        safe_append_ledger_entry(self.ledger_path, entry)
