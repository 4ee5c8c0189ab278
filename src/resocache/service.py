"""Cache read paths used by the API layer.

Reads always answer from the cache. Side effects are opportunistic: stale images are queued for
a rebuild in the background, and optional media decoration falls back to cached photos when the
upstream lookup fails.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Optional

from resocache.assets.staleness import is_stale
from resocache.ingestion.normalizer import normalize_city, sort_media
from resocache.ingestion.reso_client import ResoQueryClient
from resocache.ingestion.schemas import ListingRecord
from resocache.jobs.dispatcher import ImageBuildJob, JobDispatcher, jobs_for_listing
from resocache.storage.listing_store import ListingStore

logger = logging.getLogger(__name__)


class ListingReadService:
    def __init__(
        self,
        store: ListingStore,
        dispatcher: Optional[JobDispatcher] = None,
        client: Optional[ResoQueryClient] = None,
        image_width: int = 400,
        media_lookup_concurrency: int = 8,
    ) -> None:
        if media_lookup_concurrency <= 0:
            raise ValueError("media_lookup_concurrency must be > 0")
        self.store = store
        self.dispatcher = dispatcher
        self.client = client
        self.image_width = image_width
        self.media_lookup_concurrency = media_lookup_concurrency

    def get_listing(self, listing_key: str) -> Optional[ListingRecord]:
        record = self.store.get_by_key(listing_key)
        if record is not None:
            self._schedule_rebuilds([record])
        return record

    def search(
        self,
        city: str,
        status: Optional[str] = None,
        property_type: Optional[str] = None,
        limit: int = 24,
        cursor: Optional[str] = None,
        include_media: bool = False,
    ) -> tuple[list[ListingRecord], Optional[str]]:
        predicate = None
        if property_type:
            wanted = property_type.strip().casefold()

            def predicate(record: ListingRecord) -> bool:
                return (record.PropertyType or "").casefold() == wanted

        records, next_cursor = self.store.query_by_city(
            normalize_city(city),
            status_filter=status,
            limit=limit,
            cursor=cursor,
            predicate=predicate,
        )
        self._schedule_rebuilds(records)
        if include_media and self.client is not None and records:
            records = self.decorate_with_media(records)
        return records, next_cursor

    def decorate_with_media(self, records: list[ListingRecord]) -> list[ListingRecord]:
        """Refresh photo fields from the upstream Media resource with bounded concurrency."""

        if self.client is None:
            return records
        client = self.client
        with ThreadPoolExecutor(
            max_workers=min(self.media_lookup_concurrency, len(records)), thread_name_prefix="media-lookup"
        ) as pool:
            futures = [pool.submit(client.fetch_media, record.ListingKey) for record in records]

            decorated: list[ListingRecord] = []
            for record, future in zip(records, futures):
                try:
                    media = future.result()
                except Exception as exc:  # noqa: BLE001 - cached photos are an acceptable answer
                    logger.warning("Media lookup failed for %s; serving cached photos: %s", record.ListingKey, exc)
                    decorated.append(record)
                    continue
                urls = [str(item["MediaURL"]) for item in sort_media(media) if item.get("MediaURL")]
                if not urls:
                    decorated.append(record)
                    continue
                decorated.append(
                    record.model_copy(
                        update={"PhotoUrls": urls, "PrimaryPhotoUrl": urls[0], "PhotosCount": len(urls)}
                    )
                )
        return decorated

    def _schedule_rebuilds(self, records: list[ListingRecord]) -> None:
        if self.dispatcher is None:
            return
        try:
            jobs: list[ImageBuildJob] = []
            for record in records:
                if is_stale(record):
                    jobs.extend(jobs_for_listing(record, width=self.image_width))
            if jobs:
                self.dispatcher.dispatch_in_background(jobs)
        except Exception:  # noqa: BLE001 - never let rebuild scheduling fail a read
            logger.exception("Failed to schedule image rebuilds.")
