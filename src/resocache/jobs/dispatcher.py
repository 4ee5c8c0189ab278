"""Image rebuild job dispatch.

Jobs are sent to the queue transport in fixed-size batches. The transport reports a result per
entry, so a batch can be partially accepted; rejected entries are counted and logged as a
`PartialDispatchFailure` but never fail the call. The returned `accepted` count only includes
entries the transport confirmed.

`dispatch_in_background` is the read-path entry point: it runs `enqueue` on a small executor and
only logs failures, so a broken queue can never affect an API response.
"""

from __future__ import annotations

import logging
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Optional, Protocol, Sequence

from resocache.ingestion.errors import PartialDispatchFailure
from resocache.ingestion.schemas import ListingRecord
from resocache.settings import AppConfig, get_config

logger = logging.getLogger(__name__)


class JobKind(str, Enum):
    PRIMARY = "primary"
    GALLERY = "gallery"


@dataclass(frozen=True)
class ImageBuildJob:
    kind: JobKind
    listing_key: str
    width: int = 400
    count: int = 1

    def to_envelope(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "listingKey": self.listing_key,
            "width": int(self.width),
            "count": int(self.count),
        }


def jobs_for_listing(record: ListingRecord, width: int = 400) -> list[ImageBuildJob]:
    """Primary image job, plus a gallery job when the listing has more than one photo."""

    jobs = [ImageBuildJob(kind=JobKind.PRIMARY, listing_key=record.ListingKey, width=width, count=1)]
    photo_count = max(int(record.PhotosCount or 0), len(record.PhotoUrls))
    if photo_count > 1:
        jobs.append(
            ImageBuildJob(kind=JobKind.GALLERY, listing_key=record.ListingKey, width=width, count=photo_count)
        )
    return jobs


class QueueTransport(Protocol):
    def send_batch(self, envelopes: Sequence[dict[str, Any]]) -> list[bool]:
        """Send one batch; return one accepted flag per envelope, in order."""


@dataclass
class DispatchResult:
    accepted: int = 0
    failed: int = 0
    batches: int = 0
    failures: list[PartialDispatchFailure] = field(default_factory=list)


class JobDispatcher:
    def __init__(
        self,
        transport: QueueTransport,
        batch_size: int = 10,
        inter_batch_delay_seconds: float = 0.05,
        background_workers: int = 2,
    ) -> None:
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        self.transport = transport
        self.batch_size = batch_size
        self.inter_batch_delay_seconds = inter_batch_delay_seconds
        self._executor = ThreadPoolExecutor(max_workers=background_workers, thread_name_prefix="image-dispatch")

    @classmethod
    def from_config(
        cls, config: Optional[AppConfig] = None, transport: Optional[QueueTransport] = None
    ) -> "JobDispatcher":
        resolved = config or get_config()
        if transport is None:
            from resocache.jobs.redis_transport import RedisQueueTransport

            transport = RedisQueueTransport.from_config(resolved)
        return cls(
            transport=transport,
            batch_size=resolved.queue.batch_size,
            inter_batch_delay_seconds=resolved.queue.inter_batch_delay_seconds,
        )

    def close(self) -> None:
        self._executor.shutdown(wait=True)

    def enqueue(self, jobs: Iterable[ImageBuildJob]) -> DispatchResult:
        job_list = list(jobs)
        result = DispatchResult()
        for batch_index, start in enumerate(range(0, len(job_list), self.batch_size)):
            if batch_index > 0 and self.inter_batch_delay_seconds > 0:
                time.sleep(self.inter_batch_delay_seconds)

            batch = job_list[start : start + self.batch_size]
            result.batches += 1
            try:
                flags = list(self.transport.send_batch([job.to_envelope() for job in batch]))
            except Exception:  # noqa: BLE001 - one failed batch must not stop the others
                logger.exception("Queue batch %s (%s jobs) failed at the transport.", batch_index, len(batch))
                flags = [False] * len(batch)

            # Entries the transport did not report on count as rejected.
            flags = (flags + [False] * len(batch))[: len(batch)]
            rejected = tuple(job.listing_key for job, ok in zip(batch, flags) if not ok)
            result.accepted += len(batch) - len(rejected)
            if rejected:
                failure = PartialDispatchFailure(
                    batch_index=batch_index, batch_size=len(batch), failed_listing_keys=rejected
                )
                result.failed += failure.failed
                result.failures.append(failure)
                logger.warning(
                    "Queue rejected %s of %s jobs in batch %s: %s",
                    failure.failed,
                    failure.batch_size,
                    batch_index,
                    ", ".join(rejected),
                )

        logger.info("Dispatched %s image jobs (%s rejected) in %s batches.", result.accepted, result.failed, result.batches)
        return result

    def dispatch_in_background(self, jobs: Iterable[ImageBuildJob]) -> Future:
        """Fire-and-forget enqueue. Errors are logged; the returned future never raises."""

        job_list = list(jobs)
        try:
            return self._executor.submit(self._enqueue_logged, job_list)
        except RuntimeError:
            # Executor already shut down (process exit); the next read will retry.
            logger.warning("Background dispatch unavailable; dropped %s image jobs.", len(job_list))
            dropped: Future = Future()
            dropped.set_result(None)
            return dropped

    def _enqueue_logged(self, jobs: list[ImageBuildJob]) -> Optional[DispatchResult]:
        try:
            return self.enqueue(jobs)
        except Exception:  # noqa: BLE001 - background work must never surface to the read path
            logger.exception("Background image dispatch failed for %s jobs.", len(jobs))
            return None
