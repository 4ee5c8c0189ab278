from __future__ import annotations

from resocache.ingestion.schemas import ListingRecord


def is_stale(record: ListingRecord) -> bool:
    """Return True when the listing's derived images need a rebuild.

    Evaluated on cache-hit reads to decide on an opportunistic rebuild; it never gates the read.
    """

    # Never built (or built before bookkeeping existed).
    if not record.CdnPrimary400 or record.ImagesUpdatedAt is None:
        return True
    if record.PhotosChangeTimestamp is None:
        return False
    return record.PhotosChangeTimestamp > record.ImagesUpdatedAt
