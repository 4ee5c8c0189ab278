from __future__ import annotations

from resocache.assets.staleness import is_stale
from resocache.ingestion.schemas import ListingRecord


def _record(**fields) -> ListingRecord:
    return ListingRecord(ListingKey="L1", ModEpoch=100, **fields)


def test_never_built_is_stale() -> None:
    assert is_stale(_record()) is True
    assert is_stale(_record(CdnPrimary400="", ImagesUpdatedAt=50)) is True
    assert is_stale(_record(CdnPrimary400="https://cdn.test/L1.jpg", ImagesUpdatedAt=None)) is True


def test_photos_changed_after_build_is_stale() -> None:
    record = _record(CdnPrimary400="https://cdn.test/L1.jpg", ImagesUpdatedAt=100, PhotosChangeTimestamp=200)
    assert is_stale(record) is True


def test_build_newer_than_photos_is_fresh() -> None:
    record = _record(CdnPrimary400="https://cdn.test/L1.jpg", ImagesUpdatedAt=300, PhotosChangeTimestamp=200)
    assert is_stale(record) is False


def test_same_instant_is_fresh() -> None:
    record = _record(CdnPrimary400="https://cdn.test/L1.jpg", ImagesUpdatedAt=200, PhotosChangeTimestamp=200)
    assert is_stale(record) is False


def test_unknown_photo_change_time_is_fresh_once_built() -> None:
    record = _record(CdnPrimary400="https://cdn.test/L1.jpg", ImagesUpdatedAt=300)
    assert is_stale(record) is False
