from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import create_engine

from resocache.ingestion.errors import InvalidCursorError
from resocache.ingestion.schemas import ListingRecord
from resocache.storage.listing_store import ListingStore, WriteOutcome, decode_cursor, encode_cursor


def _store(tmp_path: Path, index_page_size: int = 100) -> ListingStore:
    engine = create_engine(f"sqlite:///{tmp_path / 'listings.db'}")
    store = ListingStore(engine, index_page_size=index_page_size)
    store.create_schema()
    return store


def _record(key: str, mod_epoch: int, city: str = "San Jose", status: str = "Active", **fields) -> ListingRecord:
    values = {
        "ListingKey": key,
        "CityNorm": city.lower(),
        "City": city,
        "ModEpoch": mod_epoch,
        "StandardStatus": status,
        "LastSeenAt": 1_000,
    }
    values.update(fields)
    return ListingRecord(**values)


def test_replayed_write_is_skipped_and_leaves_state_unchanged(tmp_path: Path) -> None:
    store = _store(tmp_path)
    record = _record("L1", 100, ListPrice=500000.0)

    assert store.upsert(record) is WriteOutcome.WRITTEN
    before = store.get_by_key("L1")
    assert store.upsert(record) is WriteOutcome.SKIPPED
    assert store.get_by_key("L1") == before
    assert store.count() == 1


def test_replay_with_only_a_newer_last_seen_is_skipped(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert(_record("L1", 100))

    assert store.upsert(_record("L1", 100, LastSeenAt=2_000)) is WriteOutcome.SKIPPED
    assert store.get_by_key("L1").LastSeenAt == 1_000


def test_older_version_never_replaces_newer(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert(_record("L1", 100, ListPrice=600000.0))

    assert store.upsert(_record("L1", 90, ListPrice=550000.0)) is WriteOutcome.SKIPPED
    stored = store.get_by_key("L1")
    assert stored.ModEpoch == 100
    assert stored.ListPrice == 600000.0


def test_newer_version_and_same_version_with_new_content_are_written(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert(_record("L1", 100, ListPrice=600000.0))

    assert store.upsert(_record("L1", 100, ListPrice=590000.0)) is WriteOutcome.WRITTEN
    assert store.upsert(_record("L1", 110, ListPrice=580000.0)) is WriteOutcome.WRITTEN
    stored = store.get_by_key("L1")
    assert stored.ModEpoch == 110
    assert stored.ListPrice == 580000.0


def test_image_bookkeeping_survives_ingestion_writes(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert(_record("L1", 100))

    assert store.mark_images_built("L1", "https://cdn.test/L1/400.jpg", 12, built_at=150) is True
    assert store.upsert(_record("L1", 200, PhotosChangeTimestamp=180)) is WriteOutcome.WRITTEN

    stored = store.get_by_key("L1")
    assert stored.CdnPrimary400 == "https://cdn.test/L1/400.jpg"
    assert stored.Gallery400Count == 12
    assert stored.ImagesUpdatedAt == 150
    assert stored.PhotosChangeTimestamp == 180


def test_mark_images_built_for_unknown_listing(tmp_path: Path) -> None:
    assert _store(tmp_path).mark_images_built("missing", "x", 1, built_at=1) is False


def test_get_by_key_returns_none_when_absent(tmp_path: Path) -> None:
    assert _store(tmp_path).get_by_key("missing") is None


def test_city_query_orders_by_most_recent_modification(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert(_record("A", 100))
    store.upsert(_record("B", 300))
    store.upsert(_record("C", 200))
    store.upsert(_record("D", 400, city="Campbell"))

    items, cursor = store.query_by_city("San Jose", limit=10)

    assert [item.ListingKey for item in items] == ["B", "C", "A"]
    assert cursor is None


def test_index_follows_a_record_that_moves_city(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert(_record("A", 100))
    store.upsert(_record("A", 200, city="Campbell"))

    assert store.query_by_city("san jose")[0] == []
    assert [item.ListingKey for item in store.query_by_city("campbell")[0]] == ["A"]


def test_cursor_walk_returns_every_record_exactly_once(tmp_path: Path) -> None:
    store = _store(tmp_path, index_page_size=2)
    for index in range(5):
        store.upsert(_record(f"L{index}", 100 + index))
    # Two listings sharing a ModEpoch are ordered by key.
    store.upsert(_record("L9", 102))

    seen: list[str] = []
    cursor = None
    pages = 0
    while True:
        items, cursor = store.query_by_city("san jose", limit=2, cursor=cursor)
        seen.extend(item.ListingKey for item in items)
        pages += 1
        if cursor is None:
            break

    assert seen == ["L4", "L3", "L9", "L2", "L1", "L0"]
    assert len(seen) == len(set(seen))
    assert pages <= 4


def test_status_filter_keeps_reading_index_pages(tmp_path: Path) -> None:
    store = _store(tmp_path, index_page_size=2)
    statuses = ["Pending", "Pending", "Pending", "Active", "Pending", "Active", "Active"]
    for index, status in enumerate(statuses):
        store.upsert(_record(f"L{index}", 100 - index, status=status))

    items, cursor = store.query_by_city("san jose", status_filter="active", limit=2)
    assert [item.ListingKey for item in items] == ["L3", "L5"]
    assert cursor is not None

    items, cursor = store.query_by_city("san jose", status_filter=["Active"], limit=2, cursor=cursor)
    assert [item.ListingKey for item in items] == ["L6"]
    assert cursor is None


def test_predicate_is_applied_after_the_index_read(tmp_path: Path) -> None:
    store = _store(tmp_path)
    store.upsert(_record("A", 100, PropertyType="Residential"))
    store.upsert(_record("B", 200, PropertyType="Land"))

    items, _ = store.query_by_city("san jose", predicate=lambda record: record.PropertyType == "Residential")
    assert [item.ListingKey for item in items] == ["A"]


def test_cursor_round_trip_and_rejection(tmp_path: Path) -> None:
    cursor = encode_cursor("san jose", 100, "L1")
    assert decode_cursor(cursor) == {"CityNorm": "san jose", "ModEpoch": 100, "ListingKey": "L1"}

    store = _store(tmp_path)
    with pytest.raises(InvalidCursorError):
        store.query_by_city("san jose", cursor="not-a-cursor!!")
    with pytest.raises(InvalidCursorError):
        store.query_by_city("campbell", cursor=cursor)
