"""Keyed listing cache with conditional upserts and a city-ordered secondary index.

Writes are keyed solely by `ListingKey` and go through a single
`INSERT ... ON CONFLICT (listing_key) DO UPDATE ... WHERE <precondition>` statement. The
precondition is the only concurrency control: two ingestion runs racing on the same key cannot
regress a record to an older `ModEpoch`, and nobody needs an external lock.

Precondition for replacing a stored row:
- stored `mod_epoch` < incoming `mod_epoch`, or
- equal `mod_epoch` and a different content hash (same upstream version, re-normalized).
An exact replay is therefore reported as `skipped` and leaves the row byte-identical.

Image bookkeeping columns (`images_updated_at`, `cdn_primary_400`, `gallery_400_count`) belong
to the image consumer and are never touched by ingestion writes.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import json
import logging
from enum import Enum
from typing import Any, Callable, Iterable, Optional, Union

from sqlalchemy import (
    JSON,
    BigInteger,
    Column,
    Index,
    Integer,
    MetaData,
    String,
    Table,
    and_,
    func,
    or_,
    select,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from resocache.ingestion.errors import InvalidCursorError, StoreError
from resocache.ingestion.schemas import ListingRecord

logger = logging.getLogger(__name__)

metadata = MetaData()

listings = Table(
    "listings",
    metadata,
    Column("listing_key", String(128), primary_key=True),
    Column("city_norm", String(128), nullable=False),
    Column("mod_epoch", BigInteger, nullable=False),
    Column("standard_status", String(64)),
    Column("property_type", String(64)),
    Column("content_hash", String(64), nullable=False),
    Column("payload", JSON, nullable=False),
    Column("last_seen_at", BigInteger),
    Column("photos_change_ts", BigInteger),
    Column("images_updated_at", BigInteger),
    Column("cdn_primary_400", String(1024)),
    Column("gallery_400_count", Integer),
)

Index("ix_listings_city_mod", listings.c.city_norm, listings.c.mod_epoch, listings.c.listing_key)

# Columns an ingestion write replaces when its precondition holds.
INGEST_COLUMNS = (
    "city_norm",
    "mod_epoch",
    "standard_status",
    "property_type",
    "content_hash",
    "payload",
    "last_seen_at",
    "photos_change_ts",
)

_BOOKKEEPING_FIELDS = {"LastSeenAt", "ImagesUpdatedAt", "CdnPrimary400", "Gallery400Count"}

StatusFilter = Union[None, str, Iterable[str]]
RecordPredicate = Callable[[ListingRecord], bool]


class WriteOutcome(str, Enum):
    WRITTEN = "written"
    # A stale or replayed write; an expected result, not an error.
    SKIPPED = "skipped"


def content_hash(record: ListingRecord) -> str:
    """Hash of the upstream-derived content, ignoring bookkeeping fields."""

    data = record.model_dump(mode="json", exclude=_BOOKKEEPING_FIELDS)
    encoded = json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)
    return hashlib.sha256(encoded.encode("utf-8")).hexdigest()


def encode_cursor(city_norm: str, mod_epoch: int, listing_key: str) -> str:
    position = {"CityNorm": city_norm, "ModEpoch": int(mod_epoch), "ListingKey": listing_key}
    raw = json.dumps(position, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii")


def decode_cursor(cursor: str) -> dict[str, Any]:
    try:
        raw = base64.urlsafe_b64decode(cursor.encode("ascii"))
        position = json.loads(raw.decode("utf-8"))
    except (binascii.Error, ValueError, UnicodeError) as exc:
        raise InvalidCursorError(f"Malformed cursor: {cursor!r}") from exc
    if (
        not isinstance(position, dict)
        or not isinstance(position.get("CityNorm"), str)
        or not isinstance(position.get("ListingKey"), str)
        or not isinstance(position.get("ModEpoch"), int)
        or isinstance(position.get("ModEpoch"), bool)
    ):
        raise InvalidCursorError(f"Malformed cursor: {cursor!r}")
    return position


def _status_set(status_filter: StatusFilter) -> Optional[set[str]]:
    if status_filter is None:
        return None
    if isinstance(status_filter, str):
        values = [status_filter]
    else:
        values = list(status_filter)
    cleaned = {value.strip().casefold() for value in values if value and value.strip()}
    return cleaned or None


class ListingStore:
    """Conditional-write listing cache on top of a SQLAlchemy engine (SQLite or PostgreSQL)."""

    def __init__(self, engine: Engine, index_page_size: int = 100) -> None:
        if index_page_size <= 0:
            raise ValueError("index_page_size must be > 0")
        self.engine = engine
        self.index_page_size = index_page_size
        dialect = engine.dialect.name
        if dialect == "sqlite":
            from sqlalchemy.dialects.sqlite import insert
        elif dialect == "postgresql":
            from sqlalchemy.dialects.postgresql import insert
        else:
            raise StoreError(f"Unsupported database dialect for conditional upserts: {dialect}")
        self._insert = insert

    def create_schema(self) -> None:
        try:
            metadata.create_all(self.engine)
        except SQLAlchemyError as exc:
            raise StoreError(f"Failed to create listing schema: {exc}") from exc

    def upsert(self, record: ListingRecord) -> WriteOutcome:
        row = {
            "listing_key": record.ListingKey,
            "city_norm": record.CityNorm,
            "mod_epoch": int(record.ModEpoch),
            "standard_status": record.StandardStatus,
            "property_type": record.PropertyType,
            "content_hash": content_hash(record),
            "payload": record.model_dump(mode="json", exclude=_BOOKKEEPING_FIELDS),
            "last_seen_at": record.LastSeenAt,
            "photos_change_ts": record.PhotosChangeTimestamp,
        }
        stmt = self._insert(listings).values(**row)
        excluded = stmt.excluded
        precondition = or_(
            listings.c.mod_epoch < excluded.mod_epoch,
            and_(
                listings.c.mod_epoch == excluded.mod_epoch,
                listings.c.content_hash != excluded.content_hash,
            ),
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[listings.c.listing_key],
            set_={name: excluded[name] for name in INGEST_COLUMNS},
            where=precondition,
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise StoreError(f"Upsert failed for {record.ListingKey}: {exc}") from exc

        if result.rowcount and result.rowcount > 0:
            return WriteOutcome.WRITTEN
        logger.debug("Skipped stale write for %s (ModEpoch=%s).", record.ListingKey, record.ModEpoch)
        return WriteOutcome.SKIPPED

    def get_by_key(self, listing_key: str) -> Optional[ListingRecord]:
        stmt = select(listings).where(listings.c.listing_key == listing_key)
        try:
            with self.engine.connect() as conn:
                row = conn.execute(stmt).mappings().first()
        except SQLAlchemyError as exc:
            raise StoreError(f"Lookup failed for {listing_key}: {exc}") from exc
        return self._row_to_record(row) if row is not None else None

    def query_by_city(
        self,
        city_norm: str,
        status_filter: StatusFilter = None,
        limit: int = 50,
        cursor: Optional[str] = None,
        predicate: Optional[RecordPredicate] = None,
    ) -> tuple[list[ListingRecord], Optional[str]]:
        """Most-recently-modified listings for a city, filtered after the index read.

        The index only knows `city_norm` and ordering, so status and `predicate` are applied
        to each index page; pages are read until `limit` matches are collected or the index
        is exhausted. The returned cursor points at the last returned record.
        """

        if limit <= 0:
            raise ValueError("limit must be > 0")

        city_norm = city_norm.strip().lower()
        statuses = _status_set(status_filter)

        position: Optional[tuple[int, str]] = None
        if cursor:
            decoded = decode_cursor(cursor)
            if decoded["CityNorm"] != city_norm:
                raise InvalidCursorError("Cursor was issued for a different city.")
            position = (decoded["ModEpoch"], decoded["ListingKey"])

        results: list[ListingRecord] = []
        exhausted = False
        try:
            with self.engine.connect() as conn:
                while len(results) < limit:
                    rows = conn.execute(self._index_page(city_norm, position)).mappings().all()
                    for row in rows:
                        position = (int(row["mod_epoch"]), str(row["listing_key"]))
                        record = self._row_to_record(row)
                        if statuses is not None and (record.StandardStatus or "").casefold() not in statuses:
                            continue
                        if predicate is not None and not predicate(record):
                            continue
                        results.append(record)
                        if len(results) >= limit:
                            break
                    if len(rows) < self.index_page_size and len(results) < limit:
                        exhausted = True
                        break
        except SQLAlchemyError as exc:
            raise StoreError(f"City query failed for {city_norm!r}: {exc}") from exc

        if exhausted or not results:
            return results, None
        last = results[-1]
        return results, encode_cursor(city_norm, last.ModEpoch, last.ListingKey)

    def mark_images_built(
        self,
        listing_key: str,
        cdn_primary_400: str,
        gallery_400_count: int,
        built_at: int,
    ) -> bool:
        """Record a successful image build. Returns False when the listing is unknown."""

        stmt = (
            update(listings)
            .where(listings.c.listing_key == listing_key)
            .values(
                cdn_primary_400=cdn_primary_400,
                gallery_400_count=int(gallery_400_count),
                images_updated_at=int(built_at),
            )
        )
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as exc:
            raise StoreError(f"Image bookkeeping update failed for {listing_key}: {exc}") from exc
        return bool(result.rowcount)

    def count(self) -> int:
        try:
            with self.engine.connect() as conn:
                return int(conn.execute(select(func.count()).select_from(listings)).scalar_one())
        except SQLAlchemyError as exc:
            raise StoreError(f"Count failed: {exc}") from exc

    def _index_page(self, city_norm: str, position: Optional[tuple[int, str]]):
        stmt = select(listings).where(listings.c.city_norm == city_norm)
        if position is not None:
            mod_epoch, listing_key = position
            stmt = stmt.where(
                or_(
                    listings.c.mod_epoch < mod_epoch,
                    and_(listings.c.mod_epoch == mod_epoch, listings.c.listing_key < listing_key),
                )
            )
        return stmt.order_by(listings.c.mod_epoch.desc(), listings.c.listing_key.desc()).limit(
            self.index_page_size
        )

    @staticmethod
    def _row_to_record(row: Any) -> ListingRecord:
        payload = dict(row["payload"] or {})
        payload.update(
            {
                "ListingKey": row["listing_key"],
                "CityNorm": row["city_norm"],
                "ModEpoch": int(row["mod_epoch"]),
                "LastSeenAt": row["last_seen_at"],
                "PhotosChangeTimestamp": row["photos_change_ts"],
                "ImagesUpdatedAt": row["images_updated_at"],
                "CdnPrimary400": row["cdn_primary_400"],
                "Gallery400Count": row["gallery_400_count"],
            }
        )
        return ListingRecord.model_validate(payload)
