"""Raw RESO Property records -> canonical `ListingRecord`.

Pure functions only: no I/O, no clock unless `now` is omitted.

Rules that are easy to get wrong:
- Address fields and coordinates are nulled whenever `InternetAddressDisplayYN` is false. This is a display
  compliance rule, so it applies even when the raw address is present.
- Collection fields default to an empty list, never None.
- Media is sorted by `Order` (missing -> 0) before the primary photo is chosen.
- Only fields declared on `ListingRecord` survive; everything else is dropped.
"""

from __future__ import annotations

from typing import Any, Optional

from resocache.ingestion.errors import RecordNormalizationError
from resocache.ingestion.schemas import SUPPRESSED_LOCATION_FIELDS, ListingRecord
from resocache.utils.time import now_epoch_seconds, to_epoch_seconds


_STRING_FIELDS = (
    "StandardStatus",
    "MlsStatus",
    "PropertyType",
    "PropertySubType",
    "UnparsedAddress",
    "StreetNumber",
    "StreetName",
    "UnitNumber",
    "PostalCode",
    "City",
    "CountyOrParish",
    "StateOrProvince",
    "PublicRemarks",
    "ListingContractDate",
    "ListAgentFullName",
    "ListOfficeName",
)
_FLOAT_FIELDS = (
    "ListPrice",
    "OriginalListPrice",
    "ClosePrice",
    "LivingArea",
    "LotSizeAcres",
    "Latitude",
    "Longitude",
)
_INT_FIELDS = ("BedroomsTotal", "BathroomsTotalInteger", "YearBuilt")

_FALSE_STRINGS = {"false", "n", "no", "0"}


def _coerce_float(value: Any) -> Optional[float]:
    """Best-effort float conversion for external JSON values that may be missing or malformed."""

    if value is None or isinstance(value, bool):
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _coerce_int(value: Any) -> Optional[int]:
    number = _coerce_float(value)
    return int(number) if number is not None else None


def _coerce_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_flag(value: Any, default: bool = True) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    return str(value).strip().lower() not in _FALSE_STRINGS


def _coerce_str_list(value: Any) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (list, tuple)):
        return [str(item).strip() for item in value if item is not None and str(item).strip()]
    return []


def normalize_city(city: Any) -> str:
    return (_coerce_str(city) or "").lower()


def sort_media(media: Any) -> list[dict[str, Any]]:
    """Return media dicts sorted by `Order` (missing -> 0); ties keep upstream order."""

    if not isinstance(media, list):
        return []
    items = [item for item in media if isinstance(item, dict)]
    return sorted(items, key=lambda item: _coerce_float(item.get("Order")) or 0.0)


def normalize_listing(raw: dict[str, Any], now: Optional[int] = None) -> ListingRecord:
    """Map one raw upstream record into the canonical cache shape."""

    listing_key = _coerce_str(raw.get("ListingKey"))
    if listing_key is None:
        raise RecordNormalizationError("Raw record has no ListingKey.")

    mod_epoch = to_epoch_seconds(raw.get("ModificationTimestamp"))
    if mod_epoch is None:
        raise RecordNormalizationError(
            f"Raw record {listing_key} has no parseable ModificationTimestamp: {raw.get('ModificationTimestamp')!r}"
        )

    fields: dict[str, Any] = {}
    for name in _STRING_FIELDS:
        fields[name] = _coerce_str(raw.get(name))
    for name in _FLOAT_FIELDS:
        fields[name] = _coerce_float(raw.get(name))
    for name in _INT_FIELDS:
        fields[name] = _coerce_int(raw.get(name))

    address_allowed = _coerce_flag(raw.get("InternetAddressDisplayYN"), default=True)
    if not address_allowed:
        for name in SUPPRESSED_LOCATION_FIELDS:
            fields[name] = None

    media = sort_media(raw.get("Media"))
    photo_urls = [url for url in (_coerce_str(item.get("MediaURL")) for item in media) if url]
    photos_count = _coerce_int(raw.get("PhotosCount"))

    return ListingRecord(
        ListingKey=listing_key,
        CityNorm=normalize_city(raw.get("City")),
        ModEpoch=mod_epoch,
        InternetAddressDisplayYN=address_allowed,
        SpecialListingConditions=_coerce_str_list(raw.get("SpecialListingConditions")),
        PhotosCount=photos_count if photos_count is not None else len(photo_urls),
        PrimaryPhotoUrl=photo_urls[0] if photo_urls else None,
        PhotoUrls=photo_urls,
        LastSeenAt=int(now) if now is not None else now_epoch_seconds(),
        PhotosChangeTimestamp=to_epoch_seconds(raw.get("PhotosChangeTimestamp")),
        **fields,
    )
