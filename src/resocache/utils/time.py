from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Any, Optional


def parse_datetime(value: str) -> datetime:
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    dt = datetime.fromisoformat(text)
    if dt.tzinfo is None:
        # RESO timestamps without an offset are UTC.
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def to_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def isoformat_z(dt: datetime) -> str:
    utc = to_utc(dt)
    return utc.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def to_epoch_seconds(value: Any) -> Optional[int]:
    """Convert an upstream timestamp (ISO string, datetime or number) to epoch seconds."""

    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value)
    if isinstance(value, datetime):
        return int(to_utc(value).timestamp())
    try:
        return int(parse_datetime(str(value)).timestamp())
    except ValueError:
        return None


def now_epoch_seconds() -> int:
    return int(time.time())
