from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Optional

import httpx


class ResoCacheError(RuntimeError):
    """Base class for failures raised by the ingestion and cache pipeline."""


class AuthError(ResoCacheError):
    """Token acquisition failed. Callers decide whether and when to retry."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = "") -> None:
        self.status_code = status_code
        self.body = body
        detail = f" (status={status_code})" if status_code is not None else ""
        super().__init__(f"{message}{detail}: {body}" if body else f"{message}{detail}")


class UpstreamQueryError(ResoCacheError):
    """The upstream query protocol answered with a non-2xx status or an unusable payload."""

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        body: str = "",
        url: Optional[str] = None,
    ) -> None:
        self.status_code = status_code
        self.body = body
        self.url = url
        detail = f" (status={status_code})" if status_code is not None else ""
        super().__init__(f"{message}{detail}: {body}" if body else f"{message}{detail}")


class RunawayPaginationError(ResoCacheError):
    """Paging was stopped: too many records, or continuation links that make no progress."""

    def __init__(self, accumulated: int, limit: int, reason: Optional[str] = None) -> None:
        self.accumulated = accumulated
        self.limit = limit
        self.reason = reason or f"ceiling of {limit} records exceeded"
        super().__init__(
            f"Pagination aborted after {accumulated} records ({self.reason}); "
            "the continuation links or the filter are likely broken."
        )


class OperationCancelled(ResoCacheError):
    """The caller cancelled a long-running fetch or ingest."""


class RecordNormalizationError(ResoCacheError, ValueError):
    """A raw upstream record lacks the fields needed to build a cache record."""


class StoreError(ResoCacheError):
    """The cache store failed to read or write."""


class InvalidCursorError(ValueError):
    """A pagination cursor could not be decoded."""


class IngestError(ResoCacheError):
    """An ingest run aborted part-way; already committed upserts stay in place."""

    def __init__(
        self,
        message: str,
        fetched: int = 0,
        written: int = 0,
        skipped: int = 0,
        listing_key: Optional[str] = None,
    ) -> None:
        self.fetched = fetched
        self.written = written
        self.skipped = skipped
        self.listing_key = listing_key
        super().__init__(
            f"{message} (fetched={fetched} written={written} "
            f"skipped={skipped} listing_key={listing_key})"
        )


@dataclass(frozen=True)
class PartialDispatchFailure:
    """Entries of one queue batch that the transport rejected (logged, never raised)."""

    batch_index: int
    batch_size: int
    failed_listing_keys: tuple[str, ...] = field(default_factory=tuple)

    @property
    def failed(self) -> int:
        return len(self.failed_listing_keys)


@dataclass(frozen=True)
class IngestErrorInfo:
    code: str
    kind: str
    message: str


def classify_ingest_error(exc: BaseException) -> IngestErrorInfo:
    """Classify common ingestion failures into stable codes for the ledger and monitoring."""

    text = str(exc)
    lower = text.lower()

    if isinstance(exc, AuthError):
        return IngestErrorInfo(code="auth", kind="auth", message=text)

    if isinstance(exc, RunawayPaginationError):
        return IngestErrorInfo(code="runaway_pagination", kind="protocol", message=text)

    if isinstance(exc, OperationCancelled):
        return IngestErrorInfo(code="cancelled", kind="control", message=text)

    if isinstance(exc, UpstreamQueryError):
        status = exc.status_code
        if status == 429:
            return IngestErrorInfo(code="rate_limited", kind="http", message=f"HTTP 429 rate limited: {text}")
        if status in {401, 403}:
            return IngestErrorInfo(code="auth", kind="http", message=f"HTTP {status} auth error: {text}")
        if status is not None:
            return IngestErrorInfo(code=f"http_{status}", kind="http", message=f"HTTP {status}: {text}")
        cause = _root_cause(exc)
        if cause is not exc:
            return classify_ingest_error(cause)
        return IngestErrorInfo(code="upstream", kind="http", message=text)

    if isinstance(exc, StoreError):
        return IngestErrorInfo(code="store", kind="store", message=text)

    if isinstance(exc, RecordNormalizationError):
        return IngestErrorInfo(code="normalization", kind="data", message=text)

    if isinstance(exc, IngestError):
        cause = _root_cause(exc)
        if cause is not exc:
            return classify_ingest_error(cause)
        return IngestErrorInfo(code="ingest", kind="unknown", message=text)

    if isinstance(exc, (httpx.ConnectTimeout, httpx.ReadTimeout, httpx.WriteTimeout, httpx.PoolTimeout)):
        return IngestErrorInfo(code="timeout", kind="network", message=text)

    if isinstance(exc, httpx.ConnectError):
        # Often wraps OSError with errno.
        if "name or service not known" in lower or "temporary failure in name resolution" in lower:
            return IngestErrorInfo(code="dns", kind="network", message=text)
        return IngestErrorInfo(code="connect_error", kind="network", message=text)

    return IngestErrorInfo(code="unknown", kind="unknown", message=text)


def _root_cause(exc: BaseException) -> BaseException:
    cause: Any = exc.__cause__
    return cause if isinstance(cause, BaseException) else exc
