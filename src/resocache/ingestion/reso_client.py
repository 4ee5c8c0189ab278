"""RESO Web API (OData) query client.

This module fetches listing records from a RESO Web API upstream (Trestle by default) and
returns them as raw dicts for `normalizer.normalize_listing`.

What this client does (high level):
- Auth: obtains bearer tokens via `ResoTokenBroker` (client credentials flow).
- Querying: renders `ODataQuery` objects (filter tree, select, orderby, top, expand) into
  OData query params; filter text only ever comes from `odata_filter.render`.
- Paging: issues the first page, then follows `@odata.nextLink` until the upstream stops
  returning one. Page fetches are strictly sequential because page N+1's link comes from page N.
- Reliability: a 401 forces one token refresh and one retry of the same page; transient
  statuses (429/5xx) are retried with backoff; a record ceiling, repeated-link detection and
  an empty-page limit stop runaway cursors.
- Cancellation: a caller-owned `threading.Event` is checked before every request and wakes
  page delays and retry backoffs early.
"""

from __future__ import annotations

# logging lets us surface rate-limit and retry behavior without spamming stdout.
import logging
# random adds small jitter to backoff so concurrent retries do not synchronize.
import random
# threading.Event is the cancellation signal shared with callers that enforce a timeout.
import threading
# time provides the inter-page delay and backoff sleeps.
import time
# dataclass gives lightweight, typed "data carriers" for queries and results.
from dataclasses import dataclass, field
# Any/Iterator/Optional make type intent explicit for JSON payloads and nullable fields.
from typing import Any, Iterator, Optional
# urljoin/urlparse normalize relative continuation links against the configured host.
from urllib.parse import urljoin, urlparse

# httpx is our HTTP client library for both the OData API and the token endpoint.
import httpx

from resocache.ingestion.errors import AuthError, OperationCancelled, RunawayPaginationError, UpstreamQueryError
from resocache.ingestion.odata_filter import Eq, FilterNode, render
from resocache.ingestion.reso_auth import ResoTokenBroker
from resocache.settings import AppConfig, get_config
from resocache.utils.cache import FileCache

logger = logging.getLogger(__name__)

MEDIA_SELECT_FIELDS = (
    "MediaKey",
    "ResourceRecordKey",
    "MediaURL",
    "Order",
    "MediaCategory",
    "MediaModificationTimestamp",
)

# This many empty pages in a row that still carry a continuation link are treated as a loop.
MAX_EMPTY_LINKED_PAGES = 5


@dataclass(frozen=True)
class ODataQuery:
    """Query options for one resource collection request (first page only)."""

    filter: Optional[FilterNode] = None
    select: tuple[str, ...] = ()
    orderby: Optional[str] = None
    top: Optional[int] = None
    expand: tuple[str, ...] = ()
    count: bool = False

    def to_params(self) -> dict[str, str]:
        params: dict[str, str] = {}
        filter_text = render(self.filter)
        if filter_text:
            params["$filter"] = filter_text
        if self.select:
            params["$select"] = ",".join(self.select)
        if self.orderby:
            params["$orderby"] = self.orderby
        if self.top is not None:
            params["$top"] = str(int(self.top))
        if self.expand:
            params["$expand"] = ",".join(self.expand)
        if self.count:
            params["$count"] = "true"
        return params


@dataclass
class QueryResult:
    records: list[dict[str, Any]] = field(default_factory=list)
    # `@odata.count` from the first page when `$count=true` was requested.
    total_count_hint: Optional[int] = None
    pages: int = 0


def _coerce_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ResoQueryClient:
    """Paged OData reads against the configured RESO Web API.

    Resource lifetime:
    - HTTP clients created here are owned by the instance and released by `close()`.
    """

    def __init__(
        self,
        config: Optional[AppConfig] = None,
        http_client: Optional[httpx.Client] = None,
        token_broker: Optional[ResoTokenBroker] = None,
    ) -> None:
        self.config = (config or get_config()).resolve_paths()

        # The token endpoint gets its own client so its lifetime/timeouts are independent.
        self._auth_http: Optional[httpx.Client] = None
        if token_broker is None:
            self._auth_http = httpx.Client(timeout=self.config.reso.request_timeout_seconds)
            try:
                token_broker = ResoTokenBroker.from_config(self.config, http_client=self._auth_http)
            except ValueError:
                # Missing credentials: release the auth client before surfacing the error.
                self._auth_http.close()
                raise
        self._token_broker = token_broker

        self._owns_http = http_client is None
        self._http = http_client or httpx.Client(
            timeout=self.config.reso.request_timeout_seconds,
            headers={"accept": "application/json"},
        )

        self._cache = FileCache(
            directory=self.config.paths.cache_dir,
            ttl_seconds=self.config.cache.ttl_seconds,
            enabled=self.config.cache.enabled,
        )

    @property
    def token_broker(self) -> ResoTokenBroker:
        return self._token_broker

    def close(self) -> None:
        """Close HTTP clients created by this instance."""

        if self._owns_http:
            self._http.close()
        if self._auth_http is not None:
            self._auth_http.close()

    def __enter__(self) -> "ResoQueryClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def resource_url(self, resource: str) -> str:
        return f"{self.config.reso.odata_root}/{resource.lstrip('/')}"

    def normalize_link(self, link: str) -> str:
        """Turn a continuation link into an absolute URL.

        Upstreams return either absolute links, host-relative links (`/trestle/odata/Property?...`)
        or resource-relative links (`Property?$skip=...`).
        """

        if urlparse(link).scheme:
            return link
        if link.startswith("/"):
            return urljoin(self.config.reso.host.rstrip("/") + "/", link)
        return urljoin(self.config.reso.odata_root.rstrip("/") + "/", link)

    @staticmethod
    def _parse_retry_after_seconds(value: Optional[str]) -> Optional[float]:
        """Parse a Retry-After header given in seconds; HTTP-date forms are ignored."""

        if not value:
            return None
        try:
            seconds = float(value.strip())
        except ValueError:
            return None
        if seconds < 0:
            return None
        return seconds

    def _compute_backoff_seconds(self, attempt: int, retry_after_seconds: Optional[float]) -> float:
        """Compute sleep time for a given retry attempt, honoring Retry-After when configured."""

        settings = self.config.reso
        # Exponential backoff: base * multiplier^attempt (attempt starts at 0 for the first retry).
        delay = float(settings.retry_backoff_seconds) * (float(settings.backoff_multiplier) ** attempt)
        delay = min(float(settings.max_backoff_seconds), max(0.0, delay))
        if delay > 0:
            delay += random.uniform(0.0, delay * 0.1)
        if settings.respect_retry_after and retry_after_seconds is not None:
            delay = max(delay, retry_after_seconds)
        return delay

    @staticmethod
    def _is_retryable_status(status_code: int) -> bool:
        return status_code in {408, 429, 500, 502, 503, 504}

    @staticmethod
    def _wait(seconds: float, cancel_event: Optional[threading.Event], what: str) -> None:
        """Sleep for `seconds`, waking up early (and raising) when `cancel_event` is set."""

        if cancel_event is None:
            if seconds > 0:
                time.sleep(seconds)
            return
        # Event.wait returns True as soon as the event is set, so long backoffs stay interruptible.
        if cancel_event.wait(max(0.0, seconds)):
            raise OperationCancelled(f"{what} cancelled.")

    def _send(
        self,
        url: str,
        params: Optional[dict[str, str]],
        accept: str = "application/json",
        cancel_event: Optional[threading.Event] = None,
    ) -> httpx.Response:
        """GET one URL with auth, the single 401 refresh, and transient-status retries."""

        max_retries = max(0, int(self.config.reso.max_retries))
        # AuthError from the broker propagates as-is: the caller owns retry policy for auth.
        token = self._token_broker.get_access_token()
        refreshed = False
        attempt = 0
        while True:
            # Checked before every attempt, including retries and the post-401 replay.
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled(f"Request to {url} cancelled before attempt {attempt + 1}.")

            headers = {"authorization": f"Bearer {token}", "accept": accept}
            try:
                response = self._http.get(url, params=params, headers=headers)
            except httpx.TransportError as exc:
                if attempt >= max_retries:
                    raise UpstreamQueryError(
                        f"Upstream request failed: {type(exc).__name__}", body=str(exc), url=url
                    ) from exc
                delay = self._compute_backoff_seconds(attempt=attempt, retry_after_seconds=None)
                logger.warning(
                    "Upstream request error (%s). Retrying in %.2fs (attempt %s/%s).",
                    type(exc).__name__,
                    delay,
                    attempt + 1,
                    max_retries,
                )
                self._wait(delay, cancel_event, f"Retry of {url}")
                attempt += 1
                continue

            status = response.status_code
            if 200 <= status < 300:
                return response

            if status == 401:
                if refreshed:
                    raise AuthError("Upstream rejected a freshly issued token", status_code=401, body=response.text)
                logger.warning("Upstream request unauthorized (401); refreshing token and retrying the same page.")
                token = self._token_broker.force_refresh(stale_token=token)
                refreshed = True
                continue

            if self._is_retryable_status(status) and attempt < max_retries:
                retry_after_seconds = self._parse_retry_after_seconds(response.headers.get("retry-after"))
                delay = self._compute_backoff_seconds(attempt=attempt, retry_after_seconds=retry_after_seconds)
                logger.warning(
                    "Upstream request failed (%s). Retrying in %.2fs (attempt %s/%s).",
                    status,
                    delay,
                    attempt + 1,
                    max_retries,
                )
                self._wait(delay, cancel_event, f"Retry of {url}")
                attempt += 1
                continue

            raise UpstreamQueryError("Upstream query failed", status_code=status, body=response.text, url=url)

    def _request_page(
        self,
        url: str,
        params: Optional[dict[str, str]],
        cancel_event: Optional[threading.Event] = None,
    ) -> dict[str, Any]:
        response = self._send(url, params, cancel_event=cancel_event)
        try:
            payload = response.json()
        except ValueError as exc:
            raise UpstreamQueryError(
                "Upstream response is not JSON", status_code=response.status_code, body=response.text[:500], url=url
            ) from exc
        if not isinstance(payload, dict) or not isinstance(payload.get("value"), list):
            raise UpstreamQueryError(
                "Unexpected upstream response shape; expected an OData {value:[...]} object.",
                status_code=response.status_code,
                url=url,
            )
        return payload

    def iter_pages(
        self,
        resource: str,
        query: ODataQuery,
        max_records: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> Iterator[dict[str, Any]]:
        """Yield raw OData page payloads, following continuation links to exhaustion.

        Three guards stop a broken cursor: the record ceiling, a continuation link that was
        already requested, and a run of `MAX_EMPTY_LINKED_PAGES` empty pages that still link on.
        """

        ceiling = int(max_records if max_records is not None else self.config.reso.max_records)
        page_delay = float(self.config.reso.page_delay_seconds)

        url: Optional[str] = self.resource_url(resource)
        params: Optional[dict[str, str]] = query.to_params()
        requested: set[str] = set()
        accumulated = 0
        pages = 0
        empty_streak = 0
        while url:
            if pages > 0:
                self._wait(page_delay, cancel_event, f"Fetch of {resource} after {pages} pages")
            if cancel_event is not None and cancel_event.is_set():
                raise OperationCancelled(f"Fetch of {resource} cancelled after {pages} pages.")

            # Keys are the full request URL; continuation links already embed their query.
            request_key = str(httpx.URL(url, params=params)) if params else url
            if request_key in requested:
                raise RunawayPaginationError(
                    accumulated=accumulated, limit=ceiling, reason=f"continuation link repeated: {request_key}"
                )
            requested.add(request_key)

            payload = self._request_page(url, params, cancel_event=cancel_event)
            pages += 1
            accumulated += len(payload["value"])
            if accumulated > ceiling:
                raise RunawayPaginationError(accumulated=accumulated, limit=ceiling)
            yield payload

            next_link = payload.get("@odata.nextLink")
            url = self.normalize_link(str(next_link)) if next_link else None
            # Continuation links already carry every query option.
            params = None

            empty_streak = empty_streak + 1 if (url and not payload["value"]) else 0
            if empty_streak >= MAX_EMPTY_LINKED_PAGES:
                raise RunawayPaginationError(
                    accumulated=accumulated,
                    limit=ceiling,
                    reason=f"{empty_streak} consecutive empty pages still carried a continuation link",
                )

    def fetch_all(
        self,
        resource: str,
        query: ODataQuery,
        max_records: Optional[int] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> QueryResult:
        """Fetch every page of `resource` matching `query` into one list, in upstream order."""

        result = QueryResult()
        for payload in self.iter_pages(resource, query, max_records=max_records, cancel_event=cancel_event):
            if result.pages == 0:
                result.total_count_hint = _coerce_int(payload.get("@odata.count"))
            result.records.extend(item for item in payload["value"] if isinstance(item, dict))
            result.pages += 1

        logger.info(
            "Fetched %s %s records in %s pages (count hint=%s).",
            len(result.records),
            resource,
            result.pages,
            result.total_count_hint,
        )
        return result

    def fetch_media(self, listing_key: str) -> list[dict[str, Any]]:
        """Fetch Media records for one listing, ordered by `Order`."""

        query = ODataQuery(
            filter=Eq("ResourceRecordKey", listing_key),
            select=MEDIA_SELECT_FIELDS,
            orderby="Order",
        )
        return self.fetch_all(self.config.reso.media_resource, query).records

    def fetch_metadata(self) -> str:
        """Return the service `$metadata` document (XML), cached on disk."""

        url = f"{self.config.reso.odata_root}/$metadata"
        cached = self._cache.get_text("reso-metadata", url)
        if cached is not None:
            return cached
        response = self._send(url, params=None, accept="application/xml")
        self._cache.set_text("reso-metadata", url, response.text)
        return response.text
