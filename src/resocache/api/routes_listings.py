from __future__ import annotations

import logging
import threading
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import Response

from resocache.ingestion.errors import AuthError, InvalidCursorError, StoreError, UpstreamQueryError
from resocache.ingestion.reso_client import ResoQueryClient
from resocache.ingestion.schemas import ListingPage, ListingRecord
from resocache.jobs.dispatcher import JobDispatcher
from resocache.service import ListingReadService
from resocache.settings import get_config
from resocache.storage.listing_store import ListingStore
from resocache.storage.session import create_engine_from_config

logger = logging.getLogger(__name__)

router = APIRouter()

_LOCK = threading.Lock()
_QUERY_CLIENT: Optional[ResoQueryClient] = None
# Set once client construction failed for missing credentials; cleared by shutdown_dependencies().
_QUERY_CLIENT_UNAVAILABLE = False
_DISPATCHER: Optional[JobDispatcher] = None
_READ_SERVICE: Optional[ListingReadService] = None


def _query_client_locked() -> Optional[ResoQueryClient]:
    global _QUERY_CLIENT, _QUERY_CLIENT_UNAVAILABLE
    if _QUERY_CLIENT is None and not _QUERY_CLIENT_UNAVAILABLE:
        try:
            _QUERY_CLIENT = ResoQueryClient(get_config())
        except ValueError as exc:
            # Missing credentials: cache reads still work, upstream-backed features do not.
            logger.warning("Upstream client unavailable: %s", exc)
            _QUERY_CLIENT_UNAVAILABLE = True
    return _QUERY_CLIENT


def get_query_client() -> Optional[ResoQueryClient]:
    if _QUERY_CLIENT is not None or _QUERY_CLIENT_UNAVAILABLE:
        return _QUERY_CLIENT
    with _LOCK:
        return _query_client_locked()


def get_read_service() -> ListingReadService:
    global _DISPATCHER, _READ_SERVICE
    if _READ_SERVICE is not None:
        return _READ_SERVICE
    with _LOCK:
        if _READ_SERVICE is None:
            config = get_config()
            store = ListingStore(create_engine_from_config(config), index_page_size=config.store.index_page_size)
            store.create_schema()
            _DISPATCHER = JobDispatcher.from_config(config)
            _READ_SERVICE = ListingReadService(
                store,
                dispatcher=_DISPATCHER,
                client=_query_client_locked(),
                image_width=config.queue.image_width,
                media_lookup_concurrency=config.api.media_lookup_concurrency,
            )
        return _READ_SERVICE


def shutdown_dependencies() -> None:
    """Release the dispatcher pool and the upstream client; the next request rebuilds them."""

    global _QUERY_CLIENT, _QUERY_CLIENT_UNAVAILABLE, _DISPATCHER, _READ_SERVICE
    with _LOCK:
        dispatcher, client = _DISPATCHER, _QUERY_CLIENT
        _QUERY_CLIENT, _QUERY_CLIENT_UNAVAILABLE = None, False
        _DISPATCHER, _READ_SERVICE = None, None
    if dispatcher is not None:
        dispatcher.close()
    if client is not None:
        client.close()


@router.get("/listings", response_model=ListingPage)
def list_listings(
    city: str = Query(..., min_length=1),
    status: Optional[str] = Query(default=None),
    property_type: Optional[str] = Query(default=None),
    limit: Optional[int] = Query(default=None, ge=1, le=200),
    cursor: Optional[str] = Query(default=None),
    include_media: bool = Query(default=False),
    service: ListingReadService = Depends(get_read_service),
) -> ListingPage:
    page_limit = limit or get_config().api.default_page_limit
    try:
        items, next_cursor = service.search(
            city,
            status=status,
            property_type=property_type,
            limit=page_limit,
            cursor=cursor,
            include_media=include_media,
        )
    except InvalidCursorError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except StoreError as exc:
        logger.error("Listing query failed: %s", exc)
        raise HTTPException(status_code=503, detail="listing cache unavailable") from exc
    return ListingPage(items=items, next_cursor=next_cursor)


@router.get("/listings/{listing_key}", response_model=ListingRecord)
def get_listing(
    listing_key: str,
    service: ListingReadService = Depends(get_read_service),
) -> ListingRecord:
    try:
        record = service.get_listing(listing_key)
    except StoreError as exc:
        logger.error("Listing lookup failed: %s", exc)
        raise HTTPException(status_code=503, detail="listing cache unavailable") from exc
    if record is None:
        raise HTTPException(status_code=404, detail=f"listing {listing_key} not found")
    return record


@router.get("/webapi/metadata")
def webapi_metadata(client: Optional[ResoQueryClient] = Depends(get_query_client)) -> Response:
    if client is None:
        raise HTTPException(status_code=503, detail="upstream credentials are not configured")
    try:
        document = client.fetch_metadata()
    except (AuthError, UpstreamQueryError) as exc:
        logger.error("Metadata fetch failed: %s", exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    return Response(content=document, media_type="application/xml")
