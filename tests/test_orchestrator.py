from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
from sqlalchemy import create_engine

from resocache.ingestion.errors import IngestError, OperationCancelled, StoreError, UpstreamQueryError
from resocache.ingestion.orchestrator import IngestionOrchestrator, IngestScope, build_query
from resocache.ingestion.reso_client import QueryResult, ResoQueryClient
from resocache.settings import AppConfig
from resocache.storage.listing_store import ListingStore, WriteOutcome


HOST = "https://example.test"


class _FakeTokenBroker:
    def get_access_token(self) -> str:
        return "token"

    def force_refresh(self, stale_token=None) -> str:
        return "token"


class _FakeClient:
    def __init__(self, records: list[dict]):
        self.records = records
        self.calls: list[tuple[str, dict]] = []

    def fetch_all(self, resource, query, max_records=None, cancel_event=None):
        self.calls.append((resource, query.to_params()))
        return QueryResult(records=list(self.records), total_count_hint=len(self.records), pages=1)


class _FailingStore:
    def __init__(self, fail_on: str):
        self.fail_on = fail_on
        self.written: list[str] = []

    def upsert(self, record):
        if record.ListingKey == self.fail_on:
            raise StoreError("disk full")
        self.written.append(record.ListingKey)
        return WriteOutcome.WRITTEN


def _config(tmp_path: Path) -> AppConfig:
    base = AppConfig()
    return base.model_copy(
        update={
            "reso": base.reso.model_copy(update={"host": HOST, "page_delay_seconds": 0.0, "max_retries": 0}),
            "cache": base.cache.model_copy(update={"enabled": False}),
        }
    ).resolve_paths(root=tmp_path)


def _store(tmp_path: Path) -> ListingStore:
    store = ListingStore(create_engine(f"sqlite:///{tmp_path / 'listings.db'}"))
    store.create_schema()
    return store


def _raw(key: str, modified: str = "2024-01-01T00:00:00Z", **fields) -> dict:
    return {"ListingKey": key, "ModificationTimestamp": modified, "City": "San Jose", **fields}


def _ledger(config: AppConfig) -> list[dict]:
    lines = config.paths.ledger_path.read_text(encoding="utf-8").splitlines()
    return [json.loads(line) for line in lines]


def test_build_query_renders_every_scope_predicate() -> None:
    scope = IngestScope(
        city="O'Fallon",
        county="St. Charles",
        statuses=["Active", "Pending"],
        property_types=["Residential"],
        special_conditions=["Short Sale"],
        modified_since=datetime(2024, 1, 1, tzinfo=timezone.utc),
        modified_until=datetime(2024, 1, 2, tzinfo=timezone.utc),
    )

    params = build_query(scope, select=("ListingKey",), page_size=200).to_params()

    assert params["$filter"] == (
        "tolower(City) eq 'o''fallon'"
        " and tolower(CountyOrParish) eq 'st. charles'"
        " and StandardStatus in ('Active','Pending')"
        " and PropertyType in ('Residential')"
        " and SpecialListingConditions/any(x: x eq 'Short Sale')"
        " and ModificationTimestamp ge 2024-01-01T00:00:00Z"
        " and ModificationTimestamp lt 2024-01-02T00:00:00Z"
    )
    assert params["$orderby"] == "ModificationTimestamp asc"
    assert params["$top"] == "200"
    assert params["$expand"] == "Media"
    assert params["$select"] == "ListingKey"
    assert params["$count"] == "true"


def test_empty_scope_has_no_filter() -> None:
    params = build_query(IngestScope(), expand_media=False).to_params()
    assert "$filter" not in params
    assert "$expand" not in params


def test_scope_for_window() -> None:
    now = datetime(2024, 3, 1, 12, tzinfo=timezone.utc)
    scope = IngestScope.for_window(6, city="San Jose", statuses=["Active"], now=now)

    assert scope.describe() == {
        "city": "San Jose",
        "statuses": ["Active"],
        "modified_since": "2024-03-01T06:00:00Z",
        "modified_until": "2024-03-01T12:00:00Z",
    }
    with pytest.raises(ValueError):
        IngestScope.for_window(0)


def test_ingest_end_to_end_is_idempotent(tmp_path: Path) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.params.get("$skip") is None:
            return httpx.Response(
                200,
                json={
                    "@odata.count": 3,
                    "value": [_raw("A"), _raw("B")],
                    "@odata.nextLink": f"{HOST}/trestle/odata/Property?$skip=2",
                },
            )
        return httpx.Response(200, json={"value": [_raw("C", InternetAddressDisplayYN=False, UnparsedAddress="x")]})

    config = _config(tmp_path)
    client = ResoQueryClient(
        config=config,
        http_client=httpx.Client(transport=httpx.MockTransport(handler)),
        token_broker=_FakeTokenBroker(),
    )
    store = _store(tmp_path)
    orchestrator = IngestionOrchestrator(client, store, config=config)
    scope = IngestScope(city="San Jose", statuses=["Active"])

    first = orchestrator.ingest(scope)
    second = orchestrator.ingest(scope)

    assert first.as_dict() == {"fetched": 3, "written": 3, "skipped": 0}
    assert second.as_dict() == {"fetched": 3, "written": 0, "skipped": 3}
    assert store.count() == 3
    assert store.get_by_key("C").UnparsedAddress is None

    entries = _ledger(config)
    assert [entry["ok"] for entry in entries] == [True, True]
    assert entries[1]["skipped"] == 3
    assert entries[0]["scope"] == {"city": "San Jose", "statuses": ["Active"]}


def test_store_failure_aborts_and_keeps_committed_progress(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _FailingStore(fail_on="B")
    orchestrator = IngestionOrchestrator(_FakeClient([_raw("A"), _raw("B"), _raw("C")]), store, config=config)

    with pytest.raises(IngestError) as excinfo:
        orchestrator.ingest(IngestScope(city="San Jose"))

    assert excinfo.value.written == 1
    assert excinfo.value.fetched == 3
    assert excinfo.value.listing_key == "B"
    assert isinstance(excinfo.value.__cause__, StoreError)
    assert store.written == ["A"]

    entry = _ledger(config)[-1]
    assert entry["ok"] is False
    assert entry["error_code"] == "store"
    assert entry["written"] == 1


def test_unusable_record_aborts_the_run(tmp_path: Path) -> None:
    config = _config(tmp_path)
    store = _store(tmp_path)
    records = [_raw("A"), {"ListingKey": "B", "City": "San Jose"}, _raw("C")]
    orchestrator = IngestionOrchestrator(_FakeClient(records), store, config=config)

    with pytest.raises(IngestError):
        orchestrator.ingest(IngestScope())

    assert store.get_by_key("A") is not None
    assert store.get_by_key("C") is None
    assert _ledger(config)[-1]["error_code"] == "normalization"


def test_upstream_failure_propagates_unchanged(tmp_path: Path) -> None:
    config = _config(tmp_path)
    client = ResoQueryClient(
        config=config,
        http_client=httpx.Client(transport=httpx.MockTransport(lambda request: httpx.Response(500, text="oops"))),
        token_broker=_FakeTokenBroker(),
    )
    orchestrator = IngestionOrchestrator(client, _store(tmp_path), config=config)

    with pytest.raises(UpstreamQueryError):
        orchestrator.ingest(IngestScope())

    assert _ledger(config)[-1]["error_code"] == "http_500"


def test_cancelled_ingest_stops_between_upserts(tmp_path: Path) -> None:
    config = _config(tmp_path)
    cancel_event = threading.Event()
    cancel_event.set()
    store = _FailingStore(fail_on="none")
    orchestrator = IngestionOrchestrator(_FakeClient([_raw("A")]), store, config=config)

    with pytest.raises(OperationCancelled):
        orchestrator.ingest(IngestScope(), cancel_event=cancel_event)

    assert store.written == []
    assert _ledger(config)[-1]["error_code"] == "cancelled"
