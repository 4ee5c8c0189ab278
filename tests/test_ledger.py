from __future__ import annotations

from pathlib import Path

from resocache.ingestion.ledger import read_latest_ledger_entry, safe_append_ledger_entry


def test_latest_entry_and_latest_match(tmp_path: Path) -> None:
    ledger = tmp_path / "nested" / "ledger.jsonl"
    safe_append_ledger_entry(ledger, {"ok": True, "scope": {"city": "San Jose"}, "n": 1})
    safe_append_ledger_entry(ledger, {"ok": False, "scope": {"city": "San Jose"}, "n": 2})
    safe_append_ledger_entry(ledger, {"ok": True, "scope": {"city": "Campbell"}, "n": 3})

    assert read_latest_ledger_entry(ledger)["n"] == 3
    latest_ok = read_latest_ledger_entry(
        ledger, match=lambda entry: entry["ok"] and entry["scope"]["city"] == "San Jose"
    )
    assert latest_ok["n"] == 1


def test_skips_corrupt_lines_and_spans_chunks(tmp_path: Path) -> None:
    ledger = tmp_path / "ledger.jsonl"
    safe_append_ledger_entry(ledger, {"n": 1, "pad": "x" * 10000})
    with ledger.open("a", encoding="utf-8") as handle:
        handle.write("{not json\n")

    assert read_latest_ledger_entry(ledger)["n"] == 1


def test_missing_or_empty_ledger(tmp_path: Path) -> None:
    assert read_latest_ledger_entry(tmp_path / "missing.jsonl") is None
    empty = tmp_path / "empty.jsonl"
    empty.write_text("", encoding="utf-8")
    assert read_latest_ledger_entry(empty) is None
