from __future__ import annotations

from datetime import date, datetime, timezone

import pytest

from resocache.ingestion.odata_filter import And, AnyOf, Eq, IEq, In, Range, format_literal, render


def test_string_literals_double_embedded_quotes() -> None:
    assert render(Eq("ListAgentFullName", "O'Brien")) == "ListAgentFullName eq 'O''Brien'"
    assert format_literal("it''s") == "'it''''s'"


def test_case_insensitive_equality_lowercases_both_sides() -> None:
    assert render(IEq("City", "O'Fallon")) == "tolower(City) eq 'o''fallon'"


def test_in_and_any_of_escape_every_value() -> None:
    assert render(In("StandardStatus", ["Active", "Pending"])) == "StandardStatus in ('Active','Pending')"
    assert (
        render(AnyOf("SpecialListingConditions", ["Short Sale", "Bank's REO"]))
        == "SpecialListingConditions/any(x: x eq 'Short Sale' or x eq 'Bank''s REO')"
    )


def test_unquoted_literals() -> None:
    assert render(Eq("InternetAddressDisplayYN", False)) == "InternetAddressDisplayYN eq false"
    assert render(Eq("BedroomsTotal", 3)) == "BedroomsTotal eq 3"
    assert render(Eq("CloseDate", None)) == "CloseDate eq null"
    assert format_literal(date(2024, 5, 1)) == "2024-05-01"


def test_range_renders_iso_utc_timestamps() -> None:
    start = datetime(2024, 1, 1, tzinfo=timezone.utc)
    end = datetime(2024, 1, 2, 8, 30, tzinfo=timezone.utc)

    assert render(Range("ModificationTimestamp", ge=start, lt=end)) == (
        "ModificationTimestamp ge 2024-01-01T00:00:00Z and ModificationTimestamp lt 2024-01-02T08:30:00Z"
    )
    assert render(Range("ListPrice", gt=100000)) == "ListPrice gt 100000"


def test_and_skips_missing_children() -> None:
    expression = And(IEq("City", "San Jose"), None, In("StandardStatus", ["Active"]))

    assert render(expression) == "tolower(City) eq 'san jose' and StandardStatus in ('Active')"
    assert render(And(None, Eq("A", 1))) == "A eq 1"
    assert render(And()) == ""
    assert render(None) == ""


def test_nested_and_flattens() -> None:
    expression = And(Eq("A", 1), And(Eq("B", "x"), Eq("C", True)))
    assert render(expression) == "A eq 1 and B eq 'x' and C eq true"


def test_empty_collections_and_ranges_are_rejected() -> None:
    with pytest.raises(ValueError):
        render(In("StandardStatus", []))
    with pytest.raises(ValueError):
        render(AnyOf("SpecialListingConditions", []))
    with pytest.raises(ValueError):
        render(Range("ListPrice"))
