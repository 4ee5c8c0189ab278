"""OData `$filter` expression builder.

Filters are built from a handful of node types and rendered in one place, so every string
literal passes through `format_literal` and gets its single quotes doubled. Callers never
concatenate filter text themselves.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from typing import Any, Iterable, Optional, Union

from resocache.utils.time import isoformat_z


def escape_string(value: str) -> str:
    """Double embedded single quotes, as required by the OData literal grammar."""

    return value.replace("'", "''")


def format_literal(value: Any) -> str:
    """Render a Python value as an OData literal."""

    if value is None:
        return "null"
    # bool first: it is a subclass of int.
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, datetime):
        return isoformat_z(value)
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, (int, float)):
        return repr(value)
    return f"'{escape_string(str(value))}'"


@dataclass(frozen=True)
class Eq:
    field: str
    value: Any


@dataclass(frozen=True)
class IEq:
    """Case-insensitive equality: both sides are lowercased."""

    field: str
    value: str


@dataclass(frozen=True)
class In:
    field: str
    values: tuple[Any, ...]

    def __init__(self, field: str, values: Iterable[Any]) -> None:
        object.__setattr__(self, "field", field)
        object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True)
class AnyOf:
    """Collection membership: at least one element of a collection field equals one of `values`."""

    field: str
    values: tuple[Any, ...]

    def __init__(self, field: str, values: Iterable[Any]) -> None:
        object.__setattr__(self, "field", field)
        object.__setattr__(self, "values", tuple(values))


@dataclass(frozen=True)
class Range:
    field: str
    ge: Any = None
    gt: Any = None
    le: Any = None
    lt: Any = None


@dataclass(frozen=True)
class And:
    children: tuple["FilterNode", ...] = ()

    def __init__(self, *children: Optional["FilterNode"]) -> None:
        object.__setattr__(self, "children", tuple(c for c in children if c is not None))


FilterNode = Union[Eq, IEq, In, AnyOf, Range, And]


def render(node: Optional[FilterNode]) -> str:
    """Render a filter tree to `$filter` text. Returns "" for an empty filter."""

    if node is None:
        return ""
    if isinstance(node, Eq):
        return f"{node.field} eq {format_literal(node.value)}"
    if isinstance(node, IEq):
        return f"tolower({node.field}) eq {format_literal(str(node.value).lower())}"
    if isinstance(node, In):
        if not node.values:
            raise ValueError(f"In filter on {node.field} needs at least one value")
        items = ",".join(format_literal(v) for v in node.values)
        return f"{node.field} in ({items})"
    if isinstance(node, AnyOf):
        if not node.values:
            raise ValueError(f"AnyOf filter on {node.field} needs at least one value")
        alternatives = " or ".join(f"x eq {format_literal(v)}" for v in node.values)
        return f"{node.field}/any(x: {alternatives})"
    if isinstance(node, Range):
        bounds = [
            (op, value)
            for op, value in (("ge", node.ge), ("gt", node.gt), ("le", node.le), ("lt", node.lt))
            if value is not None
        ]
        if not bounds:
            raise ValueError(f"Range filter on {node.field} needs at least one bound")
        return " and ".join(f"{node.field} {op} {format_literal(value)}" for op, value in bounds)
    if isinstance(node, And):
        # No node renders a top-level `or` (AnyOf keeps its alternatives inside the lambda),
        # so conjunctions flatten without parentheses.
        parts = [render(child) for child in node.children]
        return " and ".join(part for part in parts if part)
    raise TypeError(f"Unsupported filter node: {type(node).__name__}")
