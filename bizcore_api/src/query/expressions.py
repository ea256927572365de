"""
Compiled filter AST.

A compiled filter is a tree of condition groups:

    Match   flat mapping of field path -> constraints (all must hold)
    Or      at least one child must hold
    And     every child must hold

Nodes are frozen dataclasses built functionally; compilation stages produce new
nodes instead of editing existing ones.
"""
from __future__ import annotations

import enum
import re
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Dict, Iterable, Optional, Tuple, Union
from uuid import UUID


class FieldType(str, enum.Enum):
    """Schema type of an entity field as reported by a Field-Type Provider."""

    STRING = "String"
    NUMBER = "Number"
    BOOLEAN = "Boolean"
    DATE = "Date"
    REFERENCE = "Reference"


class Operator(str, enum.Enum):
    EQ = "eq"
    NE = "ne"
    GT = "gt"
    GTE = "gte"
    LT = "lt"
    LTE = "lte"
    IN = "in"
    NIN = "nin"
    REGEX = "regex"
    EXISTS = "exists"


@dataclass(frozen=True)
class Constraint:
    """A single (operator, coerced value) pair."""

    op: Operator
    value: Any


@dataclass(frozen=True)
class Match:
    """Field path -> constraints. Every constraint on every field must hold."""

    conditions: Dict[str, Tuple[Constraint, ...]] = field(default_factory=dict)

    def __bool__(self) -> bool:
        return bool(self.conditions)

    def has_field(self, path: str) -> bool:
        return path in self.conditions

    def constraints_for(self, path: str) -> Tuple[Constraint, ...]:
        return self.conditions.get(path, ())

    def with_constraint(self, path: str, constraint: Constraint) -> "Match":
        """Return a new Match with the constraint appended to the field's list."""
        merged = dict(self.conditions)
        merged[path] = merged.get(path, ()) + (constraint,)
        return Match(merged)

    def merge(self, other: "Match") -> "Match":
        """Return a new Match combining both constraint sets."""
        merged = dict(self.conditions)
        for path, constraints in other.conditions.items():
            merged[path] = merged.get(path, ()) + tuple(constraints)
        return Match(merged)


@dataclass(frozen=True)
class Or:
    children: Tuple["FilterNode", ...] = ()


@dataclass(frozen=True)
class And:
    children: Tuple["FilterNode", ...] = ()


FilterNode = Union[Match, Or, And]
CompiledFilter = FilterNode


def eq(path: str, value: Any) -> Match:
    """Shorthand for a single equality Match."""
    return Match({path: (Constraint(Operator.EQ, value),)})


def and_all(nodes: Iterable[Optional[FilterNode]]) -> FilterNode:
    """
    Combine nodes with logical AND, dropping empty ones.

    A single remaining node is returned as-is; no nodes yields an empty Match.
    """
    kept: list[FilterNode] = []
    for node in nodes:
        if node is None:
            continue
        if isinstance(node, Match) and not node:
            continue
        if isinstance(node, And):
            kept.extend(node.children)
            continue
        kept.append(node)
    if not kept:
        return Match()
    if len(kept) == 1:
        return kept[0]
    return And(tuple(kept))


def iter_matches(node: FilterNode) -> Iterable[Match]:
    """Yield every Match in the tree, depth-first."""
    if isinstance(node, Match):
        yield node
        return
    for child in node.children:
        yield from iter_matches(child)


def top_level_match(node: FilterNode) -> Match:
    """Merge the Match nodes that are unconditionally ANDed at the root."""
    if isinstance(node, Match):
        return node
    if isinstance(node, And):
        result = Match()
        for child in node.children:
            if isinstance(child, Match):
                result = result.merge(child)
        return result
    return Match()


def _jsonable(value: Any) -> Any:
    if isinstance(value, (UUID,)):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, re.Pattern):
        out: Dict[str, Any] = {"$regex": value.pattern}
        if value.flags & re.IGNORECASE:
            out["$options"] = "i"
        return out
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    if isinstance(value, enum.Enum):
        return value.value
    return value


# PUBLIC_INTERFACE
def to_document(node: FilterNode) -> Dict[str, Any]:
    """
    Render a filter tree as a JSON-compatible, Mongo-style document.

    Used for diagnostics (explain) and cache-key derivation only.
    """
    if isinstance(node, Match):
        doc: Dict[str, Any] = {}
        for path, constraints in node.conditions.items():
            doc[path] = [{f"${c.op.value}": _jsonable(c.value)} for c in constraints]
        return doc
    key = "$or" if isinstance(node, Or) else "$and"
    return {key: [to_document(child) for child in node.children]}
