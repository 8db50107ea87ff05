"""AST-based inclusion filters over record addresses.

The merge core takes its inclusion filter as an injected predicate
(``RecordDescriptor -> bool``). This module builds such predicates from a
small expression language so the CLI can express more than "address
contains X":

* **FilterMatch** (leaf): case-insensitive substring match, or a regex when
  written as ``/pattern/``; optionally negated.
* **FilterGroup** (compound): AND/OR of children.

Functions:

* ``address_filter``: OR of substring matches (the ``--must-match-address`` form).
* ``matches``: evaluate an expression against one value.
* ``filter_expr_from_json`` / ``filter_expr_to_json``: JSON round-trip.
* ``validate_filter_expr``: guardrails (depth, node count, regex count).
* ``load_filter_file``: read + validate a JSON filter expression.

Records whose address is blank never satisfy an address filter, not even
a negated one.
"""
from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

from smsmerge.io_utils import load_json
from smsmerge.record_types import RecordDescriptor

# ---------------------------------------------------------------------------
# AST node types
# ---------------------------------------------------------------------------

@dataclass(frozen=True, slots=True)
class FilterMatch:
    """Leaf: substring (or ``/regex/``) match against the address."""

    value: str
    negate: bool = False


@dataclass(frozen=True, slots=True)
class FilterGroup:
    """Compound: AND/OR of children (FilterMatch | FilterGroup)."""

    operator: str  # "and" | "or"
    children: tuple[FilterMatch | FilterGroup, ...]


FilterExpression = FilterMatch | FilterGroup


@dataclass(frozen=True, slots=True)
class FilterValidationError:
    """Structured error from filter expression validation."""

    code: str  # "max_depth" | "max_nodes" | "max_patterns" | "empty_group" | "invalid_operator" | "empty_value" | "bad_pattern"
    message: str
    path: str = ""  # dot-separated path into AST (e.g., "children.0.children.1")


MAX_AST_DEPTH = 5
MAX_AST_NODES = 50
MAX_PATTERNS = 10


# ---------------------------------------------------------------------------
# Evaluation
# ---------------------------------------------------------------------------

def _is_regex_value(value: str) -> bool:
    return len(value) >= 2 and value.startswith("/") and value.endswith("/")


@lru_cache(maxsize=256)
def _compile(pattern: str) -> re.Pattern[str]:
    return re.compile(pattern, re.IGNORECASE)


def _leaf_hit(match: FilterMatch, value: str) -> bool:
    if _is_regex_value(match.value):
        return _compile(match.value[1:-1]).search(value) is not None
    return match.value.casefold() in value.casefold()


def matches(expr: FilterExpression, value: str) -> bool:
    """Evaluate *expr* against *value*."""
    if isinstance(expr, FilterMatch):
        hit = _leaf_hit(expr, value)
        return not hit if expr.negate else hit
    if not expr.children:
        # Degenerate empty group: vacuously true
        return True
    if expr.operator == "and":
        return all(matches(c, value) for c in expr.children)
    return any(matches(c, value) for c in expr.children)


@dataclass(frozen=True, slots=True)
class AddressFilter:
    """Inclusion predicate: keep records whose address satisfies *expr*."""

    expr: FilterExpression

    def __call__(self, descriptor: RecordDescriptor) -> bool:
        address = descriptor.address
        if address is None or not address.strip():
            return False
        return matches(self.expr, address)


def address_filter(substrings: Iterable[str]) -> AddressFilter:
    """Predicate keeping records whose address contains any of *substrings*."""
    values = [s.strip() for s in substrings if s.strip()]
    if not values:
        raise ValueError("address_filter needs at least one non-blank address")
    if len(values) == 1:
        return AddressFilter(FilterMatch(value=values[0]))
    return AddressFilter(
        FilterGroup(operator="or", children=tuple(FilterMatch(value=v) for v in values))
    )


# ---------------------------------------------------------------------------
# JSON serialization
# ---------------------------------------------------------------------------

def filter_expr_to_json(expr: FilterExpression) -> dict[str, Any]:
    """Serialize a FilterExpression AST to a JSON-compatible dict.

    Leaf::

        {"value": "412345678"}
        {"value": "/^\\+61/", "negate": true}

    Group::

        {"op": "or", "children": [...]}
    """
    if isinstance(expr, FilterMatch):
        d: dict[str, Any] = {"value": expr.value}
        if expr.negate:
            d["negate"] = True
        return d
    return {
        "op": expr.operator,
        "children": [filter_expr_to_json(c) for c in expr.children],
    }


def filter_expr_from_json(
    data: Any,
    *,
    max_depth: int = MAX_AST_DEPTH,
    max_nodes: int = MAX_AST_NODES,
) -> FilterExpression:
    """Deserialize a JSON dict into a FilterExpression AST.

    Raises ``ValueError`` on malformed input.
    """
    if not isinstance(data, dict):
        raise ValueError("Filter expression payload must be an object")

    nodes_seen = 0

    def _parse(node: Any, depth: int) -> FilterExpression:
        nonlocal nodes_seen

        if depth > max_depth:
            raise ValueError(f"AST depth {depth} exceeds maximum {max_depth}")
        if not isinstance(node, dict):
            raise ValueError("Filter expression node must be an object")

        if "value" in node:
            nodes_seen += 1
            if nodes_seen > max_nodes:
                raise ValueError(f"AST has {nodes_seen} nodes, maximum is {max_nodes}")
            return FilterMatch(
                value=str(node["value"]),
                negate=bool(node.get("negate", False)),
            )

        op_value = node.get("op", node.get("operator"))
        if op_value is not None:
            op = str(op_value).lower()
            if op not in ("and", "or"):
                raise ValueError(f"Invalid filter group operator: {op!r} (expected 'and' or 'or')")
            raw_children = node.get("children")
            if not isinstance(raw_children, list):
                raise ValueError("FilterGroup 'children' must be a list")
            return FilterGroup(
                operator=op,
                children=tuple(_parse(c, depth + 1) for c in raw_children),
            )

        raise ValueError(f"Unrecognised filter expression shape: {sorted(node.keys())}")

    return _parse(data, 1)


# ---------------------------------------------------------------------------
# Validation / guardrails
# ---------------------------------------------------------------------------

def validate_filter_expr(
    expr: FilterExpression,
    *,
    max_depth: int = MAX_AST_DEPTH,
    max_nodes: int = MAX_AST_NODES,
    max_patterns: int = MAX_PATTERNS,
) -> list[FilterValidationError]:
    """Validate guardrail constraints on *expr*.

    Returns a (possibly empty) list of ``FilterValidationError``.
    Does NOT raise: callers decide whether errors are fatal.
    """
    errors: list[FilterValidationError] = []
    node_count = _count_nodes(expr)
    if node_count > max_nodes:
        errors.append(FilterValidationError(
            code="max_nodes",
            message=f"AST has {node_count} nodes, maximum is {max_nodes}",
        ))
    depth = _measure_depth(expr)
    if depth > max_depth:
        errors.append(FilterValidationError(
            code="max_depth",
            message=f"AST depth is {depth}, maximum is {max_depth}",
        ))
    pattern_count = _count_patterns(expr)
    if pattern_count > max_patterns:
        errors.append(FilterValidationError(
            code="max_patterns",
            message=f"AST has {pattern_count} regex patterns, maximum is {max_patterns}",
        ))
    _validate_structure(expr, errors, "")
    return errors


def _count_nodes(expr: FilterExpression) -> int:
    if isinstance(expr, FilterMatch):
        return 1
    return sum(_count_nodes(c) for c in expr.children)


def _measure_depth(expr: FilterExpression) -> int:
    """A single leaf = depth 1."""
    if isinstance(expr, FilterMatch) or not expr.children:
        return 1
    return 1 + max(_measure_depth(c) for c in expr.children)


def _count_patterns(expr: FilterExpression) -> int:
    if isinstance(expr, FilterMatch):
        return 1 if _is_regex_value(expr.value) else 0
    return sum(_count_patterns(c) for c in expr.children)


def _validate_structure(
    expr: FilterExpression,
    errors: list[FilterValidationError],
    path: str,
) -> None:
    if isinstance(expr, FilterMatch):
        if not expr.value.strip():
            errors.append(FilterValidationError(
                code="empty_value",
                message="FilterMatch has empty value",
                path=path,
            ))
        elif _is_regex_value(expr.value):
            try:
                _compile(expr.value[1:-1])
            except re.error as exc:
                errors.append(FilterValidationError(
                    code="bad_pattern",
                    message=f"Invalid regex {expr.value!r}: {exc}",
                    path=path,
                ))
        return
    if expr.operator not in ("and", "or"):
        errors.append(FilterValidationError(
            code="invalid_operator",
            message=f"Invalid operator {expr.operator!r} (expected 'and' or 'or')",
            path=path,
        ))
    if not expr.children:
        errors.append(FilterValidationError(
            code="empty_group",
            message="FilterGroup has no children",
            path=path,
        ))
    for i, child in enumerate(expr.children):
        child_path = f"{path}.children.{i}" if path else f"children.{i}"
        _validate_structure(child, errors, child_path)


def load_filter_file(path: Path) -> AddressFilter:
    """Load a JSON filter expression and wrap it as an AddressFilter.

    Raises ValueError listing every guardrail violation.
    """
    expr = filter_expr_from_json(load_json(path))
    errors = validate_filter_expr(expr)
    if errors:
        detail = "; ".join(f"{e.code} at {e.path or '<root>'}: {e.message}" for e in errors)
        raise ValueError(f"Invalid filter expression in {path}: {detail}")
    return AddressFilter(expr)
