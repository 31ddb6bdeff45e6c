"""
Row filtering and sorting helpers used by the report pipeline.
"""

from typing import Any, Dict, List, Sequence

from ..models import FilterDefinition, FilterOperator, SortDefinition, SortDirection

_MISSING = object()


def get_field(row: Dict[str, Any], path: str) -> Any:
    """Resolve a dotted path ("customer.address.city") inside a row."""
    current: Any = row
    for part in path.split("."):
        if isinstance(current, dict) and part in current:
            current = current[part]
        else:
            return None
    return current


def _compare(value: Any, other: Any, op) -> bool:
    if value is None or other is None:
        return False
    try:
        return op(value, other)
    except TypeError:
        return False


def matches(row: Dict[str, Any], flt: FilterDefinition) -> bool:
    """Evaluate one filter against one row."""
    value = get_field(row, flt.field)
    op = flt.operator

    if op == FilterOperator.EQ:
        return value == flt.value
    if op == FilterOperator.NEQ:
        return value != flt.value
    if op == FilterOperator.GT:
        return _compare(value, flt.value, lambda a, b: a > b)
    if op == FilterOperator.GTE:
        return _compare(value, flt.value, lambda a, b: a >= b)
    if op == FilterOperator.LT:
        return _compare(value, flt.value, lambda a, b: a < b)
    if op == FilterOperator.LTE:
        return _compare(value, flt.value, lambda a, b: a <= b)
    if op == FilterOperator.LIKE:
        return value is not None and str(flt.value) in str(value)
    if op == FilterOperator.IN:
        return isinstance(flt.value, (list, tuple, set)) and value in flt.value
    if op == FilterOperator.BETWEEN:
        return (
            _compare(value, flt.value, lambda a, b: a >= b)
            and _compare(value, flt.second_value, lambda a, b: a <= b)
        )
    if op == FilterOperator.ISNULL:
        return value is None
    if op == FilterOperator.ISNOTNULL:
        return value is not None
    return True


def apply_filters(
    rows: List[Dict[str, Any]],
    filters: Sequence[FilterDefinition],
) -> List[Dict[str, Any]]:
    """Keep rows matching every filter."""
    if not filters:
        return rows
    return [r for r in rows if all(matches(r, f) for f in filters)]


def apply_sort(
    rows: List[Dict[str, Any]],
    sorts: Sequence[SortDefinition],
) -> List[Dict[str, Any]]:
    """
    Stable multi-key sort. Null values go last regardless of direction.
    """
    if not sorts:
        return rows
    result = list(rows)
    # Sort by the least significant key first; stability keeps earlier keys
    for spec in reversed(sorts):
        present = [r for r in result if get_field(r, spec.field) is not None]
        missing = [r for r in result if get_field(r, spec.field) is None]
        try:
            present.sort(
                key=lambda r: get_field(r, spec.field),
                reverse=spec.direction == SortDirection.DESC,
            )
        except TypeError:
            present.sort(
                key=lambda r: str(get_field(r, spec.field)),
                reverse=spec.direction == SortDirection.DESC,
            )
        result = present + missing
    return result
