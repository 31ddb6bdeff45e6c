"""
Aggregator - scalar reductions over row sets.
"""

from typing import Any, Dict, List, Optional, Sequence

from ..models import AggregateType, AggregationDefinition
from .filters import get_field


def _numbers(rows: Sequence[Dict[str, Any]], field: str) -> List[float]:
    values = []
    for row in rows:
        value = get_field(row, field)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)):
            values.append(value)
        elif isinstance(value, str):
            try:
                values.append(float(value))
            except ValueError:
                continue
    return values


def _non_null(rows: Sequence[Dict[str, Any]], field: str) -> List[Any]:
    return [v for v in (get_field(r, field) for r in rows) if v is not None]


def reduce(rows: Sequence[Dict[str, Any]], definition: AggregationDefinition) -> Any:
    """Apply one aggregation to a row set."""
    kind = definition.type
    if kind == AggregateType.COUNT:
        if definition.field in ("*", ""):
            return len(rows)
        return len(_non_null(rows, definition.field))
    if kind == AggregateType.SUM:
        return sum(_numbers(rows, definition.field))
    if kind == AggregateType.AVG:
        values = _numbers(rows, definition.field)
        return sum(values) / len(values) if values else 0
    values = _non_null(rows, definition.field)
    if not values:
        return None
    try:
        return min(values) if kind == AggregateType.MIN else max(values)
    except TypeError:
        values = [str(v) for v in values]
        return min(values) if kind == AggregateType.MIN else max(values)


class Aggregator:
    """Stateless sum/avg/count/min/max aggregator."""

    def aggregate(
        self,
        rows: Sequence[Dict[str, Any]],
        definitions: Sequence[AggregationDefinition],
    ) -> Dict[str, Any]:
        """One scalar per definition, keyed by alias (or "{type}_{field}")."""
        if not rows:
            return {}
        return {d.key: reduce(rows, d) for d in definitions}

    def aggregate_grouped(
        self,
        rows: Sequence[Dict[str, Any]],
        group_by: Sequence[str],
        definitions: Sequence[AggregationDefinition],
    ) -> List[Dict[str, Any]]:
        """One row per distinct group key, in first-seen order."""
        groups: Dict[tuple, List[Dict[str, Any]]] = {}
        for row in rows:
            key = tuple(get_field(row, f) for f in group_by)
            groups.setdefault(key, []).append(row)

        results = []
        for key, members in groups.items():
            result: Dict[str, Any] = dict(zip(group_by, key))
            for definition in definitions:
                result[definition.key] = reduce(members, definition)
            results.append(result)
        return results

    def summarize(
        self,
        rows: Sequence[Dict[str, Any]],
        definitions: Sequence[AggregationDefinition],
        group_by: Optional[Sequence[str]] = None,
    ) -> List[Dict[str, Any]]:
        """Rows that replace a dataset once its aggregations are applied."""
        if group_by:
            return self.aggregate_grouped(rows, group_by, definitions)
        summary = self.aggregate(rows, definitions)
        return [summary] if summary else []
