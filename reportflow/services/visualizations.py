"""
Visualization builder - chart and table specs derived from result rows.
"""

import logging
from typing import Any, Dict, List, Sequence

from ..models import VisualizationDefinition, VisualizationType
from .filters import get_field

logger = logging.getLogger(__name__)


def _chart(definition: VisualizationDefinition, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    x_field = definition.x_field or (next(iter(rows[0]), None) if rows else None)
    y_fields = definition.y_fields or [
        k for k in (rows[0] if rows else {}) if k != x_field
    ][:1]
    return {
        "labels": [get_field(r, x_field) for r in rows] if x_field else [],
        "series": [
            {"name": y, "data": [get_field(r, y) for r in rows]}
            for y in y_fields
        ],
    }


def _pie(definition: VisualizationDefinition, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    label_field = definition.label_field or definition.x_field
    value_field = definition.value_field or (definition.y_fields[0] if definition.y_fields else None)
    return {
        "labels": [get_field(r, label_field) for r in rows] if label_field else [],
        "values": [get_field(r, value_field) for r in rows] if value_field else [],
    }


def _table(definition: VisualizationDefinition, rows: List[Dict[str, Any]]) -> Dict[str, Any]:
    columns = definition.columns or (list(rows[0].keys()) if rows else [])
    return {
        "columns": columns,
        "rows": [[get_field(r, c) for c in columns] for r in rows],
    }


_BUILDERS = {
    VisualizationType.BAR: _chart,
    VisualizationType.LINE: _chart,
    VisualizationType.PIE: _pie,
    VisualizationType.TABLE: _table,
}


def build_visualizations(
    definitions: Sequence[VisualizationDefinition],
    data: Dict[str, List[Dict[str, Any]]],
) -> List[Dict[str, Any]]:
    """Build one spec per definition; unknown types and datasets are skipped."""
    built = []
    for index, definition in enumerate(definitions):
        builder = _BUILDERS.get(definition.type)
        if builder is None:
            logger.warning(f"Skipping unknown visualization type: {definition.type}")
            continue
        if definition.dataset not in data:
            logger.warning(f"Skipping visualization for missing dataset: {definition.dataset}")
            continue
        spec = {
            "id": definition.id or f"viz_{index + 1}",
            "type": definition.type.value,
            "title": definition.title or definition.dataset,
            "dataset": definition.dataset,
        }
        spec.update(builder(definition, data[definition.dataset]))
        built.append(spec)
    return built
