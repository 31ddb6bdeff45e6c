"""
Tests for the pipeline building blocks: cache, filters, aggregations and
visualizations.

Run with:
    pytest tests/test_pipeline_helpers.py -v
"""

from datetime import datetime, timezone

import pytest

from reportflow.models import (
    AggregateType,
    AggregationDefinition,
    FilterDefinition,
    FilterOperator,
    ReportResult,
    SortDefinition,
    SortDirection,
    VisualizationDefinition,
    VisualizationType,
)
from reportflow.services.aggregations import Aggregator, reduce
from reportflow.services.cache import ResultCache, canonical_parameters, make_key
from reportflow.services.filters import apply_filters, apply_sort, get_field, matches
from reportflow.services.visualizations import build_visualizations


def make_result(report_id="r1"):
    return ReportResult(
        id="result-1",
        report_id=report_id,
        report_name="Test",
        generated_at=datetime(2025, 1, 15, tzinfo=timezone.utc),
    )


# =============================================================================
# ResultCache
# =============================================================================

class TestResultCache:
    """Test TTL caching and invalidation."""

    def test_canonical_parameters_sorted(self):
        assert canonical_parameters({"b": 2, "a": 1}) == canonical_parameters({"a": 1, "b": 2})
        assert canonical_parameters(None) == "{}"

    def test_put_and_get(self, clock):
        cache = ResultCache(clock=clock)
        result = make_result()
        key = make_key("r1", {"x": 1})

        cache.put(key, result, ttl=60)

        assert cache.get(key) is result
        assert key in cache

    def test_expired_entry_is_a_miss(self, clock):
        cache = ResultCache(clock=clock)
        key = make_key("r1", {})
        cache.put(key, make_result(), ttl=60)

        clock.advance(seconds=60)

        assert cache.get(key) is None
        assert cache.get_stats()["misses"] == 1

    def test_expired_entries_evicted_on_write(self, clock):
        cache = ResultCache(clock=clock)
        cache.put(make_key("r1", {}), make_result(), ttl=10)
        clock.advance(seconds=11)

        cache.put(make_key("r2", {}), make_result("r2"), ttl=10)

        assert len(cache) == 1

    def test_invalidate_by_report(self, clock):
        cache = ResultCache(clock=clock)
        cache.put(make_key("r1", {"a": 1}), make_result())
        cache.put(make_key("r1", {"a": 2}), make_result())
        cache.put(make_key("r10", {}), make_result("r10"))

        removed = cache.invalidate("r1")

        assert removed == 2
        assert make_key("r10", {}) in cache


# =============================================================================
# Filters and sorting
# =============================================================================

class TestFilters:
    """Test filter operators and multi-key sorting."""

    @pytest.fixture
    def rows(self, sales_rows):
        return sales_rows

    def test_get_field_dotted_path(self, rows):
        assert get_field(rows[0], "customer.city") == "Oslo"
        assert get_field(rows[0], "customer.zip") is None

    @pytest.mark.parametrize("operator,value,second,expected", [
        (FilterOperator.EQ, "north", None, 2),
        (FilterOperator.NEQ, "north", None, 3),
        (FilterOperator.LIKE, "orth", None, 2),
        (FilterOperator.IN, ["east", "south"], None, 3),
    ])
    def test_region_operators(self, rows, operator, value, second, expected):
        flt = FilterDefinition(field="region", operator=operator, value=value, second_value=second)
        assert len(apply_filters(rows, [flt])) == expected

    def test_numeric_comparisons_skip_nulls(self, rows):
        flt = FilterDefinition(field="amount", operator=FilterOperator.LT, value=100)
        assert [r["amount"] for r in apply_filters(rows, [flt])] == [80, 50]

    def test_between_is_inclusive(self, rows):
        flt = FilterDefinition(
            field="amount", operator=FilterOperator.BETWEEN, value=80, second_value=120,
        )
        assert [r["amount"] for r in apply_filters(rows, [flt])] == [120, 80]

    def test_null_checks(self, rows):
        isnull = FilterDefinition(field="amount", operator=FilterOperator.ISNULL)
        notnull = FilterDefinition(field="amount", operator=FilterOperator.ISNOTNULL)

        assert len(apply_filters(rows, [isnull])) == 1
        assert len(apply_filters(rows, [notnull])) == 4

    def test_nested_field_filter(self, rows):
        flt = FilterDefinition(field="customer.city", operator=FilterOperator.EQ, value="Rome")
        assert matches(rows[1], flt)
        assert not matches(rows[0], flt)

    def test_filters_are_anded(self, rows):
        filters = [
            FilterDefinition(field="region", value="north"),
            FilterDefinition(field="product", value="gadget"),
        ]
        assert len(apply_filters(rows, filters)) == 1

    def test_sort_nulls_last_both_directions(self, rows):
        asc = apply_sort(rows, [SortDefinition(field="amount")])
        desc = apply_sort(rows, [SortDefinition(field="amount", direction=SortDirection.DESC)])

        assert [r["amount"] for r in asc] == [50, 80, 120, 200, None]
        assert [r["amount"] for r in desc] == [200, 120, 80, 50, None]

    def test_multi_key_sort(self, rows):
        sorted_rows = apply_sort(rows, [
            SortDefinition(field="region"),
            SortDefinition(field="amount", direction=SortDirection.DESC),
        ])
        assert [(r["region"], r["amount"]) for r in sorted_rows] == [
            ("east", None),
            ("north", 200),
            ("north", 120),
            ("south", 80),
            ("south", 50),
        ]


# =============================================================================
# Aggregations
# =============================================================================

class TestAggregator:
    """Test scalar and grouped aggregations."""

    def test_reductions(self, sales_rows):
        def agg(kind):
            return reduce(sales_rows, AggregationDefinition(field="amount", type=kind))

        assert agg(AggregateType.SUM) == 450
        assert agg(AggregateType.AVG) == 112.5
        assert agg(AggregateType.COUNT) == 4
        assert agg(AggregateType.MIN) == 50
        assert agg(AggregateType.MAX) == 200

    def test_aggregate_empty_rows(self):
        definition = AggregationDefinition(field="amount", type=AggregateType.SUM)
        assert Aggregator().aggregate([], [definition]) == {}

    def test_default_key(self, sales_rows):
        definition = AggregationDefinition(field="amount", type=AggregateType.MAX)
        assert Aggregator().aggregate(sales_rows, [definition]) == {"max_amount": 200}

    def test_grouped_first_seen_order(self, sales_rows):
        definition = AggregationDefinition(field="amount", type=AggregateType.AVG, alias="avg")
        groups = Aggregator().aggregate_grouped(sales_rows, ["product"], [definition])

        assert [g["product"] for g in groups] == ["widget", "gadget", "gizmo"]
        assert groups[0]["avg"] == 100


# =============================================================================
# Visualizations
# =============================================================================

class TestVisualizations:
    """Test chart and table spec building."""

    def test_pie_and_table(self, sales_rows):
        data = {"sales": sales_rows}
        specs = build_visualizations([
            VisualizationDefinition(
                type=VisualizationType.PIE, dataset="sales",
                label_field="product", value_field="amount",
            ),
            VisualizationDefinition(
                type=VisualizationType.TABLE, dataset="sales", columns=["region"], id="regions",
            ),
        ], data)

        assert specs[0]["labels"][0] == "widget"
        assert specs[0]["values"][0] == 120
        assert specs[1]["id"] == "regions"
        assert specs[1]["rows"][0] == ["north"]

    def test_unknown_type_skipped(self, sales_rows):
        definition = VisualizationDefinition.from_dict({"type": "radar", "dataset": "sales"})
        assert build_visualizations([definition], {"sales": sales_rows}) == []
