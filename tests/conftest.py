"""
Shared fixtures for reportflow tests.
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from reportflow.services.datasets import MemoryDatasetLoader
from reportflow.services.engine import ReportEngine
from reportflow.services.events import EventBus


class FakeClock:
    """Manually advanced clock returning aware UTC datetimes."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


class GatedLoader(MemoryDatasetLoader):
    """Loader that blocks every load until the gate is opened."""

    def __init__(self, tables=None):
        super().__init__(tables)
        self.gate = asyncio.Event()
        self.entered = asyncio.Event()
        self.calls = 0

    async def load(self, dataset, parameters):
        self.calls += 1
        self.entered.set()
        await self.gate.wait()
        return await super().load(dataset, parameters)


SALES_ROWS = [
    {"region": "north", "product": "widget", "amount": 120, "customer": {"city": "Oslo"}},
    {"region": "south", "product": "widget", "amount": 80, "customer": {"city": "Rome"}},
    {"region": "north", "product": "gadget", "amount": 200, "customer": {"city": "Bergen"}},
    {"region": "east", "product": "gadget", "amount": None, "customer": {"city": "Riga"}},
    {"region": "south", "product": "gizmo", "amount": 50, "customer": {"city": "Milan"}},
]


@pytest.fixture
def clock():
    """Clock fixed at Wednesday 2025-01-15 10:30 UTC."""
    return FakeClock(datetime(2025, 1, 15, 10, 30, tzinfo=timezone.utc))


@pytest.fixture
def sales_rows():
    return [dict(r) for r in SALES_ROWS]


@pytest.fixture
def loader(sales_rows):
    return MemoryDatasetLoader({"sales": sales_rows})


@pytest.fixture
def event_bus():
    return EventBus()


@pytest.fixture
def sales_report():
    """Report definition over the sales table."""
    return {
        "name": "Sales Summary",
        "description": "Sales by region",
        "datasets": [
            {
                "name": "sales",
                "table_name": "sales",
                "columns": ["region", "product", "amount"],
            }
        ],
        "parameters": [
            {"name": "region", "type": "string"},
            {"name": "limit", "type": "integer", "default": 10},
        ],
        "visualizations": [
            {"type": "bar", "dataset": "sales", "x_field": "region", "y_fields": ["amount"]},
        ],
    }


@pytest_asyncio.fixture
async def engine(loader, event_bus, clock):
    engine = ReportEngine(loader=loader, events=event_bus, clock=clock)
    await engine.initialize()
    yield engine
    await engine.shutdown()


@pytest_asyncio.fixture
async def report_id(engine, sales_report):
    return await engine.register_report(sales_report)
