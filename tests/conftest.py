"""Shared fixtures: isolated settings, a temp SQLite store, a fake clock and wired services."""

import pytest
import pytest_asyncio

from sheetflow.core.config import Settings
from sheetflow.core.database import Database
from sheetflow.services.execution.models import RetryPolicy
from sheetflow.services.execution.queue import StepQueue, StepWorker
from sheetflow.services.execution.scheduler import StepScheduler
from sheetflow.services.graph import WorkflowGraphAccessor
from sheetflow.services.node_executor import NodeExecutor
from sheetflow.services.schema import PropagationCoordinator, SchemaCache, SchemaPropagator, SchemaResolver

from tests.helpers import FakeClock, no_sleep


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'sheetflow.db'}",
        redis_enabled=False,
        step_timeout=5.0,
        step_retry_initial_delay=0.0,
        log_format="console",
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(settings, clock) -> SchemaCache:
    return SchemaCache(settings, clock=clock)


@pytest.fixture
def coordinator(settings, clock) -> PropagationCoordinator:
    return PropagationCoordinator(settings, clock=clock)


@pytest_asyncio.fixture
async def database(settings):
    db = Database(settings)
    await db.startup()
    yield db
    await db.shutdown()


@pytest.fixture
def graph(database) -> WorkflowGraphAccessor:
    return WorkflowGraphAccessor(database)


@pytest.fixture
def resolver(cache, database) -> SchemaResolver:
    return SchemaResolver(cache, database, retry_policy=RetryPolicy(max_attempts=1))


@pytest.fixture
def propagator(cache, coordinator, resolver, graph, database) -> SchemaPropagator:
    return SchemaPropagator(cache, coordinator, resolver, graph, database,
                            retry_policy=RetryPolicy(max_attempts=1))


@pytest.fixture
def executor(settings) -> NodeExecutor:
    return NodeExecutor(settings)


@pytest.fixture
def queue() -> StepQueue:
    return StepQueue()


@pytest.fixture
def scheduler(database, graph, executor, cache, resolver, propagator, queue, settings) -> StepScheduler:
    return StepScheduler(database, graph, executor, cache, resolver, propagator, queue, settings,
                         sleep=no_sleep)


@pytest.fixture
def worker(queue, scheduler) -> StepWorker:
    return StepWorker(queue, scheduler, concurrency=1)


@pytest.fixture
def linear_workflow():
    """input -> filter -> sort"""
    nodes = [
        {"id": "input", "type": "excelInput", "config": {}},
        {"id": "filter", "type": "filter", "config": {
            "conditions": [{"field": "region", "operator": "equals", "value": "north"}],
        }},
        {"id": "sort", "type": "sort", "config": {"sortBy": [{"field": "amount", "direction": "desc"}]}},
    ]
    edges = [
        {"source": "input", "target": "filter"},
        {"source": "filter", "target": "sort"},
    ]
    return nodes, edges
