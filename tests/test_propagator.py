"""Edge-level schema propagation and the cache-first resolver."""

import pytest
import pytest_asyncio

from sheetflow.models.execution import FileProcessingStatus
from sheetflow.models.schema import SchemaSource
from sheetflow.services.schema import PropagationResult

from tests.helpers import SALES_ROWS, attach_file


@pytest_asyncio.fixture
async def saved_workflow(database, linear_workflow):
    nodes, edges = linear_workflow
    await database.save_workflow("wf", "Linear", nodes, edges)


class TestResolver:
    @pytest.mark.asyncio
    async def test_cache_hit_skips_store(self, resolver, cache):
        cache.write("wf", "n", ["a"], source=SchemaSource.MANUAL)
        entry = await resolver.get_entry("wf", "n")
        assert entry.source == SchemaSource.MANUAL

    @pytest.mark.asyncio
    async def test_store_record_is_written_back(self, resolver, cache, database):
        await database.upsert_file_schema("wf", "n", "Sheet1", ["a", "b"], {"a": "string", "b": "number"})
        schema = await resolver.get_schema("temp-wf", "n", "Sheet1")
        assert [c.name for c in schema] == ["a", "b"]
        assert cache.get(cache.make_key("wf", "n", "Sheet1")).source == SchemaSource.DATABASE

    @pytest.mark.asyncio
    async def test_missing_schema_is_none(self, resolver):
        assert await resolver.get_schema("wf", "ghost") is None

    @pytest.mark.asyncio
    async def test_refresh_bypasses_cache(self, resolver, cache, database):
        cache.write("wf", "n", ["stale"])
        await database.upsert_file_schema("wf", "n", None, ["fresh"], {})
        schema = await resolver.refresh_schema("wf", "n")
        assert [c.name for c in schema] == ["fresh"]
        assert cache.get(cache.make_key("wf", "n")).source == SchemaSource.MANUAL_REFRESH


class TestPropagate:
    @pytest.mark.asyncio
    async def test_propagates_selected_sheet(self, propagator, database, cache, coordinator, saved_workflow):
        await attach_file(database, "wf", "input", SALES_ROWS)

        result = await propagator.propagate("wf", "input", "filter")
        assert result == PropagationResult.PROPAGATED

        record = await database.get_file_schema("wf", "filter", "Sheet1")
        assert record.columns == ["region", "product", "amount"]
        target_file = await database.get_workflow_file("wf", "filter")
        assert target_file.file_metadata["selected_sheet"] == "Sheet1"

        entry = cache.get(cache.make_key("wf", "filter", "Sheet1"))
        assert entry.source == SchemaSource.PROPAGATION
        assert coordinator.get_record("wf", "input", "filter", "Sheet1") is not None

    @pytest.mark.asyncio
    async def test_repeat_is_suppressed_unless_forced(self, propagator, database, saved_workflow):
        await attach_file(database, "wf", "input", SALES_ROWS)
        assert await propagator.propagate("wf", "input", "filter") == PropagationResult.PROPAGATED
        assert await propagator.propagate("wf", "input", "filter") == PropagationResult.SUPPRESSED
        assert await propagator.propagate("wf", "input", "filter", force=True) == PropagationResult.PROPAGATED

    @pytest.mark.asyncio
    async def test_source_not_ready(self, propagator, database, saved_workflow):
        await attach_file(database, "wf", "input", SALES_ROWS, status=FileProcessingStatus.PENDING)
        result = await propagator.propagate("wf", "input", "filter", force=True)
        assert result == PropagationResult.NOT_READY
        assert await database.get_file_schema("wf", "filter") is None

    @pytest.mark.asyncio
    async def test_downstream_chain_after_target_gains_schema(self, propagator, database, saved_workflow):
        await attach_file(database, "wf", "input", SALES_ROWS)
        first = await propagator.propagate_downstream("wf", "input")
        assert first == {"filter": PropagationResult.PROPAGATED}

        second = await propagator.propagate_downstream("wf", "filter")
        assert second == {"sort": PropagationResult.PROPAGATED}
        assert (await database.get_file_schema("wf", "sort", "Sheet1")).columns == ["region", "product", "amount"]

    @pytest.mark.asyncio
    async def test_node_without_file_sends_its_own_output(self, propagator, database, cache, saved_workflow):
        await attach_file(database, "wf", "input", SALES_ROWS)
        await propagator.propagate("wf", "input", "filter")
        assert (await database.get_workflow_file("wf", "filter")).file_metadata["selected_sheet"] == "Sheet1"

        await database.upsert_file_schema("wf", "filter", "default", ["region", "total"],
                                          {"region": "string", "total": "number"})
        cache.write("wf", "filter", [{"name": "region", "type": "string"}, {"name": "total", "type": "number"}],
                    sheet_name="default", source=SchemaSource.DATABASE)

        result = await propagator.propagate_downstream("wf", "filter")
        assert result == {"sort": PropagationResult.PROPAGATED}
        assert (await database.get_file_schema("wf", "sort", "default")).columns == ["region", "total"]
        assert await database.get_file_schema("wf", "sort", "Sheet1") is None

    @pytest.mark.asyncio
    async def test_check_propagation_needed(self, propagator, database, cache, saved_workflow):
        await attach_file(database, "wf", "input", SALES_ROWS)
        assert await propagator.check_propagation_needed("wf", "input", "filter")

        await propagator.propagate("wf", "input", "filter")
        assert not await propagator.check_propagation_needed("wf", "input", "filter")
