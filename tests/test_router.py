"""Workflow HTTP routes, with container services swapped for the test instances."""

import httpx
import pytest
import pytest_asyncio
from dependency_injector import providers
from fastapi import FastAPI

from sheetflow.core.container import container
from sheetflow.models.schema import SchemaSource
from sheetflow.routers import workflow
from sheetflow.services.schema import SchemaSubscription

from tests.helpers import SALES_ROWS


@pytest.fixture
def subscription(cache, settings) -> SchemaSubscription:
    return SchemaSubscription(cache, settings)


@pytest_asyncio.fixture
async def client(database, cache, coordinator, resolver, propagator, subscription, scheduler):
    overrides = {
        container.database: database,
        container.schema_cache: cache,
        container.coordinator: coordinator,
        container.resolver: resolver,
        container.propagator: propagator,
        container.subscription: subscription,
        container.scheduler: scheduler,
    }
    for provider, instance in overrides.items():
        provider.override(providers.Object(instance))

    app = FastAPI()
    app.include_router(workflow.router)
    try:
        async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as http:
            yield http
    finally:
        container.reset_override()


@pytest_asyncio.fixture
async def saved(client, linear_workflow):
    nodes, edges = linear_workflow
    response = await client.put("/api/workflow/temp-wf", json={"name": "Linear", "nodes": nodes, "edges": edges})
    assert response.status_code == 200
    return response.json()


async def _attach_input(client):
    response = await client.put("/api/workflow/wf/files/input", json={
        "fileId": "file-1",
        "processingStatus": "completed",
        "sheets": ["Sheet1"],
        "selectedSheet": "Sheet1",
    })
    assert response.status_code == 200
    response = await client.put("/api/workflow/wf/schemas/input", json={
        "sheetName": "Sheet1",
        "fileId": "file-1",
        "columns": [{"name": "region", "type": "string"}, {"name": "product", "type": "string"},
                    {"name": "amount", "type": "number"}],
        "sampleData": SALES_ROWS,
        "totalRows": len(SALES_ROWS),
    })
    assert response.status_code == 200


class TestWorkflowRoutes:
    @pytest.mark.asyncio
    async def test_save_and_get(self, client, saved):
        assert saved == {"success": True, "workflow_id": "wf", "is_temporary": True}

        body = (await client.get("/api/workflow/temp-wf")).json()
        assert [n["id"] for n in body["nodes"]] == ["input", "filter", "sort"]
        assert body["edges"][0] == {"source": "input", "target": "filter"}

    @pytest.mark.asyncio
    async def test_missing_workflow(self, client):
        assert (await client.get("/api/workflow/ghost")).status_code == 404
        assert (await client.post("/api/workflow/ghost/execute", json={})).status_code == 404

    @pytest.mark.asyncio
    async def test_delete_clears_cache_and_history(self, client, saved, cache, coordinator):
        await _attach_input(client)
        coordinator.track_successful_propagation("wf", "input", "filter")

        body = (await client.delete("/api/workflow/wf")).json()
        assert body["success"]
        assert body["cache_evicted"] >= 1
        assert len(cache) == 0
        assert coordinator.get_record("wf", "input", "filter") is None


class TestSchemaRoutes:
    @pytest.mark.asyncio
    async def test_file_registration_subscribes(self, client, saved, subscription):
        await _attach_input(client)
        assert subscription.matches("wf", "input", "file-1")

    @pytest.mark.asyncio
    async def test_recorded_schema_is_cached_and_served(self, client, saved, cache):
        await _attach_input(client)
        entry = cache.get(cache.make_key("wf", "input", "Sheet1"))
        assert entry.source == SchemaSource.DATABASE

        body = (await client.get("/api/workflow/wf/schemas/input", params={"sheet_name": "Sheet1"})).json()
        assert [c["name"] for c in body["schema"]] == ["region", "product", "amount"]

        refreshed = await client.get("/api/workflow/wf/schemas/input", params={"refresh": "true"})
        assert refreshed.status_code == 200

    @pytest.mark.asyncio
    async def test_missing_schema(self, client, saved):
        assert (await client.get("/api/workflow/wf/schemas/filter")).status_code == 404

    @pytest.mark.asyncio
    async def test_propagate_edge(self, client, saved):
        await _attach_input(client)
        payload = {"sourceNodeId": "input", "targetNodeId": "filter"}

        first = (await client.post("/api/workflow/wf/propagate", json=payload)).json()
        assert first == {"success": True, "result": "propagated"}
        again = (await client.post("/api/workflow/wf/propagate", json=payload)).json()
        assert again["result"] == "suppressed"

        stats = (await client.get("/api/workflow/propagation/stats")).json()["stats"]
        assert stats["records"] == 1

    @pytest.mark.asyncio
    async def test_schema_recovery_validate_and_sync(self, client, saved):
        await _attach_input(client)
        url = "/api/workflow/wf/schemas/{}/recovery"

        body = (await client.post(url.format("input"), json={"operation": "validate"})).json()
        assert body["valid"] and body["sheet_exists"]
        assert body["sheet_name"] == "Sheet1"

        body = (await client.post(url.format("filter"), json={"operation": "validate"})).json()
        assert body == {"success": True, "operation": "validate", "valid": False,
                        "reason": "No schema found for this node"}

        synced = (await client.post(url.format("filter"),
                                    json={"operation": "sync", "sourceNodeId": "input"})).json()
        assert synced == {"success": True, "operation": "sync", "result": "propagated"}
        again = (await client.post(url.format("filter"),
                                   json={"operation": "sync", "sourceNodeId": "input"})).json()
        assert again["result"] == "propagated"

        body = (await client.post(url.format("filter"),
                                  json={"operation": "validate", "sourceNodeId": "input"})).json()
        assert body["valid"]
        assert body["propagation_needed"] is False

    @pytest.mark.asyncio
    async def test_schema_recovery_rejects_bad_requests(self, client, saved):
        url = "/api/workflow/wf/schemas/filter/recovery"
        assert (await client.post(url, json={"operation": "sync"})).status_code == 400
        missing_edge = await client.post(url, json={"operation": "sync", "sourceNodeId": "sort"})
        assert missing_edge.status_code == 404
        assert (await client.post(url, json={"operation": "debug"})).status_code == 422


class TestExecutionRoutes:
    @pytest.mark.asyncio
    async def test_execute_and_poll(self, client, saved, worker):
        await _attach_input(client)

        started = (await client.post("/api/workflow/wf/execute", json={"inputs": {"k": "v"}})).json()
        assert started["success"]
        assert started["status"] == "running"

        await worker.run_until_idle()
        detail = (await client.get(f"/api/workflow/executions/{started['execution_id']}")).json()
        assert detail["execution"]["status"] == "completed"
        assert [s["status"] for s in detail["steps"]] == ["completed"] * 3

    @pytest.mark.asyncio
    async def test_step_endpoint_advances_one_step(self, client, saved, queue):
        await _attach_input(client)
        started = (await client.post("/api/workflow/wf/execute", json={})).json()
        root = queue.get_nowait()

        body = (await client.post("/api/workflow/steps/execute", json={
            "stepId": root.step_id, "workflowId": "wf",
        })).json()
        assert body["success"]
        assert body["outcome"] == "completed"
        assert len(body["next_step_ids"]) == 1

        repeat = (await client.post("/api/workflow/steps/execute", json={
            "stepId": root.step_id, "workflowId": "wf",
        })).json()
        assert repeat["outcome"] == "skipped"
        assert started["execution_id"]

    @pytest.mark.asyncio
    async def test_unknown_execution(self, client):
        assert (await client.get("/api/workflow/executions/nope")).status_code == 404
