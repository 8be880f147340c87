"""Workflow routes: graph storage, file schemas, propagation and step execution."""

from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, ConfigDict, Field

from sheetflow.core.container import container
from sheetflow.core.database import Database
from sheetflow.core.exceptions import WorkflowNotFoundError
from sheetflow.core.logging import get_logger, step_context
from sheetflow.models.execution import FileProcessingStatus
from sheetflow.models.schema import SchemaSource, coerce_schema, columns_to_db_format, normalize_workflow_id
from sheetflow.services.execution.models import StepRequest
from sheetflow.services.execution.scheduler import StepScheduler
from sheetflow.services.schema import (
    PropagationCoordinator,
    SchemaCache,
    PropagationResult,
    SchemaPropagator,
    SchemaResolver,
    SchemaSubscription,
)

logger = get_logger(__name__)
router = APIRouter(prefix="/api/workflow", tags=["workflow"])


class CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SaveWorkflowRequest(CamelModel):
    name: str
    description: Optional[str] = None
    nodes: List[Dict[str, Any]] = []
    edges: List[Dict[str, Any]] = []


class NodeFileRequest(CamelModel):
    file_id: Optional[str] = Field(default=None, alias="fileId")
    processing_status: Optional[FileProcessingStatus] = Field(default=None, alias="processingStatus")
    sheets: Optional[List[str]] = None
    selected_sheet: Optional[str] = Field(default=None, alias="selectedSheet")


class SchemaRecordRequest(CamelModel):
    sheet_name: Optional[str] = Field(default=None, alias="sheetName")
    columns: List[Any]
    file_id: Optional[str] = Field(default=None, alias="fileId")
    sample_data: Optional[List[Dict[str, Any]]] = Field(default=None, alias="sampleData")
    total_rows: Optional[int] = Field(default=None, alias="totalRows")
    has_headers: bool = Field(default=True, alias="hasHeaders")


class ExecuteWorkflowRequest(CamelModel):
    file_id: Optional[str] = Field(default=None, alias="fileId")
    inputs: Dict[str, Any] = {}


class ExecuteStepRequest(CamelModel):
    step_id: str = Field(alias="stepId")
    workflow_id: str = Field(alias="workflowId")
    file_id: Optional[str] = Field(default=None, alias="fileId")


class PropagateRequest(CamelModel):
    source_node_id: str = Field(alias="sourceNodeId")
    target_node_id: str = Field(alias="targetNodeId")
    sheet_name: Optional[str] = Field(default=None, alias="sheetName")
    force: bool = False


class SchemaRecoveryRequest(CamelModel):
    operation: Literal["validate", "sync"]
    source_node_id: Optional[str] = Field(default=None, alias="sourceNodeId")
    sheet_name: Optional[str] = Field(default=None, alias="sheetName")


# =============================================================================
# Step execution (declared before /{workflow_id} routes)
# =============================================================================

@router.post("/steps/execute")
async def execute_step(
    request: ExecuteStepRequest,
    scheduler: StepScheduler = Depends(lambda: container.scheduler())
):
    """Advance one step. Peer endpoint for HTTP step dispatch."""
    step_request = StepRequest(request.step_id, request.workflow_id, request.file_id)
    with step_context(step_id=step_request.step_id, workflow_id=step_request.workflow_id,
                      file_id=step_request.file_id):
        result = await scheduler.advance_step(step_request.step_id, step_request.workflow_id,
                                              step_request.file_id)
    return {"success": True, **result.to_dict()}


@router.get("/executions/{execution_id}")
async def get_execution(
    execution_id: str,
    scheduler: StepScheduler = Depends(lambda: container.scheduler())
):
    detail = await scheduler.get_execution_detail(execution_id)
    if detail is None:
        raise HTTPException(status_code=404, detail=f"Execution {execution_id} not found")
    return {"success": True, **detail}


@router.get("/propagation/stats")
async def get_propagation_stats(
    coordinator: PropagationCoordinator = Depends(lambda: container.coordinator()),
    cache: SchemaCache = Depends(lambda: container.schema_cache())
):
    return {"success": True, "stats": {**coordinator.get_stats(), "cache_entries": len(cache)}}


# =============================================================================
# Workflow graph
# =============================================================================

@router.put("/{workflow_id}")
async def save_workflow(
    workflow_id: str,
    request: SaveWorkflowRequest,
    database: Database = Depends(lambda: container.database())
):
    """Create or replace a workflow's nodes and edges."""
    workflow = await database.save_workflow(workflow_id, request.name, request.nodes, request.edges,
                                            description=request.description)
    return {"success": True, "workflow_id": workflow.id, "is_temporary": workflow.is_temporary}


@router.get("/{workflow_id}")
async def get_workflow(
    workflow_id: str,
    database: Database = Depends(lambda: container.database())
):
    normalized = normalize_workflow_id(workflow_id)
    workflow = await database.get_workflow(normalized)
    if workflow is None:
        raise HTTPException(status_code=404, detail=f"Workflow {normalized} not found")
    nodes = await database.list_workflow_nodes(normalized)
    edges = await database.list_workflow_edges(normalized)
    return {
        "success": True,
        "workflow": workflow.model_dump(),
        "nodes": [{"id": n.node_id, "type": n.node_type, "category": n.category, "config": n.config} for n in nodes],
        "edges": [{"source": e.source_node_id, "target": e.target_node_id} for e in edges],
    }


@router.delete("/{workflow_id}")
async def delete_workflow(
    workflow_id: str,
    database: Database = Depends(lambda: container.database()),
    cache: SchemaCache = Depends(lambda: container.schema_cache()),
    coordinator: PropagationCoordinator = Depends(lambda: container.coordinator())
):
    normalized = normalize_workflow_id(workflow_id)
    deleted = await database.delete_workflow(normalized)
    evicted = cache.delete_by_prefix(normalized)
    coordinator.clear_history(normalized)
    logger.info("Workflow deleted", workflow_id=normalized, deleted=deleted, cache_evicted=evicted)
    return {"success": deleted, "cache_evicted": evicted}


@router.post("/{workflow_id}/execute")
async def execute_workflow(
    workflow_id: str,
    request: ExecuteWorkflowRequest,
    scheduler: StepScheduler = Depends(lambda: container.scheduler())
):
    """Start an execution; root steps are dispatched immediately."""
    try:
        execution = await scheduler.start_execution(workflow_id, file_id=request.file_id, inputs=request.inputs)
    except WorkflowNotFoundError as e:
        raise HTTPException(status_code=404, detail=str(e))
    return {
        "success": execution.error is None,
        "execution_id": execution.id,
        "status": execution.status,
        "error": execution.error,
    }


# =============================================================================
# Files and schemas
# =============================================================================

@router.put("/{workflow_id}/files/{node_id}")
async def register_node_file(
    workflow_id: str,
    node_id: str,
    request: NodeFileRequest,
    database: Database = Depends(lambda: container.database()),
    subscription: SchemaSubscription = Depends(lambda: container.subscription())
):
    """Attach a file to an input node, or update its processing state and sheets."""
    metadata: Dict[str, Any] = {}
    if request.sheets is not None:
        metadata["sheets"] = request.sheets
    if request.selected_sheet is not None:
        metadata["selected_sheet"] = request.selected_sheet
    record = await database.upsert_workflow_file(
        normalize_workflow_id(workflow_id), node_id,
        file_id=request.file_id,
        processing_status=request.processing_status.value if request.processing_status else None,
        metadata=metadata or None,
    )
    if record.file_id:
        subscription.subscribe(workflow_id, node_id, record.file_id)
    return {
        "success": True,
        "file_id": record.file_id,
        "processing_status": record.processing_status,
        "metadata": record.file_metadata,
    }


@router.put("/{workflow_id}/schemas/{node_id}")
async def record_node_schema(
    workflow_id: str,
    node_id: str,
    request: SchemaRecordRequest,
    database: Database = Depends(lambda: container.database()),
    cache: SchemaCache = Depends(lambda: container.schema_cache()),
    subscription: SchemaSubscription = Depends(lambda: container.subscription())
):
    """Store the schema of one sheet of a node's file and cache it."""
    schema = coerce_schema(request.columns)
    columns, data_types = columns_to_db_format(schema)
    record = await database.upsert_file_schema(
        normalize_workflow_id(workflow_id), node_id, request.sheet_name, columns, data_types,
        file_id=request.file_id,
        sample_data=request.sample_data,
        total_rows=request.total_rows,
        has_headers=request.has_headers,
    )
    cache.write(workflow_id, node_id, schema, sheet_name=record.sheet_name,
                source=SchemaSource.DATABASE, file_id=record.file_id)
    await subscription.publish(workflow_id, node_id, schema, sheet_name=record.sheet_name, file_id=record.file_id)
    return {"success": True, "sheet_name": record.sheet_name, "columns": columns}


@router.get("/{workflow_id}/schemas/{node_id}")
async def get_node_schema(
    workflow_id: str,
    node_id: str,
    sheet_name: Optional[str] = None,
    refresh: bool = False,
    resolver: SchemaResolver = Depends(lambda: container.resolver())
):
    """Resolved schema of a node: cache, default sheet, then the persisted store."""
    if refresh:
        schema = await resolver.refresh_schema(workflow_id, node_id, sheet_name)
    else:
        schema = await resolver.get_schema(workflow_id, node_id, sheet_name)
    if schema is None:
        raise HTTPException(status_code=404, detail=f"No schema for node {node_id}")
    return {"success": True, "node_id": node_id, "schema": [column.to_dict() for column in schema]}


@router.post("/{workflow_id}/propagate")
async def propagate_schema(
    workflow_id: str,
    request: PropagateRequest,
    propagator: SchemaPropagator = Depends(lambda: container.propagator())
):
    """Propagate a schema along one edge."""
    result = await propagator.propagate(
        workflow_id, request.source_node_id, request.target_node_id,
        sheet_name=request.sheet_name, force=request.force,
    )
    return {"success": result.value in ("propagated", "suppressed"), "result": result.value}


@router.post("/{workflow_id}/schemas/{node_id}/recovery")
async def recover_node_schema(
    workflow_id: str,
    node_id: str,
    request: SchemaRecoveryRequest,
    propagator: SchemaPropagator = Depends(lambda: container.propagator())
):
    """Check a node's schema, or re-sync it from an upstream node.

    validate reports whether the persisted schema is usable; sync forces a
    propagation along an existing source -> node edge.
    """
    if request.operation == "validate":
        report = await propagator.validate_node_schema(workflow_id, node_id, request.sheet_name,
                                                       source_node_id=request.source_node_id)
        return {"success": True, "operation": request.operation, **report}

    if not request.source_node_id:
        raise HTTPException(status_code=400, detail="sourceNodeId is required for sync")
    normalized = normalize_workflow_id(workflow_id)
    if node_id not in await propagator.graph.get_downstream(normalized, request.source_node_id):
        raise HTTPException(status_code=404,
                            detail=f"No edge from {request.source_node_id} to {node_id}")

    result = await propagator.propagate(workflow_id, request.source_node_id, node_id,
                                        sheet_name=request.sheet_name, force=True)
    logger.info("Schema sync requested", workflow_id=normalized, source_node_id=request.source_node_id,
                target_node_id=node_id, result=result.value)
    return {"success": result == PropagationResult.PROPAGATED, "operation": request.operation,
            "result": result.value}
