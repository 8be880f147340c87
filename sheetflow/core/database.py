"""Async persisted store with SQLModel and SQLAlchemy 2.0.

Every workflow id passed in is expected to be normalized already (no
temporary prefix), except in save_workflow which normalizes on its own.
"""

import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, List, Optional

from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlmodel import SQLModel, select

from sheetflow.constants import DEFAULT_SHEET_NAME, default_category
from sheetflow.core.config import Settings
from sheetflow.core.exceptions import PersistedStoreError
from sheetflow.core.logging import get_logger
from sheetflow.models.database import (
    Workflow,
    WorkflowEdge,
    WorkflowExecution,
    WorkflowFile,
    WorkflowFileSchema,
    WorkflowNode,
    WorkflowStep,
    WorkflowStepLog,
)
from sheetflow.models.execution import ExecutionStatus, StepStatus
from sheetflow.models.schema import is_temporary_workflow_id, normalize_workflow_id

logger = get_logger(__name__)


class Database:
    """Async database service with SQLModel."""

    def __init__(self, settings: Settings):
        self.settings = settings
        self.engine = None
        self.async_session = None

    async def startup(self):
        """Initialize database connection and create tables."""
        try:
            logging.getLogger("aiosqlite").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)
            logging.getLogger("sqlalchemy.pool").setLevel(logging.WARNING)

            engine_kwargs: Dict[str, Any] = {"echo": self.settings.database_echo, "future": True}
            if not self.settings.is_sqlite:
                engine_kwargs["pool_size"] = self.settings.database_pool_size
                engine_kwargs["max_overflow"] = self.settings.database_max_overflow

            self.engine = create_async_engine(self.settings.database_url, **engine_kwargs)

            self.async_session = async_sessionmaker(
                bind=self.engine,
                class_=AsyncSession,
                expire_on_commit=False
            )

            async with self.engine.begin() as conn:
                await conn.run_sync(SQLModel.metadata.create_all)

            logger.info("Database initialized successfully", url=self.settings.database_url)

        except Exception as e:
            logger.error("Database startup failed", error=str(e))
            raise

    async def shutdown(self):
        """Close database connections."""
        if self.engine:
            await self.engine.dispose()
            logger.info("Database connections closed")

    @asynccontextmanager
    async def get_session(self):
        """Get async database session.

        Driver errors surface as PersistedStoreError so callers can retry
        them like any other collaborator failure. IntegrityError is re-raised
        untouched for upsert conflict handling.
        """
        if not self.async_session:
            raise RuntimeError("Database not initialized")

        async with self.async_session() as session:
            try:
                yield session
            except IntegrityError:
                await session.rollback()
                raise
            except SQLAlchemyError as e:
                await session.rollback()
                raise PersistedStoreError(str(e)) from e
            except Exception:
                await session.rollback()
                raise

    # ============================================================================
    # Workflows and graph
    # ============================================================================

    async def save_workflow(self, workflow_id: str, name: str,
                            nodes: List[Dict[str, Any]], edges: List[Dict[str, Any]],
                            description: Optional[str] = None) -> Workflow:
        """Create or replace a workflow with its nodes and edges."""
        normalized = normalize_workflow_id(workflow_id)
        async with self.get_session() as session:
            workflow = await session.get(Workflow, normalized)
            if workflow:
                workflow.name = name
                workflow.description = description
                workflow.is_temporary = is_temporary_workflow_id(workflow_id)
            else:
                workflow = Workflow(
                    id=normalized,
                    name=name,
                    description=description,
                    is_temporary=is_temporary_workflow_id(workflow_id),
                )
                session.add(workflow)

            await session.execute(delete(WorkflowNode).where(WorkflowNode.workflow_id == normalized))
            await session.execute(delete(WorkflowEdge).where(WorkflowEdge.workflow_id == normalized))

            for node in nodes:
                node_type = node["type"]
                session.add(WorkflowNode(
                    workflow_id=normalized,
                    node_id=node["id"],
                    node_type=node_type,
                    category=node.get("category") or default_category(node_type),
                    config=node.get("config") or node.get("data") or {},
                ))
            for edge in edges:
                session.add(WorkflowEdge(
                    workflow_id=normalized,
                    source_node_id=edge["source"],
                    target_node_id=edge["target"],
                    source_handle=edge.get("sourceHandle"),
                    target_handle=edge.get("targetHandle"),
                ))

            await session.commit()
            logger.info("Workflow saved", workflow_id=normalized, nodes=len(nodes), edges=len(edges))
            return workflow

    async def get_workflow(self, workflow_id: str) -> Optional[Workflow]:
        async with self.get_session() as session:
            return await session.get(Workflow, workflow_id)

    async def delete_workflow(self, workflow_id: str) -> bool:
        """Delete a workflow and its graph, files and schema records."""
        async with self.get_session() as session:
            workflow = await session.get(Workflow, workflow_id)
            if not workflow:
                return False
            for model in (WorkflowNode, WorkflowEdge, WorkflowFile, WorkflowFileSchema):
                await session.execute(delete(model).where(model.workflow_id == workflow_id))
            await session.delete(workflow)
            await session.commit()
            return True

    async def update_workflow_run(self, workflow_id: str, status: str) -> None:
        async with self.get_session() as session:
            await session.execute(
                update(Workflow)
                .where(Workflow.id == workflow_id)
                .values(last_run_status=status, last_run_at=time.time())
            )
            await session.commit()

    async def list_workflow_nodes(self, workflow_id: str) -> List[WorkflowNode]:
        async with self.get_session() as session:
            stmt = select(WorkflowNode).where(WorkflowNode.workflow_id == workflow_id).order_by(WorkflowNode.id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_workflow_node(self, workflow_id: str, node_id: str) -> Optional[WorkflowNode]:
        async with self.get_session() as session:
            stmt = select(WorkflowNode).where(
                WorkflowNode.workflow_id == workflow_id,
                WorkflowNode.node_id == node_id,
            )
            result = await session.execute(stmt)
            return result.scalar_one_or_none()

    async def list_workflow_edges(self, workflow_id: str) -> List[WorkflowEdge]:
        async with self.get_session() as session:
            stmt = select(WorkflowEdge).where(WorkflowEdge.workflow_id == workflow_id).order_by(WorkflowEdge.id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    # ============================================================================
    # Node files
    # ============================================================================

    async def upsert_workflow_file(self, workflow_id: str, node_id: str,
                                   file_id: Optional[str] = None,
                                   processing_status: Optional[str] = None,
                                   metadata: Optional[Dict[str, Any]] = None) -> WorkflowFile:
        """Create or update the file association of a node. Metadata is merged."""
        async def _write() -> WorkflowFile:
            async with self.get_session() as session:
                stmt = select(WorkflowFile).where(
                    WorkflowFile.workflow_id == workflow_id,
                    WorkflowFile.node_id == node_id,
                )
                record = (await session.execute(stmt)).scalar_one_or_none()
                if record is None:
                    record = WorkflowFile(workflow_id=workflow_id, node_id=node_id)
                    session.add(record)
                if file_id is not None:
                    record.file_id = file_id
                if processing_status is not None:
                    record.processing_status = processing_status
                if metadata:
                    record.file_metadata = {**(record.file_metadata or {}), **metadata}
                await session.commit()
                return record

        try:
            return await _write()
        except IntegrityError:
            return await self._retry_after_conflict(_write, "workflow_files", workflow_id, node_id)

    async def get_workflow_file(self, workflow_id: str, node_id: str) -> Optional[WorkflowFile]:
        async with self.get_session() as session:
            stmt = select(WorkflowFile).where(
                WorkflowFile.workflow_id == workflow_id,
                WorkflowFile.node_id == node_id,
            )
            return (await session.execute(stmt)).scalar_one_or_none()

    # ============================================================================
    # Schema records
    # ============================================================================

    async def upsert_file_schema(self, workflow_id: str, node_id: str, sheet_name: Optional[str],
                                 columns: List[str], data_types: Dict[str, str],
                                 file_id: Optional[str] = None,
                                 sample_data: Optional[List[Dict[str, Any]]] = None,
                                 total_rows: Optional[int] = None,
                                 has_headers: bool = True,
                                 is_temporary: bool = False) -> WorkflowFileSchema:
        """Insert or update the schema record keyed by (workflow, node, sheet)."""
        sheet = sheet_name or DEFAULT_SHEET_NAME

        async def _write() -> WorkflowFileSchema:
            async with self.get_session() as session:
                stmt = select(WorkflowFileSchema).where(
                    WorkflowFileSchema.workflow_id == workflow_id,
                    WorkflowFileSchema.node_id == node_id,
                    WorkflowFileSchema.sheet_name == sheet,
                )
                record = (await session.execute(stmt)).scalar_one_or_none()
                if record is None:
                    record = WorkflowFileSchema(workflow_id=workflow_id, node_id=node_id, sheet_name=sheet)
                    session.add(record)
                record.columns = list(columns)
                record.data_types = dict(data_types)
                record.has_headers = has_headers
                record.is_temporary = is_temporary
                if file_id is not None:
                    record.file_id = file_id
                if sample_data is not None:
                    record.sample_data = sample_data
                if total_rows is not None:
                    record.total_rows = total_rows
                await session.commit()
                return record

        try:
            return await _write()
        except IntegrityError:
            return await self._retry_after_conflict(_write, "workflow_file_schemas", workflow_id, node_id)

    async def get_file_schema(self, workflow_id: str, node_id: str,
                              sheet_name: Optional[str] = None) -> Optional[WorkflowFileSchema]:
        """Schema record for a sheet; without a sheet, prefer "default" then the newest."""
        async with self.get_session() as session:
            stmt = select(WorkflowFileSchema).where(
                WorkflowFileSchema.workflow_id == workflow_id,
                WorkflowFileSchema.node_id == node_id,
            )
            if sheet_name:
                stmt = stmt.where(WorkflowFileSchema.sheet_name == sheet_name)
                return (await session.execute(stmt)).scalar_one_or_none()

            records = list((await session.execute(stmt.order_by(WorkflowFileSchema.id.desc()))).scalars().all())
            for record in records:
                if record.sheet_name == DEFAULT_SHEET_NAME:
                    return record
            return records[0] if records else None

    async def list_file_schemas(self, workflow_id: str, node_id: Optional[str] = None) -> List[WorkflowFileSchema]:
        async with self.get_session() as session:
            stmt = select(WorkflowFileSchema).where(WorkflowFileSchema.workflow_id == workflow_id)
            if node_id:
                stmt = stmt.where(WorkflowFileSchema.node_id == node_id)
            return list((await session.execute(stmt)).scalars().all())

    async def _retry_after_conflict(self, write, table: str, workflow_id: str, node_id: str):
        # Lost an insert race; the row exists now so the second pass updates it
        logger.debug("Upsert conflict, retrying as update", table=table, workflow_id=workflow_id, node_id=node_id)
        try:
            return await write()
        except IntegrityError as e:
            raise PersistedStoreError(f"Upsert into {table} failed: {e}") from e

    # ============================================================================
    # Executions
    # ============================================================================

    async def create_execution(self, execution: WorkflowExecution) -> WorkflowExecution:
        async with self.get_session() as session:
            session.add(execution)
            await session.commit()
            return execution

    async def get_execution(self, execution_id: str) -> Optional[WorkflowExecution]:
        async with self.get_session() as session:
            return await session.get(WorkflowExecution, execution_id)

    async def update_node_state(self, execution_id: str, node_id: str,
                                state: Dict[str, Any]) -> Dict[str, Any]:
        """Read-modify-write of one entry in node_states. Returns the merged map.

        Callers serialize this per execution; see StepScheduler.
        """
        async with self.get_session() as session:
            execution = await session.get(WorkflowExecution, execution_id)
            if execution is None:
                raise PersistedStoreError(f"Execution {execution_id} not found")
            states = dict(execution.node_states or {})
            states[node_id] = {**states.get(node_id, {}), **state}
            execution.node_states = states
            await session.commit()
            return states

    async def update_execution(self, execution_id: str, status: ExecutionStatus,
                               error: Optional[str] = None,
                               outputs: Optional[Dict[str, Any]] = None) -> bool:
        """Move a running execution to a terminal status. False if it already left running."""
        values: Dict[str, Any] = {"status": status.value, "completed_at": time.time()}
        if error is not None:
            values["error"] = error[:2000]
        if outputs is not None:
            values["outputs"] = outputs
        async with self.get_session() as session:
            result = await session.execute(
                update(WorkflowExecution)
                .where(
                    WorkflowExecution.id == execution_id,
                    WorkflowExecution.status == ExecutionStatus.RUNNING.value,
                )
                .values(**values)
            )
            await session.commit()
            return result.rowcount == 1

    # ============================================================================
    # Steps
    # ============================================================================

    async def create_steps(self, steps: List[WorkflowStep]) -> None:
        async with self.get_session() as session:
            session.add_all(steps)
            await session.commit()

    async def get_step(self, step_id: str) -> Optional[WorkflowStep]:
        async with self.get_session() as session:
            return await session.get(WorkflowStep, step_id)

    async def list_steps(self, execution_id: str) -> List[WorkflowStep]:
        async with self.get_session() as session:
            stmt = (
                select(WorkflowStep)
                .where(WorkflowStep.execution_id == execution_id)
                .order_by(WorkflowStep.step_order, WorkflowStep.node_id)
            )
            return list((await session.execute(stmt)).scalars().all())

    async def _transition_step(self, step_id: str, from_status: StepStatus, **values) -> bool:
        """Compare-and-set a step's status. True only for the caller that won."""
        async with self.get_session() as session:
            result = await session.execute(
                update(WorkflowStep)
                .where(WorkflowStep.id == step_id, WorkflowStep.status == from_status.value)
                .values(**values)
            )
            await session.commit()
            return result.rowcount == 1

    async def claim_step(self, step_id: str) -> bool:
        """pending -> processing. Losing the race returns False."""
        return await self._transition_step(
            step_id,
            StepStatus.PENDING,
            status=StepStatus.PROCESSING.value,
            started_at=time.time(),
            attempts=WorkflowStep.attempts + 1,
        )

    async def release_step(self, step_id: str) -> bool:
        """processing -> pending, used when input turned out not to be ready."""
        return await self._transition_step(
            step_id,
            StepStatus.PROCESSING,
            status=StepStatus.PENDING.value,
            started_at=None,
        )

    async def complete_step(self, step_id: str, output_data: Dict[str, Any],
                            input_data: Optional[Dict[str, Any]] = None) -> bool:
        return await self._transition_step(
            step_id,
            StepStatus.PROCESSING,
            status=StepStatus.COMPLETED.value,
            output_data=output_data,
            input_data=input_data,
            completed_at=time.time(),
        )

    async def fail_step(self, step_id: str, message: str, kind: str) -> bool:
        return await self._transition_step(
            step_id,
            StepStatus.PROCESSING,
            status=StepStatus.FAILED.value,
            error_message=message[:2000],
            error_kind=kind,
            completed_at=time.time(),
        )

    # ============================================================================
    # Step logs
    # ============================================================================

    async def add_step_log(self, step: WorkflowStep, status: str,
                           input_data: Optional[Dict[str, Any]] = None,
                           output_data: Optional[Dict[str, Any]] = None,
                           error: Optional[str] = None,
                           execution_time_ms: float = 0.0) -> bool:
        """Write an audit row for a step attempt. Failures are logged, not raised."""
        try:
            async with self.get_session() as session:
                session.add(WorkflowStepLog(
                    execution_id=step.execution_id,
                    step_id=step.id,
                    workflow_id=step.workflow_id,
                    node_id=step.node_id,
                    node_type=step.node_type,
                    status=status,
                    input_data=input_data,
                    output_data=output_data,
                    error=error[:2000] if error else None,
                    execution_time_ms=execution_time_ms,
                ))
                await session.commit()
                return True
        except Exception as e:
            logger.error("Failed to write step log", step_id=step.id, error=str(e))
            return False

    async def list_step_logs(self, execution_id: str) -> List[WorkflowStepLog]:
        async with self.get_session() as session:
            stmt = (
                select(WorkflowStepLog)
                .where(WorkflowStepLog.execution_id == execution_id)
                .order_by(WorkflowStepLog.id)
            )
            return list((await session.execute(stmt)).scalars().all())
