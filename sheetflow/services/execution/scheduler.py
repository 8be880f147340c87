"""Step scheduler: turns a workflow graph into steps and advances them one at a time.

Lifecycle:
    step:      pending -> processing -> completed | failed
    execution: running -> completed | failed

advance_step is idempotent. Terminal steps are left alone, a step whose
upstream is not ready stays pending, and the pending -> processing claim is
a compare-and-set so concurrent advances of one step run its handler once.
"""

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from itertools import chain
from typing import Any, Awaitable, Callable, Dict, List, Optional

from sheetflow.constants import DEFAULT_SHEET_NAME, is_file_input
from sheetflow.core.config import Settings
from sheetflow.core.database import Database
from sheetflow.core.exceptions import (
    CycleDetectedError,
    ExternalServiceError,
    UpstreamNotReadyError,
    WorkflowNotFoundError,
)
from sheetflow.core.logging import get_logger
from sheetflow.models.database import WorkflowExecution, WorkflowStep
from sheetflow.models.execution import ErrorKind, ExecutionStatus, StepStatus
from sheetflow.models.schema import SchemaSource, columns_to_db_format, infer_schema, normalize_workflow_id
from sheetflow.services.graph import WorkflowGraphAccessor, compute_execution_layers
from sheetflow.services.node_executor import ExecutionResult, NodeExecutor
from sheetflow.services.schema.cache import SchemaCache
from sheetflow.services.schema.propagator import SchemaPropagator
from sheetflow.services.schema.resolver import STORE_READ_POLICY, SchemaResolver

from .models import AdvanceResult, RetryPolicy, StepContext, StepOutcome, StepRequest, get_retry_policy
from .queue import StepDispatcher
from .retry import retry_async

logger = get_logger(__name__)

# Rows of a handler output kept as the sample on its schema record
SAMPLE_ROWS = 100


def _rows_of(output: Any) -> Any:
    if isinstance(output, dict) and "data" in output:
        return output["data"]
    return output


class StepScheduler:
    """Creates executions and advances their steps."""

    def __init__(self, database: Database, graph: WorkflowGraphAccessor, executor: NodeExecutor,
                 cache: SchemaCache, resolver: SchemaResolver, propagator: SchemaPropagator,
                 dispatcher: StepDispatcher, settings: Settings,
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.database = database
        self.graph = graph
        self.executor = executor
        self.cache = cache
        self.resolver = resolver
        self.propagator = propagator
        self.dispatcher = dispatcher
        self.settings = settings
        self._sleep = sleep
        self.store_policy = STORE_READ_POLICY
        self._locks: Dict[str, asyncio.Lock] = {}
        self._lock_users: Dict[str, int] = {}

    @asynccontextmanager
    async def _execution_lock(self, execution_id: str):
        """Serializes node_states read-modify-write within one execution.

        The lock is dropped once no coroutine holds or waits for it, so a
        later caller never gets a second lock while the first is in use.
        """
        lock = self._locks.setdefault(execution_id, asyncio.Lock())
        self._lock_users[execution_id] = self._lock_users.get(execution_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[execution_id] -= 1
            if not self._lock_users[execution_id]:
                del self._lock_users[execution_id]
                self._locks.pop(execution_id, None)

    @property
    def active_locks(self) -> int:
        return len(self._locks)

    async def _set_node_state(self, execution_id: str, node_id: str, state: Dict[str, Any]) -> Dict[str, Any]:
        async with self._execution_lock(execution_id):
            return await self.database.update_node_state(execution_id, node_id, state)

    # =========================================================================
    # Execution start
    # =========================================================================

    async def start_execution(self, workflow_id: str, file_id: Optional[str] = None,
                              inputs: Optional[Dict[str, Any]] = None) -> WorkflowExecution:
        """Create an execution with one pending step per node and dispatch the roots.

        A cyclic graph yields an execution that is already failed with
        kind CycleDetected; no steps are created.

        Raises:
            WorkflowNotFoundError: The workflow has no nodes
        """
        normalized = normalize_workflow_id(workflow_id)
        nodes = await self.graph.get_nodes(normalized)
        if not nodes:
            raise WorkflowNotFoundError(f"Workflow {normalized} has no nodes")
        edges = await self.graph.get_edges(normalized)

        execution = WorkflowExecution(
            id=str(uuid.uuid4()),
            workflow_id=normalized,
            status=ExecutionStatus.RUNNING.value,
            node_states={node.id: {"status": StepStatus.PENDING.value} for node in nodes},
            inputs=inputs or {},
            started_at=time.time(),
        )
        log = logger.bind(workflow_id=normalized, execution_id=execution.id)

        try:
            layers = compute_execution_layers([node.id for node in nodes], edges)
        except CycleDetectedError as e:
            execution.status = ExecutionStatus.FAILED.value
            execution.error = f"{e.kind}: {e}"
            execution.completed_at = time.time()
            await self.database.create_execution(execution)
            await self.database.update_workflow_run(normalized, ExecutionStatus.FAILED.value)
            log.error("Execution rejected, workflow graph has a cycle", nodes=e.node_ids)
            return execution

        order = {node_id: index for index, node_id in enumerate(chain.from_iterable(layers))}
        node_ids = set(order)
        upstream: Dict[str, List[str]] = {node.id: [] for node in nodes}
        for edge in edges:
            if edge.source in node_ids and edge.target in node_ids and edge.source not in upstream[edge.target]:
                upstream[edge.target].append(edge.source)

        steps = [
            WorkflowStep(
                id=str(uuid.uuid4()),
                execution_id=execution.id,
                workflow_id=normalized,
                node_id=node.id,
                node_type=node.type,
                node_category=node.category,
                status=StepStatus.PENDING.value,
                dependencies=sorted(upstream[node.id], key=order.__getitem__),
                step_order=order[node.id],
            )
            for node in nodes
        ]
        steps.sort(key=lambda s: s.step_order)

        await self.database.create_execution(execution)
        await self.database.create_steps(steps)
        await self.database.update_workflow_run(normalized, ExecutionStatus.RUNNING.value)
        log.info("Execution started", steps=len(steps), layers=len(layers))

        for step in steps:
            if not step.dependencies:
                await self.dispatcher.dispatch(StepRequest(step.id, normalized, file_id))
        return execution

    # =========================================================================
    # Step advancement
    # =========================================================================

    async def advance_step(self, step_id: str, workflow_id: Optional[str] = None,
                           file_id: Optional[str] = None) -> AdvanceResult:
        """Advance one step as far as its current state allows."""
        step = await self.database.get_step(step_id)
        if step is None:
            logger.warning("Step not found", step_id=step_id)
            return AdvanceResult(StepOutcome.NOT_FOUND, step_id)

        log = logger.bind(step_id=step_id, execution_id=step.execution_id, node_id=step.node_id)
        if workflow_id and normalize_workflow_id(workflow_id) != step.workflow_id:
            log.warning("Step requested for a different workflow", requested=workflow_id,
                        workflow_id=step.workflow_id)

        if StepStatus(step.status).is_terminal:
            log.debug("Step already terminal", status=step.status)
            return AdvanceResult(StepOutcome.SKIPPED, step_id)

        execution = await self.database.get_execution(step.execution_id)
        if execution is None or execution.status != ExecutionStatus.RUNNING.value:
            log.debug("Execution not running", status=execution.status if execution else None)
            return AdvanceResult(StepOutcome.SKIPPED, step_id)

        if step.status == StepStatus.PROCESSING.value:
            return AdvanceResult(StepOutcome.BUSY, step_id)

        node_states = execution.node_states or {}
        waiting_on = [
            dep for dep in step.dependencies or []
            if node_states.get(dep, {}).get("status") != StepStatus.COMPLETED.value
        ]
        if waiting_on:
            return self._waiting(step, UpstreamNotReadyError(step.node_id, waiting_on))

        if is_file_input(step.node_type) and not await self.graph.is_node_ready_for_propagation(
                step.workflow_id, step.node_id):
            return self._waiting(step, UpstreamNotReadyError(step.node_id))

        if not await self.database.claim_step(step_id):
            log.debug("Step claimed by another worker")
            return AdvanceResult(StepOutcome.BUSY, step_id)

        try:
            return await self._run_claimed(step, execution, file_id)
        except asyncio.CancelledError:
            await self.database.release_step(step_id)
            raise
        except ExternalServiceError as e:
            log.error("Persisted store failed during step", error=str(e))
            return await self._fail_claimed(step, execution, e, e.kind)
        except Exception as e:
            log.error("Unexpected error during step", error_type=type(e).__name__, error=str(e), exc_info=True)
            return await self._fail_claimed(step, execution, e, ErrorKind.HANDLER.value)

    async def _fail_claimed(self, step: WorkflowStep, execution: WorkflowExecution,
                            error: Exception, kind: str) -> AdvanceResult:
        """Record an error raised outside the handler as a failure of the claimed step."""
        result = ExecutionResult(False, step.node_id, step.node_type, error=str(error) or type(error).__name__,
                                 error_kind=kind, exception=error)
        return await retry_async(
            lambda: self._fail(step, execution, {}, result),
            self.store_policy,
            description="record_step_failure",
            sleep=self._sleep,
        )

    def _waiting(self, step: WorkflowStep, error: UpstreamNotReadyError) -> AdvanceResult:
        logger.debug("Step waiting on upstream", step_id=step.id, node_id=step.node_id,
                     waiting_on=error.waiting_on)
        return AdvanceResult(StepOutcome.WAITING, step.id, error=str(error), error_kind=error.kind)

    async def _release(self, step: WorkflowStep, execution: WorkflowExecution,
                       error: UpstreamNotReadyError) -> AdvanceResult:
        await self.database.release_step(step.id)
        await self._set_node_state(execution.id, step.node_id, {
            "status": StepStatus.PENDING.value,
            "dispatched": False,
        })
        return self._waiting(step, error)

    async def _run_claimed(self, step: WorkflowStep, execution: WorkflowExecution,
                           file_id: Optional[str]) -> AdvanceResult:
        await self._set_node_state(execution.id, step.node_id, {
            "status": StepStatus.PROCESSING.value,
            "started_at": time.time(),
        })

        node = await retry_async(
            lambda: self.graph.get_node(step.workflow_id, step.node_id),
            self.store_policy,
            description="get_node",
            sleep=self._sleep,
        )
        config = node.config if node else {}

        try:
            input_data = await self._resolve_input(step, execution, config, file_id)
        except UpstreamNotReadyError as e:
            return await self._release(step, execution, e)
        except ExternalServiceError as e:
            result = ExecutionResult(False, step.node_id, step.node_type, error=str(e), error_kind=e.kind)
            return await self._fail(step, execution, {}, result)

        context = StepContext(
            execution_id=execution.id,
            workflow_id=step.workflow_id,
            node_id=step.node_id,
            node_type=step.node_type,
            parameters=config,
            input_data=input_data,
            upstream_outputs=input_data.get("upstream", {}),
            file_id=input_data.get("file_id") or file_id,
        )
        result = await self._execute_with_retry(step, context, config)

        snapshot = {k: v for k, v in input_data.items() if k != "upstream"}
        if result.success:
            return await self._complete(step, execution, snapshot, result, file_id)
        if result.error_kind == ErrorKind.UPSTREAM.value:
            return await self._release(step, execution, UpstreamNotReadyError(step.node_id))
        return await self._fail(step, execution, snapshot, result)

    async def _resolve_input(self, step: WorkflowStep, execution: WorkflowExecution,
                             config: Dict[str, Any], file_id: Optional[str]) -> Dict[str, Any]:
        """Input for a step: file schema and sample rows, or upstream outputs."""
        inputs = execution.inputs or {}

        if is_file_input(step.node_type):
            sheet_name = (config.get("selectedSheet") or config.get("selected_sheet")
                          or await self.graph.get_selected_sheet(step.workflow_id, step.node_id))
            entry = await self.resolver.get_entry(step.workflow_id, step.node_id, sheet_name)
            if entry is None or not entry.schema:
                raise UpstreamNotReadyError(step.node_id)
            record = await self.database.get_file_schema(step.workflow_id, step.node_id, entry.sheet_name)
            if record is None:
                record = await self.database.get_file_schema(step.workflow_id, step.node_id)
            return {
                "schema": [column.to_dict() for column in entry.schema],
                "sheet": entry.sheet_name,
                "data": (record.sample_data if record else None) or [],
                "total_rows": record.total_rows if record else None,
                "file_id": entry.file_id or file_id,
                "inputs": inputs,
            }

        dependencies = set(step.dependencies or [])
        upstream_steps = [s for s in await self.database.list_steps(execution.id) if s.node_id in dependencies]
        upstream = {s.node_id: s.output_data or {} for s in upstream_steps}
        input_data: Dict[str, Any] = {"upstream": upstream, "inputs": inputs}
        if upstream_steps:
            primary = upstream_steps[0]
            input_data["data"] = _rows_of(primary.output_data)
            schema = await self.resolver.get_schema(step.workflow_id, primary.node_id)
            if schema:
                input_data["schema"] = [column.to_dict() for column in schema]
        if len(upstream_steps) > 1:
            input_data["secondaryData"] = _rows_of(upstream_steps[1].output_data)
        return input_data

    async def _execute_with_retry(self, step: WorkflowStep, context: StepContext,
                                  config: Dict[str, Any]) -> ExecutionResult:
        policy = get_retry_policy(step.node_type, config.get("retryPolicy"),
                                  RetryPolicy.from_settings(self.settings))
        attempt = 0
        while True:
            attempt += 1
            context.attempt = attempt
            result = await self.executor.execute(context)
            if result.success:
                return result
            if not policy.should_retry(result.exception or result.error or "", attempt):
                return result
            delay = policy.calculate_delay(attempt - 1)
            logger.warning("Retrying step", step_id=step.id, node_id=step.node_id, attempt=attempt,
                           delay=delay, error=result.error)
            await self._sleep(delay)

    async def _complete(self, step: WorkflowStep, execution: WorkflowExecution, input_data: Dict[str, Any],
                        result: ExecutionResult, file_id: Optional[str]) -> AdvanceResult:
        output = result.result or {}
        log = logger.bind(step_id=step.id, execution_id=execution.id, node_id=step.node_id)

        if not await self.database.complete_step(step.id, output, input_data):
            log.warning("Step left processing before completion was recorded")
            return AdvanceResult(StepOutcome.SKIPPED, step.id)
        await self._set_node_state(execution.id, step.node_id, {
            "status": StepStatus.COMPLETED.value,
            "completed_at": time.time(),
        })
        await self.database.add_step_log(step, StepStatus.COMPLETED.value, input_data, output,
                                         execution_time_ms=result.execution_time * 1000)
        log.info("Step completed", node_type=step.node_type, execution_time=result.execution_time)

        await self._publish_output_schema(step, output)
        next_ids = await self._dispatch_eligible(step, execution, file_id)
        return AdvanceResult(StepOutcome.COMPLETED, step.id, next_step_ids=next_ids)

    async def _publish_output_schema(self, step: WorkflowStep, output: Dict[str, Any]) -> None:
        """Record the output's schema and push it to downstream nodes."""
        sheet_name = None
        try:
            if is_file_input(step.node_type):
                sheet_name = output.get("sheet")
            else:
                rows = _rows_of(output)
                if not isinstance(rows, list) or not rows:
                    return
                schema = infer_schema(rows)
                if not schema:
                    return
                columns, data_types = columns_to_db_format(schema)
                await self.database.upsert_file_schema(
                    step.workflow_id, step.node_id, DEFAULT_SHEET_NAME, columns, data_types,
                    sample_data=rows[:SAMPLE_ROWS], total_rows=len(rows),
                )
                self.cache.write(step.workflow_id, step.node_id, schema,
                                 sheet_name=DEFAULT_SHEET_NAME, source=SchemaSource.DATABASE)
                # downstream gets this node's own output, not the sheet it was fed
                sheet_name = DEFAULT_SHEET_NAME

            results = await self.propagator.propagate_downstream(step.workflow_id, step.node_id,
                                                                 sheet_name=sheet_name)
            if results:
                logger.debug("Output schema propagated", node_id=step.node_id,
                             results={target: r.value for target, r in results.items()})
        except ExternalServiceError as e:
            logger.warning("Output schema not recorded", node_id=step.node_id, error=str(e))

    async def _dispatch_eligible(self, step: WorkflowStep, execution: WorkflowExecution,
                                 file_id: Optional[str]) -> List[str]:
        """Dispatch dependents whose dependencies all completed; complete the execution when done."""
        async with self._execution_lock(execution.id):
            current = await self.database.get_execution(execution.id)
            node_states = (current.node_states if current else None) or {}
            steps = await self.database.list_steps(execution.id)

            if all(s.status == StepStatus.COMPLETED.value for s in steps):
                consumed = set(chain.from_iterable(s.dependencies or [] for s in steps))
                outputs = {s.node_id: s.output_data for s in steps if s.node_id not in consumed}
                if await self.database.update_execution(execution.id, ExecutionStatus.COMPLETED, outputs=outputs):
                    await self.database.update_workflow_run(step.workflow_id, ExecutionStatus.COMPLETED.value)
                    logger.info("Execution completed", execution_id=execution.id, steps=len(steps))
                return []

            eligible = [
                s for s in steps
                if s.status == StepStatus.PENDING.value
                and step.node_id in (s.dependencies or [])
                and not node_states.get(s.node_id, {}).get("dispatched")
                and all(node_states.get(dep, {}).get("status") == StepStatus.COMPLETED.value
                        for dep in s.dependencies)
            ]
            # sibling completions racing here must not dispatch the same dependent twice
            for next_step in eligible:
                await self.database.update_node_state(execution.id, next_step.node_id, {"dispatched": True})

        for next_step in eligible:
            await self.dispatcher.dispatch(StepRequest(next_step.id, step.workflow_id, file_id))
        return [s.id for s in eligible]

    async def _fail(self, step: WorkflowStep, execution: WorkflowExecution, input_data: Dict[str, Any],
                    result: ExecutionResult) -> AdvanceResult:
        message = result.error or f"Node {step.node_id} failed"
        kind = result.error_kind or ErrorKind.HANDLER.value

        recorded = await self.database.fail_step(step.id, message, kind)
        if not recorded:
            current = await self.database.get_step(step.id)
            recorded = current is not None and current.status != StepStatus.COMPLETED.value
        if recorded:
            await self._set_node_state(execution.id, step.node_id, {
                "status": StepStatus.FAILED.value,
                "error": message,
                "error_kind": kind,
            })
        if await self.database.update_execution(execution.id, ExecutionStatus.FAILED,
                                                error=f"{step.node_id}: {message}"):
            await self.database.update_workflow_run(step.workflow_id, ExecutionStatus.FAILED.value)
        await self.database.add_step_log(step, StepStatus.FAILED.value, input_data, None, error=message,
                                         execution_time_ms=result.execution_time * 1000)

        logger.error("Step failed", step_id=step.id, execution_id=execution.id, node_id=step.node_id,
                     error_kind=kind, error=message)
        return AdvanceResult(StepOutcome.FAILED, step.id, error=message, error_kind=kind)

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_execution_detail(self, execution_id: str) -> Optional[Dict[str, Any]]:
        """Execution row plus its steps, for status endpoints."""
        execution = await self.database.get_execution(execution_id)
        if execution is None:
            return None
        steps = await self.database.list_steps(execution_id)
        return {
            "execution": execution.model_dump(),
            "steps": [step.model_dump() for step in steps],
        }
