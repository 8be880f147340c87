"""Push a node's schema to the nodes connected downstream of it.

A propagation writes the target's schema record in the persisted store,
points the target at the propagated sheet, refreshes the cache and tells
the coordinator so repeats inside the dedup window are suppressed.
"""

from enum import Enum
from typing import Any, Dict, Optional

from sheetflow.core.database import Database
from sheetflow.core.exceptions import ExternalServiceError
from sheetflow.core.logging import get_logger
from sheetflow.models.schema import (
    SchemaSource,
    columns_to_db_format,
    is_temporary_workflow_id,
    normalize_workflow_id,
    same_columns,
)
from sheetflow.services.execution.models import RetryPolicy
from sheetflow.services.execution.retry import retry_async
from sheetflow.services.graph import WorkflowGraphAccessor

from .cache import SchemaCache
from .coordinator import PropagationCoordinator
from .resolver import STORE_READ_POLICY, SchemaResolver

logger = get_logger(__name__)


class PropagationResult(str, Enum):
    PROPAGATED = "propagated"
    SUPPRESSED = "suppressed"
    NOT_READY = "not_ready"
    NO_SCHEMA = "no_schema"
    FAILED = "failed"


class SchemaPropagator:
    """Edge-level schema propagation with readiness and dedup checks."""

    def __init__(self, cache: SchemaCache, coordinator: PropagationCoordinator,
                 resolver: SchemaResolver, graph: WorkflowGraphAccessor, database: Database,
                 retry_policy: Optional[RetryPolicy] = None):
        self.cache = cache
        self.coordinator = coordinator
        self.resolver = resolver
        self.graph = graph
        self.database = database
        self.retry_policy = retry_policy or STORE_READ_POLICY

    async def _effective_sheet(self, workflow_id: str, node_id: str, sheet_name: Optional[str]) -> Optional[str]:
        if sheet_name:
            return sheet_name
        node_file = await self.database.get_workflow_file(workflow_id, node_id)
        # a node without a file of its own publishes under the default sheet;
        # its selected_sheet only echoes what was propagated into it
        if node_file is None or not node_file.file_id:
            return None
        metadata = node_file.file_metadata or {}
        sheets = metadata.get("sheets") or []
        return metadata.get("selected_sheet") or (sheets[0] if sheets else None)

    async def propagate(self, workflow_id: str, source_node_id: str, target_node_id: str,
                        sheet_name: Optional[str] = None, force: bool = False,
                        debounce: bool = False) -> PropagationResult:
        """Propagate the source node's schema to the target node.

        force skips dedup, cooldown and backoff, never the readiness check.
        """
        normalized = normalize_workflow_id(workflow_id)
        log = logger.bind(workflow_id=normalized, source_node_id=source_node_id,
                          target_node_id=target_node_id)

        if not await self.graph.is_node_ready_for_propagation(normalized, source_node_id):
            log.debug("Source node not ready for propagation")
            return PropagationResult.NOT_READY

        effective_sheet = await self._effective_sheet(normalized, source_node_id, sheet_name)
        entry = await self.resolver.get_entry(workflow_id, source_node_id, effective_sheet)
        if entry is None or not entry.schema:
            log.debug("No source schema to propagate", sheet_name=effective_sheet)
            return PropagationResult.NO_SCHEMA

        target_sheet = effective_sheet or entry.sheet_name

        if not force:
            if self.coordinator.was_recently_propagated(normalized, source_node_id, target_node_id,
                                                        sheet_name=target_sheet, schema=entry.schema):
                log.debug("Propagation suppressed, recently propagated", sheet_name=target_sheet)
                return PropagationResult.SUPPRESSED
            if not self.coordinator.should_propagate(normalized, source_node_id, target_node_id,
                                                     sheet_name=target_sheet):
                log.debug("Propagation suppressed, in progress or backing off", sheet_name=target_sheet)
                return PropagationResult.SUPPRESSED

        self.coordinator.mark_started(normalized, source_node_id, target_node_id, sheet_name=target_sheet)
        columns, data_types = columns_to_db_format(entry.schema)
        is_temporary = is_temporary_workflow_id(workflow_id)

        try:
            await retry_async(
                lambda: self.database.upsert_file_schema(
                    normalized, target_node_id, target_sheet, columns, data_types,
                    file_id=entry.file_id, is_temporary=is_temporary,
                ),
                self.retry_policy,
                description="upsert_file_schema",
            )
            await self.database.upsert_workflow_file(
                normalized, target_node_id, metadata={"selected_sheet": target_sheet},
            )
        except ExternalServiceError as e:
            self.coordinator.mark_error(normalized, source_node_id, target_node_id, str(e),
                                        sheet_name=target_sheet)
            return PropagationResult.FAILED

        self.cache.write(
            workflow_id, target_node_id, entry.schema,
            sheet_name=target_sheet,
            source=SchemaSource.PROPAGATION,
            version=entry.version,
            is_temporary=is_temporary,
            file_id=entry.file_id,
        )
        self.coordinator.mark_success(
            normalized, source_node_id, target_node_id,
            sheet_name=target_sheet, version=entry.version, schema=entry.schema, debounce=debounce,
        )
        log.info("Schema propagated", sheet_name=target_sheet, columns=len(columns))
        return PropagationResult.PROPAGATED

    async def propagate_downstream(self, workflow_id: str, node_id: str,
                                   sheet_name: Optional[str] = None,
                                   force: bool = False) -> Dict[str, PropagationResult]:
        """Propagate a node's schema along every outgoing edge."""
        results = {}
        for target in await self.graph.get_downstream(workflow_id, node_id):
            results[target] = await self.propagate(workflow_id, node_id, target,
                                                   sheet_name=sheet_name, force=force)
        return results

    async def validate_node_schema(self, workflow_id: str, node_id: str, sheet_name: Optional[str] = None,
                                   source_node_id: Optional[str] = None) -> Dict[str, Any]:
        """Report whether a node's persisted schema is usable.

        The record must exist with columns, its sheet must be one of the
        attached file's sheets, and with a source given it must match the
        source's columns.
        """
        normalized = normalize_workflow_id(workflow_id)
        record = await self.database.get_file_schema(
            normalized, node_id, await self._effective_sheet(normalized, node_id, sheet_name),
        )
        if record is None or not record.columns:
            return {"valid": False, "reason": "No schema found for this node"}

        report: Dict[str, Any] = {"valid": True, "sheet_name": record.sheet_name, "columns": len(record.columns)}
        node_file = await self.database.get_workflow_file(normalized, node_id)
        sheets = (node_file.file_metadata or {}).get("sheets") if node_file and node_file.file_id else None
        if sheets:
            report["sheet_exists"] = record.sheet_name in sheets
            report["valid"] = report["sheet_exists"]
        if source_node_id:
            report["propagation_needed"] = await self.check_propagation_needed(
                normalized, source_node_id, node_id, sheet_name,
            )
            report["valid"] = report["valid"] and not report["propagation_needed"]
        return report

    async def check_propagation_needed(self, workflow_id: str, source_node_id: str,
                                       target_node_id: str, sheet_name: Optional[str] = None) -> bool:
        """True when the target's schema differs from the source's by column names."""
        effective_sheet = await self._effective_sheet(normalize_workflow_id(workflow_id), source_node_id, sheet_name)
        source = await self.resolver.get_schema(workflow_id, source_node_id, effective_sheet)
        if not source:
            return False
        target = await self.resolver.get_schema(workflow_id, target_node_id, effective_sheet)
        if not target:
            return True
        return not same_columns(source, target)
