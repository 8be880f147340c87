"""Resolve a node's schema: cache, default sheet, then the persisted store."""

from typing import List, Optional

from sheetflow.core.database import Database
from sheetflow.core.logging import get_logger
from sheetflow.models.schema import (
    SchemaCacheEntry,
    SchemaColumn,
    SchemaSource,
    db_format_to_columns,
    normalize_workflow_id,
)
from sheetflow.services.execution.models import RetryPolicy
from sheetflow.services.execution.retry import retry_async

from .cache import SchemaCache

logger = get_logger(__name__)

# Store reads during resolution: 3 attempts, 500 ms apart
STORE_READ_POLICY = RetryPolicy(max_attempts=3, initial_delay=0.5, backoff_multiplier=1.0)


class SchemaResolver:
    """Cache-first schema lookup with write-back from the persisted store."""

    def __init__(self, cache: SchemaCache, database: Database,
                 retry_policy: Optional[RetryPolicy] = None):
        self.cache = cache
        self.database = database
        self.retry_policy = retry_policy or STORE_READ_POLICY

    async def get_entry(self, workflow_id: str, node_id: str, sheet_name: Optional[str] = None,
                        force_refresh: bool = False,
                        source: SchemaSource = SchemaSource.DATABASE) -> Optional[SchemaCacheEntry]:
        key = self.cache.make_key(workflow_id, node_id, sheet_name)

        if force_refresh:
            self.cache.invalidate(workflow_id, node_id, sheet_name)
        else:
            entry = self.cache.get_with_fallback(key)
            if entry is not None:
                return entry

        normalized = normalize_workflow_id(workflow_id)
        record = await retry_async(
            lambda: self.database.get_file_schema(normalized, node_id, sheet_name),
            self.retry_policy,
            description="get_file_schema",
        )
        if record is None or not record.columns:
            logger.debug("No schema in persisted store", workflow_id=normalized, node_id=node_id,
                         sheet_name=sheet_name)
            return None

        schema = db_format_to_columns(record.columns, record.data_types)
        return self.cache.write(
            workflow_id, node_id, schema,
            sheet_name=record.sheet_name,
            source=source,
            is_temporary=record.is_temporary,
            file_id=record.file_id,
        )

    async def get_schema(self, workflow_id: str, node_id: str, sheet_name: Optional[str] = None,
                         force_refresh: bool = False) -> Optional[List[SchemaColumn]]:
        entry = await self.get_entry(workflow_id, node_id, sheet_name, force_refresh=force_refresh)
        return entry.schema if entry else None

    async def refresh_schema(self, workflow_id: str, node_id: str,
                             sheet_name: Optional[str] = None) -> Optional[List[SchemaColumn]]:
        """Drop cached state and reload from the store as a manual refresh."""
        logger.info("Forcing schema refresh", workflow_id=workflow_id, node_id=node_id, sheet_name=sheet_name)
        entry = await self.get_entry(workflow_id, node_id, sheet_name, force_refresh=True,
                                     source=SchemaSource.MANUAL_REFRESH)
        return entry.schema if entry else None
