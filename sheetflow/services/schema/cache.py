"""Process-local schema cache with source-tiered TTLs.

Entries are keyed by (normalized workflow id, node id, sheet name). Reads
evict expired entries; writes under an explicit sheet also seed the
"default" sheet when it holds nothing live, so consumers that do not know
the real sheet name still find a schema.
"""

import time
from dataclasses import replace
from typing import Callable, Dict, List, Optional, Tuple

from sheetflow.constants import DEFAULT_SHEET_NAME
from sheetflow.core.config import Settings
from sheetflow.core.logging import get_logger, log_cache_operation
from sheetflow.models.schema import (
    LIVE_SOURCES,
    TRUSTED_SOURCES,
    CacheKey,
    SchemaCacheEntry,
    SchemaColumn,
    SchemaLike,
    SchemaSource,
    coerce_schema,
    is_temporary_workflow_id,
    make_cache_key,
    normalize_workflow_id,
)

logger = get_logger(__name__)


class SchemaCache:
    """In-memory schema store. Never raises on a miss."""

    def __init__(self, settings: Optional[Settings] = None, clock: Callable[[], float] = time.time):
        settings = settings or Settings()
        self._clock = clock
        self._trusted_ttl = settings.schema_ttl_trusted
        self._live_ttl = settings.schema_ttl_live
        self._propagation_ttl = settings.schema_ttl_propagation
        self._temporary_ttl = settings.schema_ttl_temporary
        # key -> (entry, ttl seconds fixed at write time)
        self._entries: Dict[CacheKey, Tuple[SchemaCacheEntry, float]] = {}

    # =========================================================================
    # TTL
    # =========================================================================

    def tier_ttl(self, source: SchemaSource) -> float:
        if source in LIVE_SOURCES:
            return self._live_ttl
        if source in TRUSTED_SOURCES:
            return self._trusted_ttl
        return self._propagation_ttl

    def effective_ttl(self, entry: SchemaCacheEntry, ttl_override: Optional[float] = None) -> float:
        """Tier TTL (or override), capped for temporary entries."""
        ttl = ttl_override if ttl_override is not None else self.tier_ttl(entry.source)
        if entry.is_temporary:
            ttl = min(ttl, self._temporary_ttl)
        return ttl

    def _is_live(self, entry: SchemaCacheEntry, ttl: float) -> bool:
        return self._clock() - entry.timestamp <= ttl

    # =========================================================================
    # Core operations
    # =========================================================================

    def get(self, key: CacheKey) -> Optional[SchemaCacheEntry]:
        """Entry for key, or None when absent or expired. Expired entries are evicted."""
        stored = self._entries.get(key)
        if stored is None:
            log_cache_operation(logger, "get", str(key), hit=False)
            return None

        entry, ttl = stored
        if not self._is_live(entry, ttl):
            del self._entries[key]
            log_cache_operation(logger, "get", str(key), hit=False, reason="expired")
            return None

        log_cache_operation(logger, "get", str(key), hit=True, source=entry.source.value)
        return entry

    def get_with_fallback(self, key: CacheKey) -> Optional[SchemaCacheEntry]:
        """Explicit-sheet miss is retried under the default sheet."""
        entry = self.get(key)
        if entry is None and not key.is_default_sheet:
            entry = self.get(key.with_sheet(DEFAULT_SHEET_NAME))
        return entry

    def set(self, key: CacheKey, entry: SchemaCacheEntry, ttl_override: Optional[float] = None) -> SchemaCacheEntry:
        """Store an entry stamped with the current time.

        A write under an explicit sheet also writes a shadow copy under the
        default sheet unless a live default entry already exists. The shadow
        keeps the real sheet name so readers can discover it.
        """
        now = self._clock()
        sheet_name = entry.sheet_name if key.is_default_sheet else key.sheet_name
        stored = replace(entry, timestamp=now, sheet_name=sheet_name)
        ttl = self.effective_ttl(stored, ttl_override)
        self._entries[key] = (stored, ttl)
        log_cache_operation(logger, "set", str(key), source=stored.source.value, ttl=ttl)

        if not key.is_default_sheet:
            default_key = key.with_sheet(DEFAULT_SHEET_NAME)
            if self.get(default_key) is None:
                self._entries[default_key] = (stored, ttl)
                log_cache_operation(logger, "set_shadow", str(default_key), sheet_name=key.sheet_name)

        return stored

    def delete(self, key: CacheKey) -> bool:
        removed = self._entries.pop(key, None) is not None
        log_cache_operation(logger, "delete", str(key), removed=removed)
        return removed

    def delete_by_prefix(self, workflow_id: str, node_id: Optional[str] = None) -> int:
        """Drop every entry of a workflow, or of one node of it."""
        normalized = normalize_workflow_id(workflow_id)
        doomed = [key for key in self._entries if key.matches(normalized, node_id)]
        for key in doomed:
            del self._entries[key]
        logger.debug("Cache prefix invalidated", workflow_id=normalized, node_id=node_id, removed=len(doomed))
        return len(doomed)

    def clear_all(self) -> None:
        count = len(self._entries)
        self._entries.clear()
        logger.info("Schema cache cleared", removed=count)

    def __len__(self) -> int:
        return len(self._entries)

    # =========================================================================
    # Convenience API
    # =========================================================================

    def make_key(self, workflow_id: str, node_id: str, sheet_name: Optional[str] = None) -> CacheKey:
        return make_cache_key(workflow_id, node_id, sheet_name)

    def write(self, workflow_id: str, node_id: str, schema: SchemaLike, *,
              sheet_name: Optional[str] = None,
              source: SchemaSource = SchemaSource.DATABASE,
              version: Optional[int] = None,
              is_temporary: bool = False,
              file_id: Optional[str] = None,
              ttl_override: Optional[float] = None) -> SchemaCacheEntry:
        """Build an entry from raw columns and store it."""
        key = self.make_key(workflow_id, node_id, sheet_name)
        entry = SchemaCacheEntry(
            schema=coerce_schema(schema),
            sheet_name=key.sheet_name,
            source=source,
            version=version,
            is_temporary=is_temporary or is_temporary_workflow_id(workflow_id),
            file_id=file_id,
        )
        return self.set(key, entry, ttl_override=ttl_override)

    def read(self, workflow_id: str, node_id: str, sheet_name: Optional[str] = None,
             max_age: Optional[float] = None) -> Optional[SchemaCacheEntry]:
        """Fallback read, optionally rejecting entries older than max_age seconds."""
        entry = self.get_with_fallback(self.make_key(workflow_id, node_id, sheet_name))
        if entry is not None and max_age is not None and self._clock() - entry.timestamp > max_age:
            return None
        return entry

    def invalidate(self, workflow_id: str, node_id: str, sheet_name: Optional[str] = None) -> None:
        """Drop a sheet entry, plus the default entry when it shadows that sheet.

        Without a sheet name the default entry itself is dropped.
        """
        key = self.make_key(workflow_id, node_id, sheet_name)
        self.delete(key)
        if key.is_default_sheet:
            return
        default_key = key.with_sheet(DEFAULT_SHEET_NAME)
        shadow = self._entries.get(default_key)
        if shadow is not None and shadow[0].sheet_name == key.sheet_name:
            self.delete(default_key)

    def entries_for(self, workflow_id: str, node_id: Optional[str] = None) -> Dict[CacheKey, SchemaCacheEntry]:
        """Live entries of a workflow (or one node of it)."""
        normalized = normalize_workflow_id(workflow_id)
        result = {}
        for key in [k for k in self._entries if k.matches(normalized, node_id)]:
            entry = self.get(key)
            if entry is not None:
                result[key] = entry
        return result

    def copy(self, workflow_id: str, source_node_id: str, target_node_id: str,
             sheet_name: Optional[str] = None) -> bool:
        """Copy a node's schema to another node as a propagation entry.

        Source lookup order: explicit sheet, default sheet, any sheet of the
        source node. The target receives the entry under the resolved sheet
        and under the default sheet.
        """
        source_key = self.make_key(workflow_id, source_node_id, sheet_name)
        entry = self.get_with_fallback(source_key)
        if entry is None:
            candidates = self.entries_for(workflow_id, source_node_id)
            entry = next(iter(candidates.values()), None)
        if entry is None:
            logger.debug("No source schema to copy", workflow_id=source_key.workflow_id,
                         source_node_id=source_node_id, sheet_name=sheet_name)
            return False

        target_sheet = sheet_name or entry.sheet_name or DEFAULT_SHEET_NAME
        copied = replace(entry, source=SchemaSource.PROPAGATION, sheet_name=target_sheet)
        target_key = self.make_key(workflow_id, target_node_id, target_sheet)
        self.set(target_key, copied)
        if not target_key.is_default_sheet:
            self.set(target_key.with_sheet(DEFAULT_SHEET_NAME), copied)
        return True

    def get_workflow_schemas(self, workflow_id: str) -> Dict[str, List[SchemaColumn]]:
        """node id -> schema for every live entry of a workflow (default sheet preferred)."""
        schemas: Dict[str, List[SchemaColumn]] = {}
        for key, entry in self.entries_for(workflow_id).items():
            if key.is_default_sheet or key.node_id not in schemas:
                schemas[key.node_id] = entry.schema
        return schemas
