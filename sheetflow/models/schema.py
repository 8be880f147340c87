"""Schema cache models and helpers.

All models are JSON-serializable dataclasses so they can cross the pub/sub
boundary and be stored alongside step output.
"""

import hashlib
import json
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

from sheetflow.constants import CACHE_KEY_PREFIX, DEFAULT_SHEET_NAME, TEMP_WORKFLOW_PREFIX
from sheetflow.core.exceptions import InvalidCacheKeyError


class ColumnType(str, Enum):
    STRING = "string"
    TEXT = "text"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ARRAY = "array"
    OBJECT = "object"
    UNKNOWN = "unknown"

    @classmethod
    def parse(cls, value: Any) -> "ColumnType":
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.UNKNOWN


class SchemaSource(str, Enum):
    """Where a cache entry came from. Selects the default TTL tier."""
    MANUAL = "manual"
    DATABASE = "database"
    PROPAGATION = "propagation"
    SUBSCRIPTION = "subscription"
    POLLING = "polling"
    REFRESH = "refresh"
    MANUAL_REFRESH = "manual_refresh"


TRUSTED_SOURCES = frozenset([
    SchemaSource.DATABASE,
    SchemaSource.MANUAL,
    SchemaSource.REFRESH,
    SchemaSource.MANUAL_REFRESH,
])

LIVE_SOURCES = frozenset([
    SchemaSource.SUBSCRIPTION,
    SchemaSource.POLLING,
])


@dataclass(frozen=True)
class SchemaColumn:
    """A named, typed column. Order matters for display, not for equality of schemas."""
    name: str
    type: ColumnType = ColumnType.UNKNOWN

    def to_dict(self) -> Dict[str, str]:
        return {"name": self.name, "type": self.type.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaColumn":
        return cls(name=str(data["name"]), type=ColumnType.parse(data.get("type", "unknown")))


SchemaLike = Iterable[Union[SchemaColumn, Dict[str, Any], str]]


def coerce_schema(schema: Optional[SchemaLike]) -> List[SchemaColumn]:
    """Accept columns as SchemaColumn, {"name", "type"} dicts or bare names."""
    if not schema:
        return []
    columns = []
    for col in schema:
        if isinstance(col, SchemaColumn):
            columns.append(col)
        elif isinstance(col, dict):
            columns.append(SchemaColumn.from_dict(col))
        else:
            columns.append(SchemaColumn(name=str(col)))
    return columns


@dataclass(frozen=True)
class CacheKey:
    """Composite cache key: (normalized workflow id, node id, sheet name)."""
    workflow_id: str
    node_id: str
    sheet_name: str = DEFAULT_SHEET_NAME

    @property
    def is_default_sheet(self) -> bool:
        return self.sheet_name == DEFAULT_SHEET_NAME

    def with_sheet(self, sheet_name: Optional[str]) -> "CacheKey":
        return replace(self, sheet_name=sheet_name or DEFAULT_SHEET_NAME)

    def matches(self, workflow_id: str, node_id: Optional[str] = None) -> bool:
        if self.workflow_id != workflow_id:
            return False
        return node_id is None or self.node_id == node_id

    def __str__(self) -> str:
        return f"{CACHE_KEY_PREFIX}:{self.workflow_id}:{self.node_id}:{self.sheet_name}"


@dataclass
class SchemaCacheEntry:
    """A cached schema plus the metadata that decides its lifetime."""
    schema: List[SchemaColumn]
    timestamp: float = 0.0
    sheet_name: str = DEFAULT_SHEET_NAME
    source: SchemaSource = SchemaSource.DATABASE
    version: Optional[int] = None
    is_temporary: bool = False
    file_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "schema": [col.to_dict() for col in self.schema],
            "timestamp": self.timestamp,
            "sheet_name": self.sheet_name,
            "source": self.source.value,
            "version": self.version,
            "is_temporary": self.is_temporary,
            "file_id": self.file_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SchemaCacheEntry":
        return cls(
            schema=coerce_schema(data.get("schema")),
            timestamp=data.get("timestamp", 0.0),
            sheet_name=data.get("sheet_name") or DEFAULT_SHEET_NAME,
            source=SchemaSource(data.get("source", SchemaSource.DATABASE.value)),
            version=data.get("version"),
            is_temporary=data.get("is_temporary", False),
            file_id=data.get("file_id"),
        )


@dataclass
class PropagationRecord:
    """Dedup/debounce marker for one (workflow, source, target, sheet) edge."""
    source_node_id: str
    target_node_id: str
    sheet_name: Optional[str]
    timestamp: float
    data_hash: Optional[str] = None
    version: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source_node_id": self.source_node_id,
            "target_node_id": self.target_node_id,
            "sheet_name": self.sheet_name,
            "timestamp": self.timestamp,
            "data_hash": self.data_hash,
            "version": self.version,
        }


@dataclass
class PropagationState:
    """Lock/backoff bookkeeping for propagation scheduling."""
    in_progress: bool = False
    last_attempt: float = 0.0
    last_success: Optional[float] = None
    last_error: Optional[str] = None
    retry_count: int = 0
    next_retry_at: Optional[float] = None
    history: List[str] = field(default_factory=list)


# =============================================================================
# IDENTIFIERS
# =============================================================================

def normalize_workflow_id(workflow_id: Optional[str]) -> str:
    """Strip the temporary prefix so temporary and persisted ids share state."""
    if not workflow_id:
        return ""
    if workflow_id.startswith(TEMP_WORKFLOW_PREFIX):
        return workflow_id[len(TEMP_WORKFLOW_PREFIX):]
    return workflow_id


def is_temporary_workflow_id(workflow_id: Optional[str]) -> bool:
    return bool(workflow_id) and workflow_id.startswith(TEMP_WORKFLOW_PREFIX)


def make_cache_key(workflow_id: str, node_id: str, sheet_name: Optional[str] = None) -> CacheKey:
    """Build a normalized cache key.

    Raises:
        InvalidCacheKeyError: If the workflow or node id is empty.
    """
    normalized = normalize_workflow_id(workflow_id)
    if not normalized:
        raise InvalidCacheKeyError("Cache key requires a workflow id")
    if not node_id:
        raise InvalidCacheKeyError("Cache key requires a node id")
    return CacheKey(normalized, node_id, sheet_name or DEFAULT_SHEET_NAME)


# =============================================================================
# SCHEMA HELPERS
# =============================================================================

def schema_hash(schema: Optional[SchemaLike], include_types: bool = False) -> Optional[str]:
    """Order-independent fingerprint of a schema.

    Only column names are hashed unless include_types is set, so a change
    that only alters a column's type produces the same hash.
    """
    columns = coerce_schema(schema)
    if not columns:
        return None
    if include_types:
        parts = sorted(f"{col.name}:{col.type.value}" for col in columns)
    else:
        parts = sorted(col.name for col in columns)
    canonical = json.dumps(parts, separators=(",", ":"))
    return hashlib.sha256(canonical.encode()).hexdigest()[:16]


def columns_to_db_format(schema: SchemaLike) -> Tuple[List[str], Dict[str, str]]:
    """Split columns into the persisted (columns, data_types) pair."""
    columns = coerce_schema(schema)
    return [col.name for col in columns], {col.name: col.type.value for col in columns}


def db_format_to_columns(columns: Optional[List[str]], data_types: Optional[Dict[str, str]]) -> List[SchemaColumn]:
    data_types = data_types or {}
    return [SchemaColumn(name, ColumnType.parse(data_types.get(name, "unknown"))) for name in columns or []]


def same_columns(left: Optional[SchemaLike], right: Optional[SchemaLike]) -> bool:
    """Compare two schemas by sorted column names."""
    return sorted(c.name for c in coerce_schema(left)) == sorted(c.name for c in coerce_schema(right))


def _value_type(value: Any) -> Optional[ColumnType]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return ColumnType.BOOLEAN
    if isinstance(value, (int, float)):
        return ColumnType.NUMBER
    if isinstance(value, (datetime, date)):
        return ColumnType.DATE
    if isinstance(value, (list, tuple)):
        return ColumnType.ARRAY
    if isinstance(value, dict):
        return ColumnType.OBJECT
    if isinstance(value, str):
        text = value.strip()
        if text.lower() in ("true", "false"):
            return ColumnType.BOOLEAN
        try:
            float(text)
            return ColumnType.NUMBER
        except ValueError:
            pass
        try:
            datetime.fromisoformat(text)
            return ColumnType.DATE
        except ValueError:
            pass
        return ColumnType.TEXT if len(text) > 255 else ColumnType.STRING
    return ColumnType.UNKNOWN


def infer_schema(rows: Optional[List[Dict[str, Any]]], sample_size: int = 100) -> List[SchemaColumn]:
    """Infer column types from row dicts.

    Columns keep first-seen order. A column whose sampled values disagree on
    type falls back to string.
    """
    if not rows:
        return []
    order: List[str] = []
    seen: Dict[str, set] = {}
    for row in rows[:sample_size]:
        if not isinstance(row, dict):
            continue
        for name, value in row.items():
            if name not in seen:
                order.append(name)
                seen[name] = set()
            value_type = _value_type(value)
            if value_type is not None:
                seen[name].add(value_type)

    columns = []
    for name in order:
        types = seen[name]
        if not types:
            col_type = ColumnType.UNKNOWN
        elif len(types) == 1:
            col_type = next(iter(types))
        elif types <= {ColumnType.STRING, ColumnType.TEXT}:
            col_type = ColumnType.TEXT
        else:
            col_type = ColumnType.STRING
        columns.append(SchemaColumn(name, col_type))
    return columns
