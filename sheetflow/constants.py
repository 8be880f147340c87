"""Centralized constants for node types, categories and schema identifiers.

Single source of truth for node type groups used by the scheduler, the
handler registry and parameter validation.
"""

from typing import FrozenSet

# =============================================================================
# IDENTIFIERS
# =============================================================================

TEMP_WORKFLOW_PREFIX = "temp-"
DEFAULT_SHEET_NAME = "default"
CACHE_KEY_PREFIX = "schema"

# =============================================================================
# NODE CATEGORIES
# =============================================================================

NODE_CATEGORIES: FrozenSet[str] = frozenset([
    'input',
    'processing',
    'output',
    'ai',
    'control',
    'integration',
])

# =============================================================================
# NODE TYPES
# =============================================================================

# Nodes whose data comes from an uploaded file (read via schema cache + store)
FILE_INPUT_NODE_TYPES: FrozenSet[str] = frozenset([
    'fileInput',
    'excelInput',
    'csvInput',
])

PROCESSING_NODE_TYPES: FrozenSet[str] = frozenset([
    'dataTransform',
    'filter',
    'sort',
    'formula',
    'aggregate',
    'join',
    'merge',
])

AI_NODE_TYPES: FrozenSet[str] = frozenset([
    'aiQuery',
    'aiAnalysis',
])

INTEGRATION_NODE_TYPES: FrozenSet[str] = frozenset([
    'apiIntegration',
    'apiCall',
])

OUTPUT_NODE_TYPES: FrozenSet[str] = frozenset([
    'spreadsheetGenerator',
])

CONTROL_NODE_TYPES: FrozenSet[str] = frozenset([
    'start',
    'condition',
    'conditionalBranch',
])

ALL_NODE_TYPES: FrozenSet[str] = (
    FILE_INPUT_NODE_TYPES |
    PROCESSING_NODE_TYPES |
    AI_NODE_TYPES |
    INTEGRATION_NODE_TYPES |
    OUTPUT_NODE_TYPES |
    CONTROL_NODE_TYPES
)

# =============================================================================
# HELPERS
# =============================================================================


def default_category(node_type: str) -> str:
    """Derive a node category from its type when the graph does not store one."""
    if node_type in FILE_INPUT_NODE_TYPES:
        return 'input'
    if node_type in AI_NODE_TYPES:
        return 'ai'
    if node_type in INTEGRATION_NODE_TYPES:
        return 'integration'
    if node_type in OUTPUT_NODE_TYPES:
        return 'output'
    if node_type in CONTROL_NODE_TYPES:
        return 'control'
    return 'processing'


def is_file_input(node_type: str) -> bool:
    return node_type in FILE_INPUT_NODE_TYPES
