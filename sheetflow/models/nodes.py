"""Pydantic models for node parameter validation with discriminated unions.

Node configs arrive with the editor's camelCase keys; every model accepts
both the alias and the field name. Handlers receive the validated
parameters dumped back to snake_case with defaults filled in.
"""

from typing import Any, Dict, List, Literal, Optional, Union, Annotated
from pydantic import BaseModel, Field, TypeAdapter, field_validator

from sheetflow.constants import ALL_NODE_TYPES
from sheetflow.services.execution.conditions import is_known_operator


# =============================================================================
# BASE MODELS
# =============================================================================

class BaseNodeParams(BaseModel):
    """Base class for all node parameters."""
    model_config = {"extra": "allow", "populate_by_name": True}


class Condition(BaseModel):
    """Single {field, operator, value} comparison."""
    model_config = {"extra": "ignore"}

    field: str = Field(min_length=1)
    operator: str = "eq"
    value: Any = None

    @field_validator("operator")
    @classmethod
    def validate_operator(cls, v):
        if not is_known_operator(v):
            raise ValueError(f"Unknown operator: {v}")
        return v


# =============================================================================
# INPUT NODE MODELS
# =============================================================================

class FileInputParams(BaseNodeParams):
    """Parameters for file input nodes (Excel/CSV)."""
    type: Literal["fileInput", "excelInput", "csvInput"]
    selected_sheet: Optional[str] = Field(default=None, alias="selectedSheet")
    max_rows: Optional[int] = Field(default=None, alias="maxRows", ge=1)


# =============================================================================
# PROCESSING NODE MODELS
# =============================================================================

class FilterParams(BaseNodeParams):
    """Parameters for filter node."""
    type: Literal["filter"]
    conditions: List[Condition] = Field(default_factory=list)
    logic: Literal["and", "or"] = "and"


class SortKey(BaseModel):
    field: str = Field(min_length=1)
    direction: Literal["asc", "desc"] = "asc"


class SortParams(BaseNodeParams):
    """Parameters for sort node."""
    type: Literal["sort"]
    sort_by: List[SortKey] = Field(alias="sortBy", min_length=1)


class FormulaParams(BaseNodeParams):
    """Parameters for formula node: output column -> arithmetic expression."""
    type: Literal["formula"]
    formulas: Dict[str, str] = Field(min_length=1)
    keep_existing: bool = Field(default=True, alias="keepExisting")


class Aggregation(BaseModel):
    model_config = {"populate_by_name": True}

    field: Optional[str] = None
    function: Literal["sum", "avg", "min", "max", "count"]
    output_field: Optional[str] = Field(default=None, alias="outputField")


class AggregateParams(BaseNodeParams):
    """Parameters for aggregate node."""
    type: Literal["aggregate"]
    group_by: List[str] = Field(default_factory=list, alias="groupBy")
    aggregations: List[Aggregation] = Field(min_length=1)


class JoinParams(BaseNodeParams):
    """Parameters for join/merge node."""
    type: Literal["join", "merge"]
    left_field: str = Field(alias="leftField", min_length=1)
    right_field: str = Field(alias="rightField", min_length=1)
    join_type: Literal["inner", "left", "right", "full"] = Field(default="inner", alias="joinType")
    include_fields: List[str] = Field(default_factory=list, alias="includeFields")


class TransformOperation(BaseModel):
    type: Literal["map", "filter", "sort", "group", "aggregate", "join"]
    config: Dict[str, Any] = Field(default_factory=dict)


class DataTransformParams(BaseNodeParams):
    """Parameters for data transform pipeline node."""
    type: Literal["dataTransform"]
    operations: List[TransformOperation] = Field(min_length=1)


# =============================================================================
# AI NODE MODELS
# =============================================================================

class AnalysisOptions(BaseModel):
    model_config = {"populate_by_name": True}

    detect_outliers: bool = Field(default=False, alias="detectOutliers")
    find_patterns: bool = Field(default=False, alias="findPatterns")


class AIQueryParams(BaseNodeParams):
    """Parameters for AI query / analysis nodes."""
    type: Literal["aiQuery", "aiAnalysis"]
    prompt: str = ""
    analysis_type: Literal["general", "trends", "outliers", "forecast"] = Field(default="general", alias="analysisType")
    analysis_options: AnalysisOptions = Field(default_factory=AnalysisOptions, alias="analysisOptions")
    use_assistant: bool = Field(default=False, alias="useAssistant")


# =============================================================================
# INTEGRATION / OUTPUT NODE MODELS
# =============================================================================

class APIIntegrationParams(BaseNodeParams):
    """Parameters for API integration node."""
    type: Literal["apiIntegration", "apiCall"]
    endpoint: str = Field(min_length=1)
    method: Literal["GET", "POST", "PUT", "DELETE", "PATCH"] = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[Any] = None
    timeout: float = Field(default=30, ge=1, le=300)


class SheetSpec(BaseModel):
    model_config = {"populate_by_name": True}

    name: str = "Sheet1"
    include_headers: bool = Field(default=True, alias="includeHeaders")
    filter: Dict[str, Any] = Field(default_factory=dict)


class SpreadsheetGeneratorParams(BaseNodeParams):
    """Parameters for spreadsheet generator node."""
    type: Literal["spreadsheetGenerator"]
    filename: str = "generated-spreadsheet.csv"
    format: Literal["csv", "json"] = "csv"
    sheets: List[SheetSpec] = Field(default_factory=lambda: [SheetSpec()])


# =============================================================================
# CONTROL NODE MODELS
# =============================================================================

class StartNodeParams(BaseNodeParams):
    """Parameters for start node."""
    type: Literal["start"]
    initial_data: Union[Dict[str, Any], str] = Field(default_factory=dict, alias="initialData")


class ConditionParams(BaseNodeParams):
    """Parameters for condition node."""
    type: Literal["condition", "conditionalBranch"]
    conditions: List[Condition] = Field(default_factory=list)
    logic: Literal["and", "or"] = "and"


# =============================================================================
# DISCRIMINATED UNION
# =============================================================================

KnownNodeParams = Annotated[
    Union[
        FileInputParams,
        FilterParams,
        SortParams,
        FormulaParams,
        AggregateParams,
        JoinParams,
        DataTransformParams,
        AIQueryParams,
        APIIntegrationParams,
        SpreadsheetGeneratorParams,
        StartNodeParams,
        ConditionParams,
    ],
    Field(discriminator="type")
]

_known_node_adapter = TypeAdapter(KnownNodeParams)


def validate_node_params(node_type: str, params: Optional[Dict[str, Any]]) -> BaseNodeParams:
    """Validate node parameters using the model for the node type.

    Unknown node types fall back to BaseNodeParams so that handlers
    registered at runtime still receive their parameters.

    Raises:
        ValidationError: If validation fails for a known node type
    """
    params_with_type = {**(params or {}), "type": node_type}
    if node_type in ALL_NODE_TYPES:
        return _known_node_adapter.validate_python(params_with_type)
    return BaseNodeParams(**params_with_type)
