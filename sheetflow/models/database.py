"""SQLModel database models and tables."""

from datetime import datetime, timezone
from typing import Optional, Dict, Any, List
from sqlmodel import SQLModel, Field, Column, DateTime, JSON
from sqlalchemy import UniqueConstraint, func


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Workflow(SQLModel, table=True):
    """Workflow definitions."""

    __tablename__ = "workflows"

    id: str = Field(primary_key=True, max_length=255)
    name: str = Field(max_length=255)
    description: Optional[str] = Field(default=None, max_length=1000)
    is_temporary: bool = Field(default=False)
    last_run_status: Optional[str] = Field(default=None, max_length=50)
    last_run_at: Optional[float] = Field(default=None)
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class WorkflowNode(SQLModel, table=True):
    """Graph node with its type, category and configuration."""

    __tablename__ = "workflow_nodes"
    __table_args__ = (UniqueConstraint("workflow_id", "node_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    node_type: str = Field(max_length=100)
    category: str = Field(default="processing", max_length=50)
    config: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))


class WorkflowEdge(SQLModel, table=True):
    """Directed edge between two nodes of a workflow."""

    __tablename__ = "workflow_edges"
    __table_args__ = (UniqueConstraint("workflow_id", "source_node_id", "target_node_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True, max_length=255)
    source_node_id: str = Field(max_length=255)
    target_node_id: str = Field(max_length=255)
    source_handle: Optional[str] = Field(default=None, max_length=100)
    target_handle: Optional[str] = Field(default=None, max_length=100)


class WorkflowFile(SQLModel, table=True):
    """Association between an input node and an uploaded file."""

    __tablename__ = "workflow_files"
    __table_args__ = (UniqueConstraint("workflow_id", "node_id"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    file_id: Optional[str] = Field(default=None, max_length=255)
    processing_status: str = Field(default="pending", max_length=50)
    # "metadata" is reserved on declarative classes; column keeps the name
    file_metadata: Dict[str, Any] = Field(default_factory=dict, sa_column=Column("metadata", JSON))
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class WorkflowFileSchema(SQLModel, table=True):
    """Per-node, per-sheet column schema record."""

    __tablename__ = "workflow_file_schemas"
    __table_args__ = (UniqueConstraint("workflow_id", "node_id", "sheet_name"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    workflow_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    sheet_name: str = Field(default="default", max_length=255)
    file_id: Optional[str] = Field(default=None, max_length=255)
    columns: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    data_types: Dict[str, str] = Field(default_factory=dict, sa_column=Column(JSON))
    sample_data: Optional[List[Dict[str, Any]]] = Field(default=None, sa_column=Column(JSON))
    total_rows: Optional[int] = Field(default=None)
    has_headers: bool = Field(default=True)
    is_temporary: bool = Field(default=False)
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
    updated_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), onupdate=func.now())
    )


class WorkflowExecution(SQLModel, table=True):
    """One run of a workflow."""

    __tablename__ = "workflow_executions"

    id: str = Field(primary_key=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    status: str = Field(default="running", max_length=50)
    node_states: Dict[str, Any] = Field(default_factory=dict, sa_column=Column(JSON))
    inputs: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    outputs: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=2000)
    started_at: float = Field(default=0.0)
    completed_at: Optional[float] = Field(default=None)


class WorkflowStep(SQLModel, table=True):
    """Unit of work: one node within one execution."""

    __tablename__ = "workflow_steps"

    id: str = Field(primary_key=True, max_length=255)
    execution_id: str = Field(index=True, max_length=255)
    workflow_id: str = Field(index=True, max_length=255)
    node_id: str = Field(max_length=255)
    node_type: str = Field(max_length=100)
    node_category: str = Field(default="processing", max_length=50)
    status: str = Field(default="pending", max_length=50)
    dependencies: List[str] = Field(default_factory=list, sa_column=Column(JSON))
    input_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    output_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error_message: Optional[str] = Field(default=None, max_length=2000)
    error_kind: Optional[str] = Field(default=None, max_length=50)
    step_order: int = Field(default=0)
    attempts: int = Field(default=0)
    started_at: Optional[float] = Field(default=None)
    completed_at: Optional[float] = Field(default=None)


class WorkflowStepLog(SQLModel, table=True):
    """Audit row written for every step attempt."""

    __tablename__ = "workflow_step_logs"

    id: Optional[int] = Field(default=None, primary_key=True)
    execution_id: str = Field(index=True, max_length=255)
    step_id: str = Field(index=True, max_length=255)
    workflow_id: str = Field(max_length=255)
    node_id: str = Field(max_length=255)
    node_type: str = Field(max_length=100)
    status: str = Field(max_length=50)
    input_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    output_data: Optional[Dict[str, Any]] = Field(default=None, sa_column=Column(JSON))
    error: Optional[str] = Field(default=None, max_length=2000)
    execution_time_ms: float = Field(default=0.0)
    created_at: datetime = Field(
        default_factory=_utcnow,
        sa_column=Column(DateTime(timezone=True), server_default=func.now())
    )
