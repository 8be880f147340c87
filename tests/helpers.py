"""Test helpers shared across modules."""

import asyncio
from typing import Any, Dict, List, Optional

from sheetflow.core.database import Database
from sheetflow.models.execution import FileProcessingStatus


class FakeClock:
    """Manually advanced clock for TTL and dedup windows."""

    def __init__(self, start: float = 1_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


async def no_sleep(_delay: float) -> None:
    await asyncio.sleep(0)


SALES_ROWS: List[Dict[str, Any]] = [
    {"region": "north", "product": "A", "amount": 120},
    {"region": "south", "product": "B", "amount": 80},
    {"region": "north", "product": "B", "amount": 45},
    {"region": "east", "product": "A", "amount": 200},
]


async def attach_file(database: Database, workflow_id: str, node_id: str,
                      rows: List[Dict[str, Any]], sheet_name: str = "Sheet1",
                      file_id: str = "file-1", sheets: Optional[List[str]] = None,
                      selected: bool = True,
                      status: FileProcessingStatus = FileProcessingStatus.COMPLETED) -> None:
    """Register a processed file with one sheet of rows on an input node."""
    columns = list(rows[0].keys()) if rows else []
    data_types = {name: "number" if isinstance(rows[0][name], (int, float)) else "string" for name in columns}
    metadata: Dict[str, Any] = {"sheets": sheets or [sheet_name]}
    if selected:
        metadata["selected_sheet"] = sheet_name
    await database.upsert_workflow_file(
        workflow_id, node_id,
        file_id=file_id,
        processing_status=status.value,
        metadata=metadata,
    )
    await database.upsert_file_schema(
        workflow_id, node_id, sheet_name, columns, data_types,
        file_id=file_id, sample_data=rows, total_rows=len(rows),
    )
