"""File input handler.

The scheduler resolves the node's schema and sample rows before the
handler runs; the handler shapes them into the node's output.
"""

from typing import Any, Dict

from sheetflow.core.exceptions import UpstreamNotReadyError
from sheetflow.core.logging import get_logger
from sheetflow.services.execution.models import StepContext

logger = get_logger(__name__)


async def handle_file_input(node_id: str, node_type: str, parameters: Dict[str, Any],
                            context: StepContext) -> Dict[str, Any]:
    """Expose the selected sheet's schema and rows."""
    data = context.input_data
    schema = data.get("schema")
    if not schema:
        raise UpstreamNotReadyError(node_id)

    rows = data.get("data") or []
    max_rows = parameters.get("max_rows")
    if max_rows:
        rows = rows[:max_rows]

    columns = [col["name"] for col in schema]
    logger.info("File input resolved", node_id=node_id, sheet=data.get("sheet"),
                columns=len(columns), rows=len(rows))

    return {
        "success": True,
        "node_id": node_id,
        "node_type": node_type,
        "result": {
            "data": rows,
            "schema": schema,
            "headers": columns,
            "sheet": data.get("sheet"),
            "file_id": data.get("file_id") or context.file_id,
            "total_rows": data.get("total_rows") or len(rows),
        },
    }
