"""Workflow control handlers: start and condition."""

import time
from datetime import datetime, timezone
from typing import Any, Dict

import orjson

from sheetflow.core.logging import get_logger
from sheetflow.services.execution.conditions import evaluate_conditions
from sheetflow.services.execution.models import StepContext

logger = get_logger(__name__)


async def handle_start(node_id: str, node_type: str, parameters: Dict[str, Any],
                       context: StepContext) -> Dict[str, Any]:
    """Emit the configured initial data, merged over the execution inputs."""
    initial_data = parameters.get("initial_data") or {}
    if isinstance(initial_data, str):
        try:
            initial_data = orjson.loads(initial_data) if initial_data.strip() else {}
        except orjson.JSONDecodeError:
            logger.warning("Start node initialData is not valid JSON", node_id=node_id)
            initial_data = {"value": initial_data}

    inputs = context.input_data.get("inputs") or {}
    if isinstance(initial_data, dict):
        data = {**inputs, **initial_data}
    else:
        data = initial_data

    return {
        "success": True,
        "node_id": node_id,
        "node_type": node_type,
        "result": data,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


async def handle_condition(node_id: str, node_type: str, parameters: Dict[str, Any],
                           context: StepContext) -> Dict[str, Any]:
    """Evaluate conditions against the first upstream row (or the whole upstream output).

    The node always succeeds; "matched" tells downstream consumers which
    branch the data took.
    """
    start_time = time.time()
    upstream = context.input_data.get("data")
    subject = upstream[0] if isinstance(upstream, list) and upstream else upstream
    if subject is None:
        subject = {}

    conditions = parameters.get("conditions") or []
    matched = evaluate_conditions(conditions, subject, parameters.get("logic", "and")) if conditions else True

    logger.debug("Condition evaluated", node_id=node_id, matched=matched, conditions=len(conditions))
    return {
        "success": True,
        "node_id": node_id,
        "node_type": node_type,
        "result": {
            "matched": matched,
            "branch": "true" if matched else "false",
            "data": upstream,
        },
        "execution_time": time.time() - start_time,
    }
