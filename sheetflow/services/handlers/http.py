"""API integration handler."""

import time
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from sheetflow.core.exceptions import ExternalServiceError
from sheetflow.core.logging import get_logger
from sheetflow.services.execution.models import StepContext

logger = get_logger(__name__)


async def handle_api_integration(node_id: str, node_type: str, parameters: Dict[str, Any],
                                 context: StepContext,
                                 transport: Optional[httpx.AsyncBaseTransport] = None) -> Dict[str, Any]:
    """Call a remote HTTP endpoint with the configured method, headers and body.

    Without an explicit body, POST/PUT/PATCH send the upstream rows as JSON.
    Connection errors and 5xx responses raise ExternalServiceError (retried
    by the scheduler); 4xx responses fail the step immediately.
    """
    start_time = time.time()
    method = parameters.get("method", "GET")
    url = parameters["endpoint"]
    body = parameters.get("body")
    if body is None and method in ("POST", "PUT", "PATCH"):
        body = context.input_data.get("data")

    logger.info("[API Integration] Executing", node_id=node_id, method=method, url=url)

    request_kwargs: Dict[str, Any] = {"headers": parameters.get("headers") or {}}
    if body is not None and method in ("POST", "PUT", "PATCH"):
        if isinstance(body, (dict, list)):
            request_kwargs["json"] = body
        else:
            request_kwargs["content"] = str(body)

    try:
        async with httpx.AsyncClient(timeout=float(parameters.get("timeout", 30)), transport=transport) as client:
            response = await client.request(method, url, **request_kwargs)
    except httpx.TimeoutException as e:
        raise ExternalServiceError(f"Request to {url} timed out after {parameters.get('timeout', 30)} seconds") from e
    except httpx.HTTPError as e:
        raise ExternalServiceError(f"Request to {url} failed: {e}") from e

    if response.status_code >= 500:
        raise ExternalServiceError(f"Request to {url} returned {response.status_code}")

    try:
        response_data = response.json()
    except ValueError:
        response_data = response.text

    result = {
        "status": response.status_code,
        "data": response_data,
        "headers": dict(response.headers),
        "url": str(response.url),
        "method": method,
    }

    if response.status_code >= 400:
        return {
            "success": False,
            "node_id": node_id,
            "node_type": node_type,
            "error": f"Request to {url} returned {response.status_code}",
            "result": result,
            "execution_time": time.time() - start_time,
        }

    return {
        "success": True,
        "node_id": node_id,
        "node_type": node_type,
        "result": result,
        "execution_time": time.time() - start_time,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
