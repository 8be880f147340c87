"""Node Executor - Single node execution with handler dispatch.

Uses a registry pattern for clean handler dispatch without if-else chains.
Handlers never raise past execute(); every outcome becomes an ExecutionResult.
"""

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from functools import partial
from typing import Any, Awaitable, Callable, Dict, List, Optional, TYPE_CHECKING

from pydantic import ValidationError

from sheetflow.constants import (
    AI_NODE_TYPES,
    FILE_INPUT_NODE_TYPES,
    INTEGRATION_NODE_TYPES,
)
from sheetflow.core.exceptions import (
    ExternalServiceError,
    NodeConfigurationError,
    SheetflowError,
    StepTimeoutError,
    UnknownNodeTypeError,
)
from sheetflow.core.logging import get_logger
from sheetflow.models.execution import ErrorKind
from sheetflow.models.nodes import validate_node_params
from sheetflow.services.execution.models import StepContext
from sheetflow.services.handlers import (
    handle_ai_query,
    handle_aggregate,
    handle_api_integration,
    handle_condition,
    handle_data_transform,
    handle_file_input,
    handle_filter,
    handle_formula,
    handle_join,
    handle_sort,
    handle_spreadsheet_generator,
    handle_start,
)

if TYPE_CHECKING:
    import httpx

    from sheetflow.core.config import Settings
    from sheetflow.services.ai_client import AIAssistantClient

logger = get_logger(__name__)

Handler = Callable[..., Awaitable[Dict[str, Any]]]


@dataclass
class ExecutionResult:
    """Standardized execution result."""
    success: bool
    node_id: str
    node_type: str
    result: Optional[Dict] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    retryable: bool = False
    execution_time: float = 0.0
    timestamp: str = ""
    exception: Optional[BaseException] = None

    def to_dict(self) -> Dict[str, Any]:
        d = {
            "success": self.success,
            "node_id": self.node_id,
            "node_type": self.node_type,
            "execution_time": self.execution_time,
            "timestamp": self.timestamp or datetime.now(timezone.utc).isoformat(),
        }
        if self.success:
            d["result"] = self.result or {}
        else:
            d["error"] = self.error
            d["error_kind"] = self.error_kind
        return d


class NodeExecutor:
    """Executes individual workflow nodes using registry-based dispatch."""

    def __init__(
        self,
        settings: "Settings",
        ai_client: Optional["AIAssistantClient"] = None,
        http_transport: Optional["httpx.AsyncBaseTransport"] = None,
    ):
        self.settings = settings
        self.ai_client = ai_client
        self.http_transport = http_transport
        self._handlers = self._build_handler_registry()

    def _build_handler_registry(self) -> Dict[str, Handler]:
        """Build handler registry with service dependencies bound via partial."""
        registry: Dict[str, Handler] = {
            # Workflow control
            'start': handle_start,
            'condition': handle_condition,
            'conditionalBranch': handle_condition,
            # Data processing
            'filter': handle_filter,
            'sort': handle_sort,
            'formula': handle_formula,
            'aggregate': handle_aggregate,
            'join': handle_join,
            'merge': handle_join,
            'dataTransform': handle_data_transform,
            # Output
            'spreadsheetGenerator': handle_spreadsheet_generator,
        }

        for node_type in FILE_INPUT_NODE_TYPES:
            registry[node_type] = handle_file_input

        for node_type in AI_NODE_TYPES:
            registry[node_type] = partial(handle_ai_query, ai_client=self.ai_client)

        for node_type in INTEGRATION_NODE_TYPES:
            registry[node_type] = partial(handle_api_integration, transport=self.http_transport)

        return registry

    def register(self, node_type: str, handler: Handler) -> None:
        """Register (or replace) the handler for a node type."""
        self._handlers[node_type] = handler

    def has(self, node_type: str) -> bool:
        return node_type in self._handlers

    def get(self, node_type: str) -> Handler:
        handler = self._handlers.get(node_type)
        if handler is None:
            raise UnknownNodeTypeError(node_type)
        return handler

    @property
    def node_types(self) -> List[str]:
        return sorted(self._handlers)

    def prepare_parameters(self, node_type: str, parameters: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """Validate node config and return snake_case parameters with defaults."""
        try:
            validated = validate_node_params(node_type, parameters)
        except ValidationError as e:
            raise NodeConfigurationError(f"Invalid parameters for {node_type}: {e}") from e
        params = validated.model_dump()
        params.pop("type", None)
        return params

    async def execute(self, context: StepContext, timeout: Optional[float] = None) -> ExecutionResult:
        """Execute a single workflow node under the per-step timeout."""
        start_time = time.time()
        node_id, node_type = context.node_id, context.node_type
        limit = timeout or self.settings.step_timeout

        def failure(error: BaseException, kind: str, retryable: bool = False) -> ExecutionResult:
            return ExecutionResult(False, node_id, node_type, error=str(error), error_kind=kind,
                                   retryable=retryable, execution_time=time.time() - start_time,
                                   exception=error)

        try:
            handler = self.get(node_type)
            params = self.prepare_parameters(node_type, context.parameters)
            try:
                output = await asyncio.wait_for(handler(node_id, node_type, params, context), timeout=limit)
            except asyncio.TimeoutError as e:
                raise StepTimeoutError(node_id, limit) from e
        except ExternalServiceError as e:
            logger.warning("Node execution hit collaborator error", node_id=node_id, error=str(e))
            return failure(e, e.kind, retryable=True)
        except SheetflowError as e:
            logger.warning("Node execution failed", node_id=node_id, node_type=node_type,
                           error_kind=e.kind, error=str(e))
            return failure(e, e.kind)
        except Exception as e:
            logger.error("Node execution error", node_id=node_id, error=str(e))
            return failure(e, ErrorKind.HANDLER.value)

        execution_time = time.time() - start_time
        if not output.get("success"):
            error = output.get("error") or f"Node {node_id} failed"
            return ExecutionResult(False, node_id, node_type, result=output.get("result"), error=error,
                                   error_kind=output.get("error_kind") or ErrorKind.HANDLER.value,
                                   execution_time=execution_time)

        return ExecutionResult(True, node_id, node_type, result=output.get("result") or {},
                               execution_time=execution_time,
                               timestamp=output.get("timestamp", ""))
