"""SheetFlow exception hierarchy."""

from typing import List, Optional


class SheetflowError(Exception):
    """Base exception for all SheetFlow errors."""

    # Failure kind recorded on a failed step
    kind = "HandlerError"


class InvalidCacheKeyError(SheetflowError, ValueError):
    """Cache key built from an empty workflow or node id."""


class WorkflowNotFoundError(SheetflowError):
    """Workflow has no nodes in the persisted store."""


class NodeConfigurationError(SheetflowError):
    """Node parameters are missing or invalid."""

    kind = "ConfigurationError"


class UnknownNodeTypeError(NodeConfigurationError):
    """No handler is registered for the node type."""

    def __init__(self, node_type: str):
        self.node_type = node_type
        super().__init__(f"Unknown node type: {node_type}")


class UpstreamNotReadyError(SheetflowError):
    """Input for a step is not available yet."""

    kind = "UpstreamNotReady"

    def __init__(self, node_id: str, waiting_on: Optional[List[str]] = None):
        self.node_id = node_id
        self.waiting_on = waiting_on or []
        detail = f" (waiting on {', '.join(self.waiting_on)})" if self.waiting_on else ""
        super().__init__(f"No input data available for node {node_id}{detail}")


class ExternalServiceError(SheetflowError):
    """A collaborator (persisted store, AI assistant, remote API) failed."""

    kind = "ExternalServiceError"


class PersistedStoreError(ExternalServiceError):
    """Database operation failed."""


class AIServiceError(ExternalServiceError):
    """AI assistant returned an error or an unusable response."""


class AIResponseTimeoutError(AIServiceError):
    """AI assistant did not finish within the wall-clock limit."""

    def __init__(self, timeout: float):
        self.timeout = timeout
        super().__init__(f"AI assistant did not respond within {timeout:.0f}s")


class StepTimeoutError(SheetflowError):
    """Handler invocation exceeded the per-step timeout."""

    kind = "StepTimeout"

    def __init__(self, node_id: str, timeout: float):
        self.node_id = node_id
        self.timeout = timeout
        super().__init__(f"Step for node {node_id} timed out after {timeout:.1f}s")


class CycleDetectedError(SheetflowError):
    """Workflow graph contains a cycle."""

    kind = "CycleDetected"

    def __init__(self, node_ids: List[str]):
        self.node_ids = node_ids
        super().__init__(f"Cycle detected involving nodes: {', '.join(sorted(node_ids))}")
