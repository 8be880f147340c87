"""Step and execution status enums shared by the store and the scheduler."""

from enum import Enum


class StepStatus(str, Enum):
    """Step lifecycle. Terminal states never revert."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (StepStatus.COMPLETED, StepStatus.FAILED)


class ExecutionStatus(str, Enum):
    """Execution lifecycle."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class FileProcessingStatus(str, Enum):
    """Processing state of a file attached to an input node."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    ERROR = "error"


class ErrorKind(str, Enum):
    """Failure kinds recorded on failed steps."""
    CONFIGURATION = "ConfigurationError"
    HANDLER = "HandlerError"
    EXTERNAL = "ExternalServiceError"
    TIMEOUT = "StepTimeout"
    UPSTREAM = "UpstreamNotReady"
    CYCLE = "CycleDetected"
