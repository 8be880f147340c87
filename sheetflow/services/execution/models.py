"""Step execution models.

Retry policy, the job invocation message and the per-step context handed
to node handlers. All models are JSON-serializable.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from sheetflow.core.config import Settings
from sheetflow.core.exceptions import ExternalServiceError, StepTimeoutError


@dataclass
class RetryPolicy:
    """Retry configuration for collaborator calls and handler invocations.

    Delay formula: min(initial_delay * (backoff_multiplier ^ attempt), max_delay)
    """
    max_attempts: int = 3
    initial_delay: float = 1.0       # seconds
    max_delay: float = 30.0          # seconds
    backoff_multiplier: float = 2.0
    retry_on_timeout: bool = False
    retry_on_connection_error: bool = True
    retry_on_server_error: bool = True  # 5xx errors

    def calculate_delay(self, attempt: int) -> float:
        """Delay in seconds before the next attempt (attempt is 0-indexed)."""
        delay = self.initial_delay * (self.backoff_multiplier ** attempt)
        return min(delay, self.max_delay)

    def should_retry(self, error: Union[BaseException, str], attempt: int) -> bool:
        """Decide whether another attempt is allowed.

        Args:
            error: The failure, as an exception or its message
            attempt: Number of attempts made so far

        Returns:
            True if should retry, False otherwise
        """
        if attempt >= self.max_attempts:
            return False

        if isinstance(error, StepTimeoutError):
            return self.retry_on_timeout
        if isinstance(error, ExternalServiceError):
            return True
        if isinstance(error, BaseException):
            return False

        error_lower = error.lower()
        if self.retry_on_timeout and "timeout" in error_lower:
            return True
        if self.retry_on_connection_error and ("connection" in error_lower or "connect" in error_lower):
            return True
        if self.retry_on_server_error and any(code in error for code in ("500", "502", "503", "504")):
            return True

        return False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_delay": self.initial_delay,
            "max_delay": self.max_delay,
            "backoff_multiplier": self.backoff_multiplier,
            "retry_on_timeout": self.retry_on_timeout,
            "retry_on_connection_error": self.retry_on_connection_error,
            "retry_on_server_error": self.retry_on_server_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryPolicy":
        return cls(
            max_attempts=data.get("max_attempts", 3),
            initial_delay=data.get("initial_delay", 1.0),
            max_delay=data.get("max_delay", 30.0),
            backoff_multiplier=data.get("backoff_multiplier", 2.0),
            retry_on_timeout=data.get("retry_on_timeout", False),
            retry_on_connection_error=data.get("retry_on_connection_error", True),
            retry_on_server_error=data.get("retry_on_server_error", True),
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_attempts=settings.step_max_attempts,
            initial_delay=settings.step_retry_initial_delay,
            max_delay=settings.step_retry_max_delay,
        )


# Default retry policies for node types that call out of process
DEFAULT_RETRY_POLICIES: Dict[str, RetryPolicy] = {
    "apiIntegration": RetryPolicy(max_attempts=3, initial_delay=2.0),
    "apiCall": RetryPolicy(max_attempts=3, initial_delay=2.0),
    "aiQuery": RetryPolicy(max_attempts=2, initial_delay=5.0),
    "aiAnalysis": RetryPolicy(max_attempts=2, initial_delay=5.0),
    "start": RetryPolicy(max_attempts=1),
}


def get_retry_policy(node_type: str, custom_policy: Optional[Dict] = None,
                     default: Optional[RetryPolicy] = None) -> RetryPolicy:
    """Retry policy for a node type: node config override, type default, then fallback."""
    if custom_policy:
        return RetryPolicy.from_dict(custom_policy)
    return DEFAULT_RETRY_POLICIES.get(node_type, default or RetryPolicy())


@dataclass
class StepRequest:
    """Job invocation message: advance one step."""
    step_id: str
    workflow_id: str
    file_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Wire form used by the HTTP peer endpoint."""
        data = {"stepId": self.step_id, "workflowId": self.workflow_id}
        if self.file_id:
            data["fileId"] = self.file_id
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepRequest":
        return cls(
            step_id=data.get("stepId") or data["step_id"],
            workflow_id=data.get("workflowId") or data["workflow_id"],
            file_id=data.get("fileId") or data.get("file_id"),
        )


@dataclass
class StepContext:
    """Everything a handler may read besides the step row itself."""
    execution_id: str
    workflow_id: str
    node_id: str
    node_type: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    input_data: Dict[str, Any] = field(default_factory=dict)
    upstream_outputs: Dict[str, Any] = field(default_factory=dict)
    file_id: Optional[str] = None
    attempt: int = 1


class StepOutcome(str, Enum):
    """Result of one advance_step call."""
    COMPLETED = "completed"
    FAILED = "failed"
    WAITING = "waiting"          # upstream not ready, step stays pending
    SKIPPED = "skipped"          # step already terminal or execution no longer running
    BUSY = "busy"                # another worker holds the step
    NOT_FOUND = "not_found"


@dataclass
class AdvanceResult:
    outcome: StepOutcome
    step_id: str
    next_step_ids: List[str] = field(default_factory=list)
    error: Optional[str] = None
    error_kind: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "outcome": self.outcome.value,
            "step_id": self.step_id,
            "next_step_ids": self.next_step_ids,
            "error": self.error,
            "error_kind": self.error_kind,
        }
