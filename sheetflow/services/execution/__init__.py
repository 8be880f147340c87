"""Step execution package.

- models.py: retry policy, step request/context and advance outcomes
- retry.py: exponential backoff helper for collaborator calls
- scheduler.py: StepScheduler, one-step-at-a-time advancement
- queue.py: StepQueue/StepWorker and the HTTP peer dispatcher

Only the leaf modules are re-exported here; import the scheduler and
queue from their modules.
"""

from .models import (
    RetryPolicy,
    StepRequest,
    StepContext,
    StepOutcome,
    AdvanceResult,
    get_retry_policy,
    DEFAULT_RETRY_POLICIES,
)
from .retry import retry_async

__all__ = [
    "RetryPolicy",
    "StepRequest",
    "StepContext",
    "StepOutcome",
    "AdvanceResult",
    "get_retry_policy",
    "DEFAULT_RETRY_POLICIES",
    "retry_async",
]
