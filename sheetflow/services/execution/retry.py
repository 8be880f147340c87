"""Exponential backoff around collaborator calls."""

import asyncio
from typing import Awaitable, Callable, Optional, Tuple, Type, TypeVar

from sheetflow.core.exceptions import ExternalServiceError
from sheetflow.core.logging import get_logger

from .models import RetryPolicy

logger = get_logger(__name__)

T = TypeVar("T")


async def retry_async(operation: Callable[[], Awaitable[T]],
                      policy: Optional[RetryPolicy] = None,
                      retry_on: Tuple[Type[BaseException], ...] = (ExternalServiceError,),
                      description: str = "operation",
                      sleep: Callable[[float], Awaitable[None]] = asyncio.sleep) -> T:
    """Run a coroutine factory, retrying matching errors with backoff.

    The last error is re-raised once the policy's attempts are used up.
    Errors outside retry_on propagate immediately.
    """
    policy = policy or RetryPolicy()
    attempt = 0
    while True:
        try:
            return await operation()
        except retry_on as e:
            attempt += 1
            if attempt >= policy.max_attempts:
                logger.error("Retries exhausted", operation=description, attempts=attempt, error=str(e))
                raise
            delay = policy.calculate_delay(attempt - 1)
            logger.warning("Retrying after error", operation=description, attempt=attempt,
                           delay=delay, error=str(e))
            await sleep(delay)
