"""HTTP client for the AI assistant service.

A query is submitted as a run, then polled until it reaches a terminal
status. Polling stops at a hard wall-clock limit.
"""

import asyncio
import time
from typing import Any, Dict, Optional

import httpx

from sheetflow.core.config import Settings
from sheetflow.core.exceptions import AIResponseTimeoutError, AIServiceError
from sheetflow.core.logging import get_logger

logger = get_logger(__name__)

PENDING_STATUSES = frozenset(["queued", "in_progress"])
FAILED_STATUSES = frozenset(["failed", "cancelled", "expired"])


class AIAssistantClient:
    """Submit-and-poll client. Transport errors and 5xx responses raise AIServiceError."""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.base_url = (settings.ai_service_url or "").rstrip("/")
        self.timeout = settings.ai_timeout
        self.poll_interval = settings.ai_poll_interval
        self._transport = transport

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(base_url=self.base_url, timeout=30.0, transport=self._transport)

    async def _request(self, client: httpx.AsyncClient, method: str, url: str, **kwargs) -> Dict[str, Any]:
        try:
            response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise AIServiceError(f"AI assistant request failed: {e}") from e
        if response.status_code >= 400:
            raise AIServiceError(f"AI assistant returned {response.status_code}: {response.text[:200]}")
        try:
            return response.json()
        except ValueError as e:
            raise AIServiceError("AI assistant returned invalid JSON") from e

    async def query(self, prompt: str, context: Optional[Dict[str, Any]] = None,
                    timeout: Optional[float] = None) -> Dict[str, Any]:
        """Run a prompt and wait for the assistant's answer.

        Returns:
            {"run_id", "content", "raw"} of the completed run

        Raises:
            AIServiceError: Service disabled, unreachable, or run failed
            AIResponseTimeoutError: Run still pending after the timeout
        """
        if not self.enabled:
            raise AIServiceError("AI assistant URL is not configured")

        limit = timeout or self.timeout
        deadline = time.monotonic() + limit

        async with self._client() as client:
            created = await self._request(client, "POST", "/runs", json={"prompt": prompt, "context": context or {}})
            run_id = created.get("id")
            if not run_id:
                raise AIServiceError("AI assistant did not return a run id")
            logger.info("AI run submitted", run_id=run_id)

            run = created
            while run.get("status", "queued") in PENDING_STATUSES:
                if time.monotonic() >= deadline:
                    logger.warning("AI run timed out", run_id=run_id, timeout=limit)
                    raise AIResponseTimeoutError(limit)
                await asyncio.sleep(min(self.poll_interval, max(deadline - time.monotonic(), 0)))
                run = await self._request(client, "GET", f"/runs/{run_id}")

        status = run.get("status")
        if status in FAILED_STATUSES:
            raise AIServiceError(f"AI run {run_id} ended with status {status}: {run.get('error') or ''}".strip())
        if status != "completed":
            raise AIServiceError(f"AI run {run_id} returned unknown status {status}")

        logger.info("AI run completed", run_id=run_id)
        return {"run_id": run_id, "content": run.get("content") or run.get("output"), "raw": run}
