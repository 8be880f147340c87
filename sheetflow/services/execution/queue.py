"""Step dispatch: the in-process work queue, its workers, and the HTTP peer dispatcher.

Each dispatched StepRequest is one advance_step call. Advancing a step
dispatches its newly eligible dependents back through the same dispatcher,
so an execution is driven by the queue rather than by recursion.
"""

import asyncio
from typing import List, Optional, Set, TYPE_CHECKING, Union

import httpx

from sheetflow.core.config import Settings
from sheetflow.core.logging import get_logger, step_context

from .models import StepRequest

if TYPE_CHECKING:
    from .scheduler import StepScheduler

logger = get_logger(__name__)


class StepQueue:
    """In-process FIFO of step requests."""

    def __init__(self):
        self._queue: "asyncio.Queue[StepRequest]" = asyncio.Queue()
        self.dispatched_total = 0

    async def dispatch(self, request: StepRequest) -> None:
        self._queue.put_nowait(request)
        self.dispatched_total += 1
        logger.debug("Step dispatched", step_id=request.step_id, workflow_id=request.workflow_id)

    async def get(self) -> StepRequest:
        return await self._queue.get()

    def get_nowait(self) -> StepRequest:
        return self._queue.get_nowait()

    def task_done(self) -> None:
        self._queue.task_done()

    def empty(self) -> bool:
        return self._queue.empty()

    def qsize(self) -> int:
        return self._queue.qsize()


class HttpStepDispatcher:
    """Fire-and-forget POST of each step request to a peer's step endpoint.

    Delivery failures are logged and otherwise ignored; the step stays
    pending and can be re-advanced through the same endpoint.
    """

    def __init__(self, url: str, timeout: float = 10.0,
                 transport: Optional[httpx.AsyncBaseTransport] = None):
        self.url = url
        self.timeout = timeout
        self._transport = transport
        self._tasks: Set[asyncio.Task] = set()

    async def dispatch(self, request: StepRequest) -> None:
        task = asyncio.create_task(self._post(request))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _post(self, request: StepRequest) -> None:
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.post(self.url, json=request.to_dict())
            if response.status_code >= 400:
                logger.error("Step dispatch rejected", step_id=request.step_id,
                             status=response.status_code, url=self.url)
        except httpx.HTTPError as e:
            logger.error("Step dispatch failed", step_id=request.step_id, url=self.url, error=str(e))

    async def drain(self) -> None:
        """Wait for in-flight dispatches."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)


StepDispatcher = Union[StepQueue, HttpStepDispatcher]


def create_dispatcher(settings: Settings) -> StepDispatcher:
    """Dispatcher selected by settings.step_dispatch_mode."""
    if settings.step_dispatch_mode == "http":
        if not settings.step_dispatch_url:
            raise ValueError("step_dispatch_url is required when step_dispatch_mode is 'http'")
        return HttpStepDispatcher(settings.step_dispatch_url)
    return StepQueue()


class StepWorker:
    """Background tasks that pull step requests off a StepQueue and advance them."""

    def __init__(self, queue: StepDispatcher, scheduler: "StepScheduler", concurrency: int = 4):
        self.queue = queue
        self.scheduler = scheduler
        self.concurrency = max(1, concurrency)
        self._running = False
        self._tasks: List[asyncio.Task] = []

    @property
    def enabled(self) -> bool:
        # HTTP dispatch hands steps to a peer; there is nothing to consume locally
        return isinstance(self.queue, StepQueue)

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        """Start the worker tasks."""
        if not self.enabled:
            logger.info("Step worker disabled for HTTP dispatch")
            return
        if self._running:
            logger.warning("Step worker already running")
            return

        self._running = True
        self._tasks = [asyncio.create_task(self._worker_loop(i)) for i in range(self.concurrency)]
        logger.info("Step worker started", concurrency=self.concurrency)

    async def stop(self) -> None:
        """Stop the worker tasks."""
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        logger.info("Step worker stopped")

    async def _worker_loop(self, index: int) -> None:
        while self._running:
            request = await self.queue.get()
            try:
                await self._process(request)
            finally:
                self.queue.task_done()

    async def _process(self, request: StepRequest) -> None:
        with step_context(step_id=request.step_id, workflow_id=request.workflow_id, file_id=request.file_id):
            try:
                result = await self.scheduler.advance_step(request.step_id, request.workflow_id, request.file_id)
                logger.debug("Step advanced", outcome=result.outcome.value)
            except Exception as e:
                logger.error("Step advance failed", error=str(e), exc_info=True)

    async def run_until_idle(self) -> int:
        """Advance queued steps inline until the queue is empty. Returns the count processed."""
        processed = 0
        while not self.queue.empty():
            request = self.queue.get_nowait()
            try:
                await self._process(request)
            finally:
                self.queue.task_done()
            processed += 1
        return processed
