"""In-process job dispatcher using asyncio.

Each job runs in its own asyncio task driven by a JobController. Jobs share
no state; the dispatcher only keeps an index from job id to controller and
forgets finished jobs once their TTL has passed.
"""

import asyncio
import logging
import time
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional

from app.jobs.controller import JobController
from app.jobs.dispatcher import JobDispatcher, UnknownJobKind
from app.jobs.models import GenerationRequest, JobConfig, JobSnapshot, ProgressEvent
from app.providers.registry import ProviderRegistry

logger = logging.getLogger(__name__)


class InProcessDispatcher(JobDispatcher):
    """Runs any number of jobs concurrently on the current event loop."""

    def __init__(
        self,
        registry: ProviderRegistry,
        config_for: Callable[[str], JobConfig],
        result_ttl_hours: float = 2,
        cleanup_interval: float = 60.0,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self._registry = registry
        self._config_for = config_for
        self._ttl_seconds = result_ttl_hours * 3600
        self._cleanup_interval = cleanup_interval
        self._clock = clock
        self._sleep = sleep
        self._controllers: Dict[str, JobController] = {}
        self._tasks: Dict[str, asyncio.Task] = {}
        self._finished_at: Dict[str, float] = {}
        self._cleanup_task: Optional[asyncio.Task] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def active_count(self) -> int:
        return len(self._tasks)

    def kinds(self) -> List[str]:
        return self._registry.kinds()

    def get_controller(self, job_id: str) -> Optional[JobController]:
        return self._controllers.get(job_id)

    async def submit(self, kind: str, request: GenerationRequest) -> JobSnapshot:
        if not self._running:
            raise RuntimeError("Dispatcher is not running")
        adapter = self._registry.get(kind)
        if adapter is None:
            raise UnknownJobKind(f"Unknown job kind '{kind}'. Valid: {self._registry.kinds()}")

        controller = JobController(adapter, self._config_for(kind), clock=self._clock, sleep=self._sleep)
        snapshot = controller.create(request)
        self._controllers[controller.job_id] = controller
        self._tasks[controller.job_id] = asyncio.create_task(
            self._run(controller), name=f"job-{controller.job_id}"
        )
        logger.info("Job %s submitted (%s)", controller.job_id, kind)
        return snapshot

    async def get_status(self, job_id: str) -> Optional[JobSnapshot]:
        controller = self._controllers.get(job_id)
        return controller.snapshot() if controller else None

    async def cancel(self, job_id: str) -> Optional[bool]:
        controller = self._controllers.get(job_id)
        if controller is None:
            return None
        return controller.cancel()

    def subscribe(self, job_id: str) -> Optional[AsyncIterator[ProgressEvent]]:
        controller = self._controllers.get(job_id)
        return controller.subscribe() if controller else None

    async def start(self) -> None:
        self._running = True
        self._cleanup_task = asyncio.create_task(self._cleanup_loop())

    async def stop(self) -> None:
        self._running = False
        if self._cleanup_task:
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass

        pending = list(self._tasks.items())
        for _, task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*(task for _, task in pending), return_exceptions=True)
            # A task cancelled before its first step never reaches the controller
            for job_id, _ in pending:
                controller = self._controllers.get(job_id)
                if controller and not controller.is_finished:
                    controller.cancel()
                self._tasks.pop(job_id, None)
                self._finished_at.setdefault(job_id, self._clock())
            logger.info("Abandoned %d running job(s) on shutdown", len(pending))

    def cleanup_expired(self) -> int:
        """Forget finished jobs older than the TTL. Returns how many were removed."""
        now = self._clock()
        expired = [
            job_id for job_id, finished in self._finished_at.items()
            if now - finished > self._ttl_seconds
        ]
        for job_id in expired:
            self._finished_at.pop(job_id, None)
            self._controllers.pop(job_id, None)
        return len(expired)

    async def _run(self, controller: JobController) -> None:
        try:
            await controller.run()
        finally:
            self._tasks.pop(controller.job_id, None)
            self._finished_at[controller.job_id] = self._clock()

    async def _cleanup_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self._cleanup_interval)
            except asyncio.CancelledError:
                break
            removed = self.cleanup_expired()
            if removed:
                logger.info("Expired %d finished job(s)", removed)
