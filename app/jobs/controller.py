"""Job controller: the state machine that owns one generation job.

The controller is the only writer of its Job. Observers get JobSnapshot
copies or ProgressEvents from the sink; nothing outside this module holds
the live Job object.
"""

import asyncio
import logging
import time
import uuid
from typing import AsyncIterator, Awaitable, Callable, List, Optional, Sequence

from app.jobs.errors import (
    GenerationError,
    InvalidStateTransition,
    JobCancelled,
    JobTimeoutError,
    ProviderBusinessError,
)
from app.jobs.models import (
    Artifact,
    GenerationRequest,
    Job,
    JobConfig,
    JobSnapshot,
    JobState,
    NormalizedStatus,
    ProgressEvent,
    RawStatus,
    utcnow,
)
from app.jobs.poller import Poller, PollOutcome, PollResult, estimate_progress
from app.jobs.progress import ProgressSink
from app.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

_ALLOWED = {
    JobState.CREATED: {JobState.SUBMITTING, JobState.CANCELLED},
    JobState.SUBMITTING: {JobState.QUEUED, JobState.FAILED, JobState.CANCELLED},
    JobState.QUEUED: {
        JobState.QUEUED,
        JobState.PROCESSING,
        JobState.SUCCEEDED,
        JobState.FAILED,
        JobState.TIMED_OUT,
        JobState.CANCELLED,
    },
    JobState.PROCESSING: {
        JobState.PROCESSING,
        JobState.SUCCEEDED,
        JobState.FAILED,
        JobState.TIMED_OUT,
        JobState.CANCELLED,
    },
}

_POLLED_STATE = {
    NormalizedStatus.QUEUED: JobState.QUEUED,
    NormalizedStatus.PROCESSING: JobState.PROCESSING,
}


def check_transition(current: JobState, target: JobState) -> None:
    if target not in _ALLOWED.get(current, ()):
        raise InvalidStateTransition(current, target)


class JobController:
    """Drives one job from submission to a terminal state."""

    def __init__(
        self,
        adapter: ProviderAdapter,
        config: JobConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        job_id: Optional[str] = None,
    ):
        self.adapter = adapter
        self.config = config
        self.job_id = job_id or str(uuid.uuid4())
        self.poller = Poller(adapter, config, clock=clock, sleep=sleep)
        self.sink = ProgressSink(self.job_id, max_buffered_log_lines=config.max_buffered_log_lines)
        self._clock = clock
        self._job: Optional[Job] = None
        self._lock = asyncio.Lock()
        self._done = asyncio.Event()
        self._cancel_requested = False
        self._running = False
        self._started_at: Optional[float] = None
        self._provider_logs_seen = 0
        self._last_raw_status: Optional[str] = None

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    @property
    def state(self) -> Optional[JobState]:
        return self._job.state if self._job else None

    @property
    def is_finished(self) -> bool:
        return self._job is not None and self._job.state.is_terminal

    def snapshot(self) -> Optional[JobSnapshot]:
        return self._job.snapshot() if self._job else None

    def create(self, request: GenerationRequest) -> JobSnapshot:
        """Validate the request and create the job in the CREATED state."""
        if self._job is not None:
            raise InvalidStateTransition(self._job.state, JobState.CREATED)
        self.adapter.validate(request)
        self._job = Job(id=self.job_id, kind=self.adapter.kind, request=request.model_copy(deep=True))
        self._emit(["Job created"])
        return self._job.snapshot()

    async def start(self, request: GenerationRequest) -> JobSnapshot:
        self.create(request)
        return await self.run()

    async def run(self) -> JobSnapshot:
        """Run the job to a terminal state and return the final snapshot.

        Job failures are reported through the snapshot and the final progress
        event, never raised.
        """
        job = self._require_job()
        if job.state == JobState.CANCELLED and not self._running:
            return job.snapshot()
        if self._running or job.state != JobState.CREATED:
            raise InvalidStateTransition(job.state, JobState.SUBMITTING)
        self._running = True

        try:
            await self._drive(job)
        except asyncio.CancelledError:
            if not job.state.is_terminal:
                logger.info("Job %s abandoned in state %s", job.id, job.state.value)
                self._cancel_requested = True
                self._apply_finish(JobState.CANCELLED, error=JobCancelled("Job abandoned on shutdown"))
            raise
        except Exception:
            logger.exception("Job %s stopped unexpectedly", job.id)
            if not job.state.is_terminal:
                await self._finish(JobState.FAILED, error=GenerationError())
        return job.snapshot()

    def cancel(self) -> bool:
        """Request cancellation. Returns False if the job already finished."""
        if self._job is None or self._job.state.is_terminal:
            return False
        self._cancel_requested = True
        if self._job.state == JobState.CREATED and not self._running:
            self._apply_finish(JobState.CANCELLED, error=JobCancelled())
        else:
            logger.info("Job %s: cancellation requested in state %s", self.job_id, self._job.state.value)
        return True

    def subscribe(self) -> AsyncIterator[ProgressEvent]:
        return self.sink.subscribe()

    async def wait(self) -> JobSnapshot:
        """Block until the job reaches a terminal state."""
        await self._done.wait()
        return self._require_job().snapshot()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def _drive(self, job: Job) -> None:
        self._started_at = self._clock()
        async with self._lock:
            self._transition(JobState.SUBMITTING)
            self._emit([f"Submitting {job.kind} request to {self.adapter.provider_name}"])

        try:
            task_id = await self.adapter.submit(job.request)
        except GenerationError as exc:
            if self._cancel_requested:
                await self._finish(JobState.CANCELLED, error=JobCancelled())
                return
            logger.warning("Job %s: submission failed: %s", job.id, exc.message)
            await self._finish(JobState.FAILED, error=exc)
            return

        if self._cancel_requested:
            job.provider_task_id = task_id
            await self._finish(JobState.CANCELLED, error=JobCancelled())
            return

        async with self._lock:
            job.provider_task_id = task_id
            self._transition(JobState.QUEUED)
            self._update_progress()
            self._emit(["Request submitted successfully"])

        outcome = await self.poller.run(
            task_id,
            self._started_at,
            self._is_cancelled,
            self._on_status,
            self._on_log,
        )
        await self._conclude(job, outcome)

    async def _conclude(self, job: Job, outcome: PollOutcome) -> None:
        if outcome.result == PollResult.SUCCESS:
            async with self._lock:
                lines = self._absorb_status(outcome.status)
                if lines:
                    self._emit(lines)
            try:
                artifact = await self.adapter.fetch_result(job.provider_task_id, outcome.status)
            except GenerationError as exc:
                if self._cancel_requested:
                    await self._finish(JobState.CANCELLED, error=JobCancelled())
                    return
                logger.warning("Job %s: result retrieval failed: %s", job.id, exc.message)
                await self._finish(JobState.FAILED, error=exc)
                return
            if self._cancel_requested:
                logger.info("Job %s: discarding result retrieved after cancellation", job.id)
                await self._finish(JobState.CANCELLED, error=JobCancelled())
                return
            await self._finish(JobState.SUCCEEDED, result=artifact)

        elif outcome.result == PollResult.FAILURE:
            error = outcome.error
            if error is None:
                raw = outcome.status
                async with self._lock:
                    lines = self._absorb_status(raw)
                    if lines:
                        self._emit(lines)
                error = ProviderBusinessError(
                    raw.message,
                    code=raw.code or None,
                    provider=self.adapter.provider_name,
                )
            await self._finish(JobState.FAILED, error=error)

        elif outcome.result == PollResult.ERROR:
            await self._finish(JobState.FAILED, error=outcome.error)

        elif outcome.result == PollResult.TIMED_OUT:
            await self._finish(
                JobState.TIMED_OUT,
                error=JobTimeoutError(f"Generation timed out after {self.config.timeout:g} seconds"),
            )

        else:
            await self._finish(JobState.CANCELLED, error=JobCancelled())

    # ------------------------------------------------------------------
    # Poller callbacks
    # ------------------------------------------------------------------

    def _is_cancelled(self) -> bool:
        return self._cancel_requested

    async def _on_status(self, normalized: NormalizedStatus, raw: RawStatus) -> None:
        async with self._lock:
            job = self._require_job()
            target = _POLLED_STATE.get(normalized, job.state)
            if job.state == JobState.PROCESSING and target == JobState.QUEUED:
                logger.debug("Job %s: provider reported %s after processing started", job.id, raw.status)
                target = JobState.PROCESSING
            self._transition(target)

            lines = self._absorb_status(raw)
            if normalized == NormalizedStatus.UNKNOWN:
                lines.append(f"Unrecognized provider status '{raw.status}'")
            self._update_progress()
            self._emit(lines)

    async def _on_log(self, line: str) -> None:
        async with self._lock:
            self._emit([line])

    # ------------------------------------------------------------------
    # State writes
    # ------------------------------------------------------------------

    def _require_job(self) -> Job:
        if self._job is None:
            raise RuntimeError(f"Job {self.job_id} has not been created")
        return self._job

    def _transition(self, target: JobState) -> None:
        job = self._require_job()
        check_transition(job.state, target)
        if job.state != target:
            logger.info("Job %s: %s -> %s", job.id, job.state.value, target.value)
        job.state = target
        job.updated_at = utcnow()

    def _absorb_status(self, raw: RawStatus) -> List[str]:
        """Log lines from a status response that were not seen before."""
        lines = []
        if raw.status != self._last_raw_status:
            lines.append(f"Status: {raw.status}")
            self._last_raw_status = raw.status
        if len(raw.logs) > self._provider_logs_seen:
            lines.extend(raw.logs[self._provider_logs_seen:])
            self._provider_logs_seen = len(raw.logs)
        return lines

    def _update_progress(self) -> None:
        job = self._require_job()
        elapsed = self._clock() - self._started_at if self._started_at is not None else 0.0
        job.progress_percent = estimate_progress(job.state, elapsed, self.config.timeout, job.progress_percent)

    async def _finish(
        self,
        state: JobState,
        result: Optional[Artifact] = None,
        error: Optional[GenerationError] = None,
    ) -> None:
        async with self._lock:
            self._apply_finish(state, result=result, error=error)

    def _apply_finish(
        self,
        state: JobState,
        result: Optional[Artifact] = None,
        error: Optional[GenerationError] = None,
    ) -> None:
        job = self._require_job()
        self._transition(state)
        if state == JobState.SUCCEEDED:
            job.result = result
            job.progress_percent = 100
            line = "Generation completed successfully"
        else:
            job.error = error.to_job_error()
            line = job.error.message
        job.completed_at = job.updated_at
        self._emit([line], final=True)
        self._done.set()
        logger.info("Job %s finished as %s", job.id, state.value)

    def _emit(self, lines: Sequence[str] = (), final: bool = False) -> None:
        job = self._require_job()
        job.log_lines.extend(lines)
        event = ProgressEvent(
            job_id=job.id,
            state=job.state,
            progress_percent=job.progress_percent,
            log_lines=tuple(lines),
            final=final,
            result=job.result.model_copy(deep=True) if final and job.result else None,
            error=job.error.model_copy() if final and job.error else None,
        )
        if final:
            self.sink.close(event)
        else:
            self.sink.emit(event)
