"""Fixed-interval status polling for one provider task."""

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, Optional

from app.jobs.errors import GenerationError, PollError
from app.jobs.models import JobConfig, JobState, NormalizedStatus, RawStatus
from app.jobs.normalizer import normalize
from app.providers.base import ProviderAdapter

logger = logging.getLogger(__name__)

# Progress shown while not yet confirmed done never passes this value
PROGRESS_CAP = 95

_STATE_FLOOR = {
    JobState.CREATED: 0,
    JobState.SUBMITTING: 0,
    JobState.QUEUED: 10,
    JobState.PROCESSING: 50,
}


def estimate_progress(state: JobState, elapsed: float, timeout: float, previous: int = 0) -> int:
    """Progress hint from the job state and the share of the timeout used so far.

    Non-decreasing with respect to `previous` and capped below 100 until the
    provider confirms success.
    """
    if state == JobState.SUCCEEDED:
        return 100
    if state.is_terminal:
        return previous
    fraction = min(max(elapsed / timeout, 0.0), 1.0) if timeout > 0 else 1.0
    value = max(_STATE_FLOOR.get(state, 0), int(PROGRESS_CAP * fraction))
    return max(previous, min(PROGRESS_CAP, value))


class PollResult(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"
    ERROR = "error"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


@dataclass
class PollOutcome:
    """How a poll loop ended."""
    result: PollResult
    status: Optional[RawStatus] = None
    error: Optional[GenerationError] = None


StatusCallback = Callable[[NormalizedStatus, RawStatus], Awaitable[None]]
LogCallback = Callable[[str], Awaitable[None]]


class Poller:
    """Queries one provider task until it reaches a terminal state.

    Cancellation and timeout are checked before and after every sleep; a
    status received after cancellation is discarded. Transient PollErrors are
    retried a few times within a single poll; a poll whose retries run out is
    skipped, and too many consecutive skipped polls end the loop with ERROR.
    """

    def __init__(
        self,
        adapter: ProviderAdapter,
        config: JobConfig,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.adapter = adapter
        self.config = config
        self._clock = clock
        self._sleep = sleep
        self.fetch_calls = 0

    def elapsed(self, started_at: float) -> float:
        return self._clock() - started_at

    async def run(
        self,
        task_id: str,
        started_at: float,
        is_cancelled: Callable[[], bool],
        on_status: StatusCallback,
        on_log: LogCallback,
    ) -> PollOutcome:
        logger.info(
            "Polling %s task %s every %.1fs for up to %d attempts",
            self.adapter.kind, task_id, self.config.poll_interval, self.config.max_attempts,
        )
        skipped = 0
        while True:
            outcome = self._check_stop(started_at, is_cancelled)
            if outcome:
                return outcome
            await self._sleep(self.config.poll_interval)
            outcome = self._check_stop(started_at, is_cancelled)
            if outcome:
                return outcome

            try:
                raw = await self._fetch(task_id, is_cancelled, on_log)
            except GenerationError as exc:
                if is_cancelled():
                    return PollOutcome(PollResult.CANCELLED)
                logger.info("%s task %s reported %s: %s", self.adapter.kind, task_id, exc.kind, exc.message)
                return PollOutcome(PollResult.FAILURE, error=exc)

            if is_cancelled():
                return PollOutcome(PollResult.CANCELLED)

            if raw is None:
                skipped += 1
                await on_log(f"Skipped status check ({skipped} in a row)")
                if skipped > self.config.max_skipped_polls:
                    return PollOutcome(
                        PollResult.ERROR,
                        error=PollError(provider=self.adapter.provider_name),
                    )
                continue
            skipped = 0

            normalized = normalize(self.adapter.kind, raw.status)
            if normalized == NormalizedStatus.SUCCESS:
                return PollOutcome(PollResult.SUCCESS, status=raw)
            if normalized == NormalizedStatus.FAILURE:
                return PollOutcome(PollResult.FAILURE, status=raw)
            await on_status(normalized, raw)

    def _check_stop(self, started_at: float, is_cancelled: Callable[[], bool]) -> Optional[PollOutcome]:
        if is_cancelled():
            return PollOutcome(PollResult.CANCELLED)
        if self.elapsed(started_at) >= self.config.timeout:
            return PollOutcome(PollResult.TIMED_OUT)
        return None

    async def _fetch(
        self,
        task_id: str,
        is_cancelled: Callable[[], bool],
        on_log: LogCallback,
    ) -> Optional[RawStatus]:
        attempts = self.config.poll_max_retries + 1
        for attempt in range(1, attempts + 1):
            if attempt > 1:
                await self._sleep(self.config.poll_retry_delay)
                if is_cancelled():
                    return None
            self.fetch_calls += 1
            try:
                return await self.adapter.fetch_status(task_id)
            except PollError as exc:
                logger.warning(
                    "Status check for %s task %s failed (%d/%d): %s",
                    self.adapter.kind, task_id, attempt, attempts, exc.message,
                )
                await on_log(f"Status check failed ({attempt}/{attempts}): {exc.message}")
        return None
