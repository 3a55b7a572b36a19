"""Per-job progress stream.

The poller emits without ever waiting on the consumer. Events queue up in a
buffer until the single subscriber reads them; when the buffer holds more
log lines than allowed, the oldest log lines are dropped. State changes and
the final event are always kept.
"""

import asyncio
import logging
from collections import deque
from typing import AsyncIterator, Deque, Optional

from app.jobs.models import ProgressEvent

logger = logging.getLogger(__name__)


class ProgressSink:
    def __init__(self, job_id: str, max_buffered_log_lines: int = 200):
        self.job_id = job_id
        self.max_buffered_log_lines = max_buffered_log_lines
        self.dropped_log_lines = 0
        self._buffer: Deque[ProgressEvent] = deque()
        self._buffered_lines = 0
        self._wakeup = asyncio.Event()
        self._latest: Optional[ProgressEvent] = None
        self._closed = False
        self._subscribed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def latest(self) -> Optional[ProgressEvent]:
        return self._latest

    def emit(self, event: ProgressEvent) -> bool:
        """Queue a non-final event. Returns False if the stream already ended."""
        if self._closed:
            logger.warning("Job %s: dropping %s event after final event", self.job_id, event.state.value)
            return False
        if event.final:
            return self.close(event)
        self._push(event)
        return True

    def close(self, event: ProgressEvent) -> bool:
        """Queue the final event and end the stream."""
        if self._closed:
            logger.warning("Job %s: stream already closed", self.job_id)
            return False
        if not event.final:
            event = event.model_copy(update={"final": True})
        self._push(event)
        self._closed = True
        return True

    def subscribe(self) -> AsyncIterator[ProgressEvent]:
        if self._subscribed:
            raise RuntimeError(f"Job {self.job_id} already has a subscriber")
        self._subscribed = True
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[ProgressEvent]:
        # The slot is released when the subscriber stops reading, so a
        # disconnected client can subscribe again.
        try:
            while True:
                if self._buffer:
                    event = self._buffer.popleft()
                    self._buffered_lines -= len(event.log_lines)
                    yield event
                    if event.final:
                        return
                    continue
                if self._closed:
                    # Earlier subscriber already drained the stream
                    yield self._latest
                    return
                self._wakeup.clear()
                await self._wakeup.wait()
        finally:
            self._subscribed = False

    def _push(self, event: ProgressEvent) -> None:
        self._latest = event
        self._buffer.append(event)
        self._buffered_lines += len(event.log_lines)
        self._trim()
        self._wakeup.set()

    def _trim(self) -> None:
        excess = self._buffered_lines - self.max_buffered_log_lines
        if excess <= 0:
            return
        for index, event in enumerate(self._buffer):
            if excess <= 0:
                break
            if not event.log_lines:
                continue
            cut = min(excess, len(event.log_lines))
            self._buffer[index] = event.model_copy(update={"log_lines": event.log_lines[cut:]})
            self._buffered_lines -= cut
            self.dropped_log_lines += cut
            excess -= cut
