"""Job dispatcher interface."""

from abc import ABC, abstractmethod
from typing import AsyncIterator, Optional

from app.jobs.models import GenerationRequest, JobSnapshot, ProgressEvent


class UnknownJobKind(ValueError):
    pass


class JobDispatcher(ABC):
    """Abstract interface for running generation jobs."""

    @abstractmethod
    async def submit(self, kind: str, request: GenerationRequest) -> JobSnapshot:
        """Create a job and start it in the background. Returns its first snapshot."""
        ...

    @abstractmethod
    async def get_status(self, job_id: str) -> Optional[JobSnapshot]:
        """Get the current snapshot of a job."""
        ...

    @abstractmethod
    async def cancel(self, job_id: str) -> Optional[bool]:
        """Request cancellation. None if the job is unknown."""
        ...

    @abstractmethod
    def subscribe(self, job_id: str) -> Optional[AsyncIterator[ProgressEvent]]:
        """Progress stream of a job. None if the job is unknown."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher, abandoning jobs still running."""
        ...
