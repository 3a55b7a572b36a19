"""Error taxonomy for generation jobs.

Every error that can end a job derives from GenerationError and carries a
message that is safe to show to a user. InvalidStateTransition and
InvalidRequest are caller mistakes and never end up on a job.
"""

from typing import Iterable, Optional

from app.jobs.models import JobError

GENERIC_FAILURE_MESSAGE = "Generation failed. Please try again."


class GenerationError(Exception):
    kind = "generation"
    default_message = GENERIC_FAILURE_MESSAGE

    def __init__(
        self,
        message: Optional[str] = None,
        code: Optional[int] = None,
        provider: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.code = code
        self.provider = provider
        super().__init__(self.message)

    def to_job_error(self) -> JobError:
        return JobError(
            kind=self.kind,
            message=self.message,
            code=self.code,
            provider=self.provider,
        )


class SubmissionError(GenerationError):
    kind = "submission"
    default_message = "Failed to start generation"


class PollError(GenerationError):
    kind = "poll"
    default_message = "Failed to check generation status"


class ProviderBusinessError(GenerationError):
    kind = "provider"


class ResultFetchError(GenerationError):
    kind = "result_fetch"
    default_message = "Generation finished but the result could not be retrieved"


class JobTimeoutError(GenerationError):
    kind = "timeout"
    default_message = "Generation timed out"


class JobCancelled(GenerationError):
    kind = "cancelled"
    default_message = "Generation cancelled"


class InvalidStateTransition(RuntimeError):
    def __init__(self, current, target):
        self.current = current
        self.target = target
        super().__init__(f"Illegal job state transition {current.value} -> {target.value}")


class InvalidRequest(ValueError):
    """Request rejected before the job was started."""


def scrub(message: str, secrets: Iterable[str]) -> str:
    """Remove credential values from a message."""
    for secret in secrets:
        if secret:
            message = message.replace(secret, "***")
    return message
