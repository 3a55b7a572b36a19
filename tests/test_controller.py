"""Tests for the job controller state machine."""

import asyncio

import pytest
from pydantic import ValidationError

from app.jobs.controller import JobController, check_transition
from app.jobs.errors import (
    InvalidRequest,
    InvalidStateTransition,
    PollError,
    ProviderBusinessError,
    ResultFetchError,
    SubmissionError,
)
from app.jobs.models import GenerationRequest, JobConfig, JobState

from conftest import ScriptedAdapter, raw


CAT_IMAGE = {"url": "https://x/y.jpg", "content_type": "image/jpeg"}


def make_controller(adapter, config, clock):
    return JobController(adapter, config, clock=clock, sleep=clock.sleep)


async def events_of(controller):
    return [event async for event in controller.subscribe()]


class TestImageScenario:
    @pytest.mark.asyncio
    async def test_queue_progress_then_success(self, clock, job_config):
        adapter = ScriptedAdapter([
            raw("IN_QUEUE"),
            raw("IN_PROGRESS", logs=["step 1"]),
            raw("IN_PROGRESS", logs=["step 1", "step 2"]),
            raw("COMPLETED", payload={"output": {"images": [CAT_IMAGE]}}),
        ])
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.SUCCEEDED
        assert job.result.files[0].url == "https://x/y.jpg"
        assert job.result.url == "https://x/y.jpg"
        assert job.error is None
        assert job.progress_percent == 100
        assert job.provider_task_id == "task-1"
        assert adapter.status_calls == 4
        assert adapter.result_calls == 1
        assert job.log_lines.count("step 1") == 1
        assert "step 2" in job.log_lines

        events = await events_of(controller)
        finals = [e for e in events if e.final]
        assert len(finals) == 1
        assert events[-1] is finals[0]
        assert finals[0].state == JobState.SUCCEEDED
        assert finals[0].result.files[0].url == "https://x/y.jpg"

    @pytest.mark.asyncio
    async def test_progress_is_non_decreasing(self, clock, job_config):
        adapter = ScriptedAdapter(
            [raw("IN_QUEUE")] * 3 + [raw("IN_PROGRESS")] * 10
            + [raw("COMPLETED", payload={"output": {"images": [CAT_IMAGE]}})]
        )
        controller = make_controller(adapter, job_config, clock)
        await controller.start(GenerationRequest(prompt="a cat"))

        progress = [e.progress_percent for e in await events_of(controller)]
        assert progress == sorted(progress)
        assert progress[-1] == 100
        assert all(p < 100 for p in progress[:-1])

    @pytest.mark.asyncio
    async def test_states_follow_the_state_machine(self, clock, job_config):
        adapter = ScriptedAdapter([
            raw("IN_QUEUE"),
            raw("IN_PROGRESS"),
            raw("COMPLETED", payload={"output": {"images": [CAT_IMAGE]}}),
        ])
        controller = make_controller(adapter, job_config, clock)
        await controller.start(GenerationRequest(prompt="a cat"))

        states = []
        for e in await events_of(controller):
            if not states or states[-1] != e.state:
                states.append(e.state)
        assert states == [
            JobState.CREATED,
            JobState.SUBMITTING,
            JobState.QUEUED,
            JobState.PROCESSING,
            JobState.SUCCEEDED,
        ]


class TestFailures:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("kind, status", [("image", "FAILED"), ("video", "Fail")])
    async def test_provider_failure_message_is_kept(self, clock, job_config, kind, status):
        adapter = ScriptedAdapter(
            [raw("IN_QUEUE" if kind == "image" else "Preparing"), raw(status, message="Rate limit exceeded")],
            kind=kind,
        )
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.FAILED
        assert job.error.kind == ProviderBusinessError.kind
        assert "rate limit" in job.error.message.lower()
        assert job.result is None
        assert adapter.result_calls == 0

    @pytest.mark.asyncio
    async def test_provider_failure_without_message_uses_fallback(self, clock, job_config):
        adapter = ScriptedAdapter([raw("FAILED")])
        job = await make_controller(adapter, job_config, clock).start(GenerationRequest(prompt="a cat"))
        assert job.state == JobState.FAILED
        assert job.error.message

    @pytest.mark.asyncio
    async def test_business_error_on_first_poll_stops_polling(self, clock, job_config):
        adapter = ScriptedAdapter(
            [ProviderBusinessError("Rate limit exceeded", code=1002), raw("Processing")],
            kind="video",
        )
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="waves"))

        assert job.state == JobState.FAILED
        assert job.error.kind == "provider"
        assert job.error.code == 1002
        assert adapter.status_calls == 1

    @pytest.mark.asyncio
    async def test_submission_failure(self, clock, job_config):
        adapter = ScriptedAdapter([raw("IN_QUEUE")], submit_error=SubmissionError("No request ID received"))
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.FAILED
        assert job.error.kind == "submission"
        assert job.provider_task_id is None
        assert adapter.status_calls == 0

    @pytest.mark.asyncio
    async def test_result_fetch_failure_is_a_job_failure(self, clock, job_config):
        adapter = ScriptedAdapter(
            [raw("COMPLETED")],
            result_error=ResultFetchError("No image URL in completed result"),
        )
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.FAILED
        assert job.error.kind == "result_fetch"
        assert job.result is None
        assert adapter.result_calls == 1

    @pytest.mark.asyncio
    async def test_unexpected_exception_does_not_escape(self, clock, job_config):
        adapter = ScriptedAdapter([RuntimeError("boom at secret-token")])
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.FAILED
        assert "boom" not in job.error.message
        assert "secret-token" not in job.error.message


class TestTransientErrors:
    @pytest.mark.asyncio
    async def test_poll_errors_are_retried_and_logged(self, clock, job_config):
        adapter = ScriptedAdapter([
            PollError("fal.ai returned HTTP 502"),
            PollError("fal.ai returned HTTP 502"),
            raw("IN_PROGRESS"),
            raw("COMPLETED", payload={"output": {"images": [CAT_IMAGE]}}),
        ])
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.SUCCEEDED
        assert sum("Status check failed" in line for line in job.log_lines) == 2

    @pytest.mark.asyncio
    async def test_too_many_skipped_polls_fail_the_job(self, clock):
        config = JobConfig(
            poll_interval_ms=1000,
            timeout_ms=600_000,
            poll_max_retries=1,
            poll_retry_delay_ms=100,
            max_skipped_polls=2,
        )
        adapter = ScriptedAdapter([PollError("down")])
        controller = make_controller(adapter, config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.FAILED
        assert job.error.kind == "poll"
        # three skipped polls of two attempts each
        assert adapter.status_calls == 6

    @pytest.mark.asyncio
    async def test_unknown_status_keeps_polling(self, clock, job_config):
        adapter = ScriptedAdapter([
            raw("IN_QUEUE"),
            raw("WARMING_UP"),
            raw("COMPLETED", payload={"output": {"images": [CAT_IMAGE]}}),
        ])
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.SUCCEEDED
        assert any("WARMING_UP" in line for line in job.log_lines)

    @pytest.mark.asyncio
    async def test_queued_after_processing_does_not_go_back(self, clock, job_config):
        adapter = ScriptedAdapter([raw("Processing"), raw("Preparing"), raw("Processing")], kind="video")
        controller = make_controller(adapter, job_config, clock)
        adapter.on_fetch = lambda n: controller.cancel() if n == 3 else None

        await controller.start(GenerationRequest(prompt="waves"))

        states = [e.state for e in await events_of(controller)]
        first_processing = states.index(JobState.PROCESSING)
        assert JobState.QUEUED not in states[first_processing:]


class TestTimeout:
    @pytest.mark.asyncio
    async def test_times_out_at_the_ceiling(self, clock):
        config = JobConfig(poll_interval_ms=1000, timeout_ms=10_000)
        adapter = ScriptedAdapter([raw("IN_PROGRESS")])
        controller = make_controller(adapter, config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.TIMED_OUT
        assert job.error.kind == "timeout"
        assert clock.now >= 10
        assert adapter.status_calls == 9
        assert adapter.result_calls == 0

    @pytest.mark.asyncio
    async def test_does_not_time_out_before_the_ceiling(self, clock):
        config = JobConfig(poll_interval_ms=2000, timeout_ms=9_000)
        adapter = ScriptedAdapter([raw("Processing")], kind="video")
        controller = make_controller(adapter, config, clock)

        job = await controller.start(GenerationRequest(prompt="waves"))

        assert job.state == JobState.TIMED_OUT
        assert clock.now >= 9
        assert adapter.status_calls == 4

    @pytest.mark.asyncio
    async def test_progress_keeps_last_value_on_timeout(self, clock):
        config = JobConfig(poll_interval_ms=1000, timeout_ms=10_000)
        controller = make_controller(ScriptedAdapter([raw("IN_PROGRESS")]), config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        events = await events_of(controller)
        assert job.progress_percent == events[-2].progress_percent
        assert job.progress_percent < 100


class TestCancellation:
    @pytest.mark.asyncio
    @pytest.mark.parametrize("statuses", [["IN_QUEUE"], ["IN_PROGRESS"]])
    async def test_cancel_stops_polling(self, clock, job_config, statuses):
        adapter = ScriptedAdapter([raw(s) for s in statuses])
        controller = make_controller(adapter, job_config, clock)
        adapter.on_fetch = lambda n: controller.cancel() if n == 2 else None

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.CANCELLED
        assert job.error.kind == "cancelled"
        assert adapter.status_calls == 2

        events = await events_of(controller)
        finals = [e for e in events if e.final]
        assert len(finals) == 1
        assert finals[0].state == JobState.CANCELLED
        assert events[-1] is finals[0]

    @pytest.mark.asyncio
    async def test_cancel_before_run(self, clock, job_config):
        adapter = ScriptedAdapter([raw("IN_QUEUE")])
        controller = make_controller(adapter, job_config, clock)
        controller.create(GenerationRequest(prompt="a cat"))

        assert controller.cancel() is True
        job = await controller.run()

        assert job.state == JobState.CANCELLED
        assert adapter.submit_calls == 0

    @pytest.mark.asyncio
    async def test_cancel_during_submission(self, clock, job_config):
        class CancelOnSubmit(ScriptedAdapter):
            async def submit(self, request):
                controller.cancel()
                return await super().submit(request)

        adapter = CancelOnSubmit([raw("IN_QUEUE")])
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.CANCELLED
        assert job.provider_task_id == "task-1"
        assert adapter.status_calls == 0

    @pytest.mark.asyncio
    async def test_result_retrieved_after_cancel_is_discarded(self, clock, job_config):
        class CancelOnResult(ScriptedAdapter):
            async def fetch_result(self, task_id, status):
                assert controller.cancel() is True
                return await super().fetch_result(task_id, status)

        adapter = CancelOnResult([raw("IN_PROGRESS"), raw("COMPLETED", payload={"output": {"images": [CAT_IMAGE]}})])
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert adapter.result_calls == 1
        assert job.state == JobState.CANCELLED
        assert job.result is None
        assert job.error.kind == "cancelled"
        finals = [e for e in await events_of(controller) if e.final]
        assert [e.state for e in finals] == [JobState.CANCELLED]

    @pytest.mark.asyncio
    async def test_failed_result_fetch_after_cancel_ends_cancelled(self, clock, job_config):
        class CancelOnResult(ScriptedAdapter):
            async def fetch_result(self, task_id, status):
                controller.cancel()
                raise ResultFetchError("Failed to get video URL")

        adapter = CancelOnResult([raw("COMPLETED")])
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.CANCELLED
        assert job.error.kind == "cancelled"

    @pytest.mark.asyncio
    async def test_failed_submission_after_cancel_ends_cancelled(self, clock, job_config):
        class CancelOnSubmit(ScriptedAdapter):
            async def submit(self, request):
                controller.cancel()
                raise SubmissionError("Could not reach scripted")

        adapter = CancelOnSubmit([raw("IN_QUEUE")])
        controller = make_controller(adapter, job_config, clock)

        job = await controller.start(GenerationRequest(prompt="a cat"))

        assert job.state == JobState.CANCELLED
        assert job.error.kind == "cancelled"
        assert adapter.status_calls == 0

    @pytest.mark.asyncio
    async def test_task_cancellation_closes_the_stream(self, clock, job_config):
        adapter = ScriptedAdapter([raw("IN_PROGRESS")])
        controller = make_controller(adapter, job_config, clock)
        controller.create(GenerationRequest(prompt="a cat"))
        task = asyncio.create_task(controller.run())
        for _ in range(3):
            await asyncio.sleep(0)

        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

        job = await asyncio.wait_for(controller.wait(), timeout=1)
        assert job.state == JobState.CANCELLED
        finals = [e for e in await events_of(controller) if e.final]
        assert len(finals) == 1

    @pytest.mark.asyncio
    async def test_cancel_after_finish_is_refused(self, clock, job_config):
        adapter = ScriptedAdapter([raw("COMPLETED", payload={"output": {"images": [CAT_IMAGE]}})])
        controller = make_controller(adapter, job_config, clock)
        await controller.start(GenerationRequest(prompt="a cat"))

        assert controller.cancel() is False
        assert controller.snapshot().state == JobState.SUCCEEDED


class TestLifecycleGuards:
    @pytest.mark.asyncio
    async def test_job_cannot_be_started_twice(self, clock, job_config):
        adapter = ScriptedAdapter([raw("COMPLETED", payload={"output": {"images": [CAT_IMAGE]}})])
        controller = make_controller(adapter, job_config, clock)
        await controller.start(GenerationRequest(prompt="a cat"))

        with pytest.raises(InvalidStateTransition):
            await controller.run()
        with pytest.raises(InvalidStateTransition):
            controller.create(GenerationRequest(prompt="a dog"))

    def test_invalid_request_is_rejected_before_creation(self, clock, job_config):
        controller = make_controller(ScriptedAdapter([raw("IN_QUEUE")]), job_config, clock)
        with pytest.raises(InvalidRequest):
            controller.create(GenerationRequest(prompt="x" * 2001))
        assert controller.snapshot() is None

    def test_illegal_transitions(self):
        check_transition(JobState.QUEUED, JobState.PROCESSING)
        with pytest.raises(InvalidStateTransition):
            check_transition(JobState.PROCESSING, JobState.QUEUED)
        with pytest.raises(InvalidStateTransition):
            check_transition(JobState.SUCCEEDED, JobState.FAILED)
        with pytest.raises(InvalidStateTransition):
            check_transition(JobState.CREATED, JobState.QUEUED)

    def test_request_and_snapshots_are_immutable(self, clock, job_config):
        controller = make_controller(ScriptedAdapter([raw("IN_QUEUE")]), job_config, clock)
        snapshot = controller.create(GenerationRequest(prompt="a cat", params={"seed": 1}))

        with pytest.raises(ValidationError):
            snapshot.state = JobState.FAILED
        with pytest.raises(ValidationError):
            GenerationRequest(prompt="a cat").prompt = "a dog"
