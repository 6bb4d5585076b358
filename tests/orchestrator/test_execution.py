import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from job_scheduler.dispatch import DispatchAdapter
from job_scheduler.domain.execution import ExecutionOutcome
from job_scheduler.domain.job import JobStatus
from job_scheduler.errors import ExecutionError
from job_scheduler.orchestrator import JobOrchestrator
from job_scheduler.recurrence import next_run_time
from job_scheduler.retry import RetryPolicy

from conftest import ScriptedExecutor, fire_when_due, in_minutes

OWNER = "user_1"


@pytest.mark.asyncio
async def test_one_time_job_fails_permanently_without_retries(
    orchestrator: JobOrchestrator, backend, executor, clock
) -> None:
    executor.script = [ExecutionError("always fails")]
    job = await orchestrator.create_job(
        OWNER, {"name": "Doomed", "scheduled_at": clock.now() + timedelta(seconds=1), "max_retries": 0}
    )

    await fire_when_due(backend, clock, job.id)

    failed = await orchestrator.get_job(job.id, OWNER)
    assert failed.status == JobStatus.FAILED
    assert failed.is_active is False
    assert failed.retry_count == 0
    assert failed.error_message == "always fails"
    assert job.id not in backend.armed

    history = await orchestrator.get_execution_history(job.id, OWNER)
    assert len(history) == 1
    assert history[0].outcome == ExecutionOutcome.FAILED
    assert history[0].attempt_number == 1
    assert history[0].error_message == "always fails"
    assert history[0].completed_at is not None


@pytest.mark.asyncio
async def test_recurring_daily_job_cycles(orchestrator: JobOrchestrator, backend, executor, clock) -> None:
    job = await orchestrator.create_job(
        OWNER, {"name": "Daily digest", "type": "recurring", "recurrence_pattern": "daily", "max_retries": 3}
    )

    previous_run = job.next_run_at
    for cycle in range(3):
        await fire_when_due(backend, clock, job.id)

        current = await orchestrator.get_job(job.id, OWNER)
        assert current.status == JobStatus.PENDING
        assert current.retry_count == 0
        assert current.next_run_at == previous_run + timedelta(hours=24)
        assert current.started_at is None
        assert current.completed_at is None
        assert current.result == {"ok": True}
        assert backend.armed[job.id] == current.next_run_at
        previous_run = current.next_run_at

    history = await orchestrator.get_execution_history(job.id, OWNER)
    assert [execution.outcome for execution in history] == [ExecutionOutcome.SUCCESS] * 3
    assert [execution.attempt_number for execution in history] == [1, 1, 1]


@pytest.mark.asyncio
async def test_job_succeeds_after_retries(orchestrator: JobOrchestrator, backend, executor, clock) -> None:
    executor.script = [ExecutionError("first"), ExecutionError("second"), {"value": 42}]
    job = await orchestrator.create_job(OWNER, {"name": "Eventually", "max_retries": 2})

    for _ in range(3):
        await fire_when_due(backend, clock, job.id)

    completed = await orchestrator.get_job(job.id, OWNER)
    assert completed.status == JobStatus.COMPLETED
    assert completed.is_active is False
    assert completed.result == {"value": 42}
    assert completed.error_message is None
    assert completed.completed_at == clock.now()

    history = list(reversed(await orchestrator.get_execution_history(job.id, OWNER)))
    assert [execution.outcome for execution in history] == [
        ExecutionOutcome.FAILED, ExecutionOutcome.FAILED, ExecutionOutcome.SUCCESS
    ]
    assert [execution.attempt_number for execution in history] == [1, 2, 3]
    assert history[2].result == {"value": 42}
    assert history[0].error_message == "first"


@pytest.mark.asyncio
async def test_earlier_reschedule_fires_once(orchestrator: JobOrchestrator, backend, executor, clock) -> None:
    original_time = in_minutes(clock, 60)
    job = await orchestrator.create_job(OWNER, {"name": "Moved up", "scheduled_at": original_time})
    earlier = in_minutes(clock, 15)

    await orchestrator.update_job(job.id, OWNER, {"scheduled_at": earlier})

    assert backend.armed == {job.id: earlier}
    await fire_when_due(backend, clock, job.id)
    assert executor.calls == [job.id]

    # The original wake-up, had the backend delivered it anyway, does nothing.
    clock.set(original_time)
    await backend.deliver(job.id)
    assert executor.calls == [job.id]
    assert len(await orchestrator.get_execution_history(job.id, OWNER)) == 1


@pytest.mark.asyncio
async def test_retry_uses_exponential_backoff(orchestrator: JobOrchestrator, backend, executor, clock) -> None:
    executor.script = [ExecutionError("nope")]
    job = await orchestrator.create_job(OWNER, {"name": "Backoff", "max_retries": 5})

    delays = []
    for _ in range(5):
        await fire_when_due(backend, clock, job.id)
        delays.append(backend.armed[job.id] - clock.now())

    assert delays == [timedelta(seconds=s) for s in (5, 10, 20, 40, 60)]

    await fire_when_due(backend, clock, job.id)
    failed = await orchestrator.get_job(job.id, OWNER)
    assert failed.status == JobStatus.FAILED
    assert failed.retry_count == failed.max_retries == 5
    assert job.id not in backend.armed
    assert len(executor.calls) == 6


@pytest.mark.asyncio
@pytest.mark.parametrize("max_retries", [0, 1, 3, 10])
async def test_retry_count_never_exceeds_max(orchestrator: JobOrchestrator, backend, executor, clock, max_retries) -> None:
    executor.script = [RuntimeError("down")]
    job = await orchestrator.create_job(OWNER, {"name": "Bounded", "max_retries": max_retries})

    while job.id in backend.armed:
        await fire_when_due(backend, clock, job.id)
        current = await orchestrator.get_job(job.id, OWNER)
        assert current.retry_count <= current.max_retries

    assert current.status == JobStatus.FAILED
    assert len(executor.calls) == max_retries + 1


@pytest.mark.asyncio
async def test_recurring_failure_then_success_resets_retries(
    orchestrator: JobOrchestrator, backend, executor, clock
) -> None:
    executor.script = [RuntimeError("flaky"), {"ok": True}]
    job = await orchestrator.create_job(
        OWNER, {"name": "Hourly", "type": "recurring", "recurrence_pattern": "hourly", "max_retries": 2}
    )

    await fire_when_due(backend, clock, job.id)
    after_failure = await orchestrator.get_job(job.id, OWNER)
    assert after_failure.retry_count == 1
    assert after_failure.error_message == "flaky"

    await fire_when_due(backend, clock, job.id)
    after_success = await orchestrator.get_job(job.id, OWNER)
    assert after_success.retry_count == 0
    assert after_success.error_message is None
    assert after_success.next_run_at == next_run_time(clock.now(), after_success.recurrence_pattern)
    assert after_success.next_run_at > clock.now()


@pytest.mark.asyncio
async def test_duplicate_delivery_is_noop(orchestrator: JobOrchestrator, backend, executor, clock) -> None:
    job = await orchestrator.create_job(OWNER, {"name": "Once only"})

    await fire_when_due(backend, clock, job.id)
    await backend.deliver(job.id)

    assert executor.calls == [job.id]
    history = await orchestrator.get_execution_history(job.id, OWNER)
    assert len(history) == 1
    assert (await orchestrator.get_job(job.id, OWNER)).status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_concurrent_deliveries_execute_once(orchestrator: JobOrchestrator, backend, clock) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    class BlockingExecutor(ScriptedExecutor):
        async def async_execute(self, job):
            self.calls.append(job.id)
            started.set()
            await release.wait()
            return {"ok": True}

    orchestrator.executor = BlockingExecutor()
    job = await orchestrator.create_job(OWNER, {"name": "Raced"})

    first = asyncio.create_task(backend.deliver(job.id))
    await started.wait()
    await backend.deliver(job.id)
    release.set()
    await first

    assert orchestrator.executor.calls == [job.id]
    assert len(await orchestrator.get_execution_history(job.id, OWNER)) == 1


@pytest.mark.asyncio
async def test_early_wakeup_is_ignored(orchestrator: JobOrchestrator, backend, executor, clock) -> None:
    job = await orchestrator.create_job(OWNER, {"name": "Not yet", "scheduled_at": in_minutes(clock, 30)})

    await backend.deliver(job.id)

    assert executor.calls == []
    assert (await orchestrator.get_job(job.id, OWNER)).status == JobStatus.PENDING


@pytest.mark.asyncio
async def test_cancel_during_execution_is_not_overwritten(orchestrator: JobOrchestrator, backend, clock) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    class BlockingExecutor(ScriptedExecutor):
        async def async_execute(self, job):
            self.calls.append(job.id)
            started.set()
            await release.wait()
            return {"late": True}

    orchestrator.executor = BlockingExecutor()
    job = await orchestrator.create_job(
        OWNER, {"name": "Stopped", "type": "recurring", "recurrence_pattern": "daily"}
    )

    running = asyncio.create_task(backend.fire(job.id))
    await started.wait()
    assert (await orchestrator.get_job(job.id, OWNER)).status == JobStatus.RUNNING

    cancelled = await orchestrator.cancel_job(job.id, OWNER)
    assert cancelled.status == JobStatus.CANCELLED

    release.set()
    await running

    final = await orchestrator.get_job(job.id, OWNER)
    assert final.status == JobStatus.CANCELLED
    assert final.is_active is False
    assert job.id not in backend.armed
    history = await orchestrator.get_execution_history(job.id, OWNER)
    assert len(history) == 1
    assert history[0].outcome == ExecutionOutcome.SUCCESS


@pytest.mark.asyncio
async def test_update_during_execution_is_kept(orchestrator: JobOrchestrator, backend, clock) -> None:
    started = asyncio.Event()
    release = asyncio.Event()

    class BlockingExecutor(ScriptedExecutor):
        async def async_execute(self, job):
            self.calls.append(job.id)
            started.set()
            await release.wait()
            return {"ok": True}

    orchestrator.executor = BlockingExecutor()
    job = await orchestrator.create_job(OWNER, {"name": "Renamed mid-run"})

    running = asyncio.create_task(backend.fire(job.id))
    await started.wait()
    await orchestrator.update_job(job.id, OWNER, {"name": "New name"})
    release.set()
    await running

    final = await orchestrator.get_job(job.id, OWNER)
    assert final.name == "New name"
    assert final.status == JobStatus.COMPLETED


@pytest.mark.asyncio
async def test_execution_timeout_counts_as_failure(storage, backend, clock) -> None:
    class SlowExecutor(ScriptedExecutor):
        async def async_execute(self, job):
            await asyncio.sleep(5)

    orchestrator = JobOrchestrator(
        storage=storage,
        dispatcher=DispatchAdapter(backend, retry_delay_ms=0),
        executor=SlowExecutor(),
        clock=clock,
        retry_policy=RetryPolicy(),
        execution_timeout_s=0.05,
    )
    job = await orchestrator.create_job(OWNER, {"name": "Slow", "max_retries": 0})

    await fire_when_due(backend, clock, job.id)

    failed = await orchestrator.get_job(job.id, OWNER)
    assert failed.status == JobStatus.FAILED
    assert failed.error_message == "Execution timed out after 0.05s"


@pytest.mark.asyncio
async def test_non_json_result_is_a_failed_attempt(orchestrator: JobOrchestrator, backend, executor, clock) -> None:
    executor.script = [{"executed_at": datetime(2026, 3, 1, tzinfo=timezone.utc)}]
    job = await orchestrator.create_job(OWNER, {"name": "Returns a datetime", "max_retries": 0})

    await fire_when_due(backend, clock, job.id)

    failed = await orchestrator.get_job(job.id, OWNER)
    assert failed.status == JobStatus.FAILED
    assert failed.result is None
    assert "not JSON" in failed.error_message
    history = await orchestrator.get_execution_history(job.id, OWNER)
    assert len(history) == 1
    assert history[0].outcome == ExecutionOutcome.FAILED
    assert history[0].completed_at is not None


@pytest.mark.asyncio
async def test_storage_error_while_recording_success_is_a_failed_attempt(
    orchestrator: JobOrchestrator, backend, storage, clock, monkeypatch
) -> None:
    job = await orchestrator.create_job(OWNER, {"name": "Unlucky write", "max_retries": 1})
    update_job = storage.update_job
    broken = {"left": 1}

    async def update_job_once_broken(job, expected_status=None):
        if broken["left"]:
            broken["left"] -= 1
            raise RuntimeError("database is locked")
        return await update_job(job, expected_status)

    monkeypatch.setattr(storage, "update_job", update_job_once_broken)

    await fire_when_due(backend, clock, job.id)

    retrying = await orchestrator.get_job(job.id, OWNER)
    assert retrying.status == JobStatus.PENDING
    assert retrying.retry_count == 1
    assert retrying.error_message == "Could not record result: database is locked"
    assert backend.armed[job.id] == retrying.next_run_at
    history = await orchestrator.get_execution_history(job.id, OWNER)
    assert [execution.outcome for execution in history] == [ExecutionOutcome.FAILED]
    assert history[0].completed_at is not None


@pytest.mark.asyncio
async def test_history_order_follows_injected_clock(orchestrator: JobOrchestrator, backend, executor, clock) -> None:
    executor.script = [RuntimeError("first"), {"ok": True}]
    job = await orchestrator.create_job(OWNER, {"name": "Twice", "max_retries": 1})

    await fire_when_due(backend, clock, job.id)
    first_run = clock.now()
    await fire_when_due(backend, clock, job.id)

    history = await orchestrator.get_execution_history(job.id, OWNER)
    assert [execution.attempt_number for execution in history] == [2, 1]
    assert history[1].created_at == history[1].started_at == first_run
    assert history[0].created_at == history[0].started_at == clock.now()


@pytest.mark.asyncio
async def test_dispatch_failure_after_execution_leaves_job_pending(
    orchestrator: JobOrchestrator, backend, executor, clock
) -> None:
    executor.script = [RuntimeError("boom")]
    job = await orchestrator.create_job(OWNER, {"name": "Unarmed retry", "max_retries": 2})
    backend.failures_left = 100

    await fire_when_due(backend, clock, job.id)

    current = await orchestrator.get_job(job.id, OWNER)
    assert current.status == JobStatus.PENDING
    assert current.retry_count == 1
    assert job.id not in backend.armed

    backend.failures_left = 0
    assert await orchestrator.recover() == 1
    assert backend.armed[job.id] == current.next_run_at


@pytest.mark.asyncio
async def test_recover_fails_stale_running_job(orchestrator: JobOrchestrator, backend, clock) -> None:
    job = await orchestrator.create_job(OWNER, {"name": "Crashed", "max_retries": 1})
    # Simulate a worker that claimed the job and died mid-attempt.
    claimed = await orchestrator.storage.claim_job(job.id, clock.now())
    await orchestrator.execution_log.start_attempt(claimed, clock.now())
    backend.armed.clear()

    clock.advance(timedelta(hours=2))
    armed = await orchestrator.recover()

    assert armed == 1
    current = await orchestrator.get_job(job.id, OWNER)
    assert current.status == JobStatus.PENDING
    assert current.retry_count == 1
    assert current.error_message == "Execution interrupted before completion"
    assert backend.armed[job.id] == current.next_run_at

    history = await orchestrator.get_execution_history(job.id, OWNER)
    assert len(history) == 1
    assert history[0].outcome == ExecutionOutcome.FAILED
    assert history[0].completed_at == clock.now()


@pytest.mark.asyncio
async def test_recover_leaves_recent_running_job(orchestrator: JobOrchestrator, backend, clock) -> None:
    job = await orchestrator.create_job(OWNER, {"name": "Still going"})
    await orchestrator.storage.claim_job(job.id, clock.now())

    clock.advance(timedelta(minutes=5))
    await orchestrator.recover()

    assert (await orchestrator.get_job(job.id, OWNER)).status == JobStatus.RUNNING
