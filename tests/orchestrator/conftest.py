from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

import pytest
import pytest_asyncio

from job_scheduler.backends.base import DispatchBackend
from job_scheduler.clock import ManualClock
from job_scheduler.dispatch import DispatchAdapter
from job_scheduler.domain.job import Job
from job_scheduler.orchestrator import JobOrchestrator
from job_scheduler.retry import RetryPolicy
from job_scheduler.storages.sqlalchemy import InMemoryStorage

START = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class RecordingBackend(DispatchBackend):
    """
    Backend that only records arm/cancel calls. Tests fire wake-ups by hand.
    """

    def __init__(self):
        super().__init__()
        self.armed: Dict[str, datetime] = {}
        self.calls: List[Tuple[str, str, Optional[datetime]]] = []
        self.failures_left = 0

    async def schedule(self, job_id: str, run_at: datetime) -> None:
        self._maybe_fail()
        self.armed[job_id] = run_at
        self.calls.append(("schedule", job_id, run_at))

    async def cancel(self, job_id: str) -> bool:
        self._maybe_fail()
        self.calls.append(("cancel", job_id, None))
        return self.armed.pop(job_id, None) is not None

    async def fire(self, job_id: str) -> None:
        self.armed.pop(job_id, None)
        await self.deliver(job_id)

    def _maybe_fail(self):
        if self.failures_left:
            self.failures_left -= 1
            raise ConnectionError("dispatch backend unavailable")


class ScriptedExecutor:
    """
    Executor that plays back a script of results and exceptions, repeating
    the last entry once the script runs out.
    """

    def __init__(self, *script):
        self.script = list(script) or [{"ok": True}]
        self.calls: List[str] = []

    @staticmethod
    def executor_name() -> str:
        return "scripted"

    async def async_execute(self, job: Job):
        index = min(len(self.calls), len(self.script) - 1)
        self.calls.append(job.id)
        outcome = self.script[index]
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


@pytest.fixture(scope="function")
def clock() -> ManualClock:
    return ManualClock(START)


@pytest.fixture(scope="function")
def backend() -> RecordingBackend:
    return RecordingBackend()


@pytest.fixture(scope="function")
def executor() -> ScriptedExecutor:
    return ScriptedExecutor({"ok": True})


@pytest_asyncio.fixture(scope="function")
async def storage():
    storage = InMemoryStorage()
    await storage.create_tables()
    yield storage
    await storage.dispose()


@pytest.fixture(scope="function")
def orchestrator(storage, backend, executor, clock) -> JobOrchestrator:
    return JobOrchestrator(
        storage=storage,
        dispatcher=DispatchAdapter(backend, attempts=3, retry_delay_ms=0),
        executor=executor,
        clock=clock,
        retry_policy=RetryPolicy(base_delay_ms=5000, max_delay_ms=60_000),
    )


async def fire_when_due(backend: RecordingBackend, clock: ManualClock, job_id: str) -> None:
    """Move the clock to the armed time and deliver the wake-up."""
    run_at = backend.armed[job_id]
    if run_at > clock.now():
        clock.set(run_at)
    await backend.fire(job_id)


def in_minutes(clock: ManualClock, minutes: int) -> datetime:
    return clock.now() + timedelta(minutes=minutes)
