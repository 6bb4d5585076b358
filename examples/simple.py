import asyncio
from datetime import datetime, timedelta, timezone

from job_scheduler.backends.in_memory import InMemoryBackend
from job_scheduler.config import SchedulerSettings, configure_logging
from job_scheduler.domain.job import Job
from job_scheduler.executors import JobExecutorRegistry, SimulatedJobExecutor, HttpJobExecutor
from job_scheduler.executors.protocol import JobExecutor
from job_scheduler.orchestrator import JobOrchestrator
from job_scheduler.storages.sqlalchemy import SqlAlchemyStorage


class PrintExecutor(JobExecutor):
    @staticmethod
    def executor_name() -> str:
        return "print"

    async def async_execute(self, job: Job):
        print(f"Executing job {job.id} with payload: {job.payload}")
        return {"printed": True}


settings = SchedulerSettings.from_env()
configure_logging(settings.log_level)

registry = JobExecutorRegistry(default=SimulatedJobExecutor())
registry.register(PrintExecutor())
registry.register(HttpJobExecutor())

storage = SqlAlchemyStorage(db_url=settings.database_url)
orchestrator = JobOrchestrator.from_settings(settings, storage, InMemoryBackend(), registry)


async def main():
    await storage.create_tables()
    await orchestrator.start()

    now = datetime.now(timezone.utc)
    one_time = await orchestrator.create_job("demo_user", {
        "name": "say hello",
        "payload": {"executor": "print", "message": "hello"},
        "scheduled_at": now + timedelta(seconds=2),
    })
    flaky = await orchestrator.create_job("demo_user", {
        "name": "flaky simulation",
        "payload": {"duration": 200, "shouldFail": True},
        "max_retries": 2,
    })
    print(f"Created {one_time.id} and {flaky.id}")

    await asyncio.sleep(5)

    for job_id in (one_time.id, flaky.id):
        job = await orchestrator.get_job(job_id, "demo_user")
        print(f"{job.name}: {job.status.value} (retries used: {job.retry_count})")
        for execution in await orchestrator.get_execution_history(job_id, "demo_user"):
            print(f"  attempt {execution.attempt_number}: {execution.outcome.value} {execution.error_message or ''}")

    await orchestrator.stop()
    await storage.dispose()


if __name__ == "__main__":
    asyncio.run(main())
