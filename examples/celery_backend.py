import asyncio
from datetime import datetime, timedelta, timezone

from celery import Celery

from job_scheduler.backends.celery import CeleryBackend
from job_scheduler.config import SchedulerSettings, configure_logging
from job_scheduler.executors import HttpJobExecutor, JobExecutorRegistry, SimulatedJobExecutor
from job_scheduler.orchestrator import JobOrchestrator
from job_scheduler.storages.sqlalchemy import SqlAlchemyStorage

settings = SchedulerSettings.from_env()
configure_logging(settings.log_level)

celery_app = Celery('job_scheduler_app', broker='redis://localhost:6379/2', backend='redis://localhost:6379/3')
celery_app.conf.update(
    task_always_eager=False,
    task_eager_propagates=False,
)

# The worker and the producer must share one database.
storage = SqlAlchemyStorage(
    db_url="sqlite+aiosqlite:///./jobs.db"
)

registry = JobExecutorRegistry(default=SimulatedJobExecutor())
registry.register(HttpJobExecutor())

backend = CeleryBackend(celery_app)
orchestrator = JobOrchestrator.from_settings(settings, storage, backend, registry)


async def main() -> None:
    await storage.create_tables()
    await orchestrator.start()

    job = await orchestrator.create_job("demo_user", {
        "name": "ping example.com",
        "type": "recurring",
        "recurrence_pattern": "hourly",
        "payload": {"executor": "http", "url": "https://example.com"},
        "scheduled_at": datetime.now(timezone.utc) + timedelta(seconds=10),
    })
    print(f"Job created: {job.id}, first run at {job.next_run_at.isoformat()}")

    await orchestrator.stop()
    await storage.dispose()


if __name__ == "__main__":
    # create worker in other thread
    import threading
    def start_worker() -> None:
        import os
        os.system("celery -A examples.celery_backend.celery_app worker -P solo --loglevel=info")

    worker_thread = threading.Thread(target=start_worker)
    worker_thread.start()

    asyncio.run(main())

    worker_thread.join()
