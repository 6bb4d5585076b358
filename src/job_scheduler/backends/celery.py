import asyncio
import logging
import uuid
from datetime import datetime
from typing import Dict

from celery import Celery

from .base import DispatchBackend

logger = logging.getLogger(__name__)

TASK_NAME = "job_scheduler.execute_job"


class CeleryBackend(DispatchBackend):
    """
    Dispatch backend that turns each wake-up into a Celery task with an ``eta``.

    Cancellation revokes the task by id. The id map is process local, so a
    wake-up armed by another process cannot be revoked from here; the
    orchestrator drops such stale deliveries because the job's ``next_run_at``
    or status no longer matches.
    """
    app: Celery

    def __init__(self, celery_app: Celery):
        super().__init__()
        self.app = celery_app

        @self.app.task(name=TASK_NAME)
        def execute_job(job_id: str):
            logger.info("Processing wake-up from queue: %s", job_id)
            asyncio.run(self.deliver(job_id))

        self._celery_task = execute_job
        self._task_ids: Dict[str, str] = {}

    async def schedule(self, job_id: str, run_at: datetime) -> None:
        await self.cancel(job_id)
        task_id = f"{job_id}:{uuid.uuid4().hex[:8]}"
        self._send(job_id, run_at, task_id)
        self._task_ids[job_id] = task_id
        logger.info("Scheduled job %s to run at %s (task %s)", job_id, run_at.isoformat(), task_id)

    async def cancel(self, job_id: str) -> bool:
        task_id = self._task_ids.pop(job_id, None)
        if task_id is None:
            return False
        self._revoke(task_id)
        logger.info("Revoked wake-up %s for job %s", task_id, job_id)
        return True

    def _send(self, job_id: str, eta: datetime, task_id: str) -> None:
        self._celery_task.apply_async(args=[job_id], eta=eta, task_id=task_id)

    def _revoke(self, task_id: str) -> None:
        self.app.control.revoke(task_id)
