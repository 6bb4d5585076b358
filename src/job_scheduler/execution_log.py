import logging
from datetime import datetime
from typing import List, Optional

from pydantic import JsonValue

from job_scheduler.domain.job import Job
from job_scheduler.domain.execution import ExecutionOutcome, JobExecution
from job_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)


class ExecutionLog:
    """
    Append-only record of attempts. Each record is written once when the
    attempt starts and finalized once when its outcome is known.
    """

    def __init__(self, storage: Storage, default_limit: int = 50):
        self.storage = storage
        self.default_limit = default_limit

    async def start_attempt(self, job: Job, started_at: datetime) -> JobExecution:
        execution = JobExecution(
            job_id=job.id,
            attempt_number=job.retry_count + 1,
            outcome=ExecutionOutcome.FAILED,
            started_at=started_at,
            created_at=started_at,
        )
        await self.storage.create_execution(execution)
        logger.debug("Recorded attempt %d for job %s", execution.attempt_number, job.id)
        return execution

    async def record_success(self, execution: JobExecution, result: JsonValue, completed_at: datetime) -> bool:
        execution.outcome = ExecutionOutcome.SUCCESS
        execution.result = result
        execution.error_message = None
        execution.completed_at = completed_at
        return await self._finalize(execution)

    async def record_failure(self, execution: JobExecution, error_message: str, completed_at: datetime) -> bool:
        execution.outcome = ExecutionOutcome.FAILED
        execution.error_message = error_message
        execution.completed_at = completed_at
        return await self._finalize(execution)

    async def history(self, job_id: str, limit: Optional[int] = None) -> List[JobExecution]:
        return await self.storage.list_recent_executions(job_id, limit or self.default_limit)

    async def open_attempt(self, job_id: str) -> Optional[JobExecution]:
        return await self.storage.get_open_execution(job_id)

    async def _finalize(self, execution: JobExecution) -> bool:
        updated = await self.storage.update_execution(execution)
        if not updated:
            # The job and its history were deleted while the attempt ran.
            logger.warning("Execution %s for job %s no longer exists", execution.id, execution.job_id)
        return updated
