from datetime import datetime
from typing import List, Optional, Protocol, Tuple

from job_scheduler.domain.job import Job, JobFilter, JobStatus
from job_scheduler.domain.execution import JobExecution


class Storage(Protocol):
    async def create_job(self, job: Job) -> str:
        """Persist a new job and return its ID."""
        ...

    async def get_job(self, job_id: str, owner_id: Optional[str] = None) -> Optional[Job]:
        """Retrieve a job by its ID, scoped to ``owner_id`` when given."""
        ...

    async def list_jobs(
        self, owner_id: str, job_filter: Optional[JobFilter] = None, limit: int = 10, offset: int = 0
    ) -> Tuple[List[Job], int]:
        """List an owner's jobs newest first. Returns the page and the total match count."""
        ...

    async def update_job(self, job: Job, expected_status: Optional[JobStatus] = None) -> bool:
        """
        Overwrite a job's mutable fields. When ``expected_status`` is given the
        write only happens if the stored status still matches. Return True if
        a row was written.
        """
        ...

    async def claim_job(self, job_id: str, started_at: datetime) -> Optional[Job]:
        """
        Atomically move a job from pending to running. Return the updated job,
        or None if the job is missing or was not pending.
        """
        ...

    async def delete_job(self, job_id: str, owner_id: str) -> bool:
        """Delete a job and its execution history. Return True if it existed."""
        ...

    async def find_pending(self) -> List[Job]:
        """Active pending jobs ordered by next_run_at."""
        ...

    async def find_recurring(self) -> List[Job]:
        """Active recurring jobs."""
        ...

    async def find_running(self, started_before: datetime) -> List[Job]:
        """Running jobs whose current attempt started before ``started_before``."""
        ...

    async def create_execution(self, execution: JobExecution) -> str:
        """Append an execution record and return its ID."""
        ...

    async def update_execution(self, execution: JobExecution) -> bool:
        """Finalize an execution record. Return True if it existed."""
        ...

    async def list_recent_executions(self, job_id: str, limit: int = 50) -> List[JobExecution]:
        """Execution records for a job, most recent first."""
        ...

    async def get_open_execution(self, job_id: str) -> Optional[JobExecution]:
        """The latest execution record of a job that was never finalized."""
        ...
