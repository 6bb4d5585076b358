import logging
from typing import Dict, Optional

from pydantic import JsonValue

from job_scheduler.domain.job import Job
from job_scheduler.errors import ExecutionError
from job_scheduler.executors.protocol import JobExecutor

logger = logging.getLogger(__name__)

EXECUTOR_KEY = "executor"


class JobExecutorRegistry(JobExecutor):
    """
    Routes each job to an executor named by ``payload["executor"]``.

    Jobs that name no executor go to ``default``. The registry is itself a
    ``JobExecutor``, so the orchestrator never needs to know about routing.
    """

    def __init__(self, default: Optional[JobExecutor] = None):
        self._executors: Dict[str, JobExecutor] = {}
        self._default: Optional[JobExecutor] = default

    @staticmethod
    def executor_name() -> str:
        return "registry"

    @property
    def names(self) -> list:
        return sorted(self._executors)

    def register(self, executor: JobExecutor) -> None:
        """
        Register an executor instance under its ``executor_name()``.

        Raises:
            ValueError: If an executor with that name is already registered.
        """
        name: str = executor.executor_name()
        if name in self._executors:
            raise ValueError(f"An executor named '{name}' is already registered")
        self._executors[name] = executor

    def get_executor(self, job: Job) -> JobExecutor:
        """
        Resolve the executor for a job.

        Raises:
            ExecutionError: If the job names an unknown executor, or names none
                and no default is configured.
        """
        name = job.payload.get(EXECUTOR_KEY) if isinstance(job.payload, dict) else None
        if name is None:
            if self._default is None:
                raise ExecutionError(f"Job {job.id} names no executor and no default is configured")
            return self._default
        if name not in self._executors:
            raise ExecutionError(f"No executor registered with name '{name}'")
        return self._executors[name]

    async def async_execute(self, job: Job) -> JsonValue:
        executor = self.get_executor(job)
        logger.debug("Routing job %s to %s", job.id, executor.executor_name())
        return await executor.async_execute(job)
