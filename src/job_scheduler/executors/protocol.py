from typing import Protocol

from pydantic import JsonValue

from job_scheduler.domain.job import Job


class JobExecutor(Protocol):
    """
    Protocol class for job executors.
    """

    async def async_execute(self, job: Job) -> JsonValue:
        """
        Run the work described by the job and return its result.

        Args:
            job (Job): The job to be executed. Executors read ``id``, ``payload``
                and metadata; they must not change its state.

        Raises:
            Exception: Any failure. The orchestrator records it as a failed attempt.
        """
        ...

    @staticmethod
    def executor_name() -> str:
        """
        Return the name jobs use in ``payload["executor"]`` to select this executor.
        """
        ...
