from typing import Optional


class SchedulerError(Exception):
    """
    Base class for all errors raised by the job scheduler.
    """


class ValidationError(SchedulerError, ValueError):
    """
    A job spec or patch violates the job invariants. Raised before anything is persisted.
    """


class NotFoundError(SchedulerError, LookupError):
    """
    No job matches the given id for the given owner.
    """

    def __init__(self, job_id: str):
        super().__init__(f"Job with ID {job_id} not found")
        self.job_id = job_id


class InvalidStateError(SchedulerError):
    """
    The requested transition is illegal for the job's current status.
    """


class ExecutionError(SchedulerError):
    """
    The execution capability failed. Recorded in the execution history and
    never propagated out of ``JobOrchestrator.execute_job``.
    """

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


class ExecutionTimeoutError(ExecutionError):
    pass


class DispatchError(SchedulerError):
    """
    The dispatch backend could not arm or disarm a wake-up after bounded retries.
    """

    def __init__(self, job_id: str, attempts: int, cause: Optional[BaseException] = None):
        super().__init__(f"Dispatch failed for job {job_id} after {attempts} attempt(s): {cause}")
        self.job_id = job_id
        self.attempts = attempts
        self.cause = cause
