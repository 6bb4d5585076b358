"""
Job Scheduling System

Core Concepts:

Job:
    A unit of work scheduled to run once at a given time, or on a recurring
    hourly/daily/weekly/monthly cadence.

Execution:
    A record of one attempt to run a job. A failed attempt is retried with
    exponential backoff until the job's ``max_retries`` is used up, after
    which the job is marked failed.

Wake-up:
    A signal from a dispatch backend saying a job is due. The orchestrator
    handles it by running the job exactly once per eligible occurrence.

Components:
    - JobOrchestrator: owns job state transitions.
    - DispatchAdapter / DispatchBackend: arm and disarm wake-ups.
    - JobExecutor: the pluggable work itself.
    - ExecutionLog: attempt history.
    - Storage: persistence of jobs and executions.
"""

from .domain import (
    ExecutionOutcome,
    Job,
    JobExecution,
    JobFilter,
    JobPage,
    JobPatch,
    JobSpec,
    JobStatus,
    JobType,
    RecurrencePattern,
)
from .errors import (
    DispatchError,
    ExecutionError,
    ExecutionTimeoutError,
    InvalidStateError,
    NotFoundError,
    SchedulerError,
    ValidationError,
)
from .orchestrator import JobOrchestrator
from .dispatch import DispatchAdapter
from .execution_log import ExecutionLog
from .config import SchedulerSettings

__all__ = [
    "ExecutionOutcome", "Job", "JobExecution", "JobFilter", "JobPage", "JobPatch", "JobSpec", "JobStatus",
    "JobType", "RecurrencePattern",
    "DispatchError", "ExecutionError", "ExecutionTimeoutError", "InvalidStateError", "NotFoundError",
    "SchedulerError", "ValidationError",
    "JobOrchestrator", "DispatchAdapter", "ExecutionLog", "SchedulerSettings",
]
