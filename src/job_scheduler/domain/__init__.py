from .job import Job, JobSpec, JobPatch, JobFilter, JobPage, JobStatus, JobType, RecurrencePattern
from .execution import JobExecution, ExecutionOutcome

__all__ = [
    "Job", "JobSpec", "JobPatch", "JobFilter", "JobPage", "JobStatus", "JobType", "RecurrencePattern",
    "JobExecution", "ExecutionOutcome",
]
