import asyncio
import logging
from datetime import datetime, timedelta
from typing import List, Optional, Union

from pydantic import JsonValue, TypeAdapter, ValidationError as PydanticValidationError

from job_scheduler.backends.base import DispatchBackend
from job_scheduler.clock import Clock, SystemClock
from job_scheduler.config import SchedulerSettings
from job_scheduler.dispatch import DispatchAdapter
from job_scheduler.domain.execution import JobExecution
from job_scheduler.domain.job import Job, JobFilter, JobPage, JobPatch, JobSpec, JobStatus
from job_scheduler.errors import (
    DispatchError,
    ExecutionError,
    ExecutionTimeoutError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from job_scheduler.execution_log import ExecutionLog
from job_scheduler.executors.protocol import JobExecutor
from job_scheduler.recurrence import next_run_time
from job_scheduler.retry import RetryPolicy
from job_scheduler.storages.protocol import Storage

logger = logging.getLogger(__name__)

# Conditional writes that lose a race are retried this many times before
# the caller gets an InvalidStateError.
_STATE_WRITE_ATTEMPTS = 3

_JSON_RESULT = TypeAdapter(JsonValue)


class JobOrchestrator:
    """
    Owns every job state transition.

    Lifecycle requests (create, update, cancel, reschedule, delete) arrive from
    callers; wake-ups arrive from the dispatch backend through ``execute_job``.
    Collaborators are passed in explicitly so any of them can be swapped.

    Cancelling a job while it executes does not interrupt the executor call.
    The attempt is still recorded when it finishes, but the job stays
    cancelled and is not re-armed.
    """

    def __init__(
        self,
        storage: Storage,
        dispatcher: DispatchAdapter,
        executor: JobExecutor,
        execution_log: Optional[ExecutionLog] = None,
        clock: Optional[Clock] = None,
        retry_policy: Optional[RetryPolicy] = None,
        execution_timeout_s: Optional[float] = None,
        stale_running_after: timedelta = timedelta(hours=1),
        early_wakeup_tolerance: timedelta = timedelta(seconds=1),
    ):
        self.storage: Storage = storage
        self.dispatcher: DispatchAdapter = dispatcher
        self.executor: JobExecutor = executor
        self.execution_log: ExecutionLog = execution_log or ExecutionLog(storage)
        self.clock: Clock = clock or SystemClock()
        self.retry_policy: RetryPolicy = retry_policy or RetryPolicy()
        self.execution_timeout_s = execution_timeout_s
        self.stale_running_after = stale_running_after
        self.early_wakeup_tolerance = early_wakeup_tolerance
        self.dispatcher.bind(self.execute_job)

    @classmethod
    def from_settings(
        cls,
        settings: SchedulerSettings,
        storage: Storage,
        backend: DispatchBackend,
        executor: JobExecutor,
        clock: Optional[Clock] = None,
    ) -> "JobOrchestrator":
        return cls(
            storage=storage,
            dispatcher=DispatchAdapter(backend, settings.dispatch_attempts, settings.dispatch_retry_delay_ms),
            executor=executor,
            execution_log=ExecutionLog(storage, settings.history_limit),
            clock=clock,
            retry_policy=settings.retry_policy(),
            execution_timeout_s=settings.execution_timeout_s,
            stale_running_after=timedelta(seconds=settings.stale_running_after_s),
        )

    async def start(self) -> int:
        """
        Start the dispatch backend and re-arm whatever storage says is due.
        Returns the number of jobs re-armed.
        """
        await self.dispatcher.backend.start()
        return await self.recover()

    async def stop(self):
        await self.dispatcher.backend.stop()

    # Lifecycle operations

    async def create_job(self, owner_id: str, spec: Union[JobSpec, dict]) -> Job:
        spec = self._parse(JobSpec, spec)
        spec.validate_invariants()

        job = Job.from_spec(owner_id, spec, self.clock.now())
        await self.storage.create_job(job)
        logger.info("Creating job %s for user %s: %s", job.id, owner_id, job.name)

        try:
            await self.dispatcher.arm(job.id, job.next_run_at)
        except DispatchError:
            # A job that cannot be armed would never run; do not leave it behind.
            await self.storage.delete_job(job.id, owner_id)
            raise
        return job

    async def get_job(self, job_id: str, owner_id: str) -> Job:
        job = await self.storage.get_job(job_id, owner_id)
        if job is None:
            raise NotFoundError(job_id)
        return job

    async def list_jobs(
        self, owner_id: str, job_filter: Optional[JobFilter] = None, page: int = 1, limit: int = 10
    ) -> JobPage:
        if page < 1 or limit < 1:
            raise ValidationError("page and limit must be at least 1")
        jobs, total = await self.storage.list_jobs(owner_id, job_filter, limit=limit, offset=(page - 1) * limit)
        return JobPage(jobs=jobs, total=total, page=page, limit=limit)

    async def update_job(self, job_id: str, owner_id: str, patch: Union[JobPatch, dict]) -> Job:
        patch = self._parse(JobPatch, patch)
        logger.info("Updating job %s for user %s", job_id, owner_id)

        for _ in range(_STATE_WRITE_ATTEMPTS):
            job = await self.get_job(job_id, owner_id)
            if job.is_terminal:
                raise InvalidStateError(f"Cannot update job in {job.status.value} status")
            if job.status == JobStatus.RUNNING and "scheduled_at" in patch.changes():
                raise InvalidStateError("Cannot reschedule job in running status")

            original = job.model_copy(deep=True)
            rescheduled = job.apply_patch(patch)
            job.updated_at = self.clock.now()
            if await self.storage.update_job(job, expected_status=original.status):
                break
        else:
            raise InvalidStateError(f"Job {job_id} kept changing state; update not applied")

        if rescheduled:
            try:
                await self.dispatcher.rearm(job.id, job.next_run_at)
            except DispatchError:
                await self._restore_schedule(original, job.status)
                raise
        return job

    async def _restore_schedule(self, original: Job, written_status: JobStatus) -> None:
        """
        Undo an update whose new schedule could not be armed, then try to put
        the previous wake-up back.
        """
        if not await self.storage.update_job(original, expected_status=written_status):
            logger.error("Job %s changed before its update could be reverted", original.id)
            return
        try:
            await self.dispatcher.arm(original.id, original.next_run_at)
        except DispatchError:
            # The job stays pending in storage; recover() re-arms it.
            logger.error("Job %s could not be re-armed at its previous time", original.id)

    async def reschedule_job(self, job_id: str, owner_id: str, scheduled_at: datetime) -> Job:
        logger.info("Rescheduling job %s for user %s", job_id, owner_id)
        return await self.update_job(job_id, owner_id, JobPatch(scheduled_at=scheduled_at))

    async def cancel_job(self, job_id: str, owner_id: str) -> Job:
        logger.info("Cancelling job %s for user %s", job_id, owner_id)

        for _ in range(_STATE_WRITE_ATTEMPTS):
            job = await self.get_job(job_id, owner_id)
            if job.status in (JobStatus.COMPLETED, JobStatus.CANCELLED):
                raise InvalidStateError(f"Cannot cancel job in {job.status.value} status")

            await self.dispatcher.disarm(job.id)
            loaded_status = job.status
            job.status = JobStatus.CANCELLED
            job.is_active = False
            job.updated_at = self.clock.now()
            if await self.storage.update_job(job, expected_status=loaded_status):
                return job
        raise InvalidStateError(f"Job {job_id} kept changing state; cancel not applied")

    async def delete_job(self, job_id: str, owner_id: str) -> None:
        """
        Disarm the job's wake-up, then delete the job together with its
        execution history.
        """
        logger.info("Deleting job %s for user %s", job_id, owner_id)
        await self.get_job(job_id, owner_id)
        await self.dispatcher.disarm(job_id)
        if not await self.storage.delete_job(job_id, owner_id):
            raise NotFoundError(job_id)

    async def get_execution_history(
        self, job_id: str, owner_id: str, limit: Optional[int] = None
    ) -> List[JobExecution]:
        job = await self.get_job(job_id, owner_id)
        return await self.execution_log.history(job.id, limit)

    # Wake-up handling

    async def execute_job(self, job_id: str) -> None:
        """
        Handle a wake-up for ``job_id``. Only the dispatch backend calls this.

        Never raises for executor failures: those become failed attempts. A
        wake-up for a job that is gone, not pending, or not yet due is a no-op,
        which makes duplicate and stale deliveries harmless.
        """
        now = self.clock.now()
        job = await self.storage.get_job(job_id)
        if job is None:
            logger.warning("Wake-up for job %s ignored: job not found", job_id)
            return
        if job.status != JobStatus.PENDING or not job.is_active:
            logger.warning("Wake-up for job %s ignored: status is %s", job_id, job.status.value)
            return
        if job.next_run_at > now + self.early_wakeup_tolerance:
            logger.warning("Wake-up for job %s ignored: next run is at %s", job_id, job.next_run_at.isoformat())
            return

        claimed = await self.storage.claim_job(job_id, now)
        if claimed is None:
            logger.warning("Wake-up for job %s ignored: another worker claimed it", job_id)
            return

        logger.info("Executing job %s (attempt %d)", job_id, claimed.retry_count + 1)
        execution = await self.execution_log.start_attempt(claimed, now)
        try:
            result = self._json_result(await self._invoke(claimed))
        except asyncio.CancelledError:
            await self._handle_failure(job_id, execution, ExecutionError("Execution interrupted by shutdown"))
            raise
        except Exception as e:
            await self._handle_failure(job_id, execution, e)
            return

        try:
            await self._handle_success(job_id, execution, result)
        except Exception as e:
            logger.exception("Could not record success of job %s", job_id)
            await self._handle_failure(job_id, execution, ExecutionError(f"Could not record result: {e}", cause=e))

    async def recover(self) -> int:
        """
        Reconcile storage with the dispatch backend after a restart.

        Jobs left running longer than ``stale_running_after`` are treated as a
        failed attempt. Every active pending job is then re-armed at its
        ``next_run_at``. Returns the number of jobs re-armed.
        """
        now = self.clock.now()
        for job in await self.storage.find_running(now - self.stale_running_after):
            logger.warning("Job %s was interrupted while running since %s", job.id, job.started_at)
            execution = await self.execution_log.open_attempt(job.id)
            if execution is None:
                execution = await self.execution_log.start_attempt(job, job.started_at or now)
            await self._handle_failure(job.id, execution, ExecutionError("Execution interrupted before completion"))

        armed = 0
        for job in await self.storage.find_pending():
            try:
                await self.dispatcher.arm(job.id, job.next_run_at)
                armed += 1
            except DispatchError:
                logger.error("Could not re-arm job %s during recovery", job.id)
        logger.info("Recovery re-armed %d job(s)", armed)
        return armed

    async def _invoke(self, job: Job) -> JsonValue:
        if self.execution_timeout_s is None:
            return await self.executor.async_execute(job)
        try:
            return await asyncio.wait_for(self.executor.async_execute(job), timeout=self.execution_timeout_s)
        except asyncio.TimeoutError as e:
            raise ExecutionTimeoutError(f"Execution timed out after {self.execution_timeout_s}s", cause=e) from e

    @staticmethod
    def _json_result(result) -> JsonValue:
        try:
            return _JSON_RESULT.validate_python(result)
        except PydanticValidationError as e:
            raise ExecutionError(f"Executor returned a result that is not JSON: {e}", cause=e) from e

    async def _handle_success(self, job_id: str, execution: JobExecution, result: JsonValue) -> None:
        completed_at = self.clock.now()
        job = await self._reload_running(job_id)
        if job is None:
            await self.execution_log.record_success(execution, result, completed_at)
            return

        job.result = result
        job.error_message = None
        job.updated_at = completed_at

        if job.is_recurring:
            job.next_run_at = next_run_time(completed_at, job.recurrence_pattern)
            job.status = JobStatus.PENDING
            job.retry_count = 0
            job.started_at = None
            job.completed_at = None
        else:
            job.status = JobStatus.COMPLETED
            job.completed_at = completed_at
            job.is_active = False

        written = await self.storage.update_job(job, expected_status=JobStatus.RUNNING)
        await self.execution_log.record_success(execution, result, completed_at)
        if not written:
            logger.info("Job %s changed while running; outcome recorded only", job.id)
            return

        if job.is_recurring:
            await self._arm_next(job)
            logger.info("Scheduled next recurrence for job %s at %s", job.id, job.next_run_at.isoformat())
        else:
            logger.info("Job %s completed successfully", job.id)

    async def _handle_failure(self, job_id: str, execution: JobExecution, error: BaseException) -> None:
        message = str(error) or error.__class__.__name__
        failed_at = self.clock.now()
        logger.error("Job %s failed: %s", job_id, message)
        job = await self._reload_running(job_id)
        if job is None:
            await self.execution_log.record_failure(execution, message, failed_at)
            return

        job.error_message = message
        job.updated_at = failed_at
        if job.retry_count >= job.max_retries:
            job.status = JobStatus.FAILED
            job.completed_at = failed_at
            job.is_active = False
        else:
            job.retry_count += 1
            job.status = JobStatus.PENDING
            job.started_at = None
            job.next_run_at = failed_at + self.retry_policy.delay(job.retry_count)

        written = await self.storage.update_job(job, expected_status=JobStatus.RUNNING)
        await self.execution_log.record_failure(execution, message, failed_at)
        if not written:
            logger.info("Job %s changed while running; failure recorded only", job.id)
            return

        if job.status == JobStatus.FAILED:
            logger.error("Job %s failed after %d attempt(s)", job.id, execution.attempt_number)
        else:
            logger.info("Job %s will be retried at %s. Retry %d/%d",
                        job.id, job.next_run_at.isoformat(), job.retry_count, job.max_retries)
            await self._arm_next(job)

    async def _reload_running(self, job_id: str) -> Optional[Job]:
        """
        Fetch the job again before writing an outcome, so edits made while the
        executor ran are kept. Returns None if it was cancelled or deleted.
        """
        job = await self.storage.get_job(job_id)
        if job is None or job.status != JobStatus.RUNNING:
            logger.info("Job %s was cancelled or deleted while running", job_id)
            return None
        return job

    async def _arm_next(self, job: Job) -> None:
        try:
            await self.dispatcher.arm(job.id, job.next_run_at)
        except DispatchError:
            # The job stays pending in storage; recover() re-arms it.
            logger.error("Job %s is pending but could not be armed", job.id)

    @staticmethod
    def _parse(model, value):
        if isinstance(value, model):
            return value
        try:
            return model.model_validate(value)
        except PydanticValidationError as e:
            raise ValidationError(str(e)) from e
