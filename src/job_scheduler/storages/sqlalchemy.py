from datetime import datetime
from typing import List, Optional, Tuple

from sqlalchemy import Column, String, DateTime, Boolean, Integer, JSON, ForeignKey, Text, delete, func, update
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.future import select
from sqlalchemy.pool import StaticPool

from job_scheduler.domain.job import Job, JobFilter, JobStatus, JobType, RecurrencePattern
from job_scheduler.domain.execution import ExecutionOutcome, JobExecution
from job_scheduler.storages.protocol import Storage

Base = declarative_base()


class JobModel(Base):
    __tablename__ = 'jobs'

    id = Column(String, primary_key=True)
    owner_id = Column(String, nullable=False, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    payload = Column(JSON)

    type = Column(String, nullable=False)
    recurrence_pattern = Column(String)
    scheduled_at = Column(DateTime(timezone=True), nullable=False, index=True)
    next_run_at = Column(DateTime(timezone=True), nullable=False, index=True)
    is_active = Column(Boolean, default=True, nullable=False)

    status = Column(String, nullable=False, index=True)
    retry_count = Column(Integer, default=0, nullable=False)
    max_retries = Column(Integer, default=3, nullable=False)
    started_at = Column(DateTime(timezone=True))
    completed_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    result = Column(JSON)

    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)


class JobExecutionModel(Base):
    __tablename__ = 'job_executions'

    id = Column(String, primary_key=True)
    job_id = Column(String, ForeignKey('jobs.id', ondelete="CASCADE"), nullable=False, index=True)
    attempt_number = Column(Integer, nullable=False)
    outcome = Column(String, nullable=False)
    started_at = Column(DateTime(timezone=True), nullable=False)
    completed_at = Column(DateTime(timezone=True))
    error_message = Column(Text)
    result = Column(JSON)
    created_at = Column(DateTime(timezone=True), nullable=False)


_MUTABLE_JOB_FIELDS = (
    "name", "description", "payload", "recurrence_pattern", "scheduled_at", "next_run_at", "is_active",
    "status", "retry_count", "max_retries", "started_at", "completed_at", "error_message", "result", "updated_at",
)


class SqlAlchemyStorage(Storage):
    def __init__(self, db_url: str, **engine_kwargs):
        self.engine = create_async_engine(db_url, **engine_kwargs)
        self.async_session = sessionmaker(
            self.engine, class_=AsyncSession, expire_on_commit=False
        )

    async def create_tables(self):
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    async def dispose(self):
        await self.engine.dispose()

    async def create_job(self, job: Job) -> str:
        async with self.async_session() as session:
            session.add(JobModel(id=job.id, owner_id=job.owner_id, type=job.type.value,
                                 created_at=job.created_at, **self._job_columns(job)))
            await session.commit()
            return job.id

    async def get_job(self, job_id: str, owner_id: Optional[str] = None) -> Optional[Job]:
        async with self.async_session() as session:
            query = select(JobModel).filter_by(id=job_id)
            if owner_id is not None:
                query = query.filter_by(owner_id=owner_id)
            result = await session.execute(query)
            db_job = result.scalar_one_or_none()
            if db_job:
                return self._db_to_job(db_job)
            return None

    async def list_jobs(
        self, owner_id: str, job_filter: Optional[JobFilter] = None, limit: int = 10, offset: int = 0
    ) -> Tuple[List[Job], int]:
        conditions = [JobModel.owner_id == owner_id]
        if job_filter:
            if job_filter.status:
                conditions.append(JobModel.status == job_filter.status.value)
            if job_filter.type:
                conditions.append(JobModel.type == job_filter.type.value)
            if job_filter.from_date:
                conditions.append(JobModel.created_at >= job_filter.from_date)
            if job_filter.to_date:
                conditions.append(JobModel.created_at <= job_filter.to_date)

        async with self.async_session() as session:
            total = await session.scalar(select(func.count()).select_from(JobModel).where(*conditions))
            result = await session.execute(
                select(JobModel)
                .where(*conditions)
                .order_by(JobModel.created_at.desc(), JobModel.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()], int(total or 0)

    async def update_job(self, job: Job, expected_status: Optional[JobStatus] = None) -> bool:
        async with self.async_session() as session:
            conditions = [JobModel.id == job.id]
            if expected_status is not None:
                conditions.append(JobModel.status == expected_status.value)
            result = await session.execute(
                update(JobModel).where(*conditions).values(**self._job_columns(job))
            )
            await session.commit()
            return result.rowcount == 1

    async def claim_job(self, job_id: str, started_at: datetime) -> Optional[Job]:
        async with self.async_session() as session:
            result = await session.execute(
                update(JobModel)
                .where(JobModel.id == job_id, JobModel.status == JobStatus.PENDING.value)
                .values(status=JobStatus.RUNNING.value, started_at=started_at, completed_at=None,
                        updated_at=started_at)
            )
            await session.commit()
            if result.rowcount != 1:
                return None
        return await self.get_job(job_id)

    async def delete_job(self, job_id: str, owner_id: str) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(JobModel).filter_by(id=job_id, owner_id=owner_id))
            db_job = result.scalar_one_or_none()
            if db_job:
                await session.execute(delete(JobExecutionModel).where(JobExecutionModel.job_id == job_id))
                await session.delete(db_job)
                await session.commit()
                return True
            return False

    async def find_pending(self) -> List[Job]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobModel)
                .filter_by(status=JobStatus.PENDING.value, is_active=True)
                .order_by(JobModel.next_run_at.asc())
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def find_recurring(self) -> List[Job]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobModel)
                .filter_by(type=JobType.RECURRING.value, is_active=True)
                .order_by(JobModel.next_run_at.asc())
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def find_running(self, started_before: datetime) -> List[Job]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobModel)
                .where(JobModel.status == JobStatus.RUNNING.value, JobModel.started_at < started_before)
                .order_by(JobModel.started_at.asc())
            )
            return [self._db_to_job(db_job) for db_job in result.scalars()]

    async def create_execution(self, execution: JobExecution) -> str:
        async with self.async_session() as session:
            session.add(JobExecutionModel(
                id=execution.id,
                job_id=execution.job_id,
                attempt_number=execution.attempt_number,
                outcome=execution.outcome.value,
                started_at=execution.started_at,
                completed_at=execution.completed_at,
                error_message=execution.error_message,
                result=execution.result,
                created_at=execution.created_at,
            ))
            await session.commit()
            return execution.id

    async def update_execution(self, execution: JobExecution) -> bool:
        async with self.async_session() as session:
            result = await session.execute(select(JobExecutionModel).filter_by(id=execution.id))
            db_execution = result.scalar_one_or_none()
            if db_execution:
                db_execution.outcome = execution.outcome.value
                db_execution.completed_at = execution.completed_at
                db_execution.error_message = execution.error_message
                db_execution.result = execution.result
                await session.commit()
                return True
            return False

    async def list_recent_executions(self, job_id: str, limit: int = 50) -> List[JobExecution]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobExecutionModel)
                .filter_by(job_id=job_id)
                .order_by(JobExecutionModel.created_at.desc(), JobExecutionModel.attempt_number.desc())
                .limit(limit)
            )
            return [self._db_to_execution(db_execution) for db_execution in result.scalars()]

    async def get_open_execution(self, job_id: str) -> Optional[JobExecution]:
        async with self.async_session() as session:
            result = await session.execute(
                select(JobExecutionModel)
                .filter_by(job_id=job_id, completed_at=None)
                .order_by(JobExecutionModel.created_at.desc())
                .limit(1)
            )
            db_execution = result.scalar_one_or_none()
            if db_execution:
                return self._db_to_execution(db_execution)
            return None

    def _job_columns(self, job: Job) -> dict:
        columns = {key: getattr(job, key) for key in _MUTABLE_JOB_FIELDS}
        columns["status"] = job.status.value
        columns["recurrence_pattern"] = job.recurrence_pattern.value if job.recurrence_pattern else None
        return columns

    def _db_to_job(self, db_job: JobModel) -> Job:
        return Job(
            id=db_job.id,
            owner_id=db_job.owner_id,
            name=db_job.name,
            description=db_job.description,
            payload=db_job.payload,
            type=JobType(db_job.type),
            recurrence_pattern=RecurrencePattern(db_job.recurrence_pattern) if db_job.recurrence_pattern else None,
            scheduled_at=db_job.scheduled_at,
            next_run_at=db_job.next_run_at,
            is_active=db_job.is_active,
            status=JobStatus(db_job.status),
            retry_count=db_job.retry_count,
            max_retries=db_job.max_retries,
            started_at=db_job.started_at,
            completed_at=db_job.completed_at,
            error_message=db_job.error_message,
            result=db_job.result,
            created_at=db_job.created_at,
            updated_at=db_job.updated_at,
        )

    def _db_to_execution(self, db_execution: JobExecutionModel) -> JobExecution:
        return JobExecution(
            id=db_execution.id,
            job_id=db_execution.job_id,
            attempt_number=db_execution.attempt_number,
            outcome=ExecutionOutcome(db_execution.outcome),
            started_at=db_execution.started_at,
            completed_at=db_execution.completed_at,
            error_message=db_execution.error_message,
            result=db_execution.result,
            created_at=db_execution.created_at,
        )


class InMemoryStorage(SqlAlchemyStorage):
    def __init__(self):
        super().__init__("sqlite+aiosqlite:///:memory:", poolclass=StaticPool)
