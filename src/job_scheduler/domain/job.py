import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field, JsonValue, field_validator

from job_scheduler.errors import ValidationError


MIN_RETRIES = 0
MAX_RETRIES = 10
DEFAULT_MAX_RETRIES = 3


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(v: Optional[datetime]) -> Optional[datetime]:
    """
    Naive datetimes are taken to be UTC. SQLite drops tzinfo on the way back,
    so every datetime crossing the storage boundary goes through here.
    """
    if v is None:
        return None
    if v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v.astimezone(timezone.utc)


class JobType(str, Enum):
    ONE_TIME = "one_time"
    RECURRING = "recurring"


class RecurrencePattern(str, Enum):
    HOURLY = "hourly"
    DAILY = "daily"
    WEEKLY = "weekly"
    MONTHLY = "monthly"


class JobStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


def _check_max_retries(max_retries: Optional[int]) -> None:
    if max_retries is None:
        return
    if not MIN_RETRIES <= max_retries <= MAX_RETRIES:
        raise ValidationError(f"max_retries must be between {MIN_RETRIES} and {MAX_RETRIES}, got {max_retries}")


class JobSpec(BaseModel):
    """
    Input for creating a job.
    """
    name: str = Field(..., description="Job name")
    description: Optional[str] = Field(None, description="Free-form description")
    type: JobType = Field(JobType.ONE_TIME, description="One-time or recurring")
    payload: Optional[JsonValue] = Field(None, description="Opaque data handed to the executor")
    scheduled_at: Optional[datetime] = Field(None, description="First eligible run time, defaults to now")
    recurrence_pattern: Optional[RecurrencePattern] = Field(None, description="Required iff type is recurring")
    max_retries: int = Field(DEFAULT_MAX_RETRIES, description="Attempts allowed per occurrence")

    @field_validator("scheduled_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def validate_invariants(self) -> None:
        if not self.name or not self.name.strip():
            raise ValidationError("name must not be empty")
        if self.type == JobType.RECURRING and self.recurrence_pattern is None:
            raise ValidationError("recurrence_pattern is required for recurring jobs")
        if self.type == JobType.ONE_TIME and self.recurrence_pattern is not None:
            raise ValidationError("recurrence_pattern is only allowed for recurring jobs")
        _check_max_retries(self.max_retries)


class JobPatch(BaseModel):
    """
    Partial update of a job. Only explicitly set fields are applied.
    """
    name: Optional[str] = None
    description: Optional[str] = None
    payload: Optional[JsonValue] = None
    scheduled_at: Optional[datetime] = None
    recurrence_pattern: Optional[RecurrencePattern] = None
    max_retries: Optional[int] = None

    @field_validator("scheduled_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    def changes(self) -> dict:
        return self.model_dump(exclude_unset=True)


class Job(BaseModel):
    """
    A schedulable unit of work owned by a single user.
    """
    id: str = Field(default_factory=lambda: f"job_{uuid.uuid4().hex[:12]}", description="Unique job identifier")
    owner_id: str = Field(..., description="Identifier of the owning user")
    name: str
    description: Optional[str] = None
    payload: Optional[JsonValue] = None

    type: JobType = JobType.ONE_TIME
    recurrence_pattern: Optional[RecurrencePattern] = None
    scheduled_at: datetime
    next_run_at: datetime
    is_active: bool = True

    status: JobStatus = JobStatus.PENDING
    retry_count: int = 0
    max_retries: int = DEFAULT_MAX_RETRIES
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result: Optional[JsonValue] = None

    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("scheduled_at", "next_run_at", "started_at", "completed_at", "created_at", "updated_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @classmethod
    def from_spec(cls, owner_id: str, spec: JobSpec, now: datetime) -> "Job":
        scheduled_at = spec.scheduled_at or now
        return cls(
            owner_id=owner_id,
            name=spec.name,
            description=spec.description,
            payload=spec.payload,
            type=spec.type,
            recurrence_pattern=spec.recurrence_pattern,
            scheduled_at=scheduled_at,
            next_run_at=scheduled_at,
            max_retries=spec.max_retries,
            created_at=now,
            updated_at=now,
        )

    @property
    def is_recurring(self) -> bool:
        return self.type == JobType.RECURRING

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def apply_patch(self, patch: JobPatch) -> bool:
        """
        Apply the set fields of ``patch`` in place and return whether the
        schedule moved. Raises ``ValidationError`` if the result would break
        the recurrence or retry invariants.
        """
        changes = patch.changes()
        if "name" in changes and (not changes["name"] or not changes["name"].strip()):
            raise ValidationError("name must not be empty")
        if "recurrence_pattern" in changes:
            pattern = changes["recurrence_pattern"]
            if self.is_recurring and pattern is None:
                raise ValidationError("recurrence_pattern is required for recurring jobs")
            if not self.is_recurring and pattern is not None:
                raise ValidationError("recurrence_pattern is only allowed for recurring jobs")
        if "max_retries" in changes:
            if changes["max_retries"] is None:
                raise ValidationError("max_retries must not be null")
            _check_max_retries(changes["max_retries"])
            if changes["max_retries"] < self.retry_count:
                raise ValidationError(
                    f"max_retries ({changes['max_retries']}) cannot be below retries already used ({self.retry_count})"
                )
        if "scheduled_at" in changes and changes["scheduled_at"] is None:
            raise ValidationError("scheduled_at must not be null")

        rescheduled = False
        for key, value in changes.items():
            setattr(self, key, value)
            if key == "scheduled_at":
                self.next_run_at = value
                rescheduled = True
        return rescheduled


class JobFilter(BaseModel):
    """
    Listing filter. ``from_date``/``to_date`` bound ``created_at`` inclusively.
    """
    status: Optional[JobStatus] = None
    type: Optional[JobType] = None
    from_date: Optional[datetime] = None
    to_date: Optional[datetime] = None

    @field_validator("from_date", "to_date")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)


class JobPage(BaseModel):
    jobs: List[Job]
    total: int
    page: int
    limit: int
