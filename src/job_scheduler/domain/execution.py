import uuid
from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, Field, JsonValue, field_validator

from .job import ensure_utc, utcnow


class ExecutionOutcome(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"


class JobExecution(BaseModel):
    """
    Record of a single attempt to run a job.

    Created when the attempt starts with a provisional ``failed`` outcome, so
    an attempt interrupted by a crash never reads as a success. It is updated
    exactly once, when the attempt's outcome is known.
    """
    id: str = Field(default_factory=lambda: f"exe_{uuid.uuid4().hex[:12]}", description="Unique execution identifier")
    job_id: str = Field(..., description="The job this attempt belongs to")
    attempt_number: int = Field(..., ge=1, description="1-based attempt number within the current occurrence")
    outcome: ExecutionOutcome = ExecutionOutcome.FAILED
    started_at: datetime
    completed_at: Optional[datetime] = None
    error_message: Optional[str] = None
    result: Optional[JsonValue] = None
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("started_at", "completed_at", "created_at")
    def check_timezone(cls, v: Optional[datetime]) -> Optional[datetime]:
        return ensure_utc(v)

    @property
    def is_finalized(self) -> bool:
        return self.completed_at is not None
