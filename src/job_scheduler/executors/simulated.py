import asyncio
import logging
import random
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from pydantic import JsonValue

from job_scheduler.domain.job import Job
from job_scheduler.errors import ExecutionError
from job_scheduler.executors.protocol import JobExecutor

logger = logging.getLogger(__name__)

DEFAULT_DURATION_MS = 1000
DEFAULT_FAILURE_RATE = 0.3


class SimulatedJobExecutor(JobExecutor):
    """
    Stand-in executor that simulates work.

    Sleeps ``payload["duration"]`` milliseconds and, when ``payload["shouldFail"]``
    is truthy, fails with probability ``failure_rate``. Replace it with a real
    executor in production.
    """

    def __init__(self, failure_rate: float = DEFAULT_FAILURE_RATE, rng: Optional[random.Random] = None):
        self.failure_rate = failure_rate
        self.rng = rng or random.Random()

    @staticmethod
    def executor_name() -> str:
        return "simulated"

    async def async_execute(self, job: Job) -> JsonValue:
        logger.info("Executing job: %s (%s)", job.name, job.id)
        payload: Dict[str, Any] = job.payload if isinstance(job.payload, dict) else {}

        duration_ms = payload.get("duration", DEFAULT_DURATION_MS)
        if not isinstance(duration_ms, (int, float)) or isinstance(duration_ms, bool) or duration_ms < 0:
            duration_ms = DEFAULT_DURATION_MS
        await asyncio.sleep(duration_ms / 1000)

        if payload.get("shouldFail") and self.rng.random() < self.failure_rate:
            raise ExecutionError("Simulated job failure for testing")

        return {
            "job_id": job.id,
            "executed_at": datetime.now(timezone.utc).isoformat(),
            "message": f"Job {job.name} completed successfully",
            "payload": job.payload,
        }
