import asyncio
import logging
from datetime import datetime
from typing import Awaitable, Callable, TypeVar

from job_scheduler.backends.base import DispatchBackend, WakeupHandler
from job_scheduler.errors import DispatchError

logger = logging.getLogger(__name__)

T = TypeVar("T")


class DispatchAdapter:
    """
    Arms and disarms wake-ups on a ``DispatchBackend``.

    Every backend call is retried up to ``attempts`` times with a fixed delay;
    when all attempts fail a ``DispatchError`` is raised.
    """

    def __init__(self, backend: DispatchBackend, attempts: int = 3, retry_delay_ms: int = 200):
        if attempts < 1:
            raise ValueError("attempts must be at least 1")
        self.backend = backend
        self.attempts = attempts
        self.retry_delay_s = retry_delay_ms / 1000

    def bind(self, handler: WakeupHandler) -> None:
        self.backend.set_handler(handler)

    async def arm(self, job_id: str, run_at: datetime) -> None:
        """
        Arm exactly one wake-up for ``job_id`` at ``run_at``. Any wake-up armed
        earlier for the same job is cancelled first, so repeated calls leave
        only the last one in place.
        """
        await self._call(job_id, "arm", lambda: self._replace(job_id, run_at))
        logger.info("Armed wake-up for job %s at %s", job_id, run_at.isoformat())

    async def disarm(self, job_id: str) -> bool:
        cancelled = await self._call(job_id, "disarm", lambda: self.backend.cancel(job_id))
        if cancelled:
            logger.info("Disarmed wake-up for job %s", job_id)
        return cancelled

    async def rearm(self, job_id: str, run_at: datetime) -> None:
        await self.arm(job_id, run_at)

    async def _replace(self, job_id: str, run_at: datetime) -> None:
        await self.backend.cancel(job_id)
        await self.backend.schedule(job_id, run_at)

    async def _call(self, job_id: str, operation: str, call: Callable[[], Awaitable[T]]) -> T:
        last_error = None
        for attempt in range(1, self.attempts + 1):
            try:
                return await call()
            except Exception as e:
                last_error = e
                logger.warning("Dispatch %s for job %s failed (attempt %d/%d): %s",
                               operation, job_id, attempt, self.attempts, e)
                if attempt < self.attempts:
                    await asyncio.sleep(self.retry_delay_s)
        logger.error("Dispatch %s for job %s failed after %d attempts", operation, job_id, self.attempts)
        raise DispatchError(job_id, self.attempts, last_error) from last_error
