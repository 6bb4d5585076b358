import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

WakeupHandler = Callable[[str], Awaitable[None]]


class DispatchBackend(ABC):
    """
    A delayed-delivery substrate. It holds at most one pending wake-up per job
    id and, when one comes due, delivers the job id to the bound handler.

    Delivery is at-least-once: a backend may redeliver after its own failure
    recovery, so handlers must tolerate duplicates.
    """

    def __init__(self):
        self._handler: Optional[WakeupHandler] = None

    def set_handler(self, handler: WakeupHandler) -> None:
        self._handler = handler

    async def start(self):
        pass

    async def stop(self):
        pass

    @abstractmethod
    async def schedule(self, job_id: str, run_at: datetime) -> None:
        """Schedule a wake-up for ``job_id`` at ``run_at``, replacing any pending one."""

    @abstractmethod
    async def cancel(self, job_id: str) -> bool:
        """Cancel the pending wake-up for ``job_id``. Return False if there was none."""

    async def deliver(self, job_id: str) -> None:
        if self._handler is None:
            logger.error("Wake-up for job %s dropped: no handler bound", job_id)
            return
        await self._handler(job_id)
