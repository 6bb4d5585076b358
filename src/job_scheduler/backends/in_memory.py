import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional, Set

from job_scheduler.clock import Clock, SystemClock
from .base import DispatchBackend

logger = logging.getLogger(__name__)


class InMemoryBackend(DispatchBackend):
    """
    Dispatch backend built on asyncio timers.
    WARNING: This backend is not suitable for production use.
    Pending wake-ups live in the event loop and are lost on restart; call
    ``JobOrchestrator.recover()`` at startup to re-arm them from storage.
    """

    def __init__(self, clock: Optional[Clock] = None):
        super().__init__()
        self.clock: Clock = clock or SystemClock()
        self.timers: Dict[str, asyncio.Task] = {}
        self.deliveries: Set[asyncio.Task] = set()
        self.is_running: bool = True

    async def start(self):
        self.is_running = True

    async def stop(self):
        """
        Cancel pending timers and in-flight deliveries.
        """
        self.is_running = False
        for timer in self.timers.values():
            timer.cancel()
        tasks = list(self.timers.values()) + list(self.deliveries)
        for task in self.deliveries:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self.timers.clear()
        self.deliveries.clear()
        logger.info("InMemoryBackend stopped.")

    async def schedule(self, job_id: str, run_at: datetime) -> None:
        if not self.is_running:
            raise RuntimeError("InMemoryBackend is stopped")
        self._cancel_timer(job_id)
        delay = max(0.0, (run_at - self.clock.now()).total_seconds())
        self.timers[job_id] = asyncio.create_task(self._wait_and_deliver(job_id, delay))
        logger.debug("Scheduled wake-up for job %s in %.3fs", job_id, delay)

    async def cancel(self, job_id: str) -> bool:
        return self._cancel_timer(job_id)

    def pending(self) -> Set[str]:
        return set(self.timers)

    def _cancel_timer(self, job_id: str) -> bool:
        timer = self.timers.pop(job_id, None)
        if timer is None or timer.done():
            return False
        timer.cancel()
        return True

    async def _wait_and_deliver(self, job_id: str, delay: float):
        await asyncio.sleep(delay)
        # The timer is spent once it fires; a re-arm from inside the delivery
        # must create a new timer rather than cancel the running delivery.
        if self.timers.get(job_id) is asyncio.current_task():
            del self.timers[job_id]
        delivery = asyncio.create_task(self._deliver_safely(job_id))
        self.deliveries.add(delivery)
        delivery.add_done_callback(self.deliveries.discard)

    async def _deliver_safely(self, job_id: str):
        try:
            await self.deliver(job_id)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Error delivering wake-up for job %s", job_id)
