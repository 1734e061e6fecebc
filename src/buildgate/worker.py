# worker.py
from __future__ import annotations

import asyncio
import signal
from typing import Dict, Optional

from .interfaces import JobQueue
from .log import get_logger
from .model import QueueMessage
from .pipeline import JobDefinition, Outcome
from .reaper import TimeoutReaper

logger = get_logger(__name__)


class Worker:
    """Pulls build messages off the queue and runs them through their job."""

    def __init__(
        self,
        queue: JobQueue,
        jobs: Dict[str, JobDefinition],
        reaper: TimeoutReaper,
        queue_name: str = "builds",
        poll_interval: float = 5,
        slots: int = 1,
    ):
        """
        Initialize worker.

        Args:
            queue: Job queue to consume
            jobs: Job registry keyed by message `func`
            reaper: Timeout reaper swept once per poll cycle
            queue_name: Ready queue to pull from
            poll_interval: Seconds between housekeeping cycles / dequeue timeout
            slots: Number of messages processed concurrently
        """
        self.queue = queue
        self.jobs = jobs
        self.reaper = reaper
        self.queue_name = queue_name
        self.poll_interval = poll_interval
        self.slots = max(1, slots)
        self.running = True

    def stop(self) -> None:
        self.running = False

    async def dispatch(self, message: QueueMessage) -> Optional[Outcome]:
        """Run one message; errors are logged, never raised."""
        job = self.jobs.get(message.func)
        if job is None:
            logger.error("no job registered for %r, dropping message %s", message.func, message.args)
            return None
        try:
            outcome = await job.run(message)
        except Exception:
            logger.exception("%s failed for %s", message.func, message.args)
            return None
        logger.debug("%s for build %s: %s", message.func, message.build_id, outcome.value)
        return outcome

    async def housekeeping(self) -> None:
        """Promote due delayed messages and sweep for timed-out builds."""
        try:
            promoted = await self.queue.promote_due()
            if promoted:
                logger.debug("promoted %s delayed message(s)", promoted)
        except Exception:
            logger.exception("failed to promote delayed messages")
        reaped = await self.reaper.sweep()
        if reaped:
            logger.info("reaped timed out build(s): %s", ", ".join(reaped))

    async def work_once(self) -> Optional[Outcome]:
        message = await self.queue.dequeue(self.queue_name, timeout_s=max(1, int(self.poll_interval)))
        if message is None:
            return None
        return await self.dispatch(message)

    async def _housekeeping_loop(self) -> None:
        while self.running:
            await self.housekeeping()
            await asyncio.sleep(self.poll_interval)

    async def _slot_loop(self) -> None:
        while self.running:
            try:
                await self.work_once()
            except Exception:
                logger.exception("error polling %s", self.queue_name)
                await asyncio.sleep(self.poll_interval)

    async def run(self) -> None:
        """Run until SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(signum, self.stop)
            except (NotImplementedError, RuntimeError):
                logger.debug("signal handlers unavailable in this loop")

        logger.info("worker started on %s with %s slot(s)", self.queue_name, self.slots)
        await asyncio.gather(
            self._housekeeping_loop(),
            *(self._slot_loop() for _ in range(self.slots)),
        )
        logger.info("worker stopped")
