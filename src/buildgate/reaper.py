# reaper.py
from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from typing import Callable, List

from .configs import BuildConfigStore
from .interfaces import KeyValueStore, StatusReporter
from .keys import Keys
from .log import get_logger
from .model import BuildStatus

logger = get_logger(__name__)

DEFAULT_BUILD_TIMEOUT = 60  # minutes
TIMEOUT_BUFFER = 1          # minutes
TIMEOUT_EXIT_CODE = 3


def now_utc() -> datetime:
    return datetime.now(timezone.utc)


class TimeoutReaper:
    """
    Fails builds that have overrun their timeout and frees their locks.

    Run `sweep()` on a fixed interval. Every record in the build-config
    table is checked independently; an error on one record is logged and
    that record dropped so it cannot be retried forever.
    """

    def __init__(
        self,
        store: KeyValueStore,
        configs: BuildConfigStore,
        reporter: StatusReporter,
        keys: Keys,
        clock: Callable[[], datetime] = now_utc,
    ):
        self.store = store
        self.configs = configs
        self.reporter = reporter
        self.keys = keys
        self._clock = clock

    async def sweep(self) -> List[str]:
        """Check every tracked build once; returns the ids that were reaped."""
        try:
            build_ids = await self.configs.build_ids()
        except Exception:
            logger.exception("could not list build configs")
            return []
        if not build_ids:
            return []

        reaped = await asyncio.gather(*(self._check(build_id) for build_id in build_ids))
        return [build_id for build_id, hit in zip(build_ids, reaped) if hit]

    async def _check(self, build_id: str) -> bool:
        try:
            return await self._check_build(build_id)
        except Exception:
            logger.exception("error checking timeout of build %s, dropping its config", build_id)
            try:
                await self.configs.delete(build_id)
            except Exception:
                logger.exception("could not drop config of build %s", build_id)
            return False

    async def _check_build(self, build_id: str) -> bool:
        config = await self.configs.get(build_id)
        if config is None:
            # resolved by another path
            return False

        if config.enqueue_time is None:
            logger.warning("enqueueTime not set for build %s", build_id)
            return False

        timeout = config.timeout_minutes(DEFAULT_BUILD_TIMEOUT) + TIMEOUT_BUFFER
        started = config.enqueue_time
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        elapsed = round((self._clock() - started).total_seconds() / 60)
        if elapsed <= timeout:
            return False

        logger.info("build %s of job %s timed out after %s min", build_id, config.job_id, elapsed)
        await self.reporter.report(build_id, BuildStatus.FAILURE, f"Failed build: {build_id} due to timeout")
        await self.reporter.stop_active_step(build_id, TIMEOUT_EXIT_CODE)

        job_id = config.job_id
        await self.configs.delete(build_id)
        await asyncio.gather(
            self.store.expire(self.keys.running(job_id), 0),
            self.store.expire(self.keys.last_running(job_id), 0),
            self.store.delete(self.keys.deleted(job_id, build_id)),
            self.store.lrem(self.keys.waiting(job_id), 0, str(build_id)),
        )
        return True
