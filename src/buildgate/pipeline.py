# pipeline.py
from __future__ import annotations

from enum import Enum
from typing import Awaitable, Callable, List, Optional, Sequence

from .blocked_by import BlockedBy
from .configs import BuildConfigStore
from .interfaces import JobQueue, StatusReporter
from .log import get_logger
from .model import BuildRequest, BuildStatus, QueueMessage

logger = get_logger(__name__)

Perform = Callable[[QueueMessage], Awaitable[object]]


class Outcome(str, Enum):
    DENIED = "denied"
    PERFORMED = "performed"
    RETRIED = "retried"
    FAILED = "failed"


class Stage:
    """
    One middleware stage around a job's perform function.

    `before_perform` returning False stops the chain; the stage is then
    responsible for whatever happens to the message (re-enqueue, drop).
    """
    name = "stage"

    async def before_perform(self, message: QueueMessage) -> bool:
        return True

    async def after_perform(self, message: QueueMessage) -> bool:
        return True


class ClusterFilter(Stage):
    """Routes builds between the scheduler and the plain worker pools."""
    name = "Filter"

    def __init__(self, configs: BuildConfigStore, queue: JobQueue, scheduler_enabled: bool, wait_ms: int = 1000):
        self.configs = configs
        self.queue = queue
        self.scheduler_enabled = scheduler_enabled
        self.wait_ms = wait_ms

    async def before_perform(self, message: QueueMessage) -> bool:
        if message.build_id is None:
            return True
        try:
            config = await self.configs.get(message.build_id)
        except Exception as e:
            logger.error("could not read config of build %s, retrying later: %s", message.build_id, e)
            await self.queue.enqueue_in(self.wait_ms, message)
            return False
        if config is None:
            return True

        has_cluster = bool(config.build_cluster_name)
        if has_cluster == self.scheduler_enabled:
            return True

        logger.debug("build %s does not belong to this pool, re-enqueueing", message.build_id)
        await self.queue.enqueue_in(self.wait_ms, message)
        return False


class Retry(Stage):
    """
    Re-enqueues a message whose perform raised, up to `retry_limit` times.

    On giving up the build is reported FAILURE and, when `configs` is set,
    resolved: its config record is deleted and the running lock released
    if this build holds it.
    """
    name = "Retry"

    def __init__(
        self,
        queue: JobQueue,
        reporter: StatusReporter,
        retry_limit: int = 3,
        retry_delay: int = 5,
        configs: Optional[BuildConfigStore] = None,
    ):
        self.queue = queue
        self.reporter = reporter
        self.retry_limit = retry_limit
        self.retry_delay = retry_delay  # seconds
        self.configs = configs

    async def on_failure(self, message: QueueMessage, exc: Exception) -> Outcome:
        if message.attempt < self.retry_limit:
            logger.warning(
                "%s failed for build %s (attempt %s/%s): %s",
                message.func, message.build_id, message.attempt + 1, self.retry_limit + 1, exc,
            )
            await self.queue.enqueue_in(self.retry_delay * 1000, message.next_attempt())
            return Outcome.RETRIED

        logger.error("%s failed for build %s, giving up: %s", message.func, message.build_id, exc)
        if message.build_id is not None:
            await self.reporter.report(
                message.build_id,
                BuildStatus.FAILURE,
                f"Failed to {message.func} build after {message.attempt + 1} attempt(s): {exc}",
            )
            await self._release(message)
        return Outcome.FAILED

    async def _release(self, message: QueueMessage) -> None:
        if self.configs is None:
            return
        try:
            request = BuildRequest.from_message(message)
            store, keys = self.configs.store, self.configs.keys
            await self.configs.delete(request.build_id)
            running_key = keys.running(request.job_id)
            if await store.get(running_key) == str(request.build_id):
                await store.delete(running_key)
        except Exception as e:
            logger.error("could not release build %s after giving up: %s", message.build_id, e)


class Admission(Stage):
    """The blocked-by gate as a pipeline stage."""
    name = "BlockedBy"

    def __init__(self, gate: BlockedBy):
        self.gate = gate

    async def before_perform(self, message: QueueMessage) -> bool:
        return await self.gate.pre_admit(message)

    async def after_perform(self, message: QueueMessage) -> bool:
        return await self.gate.post_admit(message)


class JobDefinition:
    """A named job: ordered stages plus the function they guard."""

    def __init__(self, name: str, stages: Sequence[Stage], perform: Perform):
        self.name = name
        self.stages: List[Stage] = list(stages)
        self.perform = perform

    async def run(self, message: QueueMessage) -> Outcome:
        for stage in self.stages:
            if not await stage.before_perform(message):
                logger.debug("%s denied %s for build %s", stage.name, self.name, message.build_id)
                return Outcome.DENIED

        try:
            await self.perform(message)
        except Exception as exc:
            retry = next((s for s in self.stages if isinstance(s, Retry)), None)
            if retry is None:
                raise
            return await retry.on_failure(message, exc)

        for stage in reversed(self.stages):
            await stage.after_perform(message)
        return Outcome.PERFORMED
