# jobs.py
from __future__ import annotations

import importlib
from typing import Dict

from .blocked_by import BlockedBy
from .configs import BuildConfigStore
from .interfaces import Executor, JobQueue, KeyValueStore, StatusReporter
from .log import get_logger
from .model import BuildRequest, QueueMessage
from .pipeline import Admission, ClusterFilter, JobDefinition, Retry
from .settings import Settings

logger = get_logger(__name__)


class ExecutorLoadError(Exception):
    """Raised when an executor spec cannot be imported."""
    pass


class BuildHandlers:
    """The `start` and `stop` functions workers run for build messages."""

    def __init__(self, store: KeyValueStore, configs: BuildConfigStore, executor: Executor):
        self.store = store
        self.configs = configs
        self.executor = executor

    async def start(self, message: QueueMessage) -> None:
        """Hand the build's full config record to the executor."""
        request = BuildRequest.from_message(message)
        config = await self.configs.get_raw(request.build_id)
        if config is None:
            logger.warning("no config for build %s, nothing to start", request.build_id)
            return
        await self.executor.start(config)

    async def stop(self, message: QueueMessage) -> None:
        """
        Drop every trace of the build from the gate, then stop its container.

        Safe for running and still-waiting builds alike.
        """
        request = BuildRequest.from_message(message)
        build_id, job_id = request.build_id, request.job_id
        keys = self.configs.keys
        stop_config: dict = {"buildId": build_id}

        try:
            config = await self.configs.get_raw(build_id)
            if config and config.get("annotations"):
                stop_config["annotations"] = config["annotations"]
        except Exception as e:
            logger.error("[Stop Build] failed to get config for build %s: %s", build_id, e)

        await self.configs.delete(build_id)
        # another build of the job may hold the lock if this one never ran
        if await self.store.get(keys.running(job_id)) == str(build_id):
            await self.store.delete(keys.running(job_id))
        await self.store.lrem(keys.waiting(job_id), 0, str(build_id))
        await self.executor.stop(stop_config)


def build_jobs(
    settings: Settings,
    store: KeyValueStore,
    queue: JobQueue,
    reporter: StatusReporter,
    executor: Executor,
) -> Dict[str, JobDefinition]:
    """Wire the job registry: `start` runs behind the gate, `stop` does not."""
    keys = settings.keys
    configs = BuildConfigStore(store, keys)
    gate = BlockedBy(store, queue, reporter, keys, settings.gate_options, configs=configs)
    retry = Retry(queue, reporter, settings.retry_limit, settings.retry_delay, configs=configs)
    handlers = BuildHandlers(store, configs, executor)

    return {
        "start": JobDefinition(
            "start",
            [ClusterFilter(configs, queue, settings.scheduler_enabled, settings.filter_wait_time), retry, Admission(gate)],
            handlers.start,
        ),
        "stop": JobDefinition("stop", [retry], handlers.stop),
    }


def load_executor(spec: str) -> Executor:
    """
    Load an executor from a "module:attribute" spec.

    A class or factory attribute is called with no arguments; anything
    else is used as the executor itself.
    """
    module_name, _, attr = spec.partition(":")
    if not module_name or not attr:
        raise ExecutorLoadError(f"executor spec must look like 'module:attribute', got {spec!r}")
    try:
        module = importlib.import_module(module_name)
        target = getattr(module, attr)
    except (ImportError, AttributeError) as e:
        raise ExecutorLoadError(f"could not load executor {spec!r}: {e}") from e
    return target() if callable(target) else target


async def cancel_build(
    settings: Settings,
    store: KeyValueStore,
    queue: JobQueue,
    job_id: str,
    build_id: int,
) -> bool:
    """
    Cancel a build: mark it deleted for the gate and enqueue its stop.

    Returns False when the build has no config record (already resolved).
    """
    keys = settings.keys
    if await BuildConfigStore(store, keys).get_raw(build_id) is None:
        return False

    # picked up by the gate on the build's next admission attempt
    await store.set(keys.deleted(job_id, build_id), "1", ex=settings.gate_options.lock_ttl_seconds)
    await queue.enqueue(QueueMessage(
        queue=settings.queue_name,
        func="stop",
        args=[{"buildId": build_id, "jobId": job_id}],
    ))
    logger.info("cancel requested for build %s of job %s", build_id, job_id)
    return True
