# blocked_by.py
from __future__ import annotations

import asyncio
from typing import List, Optional, Tuple

from .configs import BuildConfigStore
from .interfaces import JobQueue, KeyValueStore, StatusReporter
from .keys import Keys
from .log import get_logger, log_event
from .model import BuildRequest, BuildStatus, GateOptions, HeadClaim, QueueMessage

logger = get_logger(__name__)

# (job id, build id holding that job's running lock)
Blocker = Tuple[str, str]


class BlockedBy:
    """
    Admission gate run before a build is handed to the executor.

    State lives in the shared store and is touched by many workers at
    once:

      running_job_<job>   build id currently admitted, TTL = block_timeout
      waiting_job_<job>   build ids denied admission, ordered by numeric id
      deleted_<job>_<id>  set by whoever cancelled a not-yet-running build

    `pre_admit` returns True when the build may start. On False the build
    has either been abandoned (cancelled, superseded) or re-enqueued with
    a delay and its status reported. Locks are released by the stop
    handler, the timeout reaper or their TTL, never by `post_admit`: the
    build keeps running in the executor after the start handler returns.
    """

    def __init__(
        self,
        store: KeyValueStore,
        queue: JobQueue,
        reporter: StatusReporter,
        keys: Keys,
        options: GateOptions,
        configs: Optional[BuildConfigStore] = None,
    ):
        self.store = store
        self.queue = queue
        self.reporter = reporter
        self.keys = keys
        self.options = options
        self.configs = configs

    async def pre_admit(self, message: QueueMessage, options: Optional[GateOptions] = None) -> bool:
        options = options or self.options
        try:
            request = BuildRequest.from_message(message)
        except ValueError as e:
            logger.error("dropping malformed build request %s: %s", message.args, e)
            return False

        try:
            return await self._pre_admit(message, request, options)
        except Exception:
            logger.exception(
                "admission check failed for build %s of job %s, retrying later",
                request.build_id,
                request.job_id,
            )
            await self._redeliver_quietly(message, options)
            return False

    async def post_admit(self, message: QueueMessage) -> bool:
        return True

    async def _pre_admit(self, message: QueueMessage, request: BuildRequest, options: GateOptions) -> bool:
        job_id, build_id = request.job_id, request.build_id
        running_key = self.keys.running(job_id)
        waiting_key = self.keys.waiting(job_id)
        delete_key = self.keys.deleted(job_id, build_id)

        blocking_job_ids = [j for j in dict.fromkeys(request.blocked_by) if j != job_id]
        if options.blocked_by_self:
            blocking_job_ids.append(job_id)

        deleted, running, blocking_values, (resolved, collapse) = await asyncio.gather(
            self.store.get(delete_key),
            self.store.get(running_key),
            self.store.mget([self.keys.running(j) for j in blocking_job_ids]),
            self._build_policy(build_id, options),
        )

        # redelivered after a failed start: already holds the lock
        if running == str(build_id):
            log_event(logger, "admit_retry", job_id=job_id, build_id=build_id)
            return True

        if deleted is not None:
            await self.store.delete(delete_key)
            await self.store.lrem(waiting_key, 0, str(build_id))
            # a concurrent redelivery may have been admitted meanwhile
            if await self.store.get(running_key) == str(build_id):
                await self.store.delete(running_key)
            log_event(logger, "aborted", job_id=job_id, build_id=build_id)
            return False

        if resolved:
            logger.info("build %s has no usable config record, treating it as resolved", build_id)
            await self.store.lrem(waiting_key, 0, str(build_id))
            return False

        blockers = [(j, value) for j, value in zip(blocking_job_ids, blocking_values) if value]
        if blockers:
            if options.blocked_by_self and collapse:
                await self._collapse(message, request, options, blockers)
            else:
                await self._reschedule(message, request, options, _blocked_message(blockers))
            return False

        if options.blocked_by_self:
            if await self._blocked_by_earlier_builds(message, request, options):
                return False
        else:
            await self.store.delete(waiting_key)

        ttl = options.lock_ttl_seconds
        await asyncio.gather(
            self.store.set(running_key, str(build_id), ex=ttl),
            self.store.set(self.keys.last_running(job_id), str(build_id), ex=ttl),
        )
        log_event(logger, "admitted", job_id=job_id, build_id=build_id, ttl=ttl)
        return True

    async def _build_policy(self, build_id: int, options: GateOptions) -> Tuple[bool, bool]:
        """(already resolved, collapse) for the build, from its config record."""
        if self.configs is None:
            return False, options.collapse
        try:
            config = await self.configs.get(build_id)
        except ValueError as e:
            logger.warning("malformed config for build %s: %s", build_id, e)
            return True, options.collapse
        if config is None:
            return True, options.collapse
        override = config.collapse_override
        return False, options.collapse if override is None else override

    async def _collapse(
        self,
        message: QueueMessage,
        request: BuildRequest,
        options: GateOptions,
        blockers: List[Blocker],
    ) -> None:
        job_id, build_id = request.job_id, request.build_id
        result = await self.store.collapse_waiting(self.keys.waiting(job_id), build_id)

        if result.superseded_by is not None:
            log_event(logger, "superseded", job_id=job_id, build_id=build_id, by=result.superseded_by)
            await self.reporter.report(
                build_id, BuildStatus.COLLAPSED, f"Collapsed to build: {result.superseded_by}"
            )
            return

        if result.collapsed:
            log_event(logger, "collapsed", job_id=job_id, build_id=build_id, builds=result.collapsed)
            await asyncio.gather(*(
                self.reporter.report(older, BuildStatus.COLLAPSED, f"Collapsed to build: {build_id}")
                for older in result.collapsed
            ))

        await self._reschedule(message, request, options, _blocked_message(blockers))

    async def _blocked_by_earlier_builds(
        self,
        message: QueueMessage,
        request: BuildRequest,
        options: GateOptions,
    ) -> bool:
        waiting_key = self.keys.waiting(request.job_id)
        claim = await self.store.claim_waiting_head(waiting_key, request.build_id)
        if claim != HeadClaim.BEHIND:
            return False

        waiting = await self.store.lrange(waiting_key, 0, -1)
        ahead = sorted({int(b) for b in waiting if b.isdigit()} - {request.build_id})
        text = "Waiting behind queued build(s) of this job: " + ", ".join(str(b) for b in ahead)
        await self._reschedule(message, request, options, text)
        return True

    async def _reschedule(
        self,
        message: QueueMessage,
        request: BuildRequest,
        options: GateOptions,
        status_message: str,
    ) -> None:
        waiting_key = self.keys.waiting(request.job_id)
        build_id = str(request.build_id)

        waiting = await self.store.lrange(waiting_key, 0, -1)
        if build_id not in waiting:
            await self.store.rpush(waiting_key, build_id)

        await self.queue.enqueue_in(options.reenqueue_delay_ms, message)
        log_event(
            logger,
            "blocked",
            job_id=request.job_id,
            build_id=request.build_id,
            retry_in_ms=options.reenqueue_delay_ms,
        )
        await self.reporter.report(request.build_id, BuildStatus.BLOCKED, status_message)

    async def _redeliver_quietly(self, message: QueueMessage, options: GateOptions) -> None:
        try:
            await self.queue.enqueue_in(options.reenqueue_delay_ms, message)
        except Exception:
            logger.exception("could not re-enqueue %s, the build will not be retried", message.args)


def _blocked_message(blockers: List[Blocker]) -> str:
    running = ", ".join(f"{build} (job {job})" for job, build in blockers)
    return f"Blocked by these running build(s): {running}"
