from __future__ import annotations

import pytest

from buildgate.configs import BuildConfigStore
from buildgate.memory import MemoryKeyValueStore
from buildgate.model import BuildStatus
from buildgate.pipeline import ClusterFilter, JobDefinition, Outcome, Retry, Stage


class RecordingStage(Stage):
    def __init__(self, name: str, log: list, allow: bool = True):
        self.name = name
        self.log = log
        self.allow = allow

    async def before_perform(self, message):
        self.log.append(f"before:{self.name}")
        return self.allow

    async def after_perform(self, message):
        self.log.append(f"after:{self.name}")
        return True


async def test_stages_wrap_perform_in_order(start_message):
    log = []

    async def perform(message):
        log.append("perform")

    job = JobDefinition("start", [RecordingStage("a", log), RecordingStage("b", log)], perform)

    assert await job.run(start_message(1)) == Outcome.PERFORMED
    assert log == ["before:a", "before:b", "perform", "after:b", "after:a"]


async def test_denying_stage_stops_the_chain(start_message):
    log = []

    async def perform(message):
        log.append("perform")

    job = JobDefinition("start", [RecordingStage("a", log, allow=False), RecordingStage("b", log)], perform)

    assert await job.run(start_message(1)) == Outcome.DENIED
    assert log == ["before:a"]


async def test_errors_propagate_without_retry_stage(start_message):
    async def perform(message):
        raise RuntimeError("executor down")

    with pytest.raises(RuntimeError):
        await JobDefinition("start", [], perform).run(start_message(1))


async def test_retry_reenqueues_with_next_attempt(queue, reporter, start_message):
    async def perform(message):
        raise RuntimeError("executor down")

    job = JobDefinition("start", [Retry(queue, reporter, retry_limit=3, retry_delay=5)], perform)

    assert await job.run(start_message(1)) == Outcome.RETRIED
    [entry] = queue.delayed
    assert entry.delay_ms == 5000
    assert entry.message.attempt == 1
    assert reporter.reports == []


async def test_retry_gives_up_after_limit(queue, reporter, start_message):
    async def perform(message):
        raise RuntimeError("executor down")

    job = JobDefinition("start", [Retry(queue, reporter, retry_limit=3)], perform)
    message = start_message(1).model_copy(update={"attempt": 3})

    assert await job.run(message) == Outcome.FAILED
    assert queue.delayed == []
    assert reporter.statuses(1) == [BuildStatus.FAILURE]


@pytest.mark.parametrize(
    "scheduler_enabled, cluster, allowed",
    [
        (False, None, True),
        (False, "east", False),
        (True, "east", True),
        (True, None, False),
    ],
)
async def test_cluster_filter(configs, queue, start_message, scheduler_enabled, cluster, allowed):
    record = {"jobId": "J1"}
    if cluster:
        record["buildClusterName"] = cluster
    await configs.put(1, record)
    stage = ClusterFilter(configs, queue, scheduler_enabled, wait_ms=1000)

    assert await stage.before_perform(start_message(1)) is allowed
    assert [entry.delay_ms for entry in queue.delayed] == ([] if allowed else [1000])


async def test_cluster_filter_passes_unknown_builds(configs, queue, start_message):
    stage = ClusterFilter(configs, queue, scheduler_enabled=True)

    assert await stage.before_perform(start_message(1))


async def test_cluster_filter_redelivers_when_store_fails(keys, queue, clock, start_message):
    class FlakyStore(MemoryKeyValueStore):
        async def hget(self, key, field):
            raise ConnectionError("store unavailable")

    configs = BuildConfigStore(FlakyStore(clock), keys)
    performed = []

    async def perform(message):
        performed.append(message.build_id)

    job = JobDefinition("start", [ClusterFilter(configs, queue, scheduler_enabled=False, wait_ms=1000)], perform)
    message = start_message(100)

    assert await job.run(message) == Outcome.DENIED
    assert performed == []
    assert [(entry.delay_ms, entry.message) for entry in queue.delayed] == [(1000, message)]


async def test_cluster_filter_redelivers_malformed_config(store, keys, configs, queue, start_message):
    await store.hset(keys.build_configs, "100", "{not json")

    assert not await ClusterFilter(configs, queue, scheduler_enabled=False).before_perform(start_message(100))
    assert len(queue.delayed) == 1


async def test_retry_gives_up_and_resolves_the_build(store, keys, configs, queue, reporter, start_message):
    async def perform(message):
        raise RuntimeError("executor down")

    await configs.put(100, {"jobId": "J1", "apiUri": "http://api"})
    await store.set(keys.running("J1"), "100")
    job = JobDefinition("start", [Retry(queue, reporter, retry_limit=0, configs=configs)], perform)

    assert await job.run(start_message(100)) == Outcome.FAILED

    assert reporter.statuses(100) == [BuildStatus.FAILURE]
    assert await configs.get(100) is None
    assert await store.get(keys.running("J1")) is None


async def test_retry_give_up_keeps_lock_of_another_build(store, keys, configs, queue, reporter, start_message):
    async def perform(message):
        raise RuntimeError("executor down")

    await configs.put(100, {"jobId": "J1"})
    await store.set(keys.running("J1"), "99")
    job = JobDefinition("start", [Retry(queue, reporter, retry_limit=0, configs=configs)], perform)

    assert await job.run(start_message(100)) == Outcome.FAILED

    assert await configs.get(100) is None
    assert await store.get(keys.running("J1")) == "99"
