from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from buildgate.model import BuildStatus
from buildgate.reaper import TIMEOUT_EXIT_CODE, TimeoutReaper

NOW = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)


def minutes_ago(minutes: int) -> str:
    return (NOW - timedelta(minutes=minutes)).isoformat()


@pytest.fixture
def reaper(store, configs, reporter, keys):
    return TimeoutReaper(store, configs, reporter, keys, clock=lambda: NOW)


async def test_overdue_build_is_failed_and_unlocked(reaper, store, keys, configs, reporter):
    await configs.put(333, {
        "jobId": 2,
        "jobName": "deploy",
        "annotations": {"timeout": "50"},
        "apiUri": "fake",
        "enqueueTime": minutes_ago(70),
    })
    await store.set(keys.running("2"), "333", ex=7200)
    await store.set(keys.last_running("2"), "333", ex=7200)
    await store.set(keys.deleted("2", 333), "1")
    await store.rpush(keys.waiting("2"), "333", "444")

    assert await reaper.sweep() == ["333"]

    assert reporter.reports == [(333, BuildStatus.FAILURE, "Failed build: 333 due to timeout")]
    assert reporter.stopped_steps == [(333, TIMEOUT_EXIT_CODE)]
    assert await configs.get(333) is None
    assert await store.get(keys.running("2")) is None
    assert await store.get(keys.last_running("2")) is None
    assert await store.get(keys.deleted("2", 333)) is None
    assert await store.lrange(keys.waiting("2"), 0, -1) == ["444"]


async def test_build_within_timeout_is_left_alone(reaper, store, keys, configs, reporter):
    await configs.put(333, {"jobId": 2, "annotations": {"timeout": "50"}, "enqueueTime": minutes_ago(30)})
    await store.set(keys.running("2"), "333")

    assert await reaper.sweep() == []

    assert reporter.reports == []
    assert await configs.get(333) is not None
    assert await store.get(keys.running("2")) == "333"


async def test_default_timeout_includes_buffer(reaper, configs):
    await configs.put(1, {"jobId": 2, "enqueueTime": minutes_ago(61)})
    await configs.put(2, {"jobId": 3, "enqueueTime": minutes_ago(63)})

    assert await reaper.sweep() == ["2"]


async def test_build_without_enqueue_time_is_untouched(reaper, store, keys, configs, reporter):
    await configs.put(333, {"jobId": 2, "annotations": {"timeout": "1"}})
    await store.set(keys.running("2"), "333")

    assert await reaper.sweep() == []

    assert reporter.reports == []
    assert await configs.get(333) is not None
    assert await store.get(keys.running("2")) == "333"


async def test_malformed_record_is_dropped_without_stalling_sweep(reaper, store, keys, configs, reporter):
    await store.hset(keys.build_configs, "111", "{not json")
    await configs.put(222, {"jobId": 2, "annotations": {"timeout": "soon"}, "enqueueTime": minutes_ago(5)})
    await configs.put(333, {"jobId": 3, "enqueueTime": minutes_ago(120)})

    assert await reaper.sweep() == ["333"]

    assert await configs.build_ids() == []
    assert reporter.statuses(333) == [BuildStatus.FAILURE]
    assert reporter.statuses(111) == reporter.statuses(222) == []


async def test_naive_enqueue_time_is_read_as_utc(reaper, configs):
    naive = (NOW - timedelta(minutes=90)).replace(tzinfo=None).isoformat()
    await configs.put(5, {"jobId": 1, "enqueueTime": naive})

    assert await reaper.sweep() == ["5"]


async def test_empty_table(reaper):
    assert await reaper.sweep() == []
