from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from buildgate.model import QueueMessage
from buildgate.pipeline import JobDefinition, Outcome
from buildgate.reaper import TimeoutReaper
from buildgate.worker import Worker


@pytest.fixture
def reaper(store, configs, reporter, keys, clock):
    return TimeoutReaper(store, configs, reporter, keys, clock=lambda: datetime.fromtimestamp(clock(), timezone.utc))


@pytest.fixture
def performed():
    return []


@pytest.fixture
def worker(queue, reaper, performed):
    async def perform(message):
        performed.append(message.build_id)

    async def explode(message):
        raise RuntimeError("executor crashed")

    jobs = {
        "start": JobDefinition("start", [], perform),
        "stop": JobDefinition("stop", [], explode),
    }
    return Worker(queue, jobs, reaper, poll_interval=1)


async def test_work_once_runs_the_registered_job(worker, queue, performed, start_message):
    await queue.enqueue(start_message(100))

    assert await worker.work_once() == Outcome.PERFORMED
    assert performed == [100]


async def test_unknown_function_is_dropped(worker, performed):
    message = QueueMessage(queue="builds", func="reboot", args=[{"buildId": 1}])

    assert await worker.dispatch(message) is None
    assert performed == []


async def test_job_errors_do_not_escape(worker):
    message = QueueMessage(queue="builds", func="stop", args=[{"buildId": 1, "jobId": "J1"}])

    assert await worker.dispatch(message) is None


async def test_housekeeping_promotes_and_reaps(worker, queue, configs, reporter, clock, start_message):
    enqueued_at = datetime.fromtimestamp(clock(), timezone.utc)
    await configs.put(7, {"jobId": "J1", "enqueueTime": enqueued_at.isoformat()})
    await queue.enqueue_in(1000, start_message(100))

    clock.advance(timedelta(minutes=90).total_seconds())
    await worker.housekeeping()

    assert [m.build_id for m in queue.ready["builds"]] == [100]
    assert await configs.get(7) is None
    assert [b for b, _, _ in reporter.reports] == [7]


def test_stop_ends_the_loops(worker):
    worker.stop()

    assert not worker.running
