from __future__ import annotations

from typing import List, Sequence, Tuple

import pytest

from buildgate.configs import BuildConfigStore
from buildgate.keys import Keys
from buildgate.memory import MemoryJobQueue, MemoryKeyValueStore
from buildgate.model import BuildStatus, QueueMessage


class FrozenClock:
    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingReporter:
    def __init__(self) -> None:
        self.reports: List[Tuple[int, BuildStatus, str]] = []
        self.stopped_steps: List[Tuple[int, int]] = []

    async def report(self, build_id, status, message) -> bool:
        self.reports.append((int(build_id), BuildStatus(status), message))
        return True

    async def stop_active_step(self, build_id, code) -> bool:
        self.stopped_steps.append((int(build_id), code))
        return True

    def statuses(self, build_id: int) -> List[BuildStatus]:
        return [status for b, status, _ in self.reports if b == build_id]


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def keys():
    return Keys()


@pytest.fixture
def store(clock):
    return MemoryKeyValueStore(clock)


@pytest.fixture
def queue(clock):
    return MemoryJobQueue(clock)


@pytest.fixture
def reporter():
    return RecordingReporter()


@pytest.fixture
def configs(store, keys):
    return BuildConfigStore(store, keys)


@pytest.fixture
def start_message():
    def make(build_id: int, job_id: str = "J1", blocked_by: Sequence[str] = ()) -> QueueMessage:
        return QueueMessage(
            queue="builds",
            func="start",
            args=[{"buildId": build_id, "jobId": job_id, "blockedBy": list(blocked_by)}],
        )
    return make
