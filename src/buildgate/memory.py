# memory.py
from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from .model import CollapseResult, HeadClaim, QueueMessage


class WrongTypeError(TypeError):
    """Operation against a key holding the wrong kind of value."""


def _build_number(item: str) -> Optional[int]:
    try:
        return int(item)
    except ValueError:
        return None


class MemoryKeyValueStore:
    """
    In-process stand-in for the shared store, used by tests and local runs.

    Mirrors the Redis semantics the gate relies on: empty lists and hashes
    disappear, TTLs are enforced lazily against `clock`. None of the
    methods yield to the event loop mid-operation, so each call, the
    compound ones included, is atomic with respect to other coroutines.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._data: Dict[str, Any] = {}
        self._expiry: Dict[str, float] = {}
        self._clock = clock

    # ---- internals ----

    def _purge(self, key: str) -> None:
        deadline = self._expiry.get(key)
        if deadline is not None and deadline <= self._clock():
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    def _lookup(self, key: str, kind: type) -> Any:
        self._purge(key)
        value = self._data.get(key)
        if value is not None and not isinstance(value, kind):
            raise WrongTypeError(f"WRONGTYPE key {key!r} holds {type(value).__name__}")
        return value

    def _drop_if_empty(self, key: str) -> None:
        if not self._data.get(key):
            self._data.pop(key, None)
            self._expiry.pop(key, None)

    # ---- strings & keys ----

    async def get(self, key: str) -> Optional[str]:
        return self._lookup(key, str)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        self._data[key] = str(value)
        if ex:
            self._expiry[key] = self._clock() + ex
        else:
            self._expiry.pop(key, None)

    async def expire(self, key: str, seconds: int) -> bool:
        self._purge(key)
        if key not in self._data:
            return False
        if seconds <= 0:
            self._data.pop(key, None)
            self._expiry.pop(key, None)
        else:
            self._expiry[key] = self._clock() + seconds
        return True

    async def ttl(self, key: str) -> int:
        self._purge(key)
        if key not in self._data:
            return -2
        deadline = self._expiry.get(key)
        if deadline is None:
            return -1
        return int(round(deadline - self._clock()))

    async def delete(self, *keys: str) -> int:
        removed = 0
        for key in keys:
            self._purge(key)
            if self._data.pop(key, None) is not None:
                removed += 1
            self._expiry.pop(key, None)
        return removed

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        return [self._lookup(key, str) for key in keys]

    # ---- lists ----

    async def rpush(self, key: str, *values: str) -> int:
        items = self._lookup(key, list)
        if items is None:
            items = self._data[key] = []
        items.extend(str(v) for v in values)
        return len(items)

    async def lpop(self, key: str) -> Optional[str]:
        items = self._lookup(key, list)
        if not items:
            return None
        value = items.pop(0)
        self._drop_if_empty(key)
        return value

    async def lindex(self, key: str, index: int) -> Optional[str]:
        items = self._lookup(key, list) or []
        try:
            return items[index]
        except IndexError:
            return None

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        items = self._lookup(key, list) or []
        size = len(items)
        if start < 0:
            start = max(size + start, 0)
        if stop < 0:
            stop = size + stop
        return list(items[start:stop + 1])

    async def lrem(self, key: str, count: int, value: str) -> int:
        items = self._lookup(key, list)
        if not items:
            return 0
        value = str(value)
        limit = abs(count) or len(items)
        positions = [i for i, item in enumerate(items) if item == value]
        if count < 0:
            positions = positions[::-1]
        doomed = set(positions[:limit])
        self._data[key] = [item for i, item in enumerate(items) if i not in doomed]
        self._drop_if_empty(key)
        return len(doomed)

    async def llen(self, key: str) -> int:
        return len(self._lookup(key, list) or [])

    # ---- hashes ----

    async def hget(self, key: str, field: str) -> Optional[str]:
        return (self._lookup(key, dict) or {}).get(str(field))

    async def hset(self, key: str, field: str, value: str) -> None:
        table = self._lookup(key, dict)
        if table is None:
            table = self._data[key] = {}
        table[str(field)] = str(value)

    async def hdel(self, key: str, *fields: str) -> int:
        table = self._lookup(key, dict)
        if not table:
            return 0
        removed = sum(1 for f in fields if table.pop(str(f), None) is not None)
        self._drop_if_empty(key)
        return removed

    async def hkeys(self, key: str) -> List[str]:
        return list((self._lookup(key, dict) or {}).keys())

    # ---- compound ----

    # Entries that are not build numbers are left in place and never
    # compared, matching `tonumber` in the Lua scripts.

    async def claim_waiting_head(self, key: str, build_id: int) -> HeadClaim:
        items = self._lookup(key, list) or []
        numbers = [n for n in map(_build_number, items) if n is not None]
        if not numbers:
            return HeadClaim.EMPTY
        if min(numbers) != int(build_id):
            return HeadClaim.BEHIND
        self._data[key] = [item for item in items if item != str(build_id)]
        self._drop_if_empty(key)
        return HeadClaim.CLAIMED

    async def collapse_waiting(self, key: str, build_id: int) -> CollapseResult:
        items = self._lookup(key, list) or []
        build_id = int(build_id)
        numbers = {n for n in map(_build_number, items) if n is not None}
        if not numbers:
            return CollapseResult()
        last = max(numbers)
        if build_id < last:
            self._data[key] = [item for item in items if item != str(build_id)]
            self._drop_if_empty(key)
            return CollapseResult(superseded_by=last)
        self._data[key] = [
            item for item in items
            if _build_number(item) is None or _build_number(item) == build_id
        ]
        self._drop_if_empty(key)
        return CollapseResult(collapsed=sorted(numbers - {build_id}))


@dataclass
class ScheduledMessage:
    due_at: float
    delay_ms: int
    message: QueueMessage


class MemoryJobQueue:
    """In-process job queue with delayed delivery."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self.ready: Dict[str, Deque[QueueMessage]] = {}
        self.delayed: List[ScheduledMessage] = []
        self._clock = clock

    async def enqueue(self, message: QueueMessage) -> None:
        self.ready.setdefault(message.queue, deque()).append(message)

    async def enqueue_in(self, delay_ms: int, message: QueueMessage) -> None:
        self.delayed.append(ScheduledMessage(self._clock() + delay_ms / 1000, delay_ms, message))

    async def dequeue(self, queue: str, timeout_s: int = 5) -> Optional[QueueMessage]:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_s
        while True:
            pending = self.ready.get(queue)
            if pending:
                return pending.popleft()
            if loop.time() >= deadline:
                return None
            await asyncio.sleep(0.05)

    async def promote_due(self) -> int:
        now = self._clock()
        due = [entry for entry in self.delayed if entry.due_at <= now]
        self.delayed = [entry for entry in self.delayed if entry.due_at > now]
        for entry in sorted(due, key=lambda e: e.due_at):
            await self.enqueue(entry.message)
        return len(due)
