# interfaces.py
from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol, Sequence

from .model import BuildStatus, CollapseResult, HeadClaim, QueueMessage


class KeyValueStore(Protocol):
    """
    Shared key-value store used for all coordination state.

    Every call is a single atomic operation; no multi-key transactions.
    The two compound operations at the bottom must be atomic as a whole.
    """

    async def get(self, key: str) -> Optional[str]: ...

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None: ...

    async def expire(self, key: str, seconds: int) -> bool: ...

    async def ttl(self, key: str) -> int: ...

    async def delete(self, *keys: str) -> int: ...

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]: ...

    async def rpush(self, key: str, *values: str) -> int: ...

    async def lpop(self, key: str) -> Optional[str]: ...

    async def lindex(self, key: str, index: int) -> Optional[str]: ...

    async def lrange(self, key: str, start: int, stop: int) -> List[str]: ...

    async def lrem(self, key: str, count: int, value: str) -> int: ...

    async def llen(self, key: str) -> int: ...

    async def hget(self, key: str, field: str) -> Optional[str]: ...

    async def hset(self, key: str, field: str, value: str) -> None: ...

    async def hdel(self, key: str, *fields: str) -> int: ...

    async def hkeys(self, key: str) -> List[str]: ...

    async def claim_waiting_head(self, key: str, build_id: int) -> HeadClaim:
        """
        Remove `build_id` from the waiting queue if it is the numerically
        smallest entry, deleting the queue once empty.
        """
        ...

    async def collapse_waiting(self, key: str, build_id: int) -> CollapseResult:
        """
        Drop every waiting entry older than `build_id`. If a strictly newer
        build is waiting instead, only `build_id` itself is dropped.
        """
        ...


class JobQueue(Protocol):
    """The job-queue runtime, seen from the gate."""

    async def enqueue(self, message: QueueMessage) -> None: ...

    async def enqueue_in(self, delay_ms: int, message: QueueMessage) -> None: ...

    async def dequeue(self, queue: str, timeout_s: int = 5) -> Optional[QueueMessage]: ...

    async def promote_due(self) -> int: ...


class StatusReporter(Protocol):
    """Best-effort build status updates; never raises."""

    async def report(self, build_id: int | str, status: BuildStatus, message: str) -> bool: ...

    async def stop_active_step(self, build_id: int | str, code: int) -> bool: ...


class Executor(Protocol):
    """Starts and stops the runtime container of a build."""

    async def start(self, config: Dict[str, Any]) -> Any: ...

    async def stop(self, config: Dict[str, Any]) -> Any: ...
