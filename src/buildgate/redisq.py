from __future__ import annotations

import time
from typing import Callable, List, Optional, Sequence

import redis.asyncio as redis

from .keys import Keys
from .model import CollapseResult, HeadClaim, QueueMessage

# KEYS[1] = waiting queue, ARGV[1] = build id
CLAIM_HEAD_SCRIPT = """
local entries = redis.call('LRANGE', KEYS[1], 0, -1)
local head = nil
for _, entry in ipairs(entries) do
  local n = tonumber(entry)
  if n and (head == nil or n < head) then head = n end
end
if head == nil then
  return 'empty'
end
if head ~= tonumber(ARGV[1]) then
  return 'behind'
end
redis.call('LREM', KEYS[1], 0, ARGV[1])
if redis.call('LLEN', KEYS[1]) == 0 then
  redis.call('DEL', KEYS[1])
end
return 'claimed'
"""

# KEYS[1] = waiting queue, ARGV[1] = build id
# reply[1] = superseding build id or '', reply[2..] = collapsed ids
COLLAPSE_SCRIPT = """
local entries = redis.call('LRANGE', KEYS[1], 0, -1)
local current = tonumber(ARGV[1])
local last, last_entry = nil, ''
for _, entry in ipairs(entries) do
  local n = tonumber(entry)
  if n and (last == nil or n > last) then last, last_entry = n, entry end
end
if last ~= nil and current < last then
  redis.call('LREM', KEYS[1], 0, ARGV[1])
  return {last_entry}
end
local reply = {''}
local seen = {}
for _, entry in ipairs(entries) do
  local n = tonumber(entry)
  if n and n ~= current and not seen[entry] then
    seen[entry] = true
    redis.call('LREM', KEYS[1], 0, entry)
    table.insert(reply, entry)
  end
end
return reply
"""


def connect(url: str) -> redis.Redis:
    return redis.from_url(url, decode_responses=True)


class RedisKeyValueStore:
    """KeyValueStore over a shared Redis; compound operations run as Lua."""

    def __init__(self, client: redis.Redis):
        self.r = client
        self._claim_head = client.register_script(CLAIM_HEAD_SCRIPT)
        self._collapse = client.register_script(COLLAPSE_SCRIPT)

    async def get(self, key: str) -> Optional[str]:
        return await self.r.get(key)

    async def set(self, key: str, value: str, ex: Optional[int] = None) -> None:
        await self.r.set(key, value, ex=ex)

    async def expire(self, key: str, seconds: int) -> bool:
        return bool(await self.r.expire(key, seconds))

    async def ttl(self, key: str) -> int:
        return await self.r.ttl(key)

    async def delete(self, *keys: str) -> int:
        if not keys:
            return 0
        return await self.r.delete(*keys)

    async def mget(self, keys: Sequence[str]) -> List[Optional[str]]:
        if not keys:
            return []
        return await self.r.mget(list(keys))

    async def rpush(self, key: str, *values: str) -> int:
        return await self.r.rpush(key, *values)

    async def lpop(self, key: str) -> Optional[str]:
        return await self.r.lpop(key)

    async def lindex(self, key: str, index: int) -> Optional[str]:
        return await self.r.lindex(key, index)

    async def lrange(self, key: str, start: int, stop: int) -> List[str]:
        return await self.r.lrange(key, start, stop)

    async def lrem(self, key: str, count: int, value: str) -> int:
        return await self.r.lrem(key, count, value)

    async def llen(self, key: str) -> int:
        return await self.r.llen(key)

    async def hget(self, key: str, field: str) -> Optional[str]:
        return await self.r.hget(key, field)

    async def hset(self, key: str, field: str, value: str) -> None:
        await self.r.hset(key, field, value)

    async def hdel(self, key: str, *fields: str) -> int:
        return await self.r.hdel(key, *fields)

    async def hkeys(self, key: str) -> List[str]:
        return await self.r.hkeys(key)

    async def claim_waiting_head(self, key: str, build_id: int) -> HeadClaim:
        reply = await self._claim_head(keys=[key], args=[str(build_id)])
        return HeadClaim(reply)

    async def collapse_waiting(self, key: str, build_id: int) -> CollapseResult:
        reply = await self._collapse(keys=[key], args=[str(build_id)])
        superseded_by, *collapsed = reply
        if superseded_by:
            return CollapseResult(superseded_by=int(superseded_by))
        return CollapseResult(collapsed=sorted({int(entry) for entry in collapsed}))


class RedisJobQueue:
    """
    Ready lists plus one sorted set of delayed messages scored by due time.

    Ready queues are FIFO: push right, pop left.
    """

    def __init__(self, client: redis.Redis, keys: Keys, clock: Callable[[], float] = time.time):
        self.r = client
        self.keys = keys
        self._clock = clock

    async def enqueue(self, message: QueueMessage) -> None:
        await self.r.rpush(self.keys.queue(message.queue), message.to_json())

    async def enqueue_in(self, delay_ms: int, message: QueueMessage) -> None:
        due_at = self._clock() + delay_ms / 1000
        await self.r.zadd(self.keys.delayed, {message.to_json(): due_at})

    async def dequeue(self, queue: str, timeout_s: int = 5) -> Optional[QueueMessage]:
        item = await self.r.blpop([self.keys.queue(queue)], timeout=timeout_s)
        if not item:
            return None
        _q, payload = item
        return QueueMessage.from_json(payload)

    async def promote_due(self) -> int:
        due = await self.r.zrangebyscore(self.keys.delayed, 0, self._clock())
        promoted = 0
        for payload in due:
            # only the worker whose ZREM succeeds moves the message
            if await self.r.zrem(self.keys.delayed, payload):
                await self.enqueue(QueueMessage.from_json(payload))
                promoted += 1
        return promoted
