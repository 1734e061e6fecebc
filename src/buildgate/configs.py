# configs.py
from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from .interfaces import KeyValueStore
from .keys import Keys
from .model import BuildConfig


class BuildConfigStore:
    """
    The build-config table: one JSON record per build id, kept in a hash.

    A missing record (or a stored JSON `null`) means the build has already
    been resolved by some other path.
    """

    def __init__(self, store: KeyValueStore, keys: Keys):
        self.store = store
        self.keys = keys

    async def get_raw(self, build_id: int | str) -> Optional[Dict[str, Any]]:
        payload = await self.store.hget(self.keys.build_configs, str(build_id))
        if not payload:
            return None
        return json.loads(payload)

    async def get(self, build_id: int | str) -> Optional[BuildConfig]:
        raw = await self.get_raw(build_id)
        if not raw:
            return None
        return BuildConfig.model_validate({"buildId": build_id, **raw})

    async def put(self, build_id: int | str, config: Dict[str, Any]) -> None:
        await self.store.hset(self.keys.build_configs, str(build_id), json.dumps(config, default=str))

    async def delete(self, build_id: int | str) -> int:
        return await self.store.hdel(self.keys.build_configs, str(build_id))

    async def build_ids(self) -> List[str]:
        return await self.store.hkeys(self.keys.build_configs)
