# settings.py
from __future__ import annotations

import os
from typing import Mapping, Optional

from pydantic import BaseModel, Field

from .keys import Keys
from .model import GateOptions


class Settings(BaseModel):
    """
    Worker configuration, read once from the environment at startup.

    Every field maps to the upper-cased environment variable of the same
    name (e.g. `block_timeout` <- `BLOCK_TIMEOUT`). Raw strings such as
    "true" or "120" are parsed and validated here, so the rest of the
    code only ever sees typed values.
    """
    redis_url: str = "redis://localhost:6379/0"
    queue_prefix: str = ""
    queue_name: str = "builds"

    # blocked-by gate
    block_timeout: int = Field(default=120, gt=0)       # minutes
    reenqueue_wait_time: int = Field(default=1, gt=0)   # minutes
    blocked_by_self: bool = False
    collapse: bool = False

    # generic retry around the start handler
    retry_limit: int = Field(default=3, ge=0)
    retry_delay: int = Field(default=5, ge=0)           # seconds

    # cluster filter
    scheduler_enabled: bool = False
    filter_wait_time: int = Field(default=1000, ge=0)   # ms

    poll_interval: float = Field(default=5, gt=0)       # seconds
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> Settings:
        environ = os.environ if environ is None else environ
        values = {
            name: environ[name.upper()]
            for name in cls.model_fields
            if name.upper() in environ
        }
        return cls.model_validate(values)

    @property
    def gate_options(self) -> GateOptions:
        return GateOptions(
            block_timeout=self.block_timeout,
            reenqueue_wait_time=self.reenqueue_wait_time,
            blocked_by_self=self.blocked_by_self,
            collapse=self.collapse,
        )

    @property
    def keys(self) -> Keys:
        return Keys(self.queue_prefix)
