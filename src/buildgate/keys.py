# keys.py
from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class Keys:
    """Names of every coordination key, scoped by the queue prefix."""
    prefix: str = ""

    def running(self, job_id: str) -> str:
        return f"{self.prefix}running_job_{job_id}"

    def last_running(self, job_id: str) -> str:
        return f"last_{self.prefix}running_job_{job_id}"

    def waiting(self, job_id: str) -> str:
        return f"{self.prefix}waiting_job_{job_id}"

    def deleted(self, job_id: str, build_id: int | str) -> str:
        return f"deleted_{job_id}_{build_id}"

    @property
    def build_configs(self) -> str:
        return f"{self.prefix}buildConfigs"

    def queue(self, name: str) -> str:
        return f"{self.prefix}queue:{name}"

    @property
    def delayed(self) -> str:
        return f"{self.prefix}delayed_queue_schedule"
