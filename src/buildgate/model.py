# model.py
from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BuildStatus(str, Enum):
    """Build lifecycle states understood by the build API."""
    QUEUED = "QUEUED"
    BLOCKED = "BLOCKED"
    COLLAPSED = "COLLAPSED"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILURE = "FAILURE"
    ABORTED = "ABORTED"


class HeadClaim(str, Enum):
    """Result of trying to take the head of a job's waiting queue."""
    EMPTY = "empty"
    CLAIMED = "claimed"
    BEHIND = "behind"


@dataclass
class CollapseResult:
    """
    Outcome of collapsing a job's waiting queue onto one build.

    superseded_by is set when a strictly newer build is already waiting;
    in that case nothing else was collapsed.
    """
    superseded_by: Optional[int] = None
    collapsed: List[int] = field(default_factory=list)


def _truthy(value: Any) -> Optional[bool]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return value
    return str(value).strip().lower() in ("true", "1", "yes", "on")


class GateOptions(BaseModel):
    """Admission policy for the blocked-by gate."""
    model_config = ConfigDict(frozen=True)

    block_timeout: int = Field(default=120, gt=0)        # minutes
    reenqueue_wait_time: int = Field(default=1, gt=0)    # minutes
    blocked_by_self: bool = False
    collapse: bool = False

    @property
    def lock_ttl_seconds(self) -> int:
        return self.block_timeout * 60

    @property
    def reenqueue_delay_ms(self) -> int:
        return self.reenqueue_wait_time * 60 * 1000


def _as_str(value: Any) -> Any:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(int(value))
    return value


def _as_str_list(value: Any) -> Any:
    if value is None:
        return []
    if isinstance(value, str):
        return [part.strip() for part in value.split(",") if part.strip()]
    if isinstance(value, (int, float)):
        return [str(int(value))]
    return [_as_str(v) for v in value]


class BuildRequest(BaseModel):
    """The build arguments carried by a queue message (`args[0]`)."""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    build_id: int = Field(alias="buildId")
    job_id: str = Field(alias="jobId")
    blocked_by: List[str] = Field(default_factory=list, alias="blockedBy")

    @field_validator("job_id", mode="before")
    @classmethod
    def coerce_job_id(cls, value: Any) -> Any:
        return _as_str(value)

    @field_validator("blocked_by", mode="before")
    @classmethod
    def coerce_blocked_by(cls, value: Any) -> Any:
        return _as_str_list(value)

    @classmethod
    def from_message(cls, message: QueueMessage) -> BuildRequest:
        return cls.model_validate(message.build_args)


class BuildConfig(BaseModel):
    """
    A persisted build configuration record.

    Records are written by the build API when a build is queued; unknown
    fields are kept so the full record can be handed to the executor.
    """
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    build_id: int = Field(alias="buildId")
    job_id: str = Field(alias="jobId")
    api_uri: Optional[str] = Field(default=None, alias="apiUri")
    token: Optional[str] = None
    blocked_by: List[str] = Field(default_factory=list, alias="blockedBy")
    annotations: Dict[str, Any] = Field(default_factory=dict)
    enqueue_time: Optional[datetime] = Field(default=None, alias="enqueueTime")
    build_cluster_name: Optional[str] = Field(default=None, alias="buildClusterName")

    @field_validator("job_id", mode="before")
    @classmethod
    def coerce_job_id(cls, value: Any) -> Any:
        return _as_str(value)

    @field_validator("blocked_by", mode="before")
    @classmethod
    def coerce_blocked_by(cls, value: Any) -> Any:
        return _as_str_list(value)

    @field_validator("annotations", mode="before")
    @classmethod
    def default_annotations(cls, value: Any) -> Any:
        return value or {}

    def timeout_minutes(self, default: int) -> int:
        """Per-build timeout from the `timeout` annotation (minutes)."""
        raw = self.annotations.get("timeout")
        if raw is None or raw == "":
            return default
        return int(raw)

    @property
    def collapse_override(self) -> Optional[bool]:
        """Per-build collapse policy from the `collapseBuilds` annotation."""
        return _truthy(self.annotations.get("collapseBuilds"))


class QueueMessage(BaseModel):
    """A unit of work on the job queue: which function to call, with what."""
    queue: str
    func: str
    args: List[Dict[str, Any]] = Field(default_factory=list)
    attempt: int = 0

    @property
    def build_args(self) -> Dict[str, Any]:
        return self.args[0] if self.args else {}

    @property
    def build_id(self) -> Optional[int]:
        value = self.build_args.get("buildId")
        return int(value) if value is not None else None

    def next_attempt(self) -> QueueMessage:
        return self.model_copy(update={"attempt": self.attempt + 1})

    def to_json(self) -> str:
        return json.dumps(self.model_dump(), sort_keys=True)

    @classmethod
    def from_json(cls, payload: str) -> QueueMessage:
        return cls.model_validate_json(payload)
