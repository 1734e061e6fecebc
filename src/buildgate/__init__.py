from .blocked_by import BlockedBy
from .reaper import TimeoutReaper
from .model import BuildConfig, BuildStatus, GateOptions, QueueMessage
from .settings import Settings

__all__ = ["BlockedBy", "TimeoutReaper", "BuildConfig", "BuildStatus", "GateOptions", "QueueMessage", "Settings"]
