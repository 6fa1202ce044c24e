"""Utility helpers."""

from relay_agent.utils.cancel import CancelToken
from relay_agent.utils.helpers import ensure_dir, get_data_path, safe_filename
from relay_agent.utils.timers import AsyncioScheduler, ScheduledCall, Scheduler, VirtualScheduler

__all__ = [
    "AsyncioScheduler",
    "CancelToken",
    "ScheduledCall",
    "Scheduler",
    "VirtualScheduler",
    "ensure_dir",
    "get_data_path",
    "safe_filename",
]
