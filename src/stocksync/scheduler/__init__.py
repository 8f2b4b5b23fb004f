"""Scheduling for periodic sync runs."""

from .auto_sync import AutoSyncScheduler, SchedulerError

__all__ = ["AutoSyncScheduler", "SchedulerError"]
