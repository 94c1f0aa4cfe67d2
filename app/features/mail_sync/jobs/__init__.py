"""
Job runners for the mail sync feature.
"""

from .scheduled_sync_job import run_scheduled_sync, start_scheduled_sync_scheduler

__all__ = ["run_scheduled_sync", "start_scheduled_sync_scheduler"]
