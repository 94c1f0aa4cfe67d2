"""
Mail sync feature package.

Pulls a tenant's mail threads and calendar events from the provider,
reconciles them into the document store, links each record to a contact
and tracks every run as a sync job. Domain, providers, pipeline,
repository, services, jobs and the HTTP router all live here.
"""

# Re-export the primary building blocks for easy access.
from .api.router import router as sync_router  # noqa: F401
from .domain import Source, SyncJob, SyncStatus, SyncType  # noqa: F401
from .jobs.scheduled_sync_job import start_scheduled_sync_scheduler  # noqa: F401
from .services.sync_service import SyncService, create_sync_service  # noqa: F401
