"""
Service layer for the mail sync feature.
"""

from .account_link import AccountLinkService, create_account_link_service
from .job_tracker import SyncJobTracker
from .orchestrator import SyncOrchestrator
from .sync_service import SyncService, create_sync_service
from .token_manager import TokenManager

__all__ = [
    "AccountLinkService",
    "SyncJobTracker",
    "SyncOrchestrator",
    "SyncService",
    "TokenManager",
    "create_account_link_service",
    "create_sync_service",
]
