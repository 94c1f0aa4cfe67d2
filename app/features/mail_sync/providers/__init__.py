"""
Provider clients for the external mail and calendar APIs.
"""

from .base import ProviderClient, ProviderCursor, create_http_client
from .calendar_client import GoogleCalendarClient
from .gmail_client import GmailClient
from .oauth_client import GoogleOAuthClient

__all__ = [
    "GmailClient",
    "GoogleCalendarClient",
    "GoogleOAuthClient",
    "ProviderClient",
    "ProviderCursor",
    "create_http_client",
]
