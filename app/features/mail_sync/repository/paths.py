"""
Collection paths for the per-tenant document namespace.

    tenant/{t}/settings                    credential, sync_mail, sync_calendar
    tenant/{t}/contacts
    tenant/{t}/contacts/{contactId}/links  thread/event links counted on the contact
    tenant/{t}/threads
    tenant/{t}/threads/{threadId}/messages
    tenant/{t}/events
    tenant/{t}/events/{eventId}/occurrences
    tenant/{t}/syncJobs
"""

CREDENTIAL_DOC_ID = "credential"


def _segment(value: str, what: str) -> str:
    if not value or "/" in value:
        raise ValueError(f"Invalid {what} for document path: {value!r}")
    return value


def tenant_root(tenant_id: str) -> str:
    return f"tenant/{_segment(tenant_id, 'tenant id')}"


def settings_path(tenant_id: str) -> str:
    return f"{tenant_root(tenant_id)}/settings"


def cursor_doc_id(source: str) -> str:
    return f"sync_{source}"


def contacts_path(tenant_id: str) -> str:
    return f"{tenant_root(tenant_id)}/contacts"


def contact_links_path(tenant_id: str, contact_id: str) -> str:
    return f"{contacts_path(tenant_id)}/{_segment(contact_id, 'contact id')}/links"


def threads_path(tenant_id: str) -> str:
    return f"{tenant_root(tenant_id)}/threads"


def messages_path(tenant_id: str, thread_id: str) -> str:
    return f"{threads_path(tenant_id)}/{_segment(thread_id, 'thread id')}/messages"


def events_path(tenant_id: str) -> str:
    return f"{tenant_root(tenant_id)}/events"


def occurrences_path(tenant_id: str, event_id: str) -> str:
    return f"{events_path(tenant_id)}/{_segment(event_id, 'event id')}/occurrences"


def sync_jobs_path(tenant_id: str) -> str:
    return f"{tenant_root(tenant_id)}/syncJobs"
