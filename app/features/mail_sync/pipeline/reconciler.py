"""
Reconciler: one page of provider records -> store writes.

Per record the reconciler resolves the counterparty (at most one read
per distinct address per page), then blind-upserts the thread/event and
its children keyed by external id. A contact seen for the first time is
created before any thread or event points at it. Counters are flushed
once per distinct contact at the end of the page, together with the link
documents that make the increments idempotent under replay.

A failing record is counted and skipped; the page always runs to the end.
"""

from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from app.db.helpers import DatabaseError
from app.features.mail_sync.domain import (
    EventChanged,
    PageStats,
    Participant,
    ProviderRecord,
    RecordDeleted,
    RecordKind,
    RecordWriteError,
    ThreadChanged,
)
from app.features.mail_sync.domain.records import state_hash, to_iso
from app.features.mail_sync.repository.document_store import DocumentStore
from app.features.mail_sync.repository.paths import (
    contact_links_path,
    events_path,
    messages_path,
    occurrences_path,
    threads_path,
)
from app.infrastructure.observability.logging import get_logger

from .contact_resolver import ContactMatch, ContactResolver, normalize_address

logger = get_logger(__name__)


@dataclass(slots=True)
class _PendingContact:
    """Everything a page wants to write onto one contact."""

    match: ContactMatch
    links: dict[str, RecordKind] = field(default_factory=dict)
    last_email_at: str | None = None
    last_meeting_at: str | None = None

    def add_link(self, kind: RecordKind, external_id: str, when: str | None) -> None:
        self.links[f"{kind}:{external_id}"] = kind
        if when is None:
            return
        if kind == RecordKind.THREAD:
            self.last_email_at = max(filter(None, (self.last_email_at, when)))
        else:
            self.last_meeting_at = max(filter(None, (self.last_meeting_at, when)))


def counterparty(people: Iterable[Participant], own_addresses: frozenset[str]) -> Participant | None:
    """First participant who is not the tenant."""
    for person in people:
        if person.is_self:
            continue
        if normalize_address(person.address) in own_addresses:
            continue
        return person
    return None


class Reconciler:
    def __init__(
        self,
        store: DocumentStore,
        resolver: ContactResolver,
        *,
        clock: Callable[[], datetime] | None = None,
    ):
        self._store = store
        self._resolver = resolver
        self._clock = clock or (lambda: datetime.now(UTC))

    async def apply_page(
        self,
        tenant_id: str,
        records: Sequence[ProviderRecord],
        *,
        own_addresses: frozenset[str] = frozenset(),
    ) -> PageStats:
        stats = PageStats()
        resolved: dict[str, ContactMatch] = {}
        pending: dict[str, _PendingContact] = {}

        for record in records:
            stats.processed += 1
            try:
                if isinstance(record, ThreadChanged):
                    await self._apply_thread(tenant_id, record, own_addresses, resolved, pending, stats)
                elif isinstance(record, EventChanged):
                    await self._apply_event(tenant_id, record, own_addresses, resolved, pending, stats)
                elif isinstance(record, RecordDeleted):
                    await self._apply_deletion(tenant_id, record, stats)
                else:
                    raise RecordWriteError(f"Unsupported record type {type(record).__name__}")
            except RecordWriteError as e:
                stats.record_error(str(e))
                logger.warning(
                    "Record write failed",
                    tenant_id=tenant_id,
                    external_id=e.external_id,
                    error=str(e),
                )
            except ValueError as e:
                # Ids that cannot be used as document path segments
                stats.record_error(f"Unstorable record: {e}")
                logger.warning("Record skipped", tenant_id=tenant_id, error=str(e))

        await self._flush_contacts(tenant_id, pending, stats)

        logger.debug(
            "Page reconciled",
            tenant_id=tenant_id,
            processed=stats.processed,
            errors=stats.errors,
            contact_lookups=stats.contact_lookups,
            contacts_upserted=stats.contacts_upserted,
        )
        return stats

    # ------------------------------------------------------------------
    # Record handlers
    # ------------------------------------------------------------------

    async def _apply_thread(
        self,
        tenant_id: str,
        record: ThreadChanged,
        own_addresses: frozenset[str],
        resolved: dict[str, ContactMatch],
        pending: dict[str, _PendingContact],
        stats: PageStats,
    ) -> None:
        now = to_iso(self._clock())
        match = await self._resolve(
            tenant_id, counterparty(record.participants(), own_addresses), resolved, stats, record.external_id
        )
        match = await self._ensure_contact(tenant_id, match, resolved, stats, record.external_id)
        last_message_at = to_iso(record.last_message_at)

        fields = {
            "externalId": record.external_id,
            "historyId": record.history_id,
            "snippet": record.snippet,
            "stateHash": state_hash(record),
            "needsSummary": True,
            "updatedAt": now,
        }
        defaults = {"contactId": None, "createdAt": now}
        # A partial listing only knows the new messages; it must not replace
        # the subject and labels taken from the whole thread
        thread_level = {"subject": record.subject, "labelIds": record.label_ids}
        if record.partial:
            defaults.update(thread_level)
        else:
            fields.update(thread_level)
        if match:
            fields["contactId"] = match.contact_id

        await self._write(
            record.external_id,
            threads_path(tenant_id),
            record.external_id,
            fields,
            defaults=defaults,
            maximums={"lastMessageAt": last_message_at},
        )
        stats.threads_upserted += 1
        self._track_contact(match, RecordKind.THREAD, record.external_id, last_message_at, pending, stats)

        for message in record.messages:
            await self._write(
                message.external_id,
                messages_path(tenant_id, record.external_id),
                message.external_id,
                {
                    "externalId": message.external_id,
                    "threadId": record.external_id,
                    "from": message.sender.address if message.sender else None,
                    "to": [p.address for p in message.recipients if p.role == "to"],
                    "cc": [p.address for p in message.recipients if p.role == "cc"],
                    "subject": message.subject,
                    "snippet": message.snippet,
                    "labelIds": message.label_ids,
                    "sentAt": to_iso(message.sent_at),
                    "historyId": message.history_id,
                    "updatedAt": now,
                },
                defaults={"createdAt": now, "deleted": False},
            )
            stats.messages_upserted += 1

    async def _apply_event(
        self,
        tenant_id: str,
        record: EventChanged,
        own_addresses: frozenset[str],
        resolved: dict[str, ContactMatch],
        pending: dict[str, _PendingContact],
        stats: PageStats,
    ) -> None:
        now = to_iso(self._clock())
        match = await self._resolve(
            tenant_id, counterparty(record.participants(), own_addresses), resolved, stats, record.external_id
        )
        match = await self._ensure_contact(tenant_id, match, resolved, stats, record.external_id)
        occurrence = record.occurrence
        start_at = to_iso(occurrence.start_at)

        fields = {
            "externalId": record.external_id,
            "etag": record.etag,
            "summary": record.summary,
            "status": record.status,
            "organizer": record.organizer.address if record.organizer else None,
            "attendees": [p.address for p in record.attendees],
            "recurring": record.recurring,
            "stateHash": state_hash(record),
            "updatedAt": now,
        }
        if not record.recurring:
            fields["startAt"] = start_at
            fields["endAt"] = to_iso(occurrence.end_at)
        if match:
            fields["contactId"] = match.contact_id

        await self._write(
            record.external_id,
            events_path(tenant_id),
            record.external_id,
            fields,
            defaults={"contactId": None, "createdAt": now},
            maximums={"lastOccurrenceAt": start_at},
        )
        stats.events_upserted += 1
        self._track_contact(match, RecordKind.EVENT, record.external_id, start_at, pending, stats)

        await self._write(
            occurrence.external_id,
            occurrences_path(tenant_id, record.external_id),
            occurrence.external_id,
            {
                "externalId": occurrence.external_id,
                "eventId": record.external_id,
                "startAt": start_at,
                "endAt": to_iso(occurrence.end_at),
                "status": occurrence.status,
                "providerUpdatedAt": to_iso(occurrence.updated_at),
                "updatedAt": now,
            },
            defaults={"createdAt": now, "deleted": False},
        )
        stats.occurrences_upserted += 1

    async def _apply_deletion(self, tenant_id: str, record: RecordDeleted, stats: PageStats) -> None:
        if record.kind in (RecordKind.MESSAGE, RecordKind.OCCURRENCE) and not record.parent_id:
            raise RecordWriteError(
                f"{record.kind} deletion without a parent id", external_id=record.external_id
            )

        if record.kind == RecordKind.THREAD:
            collection = threads_path(tenant_id)
        elif record.kind == RecordKind.MESSAGE:
            collection = messages_path(tenant_id, record.parent_id)
        elif record.kind == RecordKind.EVENT:
            collection = events_path(tenant_id)
        else:
            collection = occurrences_path(tenant_id, record.parent_id)

        now = to_iso(self._clock())
        await self._write(
            record.external_id,
            collection,
            record.external_id,
            {"deleted": True, "deletedAt": now, "updatedAt": now},
            defaults={"externalId": record.external_id, "createdAt": now},
        )
        stats.deleted += 1

    # ------------------------------------------------------------------
    # Contacts
    # ------------------------------------------------------------------

    async def _resolve(
        self,
        tenant_id: str,
        participant: Participant | None,
        resolved: dict[str, ContactMatch],
        stats: PageStats,
        external_id: str,
    ) -> ContactMatch | None:
        address = normalize_address(participant.address) if participant else None
        if address is None:
            # No usable counterparty: stored unlinked, never retried here
            return None

        cached = resolved.get(address)
        if cached is not None:
            if cached.display_name is None and participant.display_name:
                cached = ContactMatch(
                    cached.contact_id, cached.address, cached.exists, participant.display_name
                )
                resolved[address] = cached
            return cached

        stats.contact_lookups += 1
        try:
            match = await self._resolver.find(tenant_id, address, participant.display_name)
        except DatabaseError as e:
            raise RecordWriteError(f"Contact lookup failed: {e}", external_id=external_id) from e
        resolved[address] = match
        return match

    async def _ensure_contact(
        self,
        tenant_id: str,
        match: ContactMatch | None,
        resolved: dict[str, ContactMatch],
        stats: PageStats,
        external_id: str,
    ) -> ContactMatch | None:
        """Create a new contact before anything is linked to it."""
        if match is None or match.exists:
            return match
        try:
            created = await self._resolver.upsert(tenant_id, match)
        except DatabaseError as e:
            raise RecordWriteError(f"Contact create failed: {e}", external_id=external_id) from e
        if created:
            stats.contacts_created += 1
        match = replace(match, exists=True)
        resolved[match.address] = match
        return match

    @staticmethod
    def _track_contact(
        match: ContactMatch | None,
        kind: RecordKind,
        external_id: str,
        when: str | None,
        pending: dict[str, _PendingContact],
        stats: PageStats,
    ) -> None:
        if match is None:
            stats.unlinked += 1
            return
        entry = pending.get(match.contact_id)
        if entry is None:
            entry = pending[match.contact_id] = _PendingContact(match=match)
        elif entry.match.display_name is None and match.display_name:
            entry.match = match
        entry.add_link(kind, external_id, when)

    async def _flush_contacts(
        self, tenant_id: str, pending: dict[str, _PendingContact], stats: PageStats
    ) -> None:
        """One transactional contact upsert per distinct contact in the page."""
        now = to_iso(self._clock())
        for contact_id, entry in pending.items():
            try:
                async with self._store.transaction() as tx:
                    new_threads = new_events = 0
                    for link_id, kind in entry.links.items():
                        created = await tx.merge_by_natural_key(
                            contact_links_path(tenant_id, contact_id),
                            link_id,
                            {"kind": str(kind), "updatedAt": now},
                            defaults={"createdAt": now},
                        )
                        if created and kind == RecordKind.THREAD:
                            new_threads += 1
                        elif created:
                            new_events += 1

                    await self._resolver.upsert(
                        tenant_id,
                        entry.match,
                        increments={"threadCount": new_threads, "eventCount": new_events},
                        maximums={
                            "lastEmailDate": entry.last_email_at,
                            "lastMeetingDate": entry.last_meeting_at,
                        },
                        store=tx,
                    )
            except DatabaseError as e:
                stats.record_error(f"Contact upsert failed for {contact_id}: {e}")
                logger.warning(
                    "Contact upsert failed", tenant_id=tenant_id, contact_id=contact_id, error=str(e)
                )
                continue

            stats.contacts_upserted += 1

    async def _write(self, external_id: str, collection_path: str, key: str, fields: dict, **modes) -> bool:
        try:
            return await self._store.merge_by_natural_key(collection_path, key, fields, **modes)
        except DatabaseError as e:
            raise RecordWriteError(
                f"Write to {collection_path} failed: {e}", external_id=external_id
            ) from e
