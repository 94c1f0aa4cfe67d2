"""
Contact resolution: participant address -> contact id.

The primary address is the natural key. A lookup is one indexed read;
creation is one merge write against an id derived from the normalized
address, so two racing creators land on the same document.
"""

from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import parseaddr

from app.features.mail_sync.domain.records import to_iso
from app.features.mail_sync.repository.document_store import DocumentStore
from app.features.mail_sync.repository.paths import contacts_path
from app.infrastructure.observability.logging import get_logger
from app.security.hashing import contact_key, hash_email

logger = get_logger(__name__)


def normalize_address(raw: str | None) -> str | None:
    """
    Canonical form of an address, or None when it is unusable.

    Accepts bare addresses and ``Name <addr>`` forms.
    """
    if not raw:
        return None
    _, address = parseaddr(raw)
    address = (address or "").strip().lower()
    local, sep, domain = address.partition("@")
    if not sep or not local or not domain or "@" in domain or "." not in domain:
        return None
    if any(ch.isspace() for ch in address):
        return None
    return address


def split_display_name(display_name: str | None) -> tuple[str | None, str | None]:
    if not display_name:
        return None, None
    cleaned = display_name.strip().strip('"').strip()
    if "," in cleaned:
        # "Last, First"
        last, _, first = cleaned.partition(",")
        return first.strip() or None, last.strip() or None
    first, _, last = cleaned.partition(" ")
    return first or None, last.strip() or None


@dataclass(slots=True, frozen=True)
class ContactMatch:
    contact_id: str
    address: str
    exists: bool
    display_name: str | None = None


class ContactResolver:
    """Owns the find-or-create policy for contacts."""

    def __init__(self, store: DocumentStore, *, clock: Callable[[], datetime] | None = None):
        self._store = store
        self._clock = clock or (lambda: datetime.now(UTC))

    async def find(
        self, tenant_id: str, address: str, display_name: str | None = None
    ) -> ContactMatch:
        """
        Look the address up by primary email. Exactly one store read.

        When nothing matches, the returned match carries the id the contact
        would be created under.
        """
        normalized = normalize_address(address)
        if normalized is None:
            raise ValueError("Address cannot be used as a contact key")

        doc = await self._store.find_by_field(contacts_path(tenant_id), "primaryEmail", normalized)
        if doc:
            return ContactMatch(doc["id"], normalized, True, display_name)

        return ContactMatch(contact_key(tenant_id, normalized), normalized, False, display_name)

    async def upsert(
        self,
        tenant_id: str,
        match: ContactMatch,
        *,
        increments: Mapping[str, int] | None = None,
        maximums: Mapping[str, str | None] | None = None,
        store: DocumentStore | None = None,
    ) -> bool:
        """
        Merge-write the contact. Creation fields are defaults, so an
        existing contact's name and counters are never reset.

        Returns True when the contact document was created.
        """
        now = to_iso(self._clock())
        first_name, last_name = split_display_name(match.display_name)
        defaults = {
            "primaryEmail": match.address,
            "firstName": first_name,
            "lastName": last_name,
            "threadCount": 0,
            "eventCount": 0,
            "lastEmailDate": None,
            "lastMeetingDate": None,
            "source": "sync",
            "createdAt": now,
        }
        created = await (store or self._store).merge_by_natural_key(
            contacts_path(tenant_id),
            match.contact_id,
            {"updatedAt": now},
            defaults=defaults,
            increments=increments,
            maximums=maximums,
        )
        if created:
            logger.info(
                "Contact created from sync",
                tenant_id=tenant_id,
                contact_id=match.contact_id,
                address_hash=hash_email(match.address)[:12],
            )
        return created

    async def resolve(
        self, tenant_id: str, address: str, display_name: str | None = None
    ) -> str:
        """Find the contact for an address, creating it if absent."""
        match = await self.find(tenant_id, address, display_name)
        if not match.exists:
            await self.upsert(tenant_id, match)
        return match.contact_id
