"""
Provider records, mapped at the client boundary.

Provider clients translate API payloads into exactly one of three record
kinds so the reconciler never sees raw JSON:

- ``ThreadChanged``: a mail thread with the messages that changed in it
- ``EventChanged``: one calendar occurrence together with its series fields
- ``RecordDeleted``: an upstream deletion of a thread/message/event/occurrence
"""

import hashlib
import json
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import TypeAlias


class RecordKind(StrEnum):
    THREAD = "thread"
    MESSAGE = "message"
    EVENT = "event"
    OCCURRENCE = "occurrence"


@dataclass(slots=True, frozen=True)
class Participant:
    address: str
    display_name: str | None = None
    role: str = "from"  # from / to / cc / organizer / attendee
    is_self: bool = False


@dataclass(slots=True)
class MessageRecord:
    external_id: str
    sent_at: datetime | None
    sender: Participant | None
    recipients: list[Participant] = field(default_factory=list)
    subject: str | None = None
    snippet: str | None = None
    label_ids: list[str] = field(default_factory=list)
    history_id: str | None = None


@dataclass(slots=True)
class OccurrenceRecord:
    external_id: str
    start_at: datetime | None
    end_at: datetime | None
    status: str | None = None
    updated_at: datetime | None = None


@dataclass(slots=True)
class ThreadChanged:
    external_id: str
    messages: list[MessageRecord]
    history_id: str | None = None
    subject: str | None = None
    snippet: str | None = None
    label_ids: list[str] = field(default_factory=list)
    # Only some of the thread's messages (history or window listings)
    partial: bool = False

    @property
    def last_message_at(self) -> datetime | None:
        stamps = [m.sent_at for m in self.messages if m.sent_at]
        return max(stamps) if stamps else None

    def participants(self) -> list[Participant]:
        people: list[Participant] = []
        for message in self.messages:
            if message.sender:
                people.append(message.sender)
            people.extend(message.recipients)
        return people


@dataclass(slots=True)
class EventChanged:
    external_id: str  # series id for recurring events, event id otherwise
    occurrence: OccurrenceRecord
    etag: str | None = None
    summary: str | None = None
    status: str | None = None
    organizer: Participant | None = None
    attendees: list[Participant] = field(default_factory=list)
    recurring: bool = False

    def participants(self) -> list[Participant]:
        people = [self.organizer] if self.organizer else []
        return people + list(self.attendees)


@dataclass(slots=True)
class RecordDeleted:
    kind: RecordKind
    external_id: str
    parent_id: str | None = None


ProviderRecord: TypeAlias = ThreadChanged | EventChanged | RecordDeleted


def to_iso(value: datetime | None) -> str | None:
    """Fixed-width UTC ISO string; stored timestamps compare lexicographically."""
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat(timespec="milliseconds")


def _json_default(value):
    if isinstance(value, datetime):
        return to_iso(value)
    return str(value)


def state_hash(record: ProviderRecord) -> str:
    """Stable digest over a record's mutable fields."""
    payload = json.dumps(asdict(record), sort_keys=True, default=_json_default)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()
