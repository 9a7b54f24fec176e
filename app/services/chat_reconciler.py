"""
Realtime message reconciliation: pure reducers over immutable message lists.

Every state change of a conversation (history fetch, push INSERT/UPDATE/
DELETE, optimistic send, send failure) is expressed as a function
``(messages, input) -> messages``. Nothing here performs I/O or holds
state; ChatSession owns the list and applies these steps under its lock.

Invariants kept by every reducer:
    - at most one entry per message id
    - ordered by created_at ascending (stable for equal timestamps)
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, replace
from datetime import datetime, timezone

GLOBAL_USERS = "global-users"   # user-type selector: unscoped broadcasts
GLOBAL_SECTOR = "global"        # sector-type selector: all-sectors channel

TEMP_ID_PREFIX = "tmp-"


# ── Value types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Attachment:
    url: str
    name: str
    mime_type: str | None = None


@dataclass(frozen=True)
class ConversationSelector:
    """Which conversation is on screen. type is "user" or "sector"."""

    type: str
    id: str
    display_name: str = ""

    def __post_init__(self):
        if self.type not in ("user", "sector"):
            raise ValueError(f"Unknown conversation type: {self.type}")

    @classmethod
    def broadcast(cls) -> "ConversationSelector":
        return cls("user", GLOBAL_USERS, "Todos")

    @classmethod
    def global_sector(cls) -> "ConversationSelector":
        return cls("sector", GLOBAL_SECTOR, "Geral")


def _as_utc(value) -> datetime:
    if value is None:
        return datetime.now(timezone.utc)
    if isinstance(value, str):
        value = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


@dataclass(frozen=True)
class Message:
    id: str
    sender_id: str
    body: str
    created_at: datetime
    receiver_id: str | None = None
    sector_id: str | None = None
    read: bool = False
    attachment: Attachment | None = None

    @classmethod
    def from_record(cls, record: dict) -> "Message":
        """Build from a chat_messages row dict (ChatMessage.to_dict() shape)."""
        attachment = None
        if record.get("file_url"):
            attachment = Attachment(
                url=record["file_url"],
                name=record.get("file_name") or "",
                mime_type=record.get("file_type"),
            )
        return cls(
            id=str(record["id"]),
            sender_id=record["sender_id"],
            body=record.get("message", record.get("body")) or "",
            created_at=_as_utc(record.get("created_at")),
            receiver_id=record.get("receiver_id"),
            sector_id=record.get("sector_id"),
            read=bool(record.get("read", False)),
            attachment=attachment,
        )

    @property
    def is_temporary(self) -> bool:
        return is_temporary_id(self.id)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "sector_id": self.sector_id,
            "message": self.body,
            "read": self.read,
            "file_url": self.attachment.url if self.attachment else None,
            "file_name": self.attachment.name if self.attachment else None,
            "file_type": self.attachment.mime_type if self.attachment else None,
            "created_at": self.created_at.isoformat(),
            "pending": self.is_temporary,
        }


# ── Predicates ───────────────────────────────────────────────────────────────


def _lower(value):
    return value.lower() if isinstance(value, str) else value


def is_temporary_id(message_id: str) -> bool:
    """Server ids are UUIDs; anything else is a local placeholder."""
    try:
        uuid.UUID(str(message_id))
    except ValueError:
        return True
    return False


def new_temporary_id() -> str:
    return f"{TEMP_ID_PREFIX}{uuid.uuid4().hex}"


def is_relevant(message: Message, selector: ConversationSelector | None, my_id: str | None) -> bool:
    """Does *message* belong in the conversation selected by *selector*?

    Ids compare case-insensitively. The sentinels are matched exactly.
    """
    if selector is None or not my_id:
        return False

    active = _lower(selector.id)
    me = _lower(my_id)
    sender = _lower(message.sender_id)
    receiver = _lower(message.receiver_id)
    sector = _lower(message.sector_id)

    if selector.type == "user":
        if selector.id == GLOBAL_USERS:
            return not message.receiver_id and not message.sector_id
        return (sender == active and receiver == me) or (sender == me and receiver == active)

    if selector.type == "sector":
        if selector.id == GLOBAL_SECTOR:
            return sector == GLOBAL_SECTOR
        return sector == active

    return False


def counts_as_unread(message: Message, my_id: str, my_sector_id: str | None = None) -> bool:
    """Is *message* addressed to me (directly, my sector, global, broadcast) by someone else?"""
    if _lower(message.sender_id) == _lower(my_id):
        return False
    if message.receiver_id and _lower(message.receiver_id) == _lower(my_id):
        return True
    if message.sector_id:
        sector = _lower(message.sector_id)
        return sector == GLOBAL_SECTOR or (my_sector_id is not None and sector == _lower(my_sector_id))
    return not message.receiver_id


def unread_ids(messages, my_id: str) -> list[str]:
    """Ids of persisted messages from others that are still unread."""
    me = _lower(my_id)
    return [
        m.id for m in messages
        if not m.read and not m.is_temporary and _lower(m.sender_id) != me
    ]


# ── Reducers ─────────────────────────────────────────────────────────────────


def sort_messages(messages) -> tuple:
    return tuple(sorted(messages, key=lambda m: m.created_at))


def merge_fetched(current, fetched, selector, my_id) -> tuple:
    """Merge a history fetch into the held list without losing pushes.

    Held messages irrelevant to *selector* are dropped. Held relevant messages
    missing from the fetch are kept (pushes that beat the fetch, unconfirmed
    sends), except a placeholder whose confirmed copy the fetch already holds.
    Only fetched rows not already held can confirm a placeholder, so a
    re-sent body stays visible while its earlier copy is on screen.
    """
    incoming = [m for m in fetched if is_relevant(m, selector, my_id)]
    fetched_ids = {m.id for m in incoming}
    held_ids = {m.id for m in current}
    confirmed = [(_lower(m.sender_id), m.body) for m in incoming if m.id not in held_ids]

    kept = []
    for m in current:
        if m.id in fetched_ids or not is_relevant(m, selector, my_id):
            continue
        if m.is_temporary and (_lower(m.sender_id), m.body) in confirmed:
            confirmed.remove((_lower(m.sender_id), m.body))
            continue
        kept.append(m)

    by_id = {}
    for m in incoming:
        by_id.setdefault(m.id, m)
    return sort_messages(list(by_id.values()) + kept)


def apply_insert(messages, message: Message, my_id: str) -> tuple:
    """Reconcile a pushed (or acknowledged) row into the list.

    Known id: unchanged. Own message: replaces the first placeholder with the
    same sender and body. Otherwise appended.
    """
    if any(m.id == message.id for m in messages):
        return tuple(messages)

    items = list(messages)
    if _lower(message.sender_id) == _lower(my_id):
        for index, held in enumerate(items):
            if (
                held.is_temporary
                and _lower(held.sender_id) == _lower(message.sender_id)
                and held.body == message.body
            ):
                items[index] = message
                return sort_messages(items)

    items.append(message)
    return sort_messages(items)


def apply_update(messages, message: Message) -> tuple:
    return sort_messages(message if m.id == message.id else m for m in messages)


def apply_delete(messages, message_id: str) -> tuple:
    return tuple(m for m in messages if m.id != message_id)


def append_optimistic(messages, message: Message) -> tuple:
    return sort_messages(list(messages) + [message])


def discard(messages, message_id: str) -> tuple:
    return apply_delete(messages, message_id)


def mark_read(messages, ids) -> tuple:
    ids = set(ids)
    return tuple(replace(m, read=True) if m.id in ids else m for m in messages)


def make_optimistic(
    sender_id: str,
    body: str,
    selector: ConversationSelector,
    attachment: Attachment | None = None,
    now: datetime | None = None,
) -> Message:
    """Local placeholder for a message being sent to *selector*."""
    receiver_id = sector_id = None
    if selector.type == "user" and selector.id != GLOBAL_USERS:
        receiver_id = selector.id
    elif selector.type == "sector":
        sector_id = selector.id
    return Message(
        id=new_temporary_id(),
        sender_id=sender_id,
        body=body,
        created_at=now or datetime.now(timezone.utc),
        receiver_id=receiver_id,
        sector_id=sector_id,
        read=False,
        attachment=attachment,
    )
