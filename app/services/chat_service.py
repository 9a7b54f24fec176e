"""
Chat persistence queries.

Read helpers return lists of dicts (ChatMessage.to_dict() plus a `sender`
summary) ordered by created_at ascending. Database errors propagate:
ChatSession decides how a failed read is surfaced.

Writes go through ORM instances (not bulk UPDATE/DELETE) so the change
feed publishes one event per touched row.
"""

from __future__ import annotations

import logging

from sqlalchemy import and_, or_

from app.core.exceptions import ValidationError
from app.models import db
from app.models.chat import ChatMessage
from app.models.directory import Profile, Sector

logger = logging.getLogger(__name__)

RECENT_SCAN_LIMIT = 100


def _with_sender(query):
    return (
        query.add_columns(Profile.name, Profile.username)
        .outerjoin(Profile, Profile.id == ChatMessage.sender_id)
        .order_by(ChatMessage.created_at.asc())
    )


def _serialize(rows) -> list[dict]:
    out = []
    for msg, name, username in rows:
        d = msg.to_dict()
        d["sender"] = {"name": name, "username": username} if name else None
        out.append(d)
    return out


def _pair_filter(user_a, user_b):
    return or_(
        and_(ChatMessage.sender_id == user_a, ChatMessage.receiver_id == user_b),
        and_(ChatMessage.sender_id == user_b, ChatMessage.receiver_id == user_a),
    )


# ── Reads ────────────────────────────────────────────────────────────────────


def fetch_direct_messages(current_user_id, other_user_id):
    q = db.session.query(ChatMessage).filter(_pair_filter(current_user_id, other_user_id))
    return _serialize(_with_sender(q).all())


def fetch_sector_messages(sector_id):
    q = db.session.query(ChatMessage).filter(ChatMessage.sector_id == sector_id)
    return _serialize(_with_sender(q).all())


def fetch_broadcast_messages():
    q = db.session.query(ChatMessage).filter(
        ChatMessage.receiver_id.is_(None), ChatMessage.sector_id.is_(None),
    )
    return _serialize(_with_sender(q).all())


def fetch_conversation(current_user_id, conv_type, conv_id):
    """History for a conversation selector (type "user" / "sector")."""
    if conv_type == "user":
        if conv_id == "global-users":
            return fetch_broadcast_messages()
        return fetch_direct_messages(current_user_id, conv_id)
    if conv_type == "sector":
        return fetch_sector_messages(conv_id)
    raise ValidationError(f"Unknown conversation type: {conv_type}", details={"type": conv_type})


def fetch_unread_count(user_id, user_sector_id=None):
    """Unread messages addressed to the user, their sector, global, or everyone."""
    scopes = [
        ChatMessage.receiver_id == user_id,
        ChatMessage.sector_id == "global",
        and_(ChatMessage.receiver_id.is_(None), ChatMessage.sector_id.is_(None)),
    ]
    if user_sector_id:
        scopes.append(ChatMessage.sector_id == user_sector_id)

    return (
        db.session.query(db.func.count(ChatMessage.id))
        .filter(
            ChatMessage.read.is_(False),
            ChatMessage.sender_id != user_id,
            or_(*scopes),
        )
        .scalar()
        or 0
    )


def fetch_chat_users():
    return [p.to_dict() for p in Profile.query.order_by(Profile.name).all()]


def fetch_chat_sectors():
    return [s.to_dict() for s in Sector.query.order_by(Sector.name).all()]


def fetch_recent_conversations(user_id):
    """User and sector ids from the user's most recent messages, newest first."""
    rows = (
        db.session.query(ChatMessage.sender_id, ChatMessage.receiver_id, ChatMessage.sector_id)
        .filter(or_(ChatMessage.sender_id == user_id, ChatMessage.receiver_id == user_id))
        .order_by(ChatMessage.created_at.desc())
        .limit(RECENT_SCAN_LIMIT)
        .all()
    )

    user_ids, sector_ids = [], []
    for sender_id, receiver_id, sector_id in rows:
        if sector_id:
            target, bucket = sector_id, sector_ids
        elif sender_id == user_id and receiver_id:
            target, bucket = receiver_id, user_ids
        elif receiver_id == user_id and sender_id:
            target, bucket = sender_id, user_ids
        else:
            continue
        if target not in bucket:
            bucket.append(target)
    return {"user_ids": user_ids, "sector_ids": sector_ids}


# ── Writes ───────────────────────────────────────────────────────────────────


def send_message(sender_id, message="", receiver_id=None, sector_id=None, attachment=None):
    """Persist a message and return its row dict.

    attachment: {"url", "name", "type"} of an already uploaded file.
    """
    attachment = attachment or {}
    if not (message or "").strip() and not attachment.get("url"):
        raise ValidationError("Message body or attachment is required", details={"message": "empty"})
    if receiver_id and sector_id:
        raise ValidationError(
            "A message targets either a user or a sector",
            details={"receiver_id": receiver_id, "sector_id": sector_id},
        )

    msg = ChatMessage(
        sender_id=sender_id,
        receiver_id=receiver_id,
        sector_id=sector_id,
        message=message or "",
        file_url=attachment.get("url"),
        file_name=attachment.get("name"),
        file_type=attachment.get("type") or attachment.get("mime_type"),
    )
    db.session.add(msg)
    db.session.commit()
    logger.info(
        "Chat message %s sent", msg.id,
        extra={"user_id": sender_id, "conversation": receiver_id or sector_id or "broadcast"},
    )
    return msg.to_dict()


def mark_as_read(message_ids):
    """Mark the given messages read; returns how many changed."""
    ids = [i for i in (message_ids or []) if i]
    if not ids:
        return 0
    rows = ChatMessage.query.filter(ChatMessage.id.in_(ids), ChatMessage.read.is_(False)).all()
    for row in rows:
        row.mark_read()
    db.session.commit()
    return len(rows)


def delete_conversation(current_user_id, target_id, conv_type):
    """Delete a direct conversation (both directions) or a sector channel."""
    if conv_type == "user":
        q = ChatMessage.query.filter(_pair_filter(current_user_id, target_id))
    elif conv_type == "sector":
        q = ChatMessage.query.filter(ChatMessage.sector_id == target_id)
    else:
        raise ValidationError(f"Unknown conversation type: {conv_type}", details={"type": conv_type})

    rows = q.all()
    for row in rows:
        db.session.delete(row)
    db.session.commit()
    logger.info(
        "Deleted %d message(s) from %s conversation %s", len(rows), conv_type, target_id,
        extra={"user_id": current_user_id, "conversation": target_id},
    )
    return len(rows)
