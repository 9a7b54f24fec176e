"""
Internal chat domain model.

A message belongs to exactly one conversation scope:
    - direct pair     (sender_id, receiver_id)
    - sector channel  (sector_id; "global" is the all-sectors channel)
    - broadcast       (receiver_id and sector_id both NULL)
"""

import uuid
from datetime import datetime, timezone

from app.models import db


class ChatMessage(db.Model):
    __tablename__ = "chat_messages"

    id = db.Column(db.String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    sender_id = db.Column(db.String(64), nullable=False, index=True)
    receiver_id = db.Column(db.String(64), nullable=True, index=True)
    sector_id = db.Column(db.String(64), nullable=True, index=True)
    message = db.Column(db.Text, nullable=False, default="")
    read = db.Column(db.Boolean, nullable=False, default=False)

    # Attachment (already uploaded to blob storage)
    file_url = db.Column(db.String(1000), nullable=True)
    file_name = db.Column(db.String(300), nullable=True)
    file_type = db.Column(db.String(120), nullable=True)

    created_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        default=lambda: datetime.now(timezone.utc),
        index=True,
    )

    def mark_read(self):
        self.read = True

    def to_dict(self):
        return {
            "id": self.id,
            "sender_id": self.sender_id,
            "receiver_id": self.receiver_id,
            "sector_id": self.sector_id,
            "message": self.message,
            "read": bool(self.read),
            "file_url": self.file_url,
            "file_name": self.file_name,
            "file_type": self.file_type,
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self):
        return f"<ChatMessage {self.id}: {self.sender_id} -> {self.receiver_id or self.sector_id or 'all'}>"
