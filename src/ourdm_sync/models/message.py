# src/ourdm_sync/models/message.py
"""Model describing a message as mirrored on this device."""

from typing import Any

from sqlalchemy import JSON, BigInteger, Boolean, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ourdm_sync.db.session import Base

STATUS_PENDING = "pending"
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_READ = "read"
STATUS_FAILED = "failed"
STATUS_SCHEDULED = "scheduled"

MESSAGE_STATUSES = frozenset(
    {
        STATUS_PENDING,
        STATUS_SENT,
        STATUS_DELIVERED,
        STATUS_READ,
        STATUS_FAILED,
        STATUS_SCHEDULED,
    }
)

TYPE_TEXT = "text"

MESSAGE_TYPES = frozenset(
    {
        "text",
        "image",
        "video",
        "audio",
        "document",
        "voice",
        "location",
        "contact",
        "sticker",
        "system",
        "poll",
        "file",
    }
)

# Types whose payload lives in the blob store rather than in `content`.
MEDIA_TYPES = frozenset({"image", "video", "audio", "document", "voice", "file", "sticker"})


class LocalMessage(Base):
    """Canonical message record for the current device.

    The local store is the only source the UI renders from. Content is held in
    plaintext here; it is sealed only when it crosses to the relay.
    """

    __tablename__ = "local_message"
    __table_args__ = (
        Index("ix_local_message_chat_created", "chat_id", "created_at"),
        Index("ix_local_message_status", "status"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    chat_id: Mapped[str] = mapped_column(String(64), nullable=False)
    sender_id: Mapped[str] = mapped_column(String(64), nullable=False)
    # For group chats this is the group identifier.
    receiver_id: Mapped[str] = mapped_column(String(64), nullable=False)

    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
    # IV of the last sealed copy pushed to or received from the relay.
    iv: Mapped[str | None] = mapped_column(String(32), nullable=True)
    type: Mapped[str] = mapped_column(String(16), nullable=False, default=TYPE_TEXT)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default=STATUS_PENDING)

    # Epoch milliseconds, device-local. Immutable once written.
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    edited_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    is_deleted: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    deleted_for_everyone: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    # Timestamp of the last content-level mutation (edit or tombstone), used to
    # order concurrent changes arriving from other devices.
    annotated_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    # symbol -> list of reactor ids; empty lists are never stored.
    reactions: Mapped[dict[str, list[str]]] = mapped_column(JSON, nullable=False, default=dict)

    # Denormalized snapshots: {"id", "content", "sender_id", "type"}.
    reply_to: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    forwarded_from: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    expires_at: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    scheduled_for: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    file_url: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_path: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_name: Mapped[str | None] = mapped_column(Text, nullable=True)
    thumbnail: Mapped[str | None] = mapped_column(Text, nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    duration: Mapped[int | None] = mapped_column(Integer, nullable=True)

    location: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    contact: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    synced_to_server: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    undecryptable: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    send_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)

    @property
    def is_edited(self) -> bool:
        return self.edited_at is not None

    def __repr__(self) -> str:
        return f"<LocalMessage {self.id} chat={self.chat_id} status={self.status}>"
