# src/ourdm_sync/schemas/message.py
"""Message-related Pydantic schemas."""

from __future__ import annotations

from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from ourdm_sync.models import LocalMessage


class MessageReference(BaseModel):
    """Snapshot of another message, kept even after the original is gone."""

    id: str
    content: str = Field("", description="Short excerpt of the referenced content")
    sender_id: str
    type: str = "text"

    @classmethod
    def from_message(cls, message: LocalMessage, snippet_length: int = 100) -> MessageReference:
        """Build a snapshot of a stored message, truncating its content."""
        return cls(
            id=message.id,
            content=(message.content or "")[:snippet_length],
            sender_id=message.sender_id,
            type=message.type,
        )


class LocationPayload(BaseModel):
    """Shared location attached to a `location` message."""

    latitude: float = Field(..., ge=-90, le=90)
    longitude: float = Field(..., ge=-180, le=180)
    name: str | None = None
    address: str | None = None


class ContactPayload(BaseModel):
    """Shared contact card attached to a `contact` message."""

    name: str
    phone: str
    email: str | None = None


class SendOptions(BaseModel):
    """Every optional field `send` understands.

    Unknown keys are rejected so a typo never silently drops an option.
    Timestamps are epoch milliseconds.
    """

    reply_to: MessageReference | None = None
    forwarded_from: MessageReference | None = None
    scheduled_for: int | None = None
    expires_at: int | None = None
    location: LocationPayload | None = None
    contact: ContactPayload | None = None
    file_url: str | None = None
    file_path: str | None = None
    file_name: str | None = None
    thumbnail: str | None = None
    file_size: int | None = Field(None, ge=0)
    duration: int | None = Field(None, ge=0, description="Audio/video length in seconds")

    model_config = ConfigDict(extra="forbid")
