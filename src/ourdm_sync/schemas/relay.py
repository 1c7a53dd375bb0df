# src/ourdm_sync/schemas/relay.py
"""Relay row and receipt schemas with their wire encoding."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, field_serializer, field_validator

from ourdm_sync.db.time import from_datetime, to_datetime

TIMESTAMP_FIELDS = frozenset(
    {"created_at", "expires_at", "scheduled_for", "edited_at", "annotated_at"}
)


def _coerce_ms(value: Any) -> Any:
    """Accept epoch milliseconds, datetimes or ISO-8601 strings."""
    if value is None or isinstance(value, int):
        return value
    if isinstance(value, datetime):
        return from_datetime(value)
    if isinstance(value, str):
        return from_datetime(datetime.fromisoformat(value.replace("Z", "+00:00")))
    return value


def encode_timestamp_fields(fields: dict[str, Any]) -> dict[str, Any]:
    """Render millisecond timestamp values as ISO-8601 for the relay."""
    encoded = dict(fields)
    for name in TIMESTAMP_FIELDS & encoded.keys():
        if isinstance(encoded[name], int):
            encoded[name] = to_datetime(encoded[name]).isoformat()
    return encoded


class RelayRow(BaseModel):
    """Encrypted rendezvous copy of a message held by the relay while undelivered."""

    id: str
    chat_id: str
    sender_id: str
    receiver_id: str
    content: str
    iv: str
    type: str = "text"
    status: str = "pending"
    created_at: int
    expires_at: int | None = None
    scheduled_for: int | None = None
    file_url: str | None = None
    file_path: str | None = None
    file_size: int | None = None
    thumbnail: str | None = None
    reply_to: dict[str, Any] | None = None
    forwarded_from: dict[str, Any] | None = None
    metadata: dict[str, Any] | None = None
    is_deleted: bool = False
    deleted_for_everyone: bool = False
    edited_at: int | None = None
    annotated_at: int | None = None
    # Last annotation marker written by a device, see AnnotationEvent.relay_marker.
    annotation: dict[str, Any] | None = None

    model_config = ConfigDict(extra="ignore")

    @field_validator(*sorted(TIMESTAMP_FIELDS), mode="before")
    @classmethod
    def _parse_timestamp(cls, value: Any) -> Any:
        return _coerce_ms(value)

    @field_serializer(*sorted(TIMESTAMP_FIELDS), when_used="json")
    def _serialize_timestamp(self, value: int | None) -> str | None:
        if value is None:
            return None
        return to_datetime(value).isoformat()

    def to_wire(self) -> dict[str, Any]:
        """Return the JSON body the relay expects for an insert."""
        return self.model_dump(mode="json")


class ReceiptPayload(BaseModel):
    """Entry appended to the relay's receipt feed."""

    message_id: str
    status: Literal["delivered", "read"]
    created_at: int

    @field_validator("created_at", mode="before")
    @classmethod
    def _parse_created_at(cls, value: Any) -> Any:
        return _coerce_ms(value)

    @field_serializer("created_at", when_used="json")
    def _serialize_created_at(self, value: int) -> str:
        return to_datetime(value).isoformat()
