"""Delivery state machine for outbound and inbound messages.

Every operation is a two-phase write: the local store is committed first and
always succeeds, then the relay is contacted and may fail. `SendResult` keeps
the two guarantees apart so callers can render as soon as the local write lands.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Iterable
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from ourdm_sync.core.settings import Settings, settings as default_settings
from ourdm_sync.db.time import Clock, now_ms
from ourdm_sync.models.message import (
    MEDIA_TYPES,
    MESSAGE_TYPES,
    STATUS_DELIVERED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_READ,
    STATUS_SCHEDULED,
    STATUS_SENT,
    TYPE_TEXT,
    LocalMessage,
)
from ourdm_sync.models.outbound import OP_DELETE
from ourdm_sync.schemas.message import (
    ContactPayload,
    LocationPayload,
    MessageReference,
    SendOptions,
)
from ourdm_sync.schemas.relay import ReceiptPayload, RelayRow
from ourdm_sync.services.crypto import EncryptionBoundary
from ourdm_sync.services.errors import (
    DecryptionError,
    EncryptionError,
    InvalidStateError,
    NotFoundError,
    RelayUnavailableError,
    UnsupportedTypeError,
)
from ourdm_sync.services.relay import BlobStore, ReceiptChannel, Relay, RelayFilter
from ourdm_sync.services.status import can_transition, is_at_or_past, path_to

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from ourdm_sync.models.receipt import ReceiptEvent
    from ourdm_sync.repositories.message_repo import LocalMessageStore
    from ourdm_sync.repositories.outbound_repo import OutboundQueue
    from ourdm_sync.repositories.receipt_repo import ReceiptLog
    from ourdm_sync.services.local_metadata import LocalMetadataManager

logger = logging.getLogger(__name__)

# Extra attributes carried on the relay row's `metadata` column.
_METADATA_FIELDS = ("file_name", "duration", "location", "contact")


@dataclass
class SendResult:
    """Outcome of a send attempt.

    `persisted_locally` is always True once a result exists; `confirmed_remotely`
    is True only after the relay accepted the row.
    """

    message: LocalMessage
    confirmed_remotely: bool
    error: str | None = None
    persisted_locally: bool = True


class DeliveryService:
    """Moves messages along pending -> sent -> delivered -> read."""

    def __init__(
        self,
        store: LocalMessageStore,
        boundary: EncryptionBoundary,
        relay: Relay,
        receipt_log: ReceiptLog,
        outbound: OutboundQueue,
        *,
        receipts: ReceiptChannel | None = None,
        blobs: BlobStore | None = None,
        metadata: LocalMetadataManager | None = None,
        config: Settings | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.boundary = boundary
        self.relay = relay
        self.receipt_log = receipt_log
        self.outbound = outbound
        self.receipts = receipts
        self.blobs = blobs
        self.metadata = metadata
        self.config = config or default_settings
        self.clock = clock

    # ------------------------------------------------------------------
    # Outbound
    # ------------------------------------------------------------------

    async def send(
        self,
        chat_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
        type: str = TYPE_TEXT,
        options: SendOptions | None = None,
    ) -> SendResult:
        """Write a `pending` record locally, then submit it to the relay.

        A record whose `scheduled_for` lies in the future is only stored; it is
        submitted later by `dispatch_due`.
        """
        message = self._create_record(chat_id, sender_id, receiver_id, content, type, options)
        if message.scheduled_for is not None and message.scheduled_for > message.created_at:
            logger.info("Message %s held until %s", message.id, message.scheduled_for)
            return SendResult(message=message, confirmed_remotely=False)
        return await self._submit(message)

    async def retry(self, message_id: str) -> SendResult:
        """Re-submit an unconfirmed record under its original id."""
        message = self.store.require(message_id)
        if message.synced_to_server or is_at_or_past(message.status, STATUS_SENT):
            return SendResult(message=message, confirmed_remotely=True)
        if message.status == STATUS_FAILED:
            message.status = STATUS_PENDING
        elif message.status == STATUS_SCHEDULED:
            raise InvalidStateError(f"Message {message_id} is held for scheduled dispatch")
        return await self._submit(message)

    async def reply(
        self,
        chat_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
        reply_to_id: str,
        type: str = TYPE_TEXT,
        options: SendOptions | None = None,
    ) -> SendResult:
        original = self.store.require(reply_to_id)
        reference = MessageReference.from_message(original, self.config.reply_snippet_length)
        options = (options or SendOptions()).model_copy(update={"reply_to": reference})
        return await self.send(chat_id, sender_id, receiver_id, content, type, options)

    async def forward(
        self,
        message_id: str,
        chat_id: str,
        sender_id: str,
        receiver_id: str,
    ) -> SendResult:
        """Send a copy of a stored message into another chat.

        Media, location and contact payloads travel with the copy; the blob
        itself is shared, not re-uploaded.
        """
        original = self.store.require(message_id)
        if original.deleted_for_everyone:
            raise NotFoundError(f"Message {message_id} was deleted")
        options = SendOptions(
            forwarded_from=MessageReference.from_message(
                original, self.config.reply_snippet_length
            ),
            location=original.location,
            contact=original.contact,
            file_url=original.file_url,
            file_name=original.file_name,
            thumbnail=original.thumbnail,
            file_size=original.file_size,
            duration=original.duration,
        )
        return await self.send(chat_id, sender_id, receiver_id, original.content, original.type, options)

    async def send_location(
        self,
        chat_id: str,
        sender_id: str,
        receiver_id: str,
        location: LocationPayload,
    ) -> SendResult:
        content = location.name or f"{location.latitude}, {location.longitude}"
        options = SendOptions(location=location)
        return await self.send(chat_id, sender_id, receiver_id, content, "location", options)

    async def send_contact(
        self,
        chat_id: str,
        sender_id: str,
        receiver_id: str,
        contact: ContactPayload,
    ) -> SendResult:
        options = SendOptions(contact=contact)
        return await self.send(chat_id, sender_id, receiver_id, contact.name, "contact", options)

    async def send_media(
        self,
        chat_id: str,
        sender_id: str,
        receiver_id: str,
        blob: bytes,
        type: str,
        *,
        file_name: str | None = None,
        content_type: str | None = None,
        caption: str = "",
        thumbnail: str | None = None,
        duration: int | None = None,
    ) -> SendResult:
        """Upload a blob, then send a message referencing it.

        The upload happens before anything is stored, so a failed upload leaves
        no local record behind and raises RelayUnavailableError.
        """
        if type not in MEDIA_TYPES:
            raise UnsupportedTypeError(f"{type!r} messages do not carry a blob")
        if self.blobs is None:
            raise RelayUnavailableError("No blob store configured")

        message_id = str(uuid.uuid4())
        path = f"{type}/{sender_id}/{message_id}"
        url = await self.blobs.upload(path, blob, content_type)
        options = SendOptions(
            file_url=url,
            file_path=path,
            file_name=file_name,
            file_size=len(blob),
            thumbnail=thumbnail,
            duration=duration,
        )
        message = self._create_record(
            chat_id, sender_id, receiver_id, caption, type, options, message_id=message_id
        )
        return await self._submit(message)

    async def schedule(
        self,
        chat_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
        scheduled_for: int,
        type: str = TYPE_TEXT,
        options: SendOptions | None = None,
    ) -> SendResult:
        """Store a `pending` record to be dispatched once `scheduled_for` passes."""
        options = (options or SendOptions()).model_copy(update={"scheduled_for": scheduled_for})
        message = self._create_record(chat_id, sender_id, receiver_id, content, type, options)
        logger.info("Message %s scheduled for %s", message.id, scheduled_for)
        return SendResult(message=message, confirmed_remotely=False)

    async def defer(self, message_id: str, scheduled_for: int) -> LocalMessage:
        """Hold an unsent record in `scheduled` until `scheduled_for`."""
        message = self.store.require(message_id)
        if message.synced_to_server or message.status not in (STATUS_PENDING, STATUS_FAILED):
            raise InvalidStateError(
                f"Message {message_id} is {message.status} and can no longer be deferred"
            )
        if message.status == STATUS_FAILED:
            message.status = STATUS_PENDING
        message.status = STATUS_SCHEDULED
        message.scheduled_for = scheduled_for
        self.store.save(message)
        return message

    async def dispatch_due(self, now: int | None = None) -> list[SendResult]:
        """Submit every held record whose `scheduled_for` is at or before `now`.

        Records that came due while the device was offline fire on the first
        call after it comes back.
        """
        now = self.clock() if now is None else now
        results: list[SendResult] = []
        for message in self.store.list_due_scheduled(now):
            if message.status == STATUS_SCHEDULED:
                message.status = STATUS_PENDING
            logger.debug("Dispatching scheduled message %s", message.id)
            results.append(await self._submit(message))
        return results

    # ------------------------------------------------------------------
    # Receipts
    # ------------------------------------------------------------------

    async def on_delivery_receipt(self, message_id: str) -> LocalMessage:
        """Move a message to `delivered` unless it is already there or beyond."""
        message = self.store.require(message_id)
        if is_at_or_past(message.status, STATUS_DELIVERED):
            return message
        steps = path_to(message.status, STATUS_DELIVERED)
        if not steps:
            logger.info("Ignoring delivery receipt for %s in state %s", message_id, message.status)
            return message
        events = self._advance(message, steps)
        self.store.save(message)
        await self._publish_receipts(events)
        return message

    async def on_read_receipt(self, chat_id: str, reader_id: str) -> list[LocalMessage]:
        """Mark every unread message `reader_id` received in a chat as read.

        The local transition is committed before any receipt is published or
        any relay row is deleted, so a network failure never loses read state.
        """
        candidates = self.store.list_read_candidates(chat_id, reader_id)
        if not candidates:
            return []

        events: list[ReceiptEvent] = []
        for message in candidates:
            events.extend(self._advance(message, path_to(message.status, STATUS_READ)))
        self.store.save(*candidates)
        logger.info("Marked %d message(s) read in chat %s", len(candidates), chat_id)

        await self._publish_receipts(events)
        for message in candidates:
            await self._delete_relay_row(message.id)
        return candidates

    async def apply_receipt(self, message_id: str, status: str) -> LocalMessage | None:
        """Apply a receipt observed on the receipt feed to a sent message.

        Duplicates and receipts for unknown ids are ignored.
        """
        message = self.store.get_by_id(message_id)
        if message is None:
            logger.debug("Receipt for unknown message %s", message_id)
            return None
        if is_at_or_past(message.status, status):
            return message
        steps = path_to(message.status, status)
        if not steps:
            logger.info("Ignoring %s receipt for %s in state %s", status, message_id, message.status)
            return message
        self._advance(message, steps, published=True)
        self.store.save(message)
        return message

    # ------------------------------------------------------------------
    # Inbound
    # ------------------------------------------------------------------

    async def ingest(self, row: RelayRow) -> LocalMessage:
        """Store an incoming relay row as `delivered` and emit its receipt.

        A row that cannot be opened is still stored, flagged `undecryptable`
        with placeholder content.
        """
        existing = self.store.get_by_id(row.id)
        if existing is not None:
            return existing

        undecryptable = False
        if row.deleted_for_everyone:
            content = self.config.deleted_placeholder
        else:
            try:
                content = self.boundary.open(row.content, row.iv)
            except DecryptionError as exc:
                logger.warning("Could not decrypt message %s: %s", row.id, exc)
                content = self.config.undecryptable_placeholder
                undecryptable = True

        metadata = row.metadata or {}
        message = LocalMessage(
            id=row.id,
            chat_id=row.chat_id,
            sender_id=row.sender_id,
            receiver_id=row.receiver_id,
            content=content,
            iv=row.iv,
            type=row.type,
            status=STATUS_DELIVERED,
            created_at=row.created_at,
            edited_at=row.edited_at,
            annotated_at=row.annotated_at,
            is_deleted=row.is_deleted,
            deleted_for_everyone=row.deleted_for_everyone,
            reactions={},
            reply_to=row.reply_to,
            forwarded_from=row.forwarded_from,
            expires_at=row.expires_at,
            file_url=row.file_url,
            file_path=row.file_path,
            file_size=row.file_size,
            thumbnail=row.thumbnail,
            file_name=metadata.get("file_name"),
            duration=metadata.get("duration"),
            location=metadata.get("location"),
            contact=metadata.get("contact"),
            synced_to_server=True,
            undecryptable=undecryptable,
        )
        self.store.put(message)
        event = self.receipt_log.record(message.id, STATUS_DELIVERED)
        self.store.save(message)
        await self._publish_receipts([event] if event is not None else [])
        return message

    async def ingest_batch(self, rows: Iterable[RelayRow]) -> list[LocalMessage]:
        return [await self.ingest(row) for row in rows]

    async def pull(self, recipient_id: str, limit: int | None = None) -> list[LocalMessage]:
        """Fetch and ingest every relay row addressed to `recipient_id`."""
        rows = await self.relay.select(
            [RelayFilter("receiver_id", "eq", recipient_id)],
            limit=limit,
        )
        return await self.ingest_batch(rows)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _create_record(
        self,
        chat_id: str,
        sender_id: str,
        receiver_id: str,
        content: str,
        type: str,
        options: SendOptions | None,
        *,
        message_id: str | None = None,
    ) -> LocalMessage:
        if type not in MESSAGE_TYPES:
            raise UnsupportedTypeError(f"Unknown message type: {type!r}")
        options = options or SendOptions()
        now = self.clock()

        expires_at = options.expires_at
        if expires_at is None and self.metadata is not None:
            duration = self.metadata.get_disappearing(chat_id)
            if duration:
                expires_at = now + duration * 1000

        message = LocalMessage(
            id=message_id or str(uuid.uuid4()),
            chat_id=chat_id,
            sender_id=sender_id,
            receiver_id=receiver_id,
            content=content,
            type=type,
            status=STATUS_PENDING,
            created_at=now,
            reactions={},
            reply_to=_dump(options.reply_to),
            forwarded_from=_dump(options.forwarded_from),
            expires_at=expires_at,
            scheduled_for=options.scheduled_for,
            location=_dump(options.location),
            contact=_dump(options.contact),
            file_url=options.file_url,
            file_path=options.file_path,
            file_name=options.file_name,
            thumbnail=options.thumbnail,
            file_size=options.file_size,
            duration=options.duration,
            synced_to_server=False,
            send_attempts=0,
        )
        return self.store.put(message)

    async def _submit(self, message: LocalMessage) -> SendResult:
        message.send_attempts += 1
        message.last_error = None
        self.store.save(message)

        try:
            row = self._relay_row(message)
            await self.relay.insert(row)
        except (RelayUnavailableError, EncryptionError) as exc:
            logger.warning("Send of message %s failed: %s", message.id, exc)
            message.status = STATUS_FAILED
            message.last_error = str(exc)
            self.store.save(message)
            return SendResult(message=message, confirmed_remotely=False, error=str(exc))
        except asyncio.CancelledError:
            logger.info("Send of message %s cancelled; record left pending", message.id)
            raise

        if can_transition(message.status, STATUS_SENT):
            message.status = STATUS_SENT
        message.iv = row.iv
        message.synced_to_server = True
        self.store.save(message)
        logger.info("Message %s accepted by relay", message.id)
        return SendResult(message=message, confirmed_remotely=True)

    def _relay_row(self, message: LocalMessage) -> RelayRow:
        ciphertext, iv = self.boundary.seal(message.content)
        ttl_limit = message.created_at + self.config.relay_message_ttl_ms
        expires_at = ttl_limit if message.expires_at is None else min(message.expires_at, ttl_limit)
        metadata = {
            name: getattr(message, name)
            for name in _METADATA_FIELDS
            if getattr(message, name) is not None
        }
        return RelayRow(
            id=message.id,
            chat_id=message.chat_id,
            sender_id=message.sender_id,
            receiver_id=message.receiver_id,
            content=ciphertext,
            iv=iv,
            type=message.type,
            status=STATUS_SENT,
            created_at=message.created_at,
            expires_at=expires_at,
            scheduled_for=message.scheduled_for,
            file_url=message.file_url,
            file_path=message.file_path,
            file_size=message.file_size,
            thumbnail=message.thumbnail,
            reply_to=message.reply_to,
            forwarded_from=message.forwarded_from,
            metadata=metadata or None,
        )

    def _advance(
        self,
        message: LocalMessage,
        steps: list[str],
        *,
        published: bool = False,
    ) -> list[ReceiptEvent]:
        """Walk `steps` in order, staging a receipt for each acknowledged state."""
        events: list[ReceiptEvent] = []
        for state in steps:
            message.status = state
            if state == STATUS_SENT:
                message.synced_to_server = True
            elif state in (STATUS_DELIVERED, STATUS_READ):
                event = self.receipt_log.record(message.id, state, published=published)
                if event is not None:
                    events.append(event)
        return events

    async def _publish_receipts(self, events: list[ReceiptEvent]) -> None:
        """Append receipts to the feed; failures stay unpublished for the sync worker."""
        if self.receipts is None:
            return
        for event in events:
            payload = ReceiptPayload(
                message_id=event.message_id,
                status=event.status,
                created_at=event.recorded_at,
            )
            try:
                await self.receipts.publish(payload)
            except RelayUnavailableError as exc:
                logger.warning(
                    "Could not publish %s receipt for %s: %s", event.status, event.message_id, exc
                )
                continue
            self.receipt_log.mark_published(event)

    async def _delete_relay_row(self, message_id: str) -> None:
        try:
            await self.relay.delete(message_id)
        except RelayUnavailableError as exc:
            logger.warning("Could not delete relay row %s: %s", message_id, exc)
            self.outbound.enqueue(OP_DELETE, message_id)


def _dump(value: Any) -> dict[str, Any] | None:
    if value is None:
        return None
    return value.model_dump()
