"""Reactions, edits and deletes, locally and from other devices.

Local changes are committed before they are pushed to the relay; a failed
push is queued in `relay_outbound` for the sync worker. Changes arriving from
other devices are merged with `apply_remote`:

* reactions are per-user and idempotent;
* edit vs delete-for-everyone is last-writer-wins on `annotated_at`, and a tie
  goes to the delete.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING, Any, Literal

from ourdm_sync.core.settings import Settings, settings as default_settings
from ourdm_sync.db.time import Clock, now_ms
from ourdm_sync.models.message import TYPE_TEXT, LocalMessage
from ourdm_sync.models.outbound import OP_UPDATE
from ourdm_sync.schemas.annotation import AnnotationEvent
from ourdm_sync.services.crypto import EncryptionBoundary
from ourdm_sync.services.errors import (
    AuthorizationError,
    DecryptionError,
    EncryptionError,
    NotFoundError,
    RelayUnavailableError,
    UnsupportedTypeError,
    WindowExpiredError,
)
from ourdm_sync.services.relay import Relay

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from ourdm_sync.repositories.message_repo import LocalMessageStore
    from ourdm_sync.repositories.outbound_repo import OutboundQueue
    from ourdm_sync.schemas.relay import RelayRow

logger = logging.getLogger(__name__)

DeleteScope = Literal["me", "everyone"]


def with_reaction(
    reactions: dict[str, list[str]],
    user_id: str,
    symbol: str | None,
) -> dict[str, list[str]]:
    """Return a copy of `reactions` with `user_id` under `symbol` only.

    A `symbol` of None removes the user entirely. Empty symbols are pruned.
    """
    updated: dict[str, list[str]] = {}
    for existing, users in (reactions or {}).items():
        remaining = [u for u in users if u != user_id]
        if remaining:
            updated[existing] = remaining
    if symbol is not None:
        updated.setdefault(symbol, []).append(user_id)
    return updated


def _same_reactions(left: dict[str, list[str]], right: dict[str, list[str]]) -> bool:
    return {k: set(v) for k, v in (left or {}).items()} == {k: set(v) for k, v in (right or {}).items()}


class AnnotationReconciler:
    """Applies mutable annotations with authorship and time-window rules."""

    def __init__(
        self,
        store: LocalMessageStore,
        boundary: EncryptionBoundary,
        relay: Relay,
        outbound: OutboundQueue,
        *,
        config: Settings | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.store = store
        self.boundary = boundary
        self.relay = relay
        self.outbound = outbound
        self.config = config or default_settings
        self.clock = clock

    async def react(self, message_id: str, user_id: str, symbol: str) -> LocalMessage:
        """Set `user_id`'s single reaction on a message to `symbol`."""
        return await self._set_reaction(message_id, user_id, symbol)

    async def unreact(self, message_id: str, user_id: str) -> LocalMessage:
        return await self._set_reaction(message_id, user_id, None)

    async def edit(self, message_id: str, editor_id: str, new_content: str) -> LocalMessage:
        """Replace the content of a text message within the edit window.

        Raises:
            AuthorizationError: If `editor_id` did not send the message.
            UnsupportedTypeError: If the message is not plain text.
            NotFoundError: If the message was deleted for everyone.
            WindowExpiredError: If the edit window has closed.
        """
        message = self.store.require(message_id)
        if message.sender_id != editor_id:
            raise AuthorizationError("Only the sender can edit a message")
        if message.type != TYPE_TEXT:
            raise UnsupportedTypeError("Only text messages can be edited")
        if message.deleted_for_everyone:
            raise NotFoundError(f"Message {message_id} was deleted")
        now = self.clock()
        if now - message.created_at > self.config.edit_window_ms:
            raise WindowExpiredError("Edit window expired")

        message.content = new_content
        message.edited_at = now
        message.annotated_at = now
        self.store.save(message)

        event = AnnotationEvent(
            kind="edit", message_id=message_id, actor_id=editor_id, at=now, content=new_content
        )
        await self._propagate(event)
        return message

    async def delete(
        self,
        message_id: str,
        requester_id: str,
        scope: DeleteScope = "me",
    ) -> LocalMessage:
        """Delete a message for this device or tombstone it for everyone.

        On any failed precondition the record is left untouched.
        """
        if scope not in ("me", "everyone"):
            raise ValueError(f"Unknown delete scope: {scope!r}")
        message = self.store.require(message_id)
        if scope == "me":
            self.store.delete(message_id, hard=False)
            return message

        if message.sender_id != requester_id:
            raise AuthorizationError("Only the sender can delete a message for everyone")
        now = self.clock()
        if now - message.created_at > self.config.delete_window_ms:
            raise WindowExpiredError("Delete window expired")

        self._tombstone(message, now)
        self.store.save(message)
        logger.info("Message %s deleted for everyone", message_id)

        event = AnnotationEvent(kind="delete", message_id=message_id, actor_id=requester_id, at=now)
        await self._propagate(event)
        return message

    async def apply_remote(self, event: AnnotationEvent) -> LocalMessage | None:
        """Merge an annotation made on another device.

        Unknown messages and events from actors not allowed to make them are
        ignored. Returns the record, or None if it is not stored here.
        """
        message = self.store.get_by_id(event.message_id)
        if message is None:
            logger.debug("Annotation for unknown message %s", event.message_id)
            return None

        if event.kind in ("reaction", "unreact"):
            symbol = event.symbol if event.kind == "reaction" else None
            reactions = with_reaction(message.reactions, event.actor_id, symbol)
            if not _same_reactions(reactions, message.reactions):
                message.reactions = reactions
                self.store.save(message)
            return message

        if event.actor_id != message.sender_id:
            logger.warning(
                "Ignoring %s on %s from non-sender %s", event.kind, message.id, event.actor_id
            )
            return message

        last = message.annotated_at
        if event.kind == "delete":
            if message.deleted_for_everyone or (last is not None and last > event.at):
                return message
            self._tombstone(message, event.at)
        else:
            if last is not None and last >= event.at:
                return message
            message.content = event.content or ""
            message.edited_at = event.at
            message.annotated_at = event.at
            if message.deleted_for_everyone:
                # A newer edit lifts the tombstone; a local delete-for-me stays.
                message.is_deleted = False
                message.deleted_for_everyone = False
        self.store.save(message)
        return message

    async def apply_relay_update(self, row: RelayRow) -> LocalMessage | None:
        """Merge the annotation marker carried on an updated relay row."""
        if not row.annotation:
            return None
        event = AnnotationEvent.model_validate(row.annotation)
        if event.kind == "edit":
            try:
                content = self.boundary.open(row.content, row.iv)
            except DecryptionError as exc:
                logger.warning("Could not decrypt edit of %s: %s", row.id, exc)
                content = self.config.undecryptable_placeholder
            event = event.model_copy(update={"content": content})
        return await self.apply_remote(event)

    async def _set_reaction(self, message_id: str, user_id: str, symbol: str | None) -> LocalMessage:
        message = self.store.require(message_id)
        reactions = with_reaction(message.reactions, user_id, symbol)
        if _same_reactions(reactions, message.reactions):
            return message
        message.reactions = reactions
        self.store.save(message)

        event = AnnotationEvent(
            kind="reaction" if symbol is not None else "unreact",
            message_id=message_id,
            actor_id=user_id,
            at=self.clock(),
            symbol=symbol,
        )
        await self._propagate(event)
        return message

    def _tombstone(self, message: LocalMessage, at: int) -> None:
        message.is_deleted = True
        message.deleted_for_everyone = True
        message.content = self.config.deleted_placeholder
        message.annotated_at = at
        message.file_url = None
        message.thumbnail = None
        message.location = None
        message.contact = None

    def _relay_fields(self, event: AnnotationEvent) -> dict[str, Any]:
        fields: dict[str, Any] = {"annotation": event.relay_marker()}
        if event.kind == "edit":
            content, iv = self.boundary.seal(event.content or "")
            fields.update(content=content, iv=iv, edited_at=event.at, annotated_at=event.at)
        elif event.kind == "delete":
            content, iv = self.boundary.seal(self.config.deleted_placeholder)
            fields.update(
                content=content,
                iv=iv,
                is_deleted=True,
                deleted_for_everyone=True,
                annotated_at=event.at,
                file_url=None,
                thumbnail=None,
            )
        return fields

    async def _propagate(self, event: AnnotationEvent) -> None:
        """Push a committed local annotation to the relay, queueing it on failure."""
        try:
            fields = self._relay_fields(event)
        except EncryptionError as exc:
            logger.warning("Annotation on %s not propagated: %s", event.message_id, exc)
            return
        try:
            await self.relay.update(event.message_id, fields)
        except RelayUnavailableError as exc:
            logger.warning("Relay update for %s failed, queued: %s", event.message_id, exc)
            self.outbound.enqueue(OP_UPDATE, event.message_id, fields)
