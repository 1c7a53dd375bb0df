"""Background synchronization between the local store and the relay.

The SyncWorker runs on an interval. Each pass it:

- dispatches scheduled messages that have come due
- retries sends that were attempted but never confirmed
- replays relay updates and deletes queued after a network failure
- publishes receipts that have not reached the receipt feed
- pulls rows addressed to this device, when a recipient id is set
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ourdm_sync.core.settings import Settings, settings as default_settings
from ourdm_sync.models.outbound import OP_DELETE, OP_UPDATE
from ourdm_sync.schemas.relay import ReceiptPayload
from ourdm_sync.services.errors import RelayDisabledError, RelayUnavailableError
from ourdm_sync.services.relay import CHANGE_DELETE, CHANGE_INSERT, CHANGE_UPDATE, RelayChange

if TYPE_CHECKING:  # pragma: no cover - typing helper
    from ourdm_sync.models.message import LocalMessage
    from ourdm_sync.models.outbound import RelayOutbound
    from ourdm_sync.repositories.message_repo import LocalMessageStore
    from ourdm_sync.repositories.outbound_repo import OutboundQueue
    from ourdm_sync.repositories.receipt_repo import ReceiptLog
    from ourdm_sync.services.annotations import AnnotationReconciler
    from ourdm_sync.services.delivery import DeliveryService
    from ourdm_sync.services.relay import ReceiptChannel, Relay

logger = logging.getLogger(__name__)


@dataclass
class SyncReport:
    """What a single sync pass did."""

    dispatched: list[str] = field(default_factory=list)
    retried: list[str] = field(default_factory=list)
    replayed: int = 0
    receipts_published: int = 0
    pulled: list[str] = field(default_factory=list)


class SyncWorker:
    """Periodically pushes unsynced local state to the relay and pulls new rows."""

    def __init__(
        self,
        delivery: DeliveryService,
        reconciler: AnnotationReconciler,
        *,
        recipient_id: str | None = None,
        config: Settings | None = None,
    ) -> None:
        self.delivery = delivery
        self.reconciler = reconciler
        self.recipient_id = recipient_id
        self.config = config or default_settings
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def store(self) -> LocalMessageStore:
        return self.delivery.store

    @property
    def relay(self) -> Relay:
        return self.delivery.relay

    @property
    def receipts(self) -> ReceiptChannel | None:
        return self.delivery.receipts

    @property
    def outbound(self) -> OutboundQueue:
        return self.delivery.outbound

    @property
    def receipt_log(self) -> ReceiptLog:
        return self.delivery.receipt_log

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Start the background synchronization loop."""
        if not self.running:
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop after the current pass finishes."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(0.1, float(self.config.sync_interval_seconds))

        while not self._stopping.is_set():
            try:
                await self.run_once()
            except RelayDisabledError:
                logger.info("Relay not configured; sync worker exiting")
                return
            except RelayUnavailableError as e:
                logger.warning("SyncWorker could not reach the relay: %s", e)
                await self._sleep(min(interval * 4, 30.0))
                continue
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                logger.error("SyncWorker encountered data processing error: %s", e, exc_info=True)
                await self._sleep(min(interval * 4, 30.0))
                continue

            await self._sleep(interval)

    async def _sleep(self, seconds: float) -> None:
        with contextlib.suppress(asyncio.TimeoutError):
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)

    async def run_once(self, now: int | None = None) -> SyncReport:
        """Run a single sync pass."""
        now = self.delivery.clock() if now is None else now
        report = SyncReport()

        for result in await self.delivery.dispatch_due(now):
            report.dispatched.append(result.message.id)

        for message in self.store.list_unsent(
            now, self.config.sync_max_retries, self.config.sync_batch_size
        ):
            if message.id in report.dispatched:
                continue
            result = await self.delivery.retry(message.id)
            if result.confirmed_remotely:
                report.retried.append(message.id)

        report.replayed = await self._replay_outbound()
        report.receipts_published = await self._flush_receipts()

        if self.recipient_id:
            try:
                pulled = await self.delivery.pull(
                    self.recipient_id, limit=self.config.sync_batch_size
                )
            except RelayDisabledError:
                raise
            except RelayUnavailableError as e:
                logger.warning("Pull for %s failed: %s", self.recipient_id, e)
            else:
                report.pulled = [m.id for m in pulled]

        logger.debug("Sync pass finished: %s", report)
        return report

    async def handle_change(self, change: RelayChange) -> LocalMessage | None:
        """Apply one item of the relay change feed."""
        if change.event == CHANGE_DELETE:
            # The local copy outlives the relay row.
            logger.debug("Relay row %s removed", change.row_id)
            return None
        row = change.row
        if row is None:
            return None
        if change.event == CHANGE_INSERT:
            return await self.delivery.ingest(row)
        if change.event == CHANGE_UPDATE:
            if self.store.get_by_id(row.id) is None:
                return await self.delivery.ingest(row)
            return await self.reconciler.apply_relay_update(row)
        logger.warning("Unknown relay change event %r", change.event)
        return None

    async def _replay_outbound(self) -> int:
        """Replay queued relay operations, attempting retries."""
        replayed = 0
        for record in self.outbound.pending(self.config.sync_batch_size):
            logger.debug("Replaying outbound %s %s", record.op, record.message_id)
            try:
                await self._replay(record)
            except RelayDisabledError:
                return replayed
            except RelayUnavailableError as e:
                logger.warning("Outbound %s for %s failed again: %s", record.op, record.message_id, e)
                self.outbound.mark_retry(record, str(e), self.config.sync_max_retries)
                continue
            except ValueError as e:
                logger.error("Dropping outbound record %s: %s", record.id, e)
                self.outbound.mark_retry(record, str(e), 1)
                continue
            self.outbound.mark_accepted(record)
            replayed += 1
        return replayed

    async def _replay(self, record: RelayOutbound) -> None:
        if record.op == OP_UPDATE:
            await self.relay.update(record.message_id, record.payload)
        elif record.op == OP_DELETE:
            await self.relay.delete(record.message_id)
        else:
            raise ValueError(f"Unknown outbound operation: {record.op}")

    async def _flush_receipts(self) -> int:
        if self.receipts is None:
            return 0
        published = 0
        for event in self.receipt_log.unpublished(self.config.sync_batch_size):
            payload = ReceiptPayload(
                message_id=event.message_id,
                status=event.status,
                created_at=event.recorded_at,
            )
            try:
                await self.receipts.publish(payload)
            except RelayUnavailableError as e:
                logger.warning("Receipt flush stopped: %s", e)
                break
            self.receipt_log.mark_published(event)
            published += 1
        return published
