"""Periodic reclamation of server-held media.

Each pass looks for relay rows older than the media-retention threshold that
still carry a `file_url`. For every such row the blob is removed first, when
the row knows its storage path, and the media reference is nulled second, so
an interruption can leave at most a reference to an already-removed blob,
which the next pass clears again.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field

from ourdm_sync.core.settings import Settings, settings as default_settings
from ourdm_sync.db.time import Clock, now_ms
from ourdm_sync.schemas.relay import RelayRow
from ourdm_sync.services.errors import RelayDisabledError, RelayUnavailableError
from ourdm_sync.services.relay import BlobStore, Relay, RelayFilter

logger = logging.getLogger(__name__)

# Relay fields cleared once the blob is gone; the rest of the row is untouched.
MEDIA_REFERENCE_FIELDS = ("file_url", "file_path")


@dataclass
class EvictionReport:
    """Outcome of one eviction pass."""

    evicted: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    purged: int = 0
    interrupted: bool = False


class EvictionJob:
    """Removes expired media from the blob store and nulls its relay references."""

    def __init__(
        self,
        relay: Relay,
        blobs: BlobStore,
        *,
        config: Settings | None = None,
        clock: Clock = now_ms,
    ) -> None:
        self.relay = relay
        self.blobs = blobs
        self.config = config or default_settings
        self.clock = clock
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    async def start(self) -> None:
        """Start the eviction loop."""
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """Stop the loop; an in-progress pass halts before its next item."""
        if self._task is None:
            return
        self._stopping.set()
        await self._task
        self._task = None

    async def _run(self) -> None:
        interval = max(1.0, float(self.config.eviction_interval_seconds))

        while not self._stopping.is_set():
            try:
                report = await self.run_once()
            except RelayDisabledError:
                logger.info("Relay not configured; eviction job exiting")
                return
            except RelayUnavailableError as e:
                logger.warning("Eviction pass could not reach the relay: %s", e)
            else:
                if report.evicted or report.failed or report.purged:
                    logger.info(
                        "Eviction pass: %d evicted, %d failed, %d purged",
                        len(report.evicted),
                        len(report.failed),
                        report.purged,
                    )
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(self._stopping.wait(), timeout=interval)

    async def run_once(self, now: int | None = None) -> EvictionReport:
        """Run one pass over the relay.

        A failure on one item is logged and leaves that item for the next
        pass; it never aborts the rest of the batch.
        """
        now = self.clock() if now is None else now
        report = EvictionReport()
        cutoff = now - self.config.media_retention_ms

        rows = await self.relay.select(
            [
                RelayFilter("created_at", "lt", cutoff),
                RelayFilter("file_url", "not_null"),
            ],
            limit=self.config.eviction_batch_size,
        )
        logger.debug("Found %d relay rows with media past retention", len(rows))

        for row in rows:
            if self._stopping.is_set():
                report.interrupted = True
                break
            if await self._evict(row):
                report.evicted.append(row.id)
            else:
                report.failed.append(row.id)

        if self.config.eviction_purge_expired_rows and not report.interrupted:
            report.purged = await self._purge_expired(now)
        return report

    async def _evict(self, row: RelayRow) -> bool:
        path = row.file_path
        # Forwarded copies reference a blob they do not own; only the reference goes.
        if path is not None:
            try:
                await self.blobs.remove(path)
            except RelayUnavailableError as e:
                logger.warning("Could not remove blob %s for message %s: %s", path, row.id, e)
                return False
        try:
            await self.relay.update(row.id, {name: None for name in MEDIA_REFERENCE_FIELDS})
        except RelayUnavailableError as e:
            logger.warning("Media reference on %s not cleared: %s", row.id, e)
            return False
        logger.debug("Evicted media %s from message %s", path or row.file_url, row.id)
        return True

    async def _purge_expired(self, now: int) -> int:
        try:
            return await self.relay.delete_where([RelayFilter("expires_at", "lt", now)])
        except RelayUnavailableError as e:
            logger.warning("Could not purge expired relay rows: %s", e)
            return 0
