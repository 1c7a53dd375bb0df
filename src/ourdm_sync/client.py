"""Wiring of the sync core for a host application."""

from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy.orm import Session

from ourdm_sync.core.settings import Settings, settings as default_settings
from ourdm_sync.db.session import SessionLocal
from ourdm_sync.db.time import Clock, now_ms
from ourdm_sync.repositories import (
    LocalMessageStore,
    OutboundQueue,
    ReceiptLog,
    SqlMetadataBackend,
)
from ourdm_sync.services.annotations import AnnotationReconciler
from ourdm_sync.services.crypto import load_boundary
from ourdm_sync.services.delivery import DeliveryService
from ourdm_sync.services.eviction import EvictionJob
from ourdm_sync.services.history import ChatHistory
from ourdm_sync.services.local_metadata import LocalMetadataManager
from ourdm_sync.services.relay import BlobStore, ReceiptChannel, Relay
from ourdm_sync.services.relay_client import RestBlobStore, RestRelayClient
from ourdm_sync.services.sync import SyncWorker


@dataclass
class MessagingClient:
    """All services for one device, sharing a session and clock."""

    session: Session
    store: LocalMessageStore
    metadata: LocalMetadataManager
    delivery: DeliveryService
    annotations: AnnotationReconciler
    history: ChatHistory
    sync: SyncWorker
    eviction: EvictionJob

    async def start(self) -> None:
        await self.sync.start()
        await self.eviction.start()

    async def stop(self) -> None:
        await self.sync.stop()
        await self.eviction.stop()
        for adapter in {id(a): a for a in (self.delivery.relay, self.eviction.blobs)}.values():
            close = getattr(adapter, "close", None)
            if close is not None:
                await close()
        self.session.close()


def build_client(
    *,
    session: Session | None = None,
    config: Settings | None = None,
    relay: Relay | None = None,
    receipts: ReceiptChannel | None = None,
    blobs: BlobStore | None = None,
    recipient_id: str | None = None,
    clock: Clock = now_ms,
) -> MessagingClient:
    """Assemble the services, defaulting to the REST adapters and the local database."""
    config = config or default_settings
    session = session or SessionLocal()
    if relay is None:
        rest = RestRelayClient(config)
        relay = rest
        receipts = receipts or rest
    blobs = blobs or RestBlobStore(config)

    store = LocalMessageStore(session, clock)
    backend = SqlMetadataBackend(session, clock)
    metadata = LocalMetadataManager(backend, store, config)
    boundary = load_boundary(backend, config)
    receipt_log = ReceiptLog(session, clock)
    outbound = OutboundQueue(session, clock)

    delivery = DeliveryService(
        store,
        boundary,
        relay,
        receipt_log,
        outbound,
        receipts=receipts,
        blobs=blobs,
        metadata=metadata,
        config=config,
        clock=clock,
    )
    annotations = AnnotationReconciler(store, boundary, relay, outbound, config=config, clock=clock)
    return MessagingClient(
        session=session,
        store=store,
        metadata=metadata,
        delivery=delivery,
        annotations=annotations,
        history=ChatHistory(store),
        sync=SyncWorker(delivery, annotations, recipient_id=recipient_id, config=config),
        eviction=EvictionJob(relay, blobs, config=config, clock=clock),
    )
