# tests/conftest.py
from __future__ import annotations

from collections.abc import Generator, Iterator, Mapping, Sequence
from typing import Any

import pytest
from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from ourdm_sync.core.settings import Settings
from ourdm_sync.db.session import Base
from ourdm_sync.repositories import (
    LocalMessageStore,
    OutboundQueue,
    ReceiptLog,
    SqlMetadataBackend,
)
from ourdm_sync.schemas.relay import ReceiptPayload, RelayRow
from ourdm_sync.services.annotations import AnnotationReconciler
from ourdm_sync.services.crypto import EncryptionBoundary
from ourdm_sync.services.delivery import DeliveryService
from ourdm_sync.services.errors import RelayUnavailableError
from ourdm_sync.services.local_metadata import LocalMetadataManager
from ourdm_sync.services.relay import RelayFilter, matches_all

TEST_DB_URL = "sqlite://"

# 2026-01-01T12:00:00Z
T0 = 1_767_268_800_000
SECOND = 1000
MINUTE = 60 * SECOND
HOUR = 60 * MINUTE
DAY_MS = 24 * HOUR


class FakeClock:
    """Millisecond clock the tests move by hand."""

    def __init__(self, now: int = T0) -> None:
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class FakeRelay:
    """In-memory relay; set `fail_with` to make every call raise."""

    def __init__(self) -> None:
        self.rows: dict[str, RelayRow] = {}
        self.calls: list[tuple[str, Any]] = []
        self.fail_with: Exception | None = None

    def _check(self, name: str, arg: Any) -> None:
        self.calls.append((name, arg))
        if self.fail_with is not None:
            raise self.fail_with

    async def insert(self, row: RelayRow) -> None:
        self._check("insert", row.id)
        self.rows.setdefault(row.id, row)

    async def update(self, row_id: str, fields: Mapping[str, Any]) -> None:
        self._check("update", (row_id, dict(fields)))
        if row_id in self.rows:
            self.rows[row_id] = self.rows[row_id].model_copy(update=dict(fields))

    async def delete(self, row_id: str) -> None:
        self._check("delete", row_id)
        self.rows.pop(row_id, None)

    async def delete_where(self, filters: Sequence[RelayFilter]) -> int:
        self._check("delete_where", list(filters))
        doomed = [rid for rid, row in self.rows.items() if matches_all(filters, row.model_dump())]
        for rid in doomed:
            del self.rows[rid]
        return len(doomed)

    async def select(self, filters: Sequence[RelayFilter], *, limit: int | None = None) -> list[RelayRow]:
        self._check("select", list(filters))
        found = sorted(
            (row for row in self.rows.values() if matches_all(filters, row.model_dump())),
            key=lambda r: (r.created_at, r.id),
        )
        return found if limit is None else found[:limit]


class FakeBlobStore:
    def __init__(self) -> None:
        self.blobs: dict[str, bytes] = {}
        self.failing_paths: set[str] = set()
        self.removed: list[str] = []

    async def upload(self, path: str, blob: bytes, content_type: str | None = None) -> str:
        if path in self.failing_paths:
            raise RelayUnavailableError(f"upload of {path} failed")
        self.blobs[path] = blob
        return f"https://relay.test/storage/v1/object/public/media/{path}"

    async def remove(self, path: str) -> None:
        if path in self.failing_paths:
            raise RelayUnavailableError(f"remove of {path} failed")
        self.blobs.pop(path, None)
        self.removed.append(path)


class FakeReceiptChannel:
    def __init__(self) -> None:
        self.published: list[ReceiptPayload] = []
        self.fail_with: Exception | None = None

    async def publish(self, receipt: ReceiptPayload) -> None:
        if self.fail_with is not None:
            raise self.fail_with
        self.published.append(receipt)

    def statuses(self, message_id: str) -> list[str]:
        return [r.status for r in self.published if r.message_id == message_id]


@pytest.fixture(scope="session")
def engine() -> Generator[Engine, None, None]:
    engine = create_engine(
        TEST_DB_URL,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    try:
        yield engine
    finally:
        Base.metadata.drop_all(bind=engine)
        engine.dispose()


@pytest.fixture()
def db_session(engine: Engine) -> Iterator[Session]:
    SessionLocal = sessionmaker(
        bind=engine,
        autocommit=False,
        autoflush=False,
        expire_on_commit=False,
    )
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()

        # Ensure each test sees a clean database even if commits occurred.
        with engine.begin() as cleanup_conn:
            for table in reversed(Base.metadata.sorted_tables):
                cleanup_conn.execute(table.delete())


@pytest.fixture()
def test_settings() -> Settings:
    """Settings with no relay endpoint and the stock windows."""
    return Settings(
        relay_base_url=None,
        encryption_key=None,
        sync_interval_seconds=0.1,
        eviction_interval_seconds=1.0,
    )


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def boundary() -> EncryptionBoundary:
    return EncryptionBoundary(EncryptionBoundary.generate_key())


@pytest.fixture()
def relay() -> FakeRelay:
    return FakeRelay()


@pytest.fixture()
def blobs() -> FakeBlobStore:
    return FakeBlobStore()


@pytest.fixture()
def receipts() -> FakeReceiptChannel:
    return FakeReceiptChannel()


@pytest.fixture()
def store(db_session: Session, clock: FakeClock) -> LocalMessageStore:
    return LocalMessageStore(db_session, clock)


@pytest.fixture()
def outbound(db_session: Session, clock: FakeClock) -> OutboundQueue:
    return OutboundQueue(db_session, clock)


@pytest.fixture()
def receipt_log(db_session: Session, clock: FakeClock) -> ReceiptLog:
    return ReceiptLog(db_session, clock)


@pytest.fixture()
def metadata_backend(db_session: Session, clock: FakeClock) -> SqlMetadataBackend:
    return SqlMetadataBackend(db_session, clock)


@pytest.fixture()
def metadata(
    metadata_backend: SqlMetadataBackend,
    store: LocalMessageStore,
    test_settings: Settings,
) -> LocalMetadataManager:
    return LocalMetadataManager(metadata_backend, store, test_settings)


@pytest.fixture()
def delivery(
    store: LocalMessageStore,
    boundary: EncryptionBoundary,
    relay: FakeRelay,
    receipt_log: ReceiptLog,
    outbound: OutboundQueue,
    receipts: FakeReceiptChannel,
    blobs: FakeBlobStore,
    metadata: LocalMetadataManager,
    test_settings: Settings,
    clock: FakeClock,
) -> DeliveryService:
    return DeliveryService(
        store,
        boundary,
        relay,
        receipt_log,
        outbound,
        receipts=receipts,
        blobs=blobs,
        metadata=metadata,
        config=test_settings,
        clock=clock,
    )


@pytest.fixture()
def reconciler(
    store: LocalMessageStore,
    boundary: EncryptionBoundary,
    relay: FakeRelay,
    outbound: OutboundQueue,
    test_settings: Settings,
    clock: FakeClock,
) -> AnnotationReconciler:
    return AnnotationReconciler(store, boundary, relay, outbound, config=test_settings, clock=clock)
