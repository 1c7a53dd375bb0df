"""Data access helpers for the relay retry queue."""

from __future__ import annotations

from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ourdm_sync.db.time import Clock, now_ms
from ourdm_sync.models.outbound import (
    OUTBOUND_ACCEPTED,
    OUTBOUND_FAILED,
    OUTBOUND_PENDING,
    RelayOutbound,
)

__all__ = ["OutboundQueue"]


class OutboundQueue:
    """Queue of relay operations to replay after a network failure."""

    def __init__(self, session: Session, clock: Clock = now_ms) -> None:
        self.session = session
        self.clock = clock

    def enqueue(self, op: str, message_id: str, payload: dict[str, Any] | None = None) -> RelayOutbound:
        """Persist a relay operation for later replay."""
        record = RelayOutbound(
            op=op,
            message_id=message_id,
            payload=payload or {},
            status=OUTBOUND_PENDING,
            retry_count=0,
            created_at=self.clock(),
        )
        self.session.add(record)
        self.session.commit()
        return record

    def pending(self, limit: int) -> list[RelayOutbound]:
        """Return the oldest pending operations first."""
        stmt = (
            select(RelayOutbound)
            .where(RelayOutbound.status == OUTBOUND_PENDING)
            .order_by(RelayOutbound.id)
            .limit(limit)
        )
        return list(self.session.scalars(stmt))

    def mark_accepted(self, record: RelayOutbound) -> None:
        record.status = OUTBOUND_ACCEPTED
        record.last_error = None
        self.session.commit()

    def mark_retry(self, record: RelayOutbound, error: str, max_retries: int) -> None:
        """Count a failed attempt, failing the record once retries are exhausted."""
        record.retry_count += 1
        record.last_error = error
        if record.retry_count >= max_retries:
            record.status = OUTBOUND_FAILED
        self.session.commit()
