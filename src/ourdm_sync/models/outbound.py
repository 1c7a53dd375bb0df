"""SQLAlchemy model for relay calls awaiting retry."""

from typing import Any

from sqlalchemy import JSON, VARCHAR, BigInteger, Integer, SmallInteger, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from ourdm_sync.db.session import Base

OUTBOUND_PENDING = "pending"
OUTBOUND_ACCEPTED = "accepted"
OUTBOUND_FAILED = "failed"

OP_UPDATE = "update"
OP_DELETE = "delete"


class RelayOutbound(Base):
    """A relay operation whose local counterpart has already been committed.

    Rows are written when the network leg of a store-then-sync operation fails
    and are replayed by the sync worker until accepted or out of retries.
    """

    __tablename__ = "relay_outbound"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    op: Mapped[str] = mapped_column(String(16), nullable=False)  # 'update' or 'delete'
    message_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    payload: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[str] = mapped_column(
        VARCHAR(20), nullable=False, default=OUTBOUND_PENDING
    )  # 'pending', 'accepted', 'failed'
    retry_count: Mapped[int] = mapped_column(SmallInteger, nullable=False, default=0)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
