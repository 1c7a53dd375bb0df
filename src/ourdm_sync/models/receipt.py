# src/ourdm_sync/models/receipt.py
"""Model recording receipts already applied on this device."""

from sqlalchemy import BigInteger, Boolean, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from ourdm_sync.db.session import Base


class ReceiptEvent(Base):
    """A `(message_id, status)` pair observed or emitted at least once.

    The unique constraint is what makes receipt handling idempotent: a second
    observation of the same pair finds the row and triggers no side effects.
    """

    __tablename__ = "receipt_event"
    __table_args__ = (
        UniqueConstraint("message_id", "status", name="uq_receipt_event_message_status"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    message_id: Mapped[str] = mapped_column(String(36), nullable=False, index=True)
    # 'delivered' or 'read'.
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    recorded_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
    # False until the receipt has been appended to the relay's receipt feed.
    published: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
