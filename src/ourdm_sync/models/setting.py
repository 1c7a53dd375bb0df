"""Key/value rows for device-only state."""

from typing import Any

from sqlalchemy import JSON, BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from ourdm_sync.db.session import Base


class LocalSetting(Base):
    """Namespaced key/value entry that never leaves the device."""

    __tablename__ = "local_setting"

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[Any] = mapped_column(JSON, nullable=True)
    updated_at: Mapped[int] = mapped_column(BigInteger, nullable=False)
