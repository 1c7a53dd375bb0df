"""Key/value persistence for device-only metadata."""

from __future__ import annotations

from typing import Any, Protocol

from sqlalchemy.orm import Session

from ourdm_sync.db.time import Clock, now_ms
from ourdm_sync.models.setting import LocalSetting

__all__ = ["MetadataBackend", "SqlMetadataBackend"]


class MetadataBackend(Protocol):
    """Scoped key/value storage that survives sessions and never syncs."""

    def get(self, key: str, default: Any = None) -> Any: ...

    def set(self, key: str, value: Any) -> None: ...

    def delete(self, key: str) -> None: ...


class SqlMetadataBackend:
    """MetadataBackend persisted in the `local_setting` table."""

    def __init__(self, session: Session, clock: Clock = now_ms) -> None:
        self.session = session
        self.clock = clock

    def get(self, key: str, default: Any = None) -> Any:
        row = self.session.get(LocalSetting, key)
        if row is None or row.value is None:
            return default
        return row.value

    def set(self, key: str, value: Any) -> None:
        row = self.session.get(LocalSetting, key)
        if row is None:
            row = LocalSetting(key=key, value=value, updated_at=self.clock())
            self.session.add(row)
        else:
            row.value = value
            row.updated_at = self.clock()
        self.session.commit()

    def delete(self, key: str) -> None:
        row = self.session.get(LocalSetting, key)
        if row is not None:
            self.session.delete(row)
            self.session.commit()
