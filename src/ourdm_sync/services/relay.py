"""Interfaces to the transient relay, blob store and receipt feed.

The relay is a rendezvous buffer, not an archive: it holds the encrypted copy
of a message only until it is read or its TTL lapses. These protocols are the
whole surface the core needs; `relay_client` provides HTTP implementations.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Literal, Protocol

from ourdm_sync.db.time import to_datetime
from ourdm_sync.schemas.relay import TIMESTAMP_FIELDS, ReceiptPayload, RelayRow

FilterOp = Literal["eq", "neq", "lt", "lte", "gt", "gte", "is_null", "not_null"]

CHANGE_INSERT = "INSERT"
CHANGE_UPDATE = "UPDATE"
CHANGE_DELETE = "DELETE"


@dataclass(frozen=True)
class RelayFilter:
    """Column predicate usable against in-memory rows and as a PostgREST filter."""

    column: str
    op: FilterOp
    value: Any = None

    def matches(self, row: Mapping[str, Any]) -> bool:
        current = row.get(self.column)
        if self.op == "is_null":
            return current is None
        if self.op == "not_null":
            return current is not None
        if current is None:
            return False
        if self.op == "eq":
            return bool(current == self.value)
        if self.op == "neq":
            return bool(current != self.value)
        if self.op == "lt":
            return bool(current < self.value)
        if self.op == "lte":
            return bool(current <= self.value)
        if self.op == "gt":
            return bool(current > self.value)
        if self.op == "gte":
            return bool(current >= self.value)
        raise ValueError(f"Unsupported filter operator: {self.op}")

    def to_query(self) -> tuple[str, str]:
        """Return the `(column, expression)` pair for a PostgREST query string."""
        if self.op == "is_null":
            return self.column, "is.null"
        if self.op == "not_null":
            return self.column, "not.is.null"
        value = self.value
        if self.column in TIMESTAMP_FIELDS and isinstance(value, int):
            value = to_datetime(value).isoformat()
        if isinstance(value, bool):
            value = str(value).lower()
        return self.column, f"{self.op}.{value}"


def matches_all(filters: Sequence[RelayFilter], row: Mapping[str, Any]) -> bool:
    return all(f.matches(row) for f in filters)


@dataclass(frozen=True)
class RelayChange:
    """One item of the relay change feed, already filtered to this recipient."""

    event: str  # 'INSERT', 'UPDATE' or 'DELETE'
    row_id: str
    row: RelayRow | None = None


class Relay(Protocol):
    """Server-side transient store of encrypted message rows."""

    async def insert(self, row: RelayRow) -> None:
        """Store a row; inserting an id that already exists is accepted silently."""
        ...

    async def update(self, row_id: str, fields: Mapping[str, Any]) -> None: ...

    async def delete(self, row_id: str) -> None: ...

    async def delete_where(self, filters: Sequence[RelayFilter]) -> int:
        """Delete every row matching all filters and return how many went."""
        ...

    async def select(
        self,
        filters: Sequence[RelayFilter],
        *,
        limit: int | None = None,
    ) -> list[RelayRow]:
        """Return rows matching all filters, oldest first."""
        ...


class BlobStore(Protocol):
    """Server-side media storage."""

    async def upload(self, path: str, blob: bytes, content_type: str | None = None) -> str:
        """Store a blob and return its URL."""
        ...

    async def remove(self, path: str) -> None: ...


class ReceiptChannel(Protocol):
    """Append-only `delivery_receipts` feed."""

    async def publish(self, receipt: ReceiptPayload) -> None: ...
