"""HTTP implementations of the relay, blob store and receipt feed.

The relay speaks PostgREST conventions (`/rest/v1/<table>` with `col=op.value`
filters) and media lives behind a storage API (`/storage/v1/object/...`). All
transport failures surface as RelayUnavailableError so callers can leave the
local record untouched and retry later.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx

from ourdm_sync.core.settings import Settings, settings as default_settings
from ourdm_sync.schemas.relay import ReceiptPayload, RelayRow, encode_timestamp_fields
from ourdm_sync.services.errors import RelayDisabledError, RelayUnavailableError
from ourdm_sync.services.relay import RelayFilter

logger = logging.getLogger(__name__)

# HTTP status codes
HTTP_CONFLICT = 409
HTTP_BAD_REQUEST = 400
HTTP_INTERNAL_SERVER_ERROR = 500


class CircuitState(Enum):
    """Circuit breaker states."""

    CLOSED = "closed"      # Normal operation - requests allowed
    OPEN = "open"          # Circuit is open - requests blocked
    HALF_OPEN = "half_open"  # Testing if service is back - limited requests allowed


@dataclass
class CircuitBreaker:
    """Circuit breaker for relay operations."""

    failure_threshold: int = 5
    recovery_timeout: float = 30.0
    success_threshold: int = 2

    _state: CircuitState = CircuitState.CLOSED
    _failure_count: int = 0
    _success_count: int = 0
    _last_failure_time: float = 0.0

    def is_open(self) -> bool:
        """Check if circuit is open."""
        if self._state == CircuitState.OPEN:
            if time.monotonic() - self._last_failure_time > self.recovery_timeout:
                self._state = CircuitState.HALF_OPEN
                self._success_count = 0
            return self._state == CircuitState.OPEN
        return False

    def record_success(self) -> None:
        if self._state == CircuitState.HALF_OPEN:
            self._success_count += 1
            if self._success_count >= self.success_threshold:
                self._state = CircuitState.CLOSED
                self._failure_count = 0
        elif self._state == CircuitState.CLOSED:
            self._failure_count = 0

    def record_failure(self) -> None:
        self._failure_count += 1
        self._last_failure_time = time.monotonic()
        if self._state == CircuitState.HALF_OPEN or self._failure_count >= self.failure_threshold:
            self._state = CircuitState.OPEN

    @property
    def state(self) -> CircuitState:
        return self._state


class _HttpBackend:
    """Shared HTTP plumbing: lazy client, auth headers and the circuit breaker."""

    def __init__(
        self,
        config: Settings | None = None,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        circuit_breaker: CircuitBreaker | None = None,
    ) -> None:
        self.config = config or default_settings
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._circuit_breaker = circuit_breaker or CircuitBreaker()

    @property
    def enabled(self) -> bool:
        return self.config.relay_enabled

    @property
    def circuit_state(self) -> CircuitState:
        return self._circuit_breaker.state

    async def _ensure_client(self) -> httpx.AsyncClient:
        if not self.enabled:
            raise RelayDisabledError("Relay is not configured")

        async with self._client_lock:
            if self._client is None:
                self._client = httpx.AsyncClient(
                    base_url=self.config.relay_base_url or "",
                    timeout=httpx.Timeout(self.config.relay_http_timeout_seconds),
                    transport=self._transport,
                )
        return self._client

    def _auth_headers(self) -> dict[str, str]:
        headers: dict[str, str] = {}
        if self.config.relay_api_key:
            headers["apikey"] = self.config.relay_api_key
        token = self.config.relay_access_token or self.config.relay_api_key
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json_data: Any | None = None,
        content: bytes | None = None,
        params: Sequence[tuple[str, str]] | Mapping[str, str] | None = None,
        headers: Mapping[str, str] | None = None,
        allow_status: frozenset[int] = frozenset(),
    ) -> httpx.Response:
        if self._circuit_breaker.is_open():
            raise RelayUnavailableError("Relay circuit breaker is open")

        client = await self._ensure_client()
        request_headers = self._auth_headers()
        if headers:
            request_headers.update(headers)

        try:
            response = await client.request(
                method,
                path,
                json=json_data,
                content=content,
                params=params,
                headers=request_headers,
            )
        except httpx.HTTPError as exc:
            self._circuit_breaker.record_failure()
            logger.warning("Relay request %s %s failed: %s", method, path, exc)
            raise RelayUnavailableError(f"Relay request failed: {exc}") from exc

        if response.status_code >= HTTP_INTERNAL_SERVER_ERROR:
            self._circuit_breaker.record_failure()
            raise RelayUnavailableError(
                f"Relay responded with {response.status_code}",
                status_code=response.status_code,
            )

        self._circuit_breaker.record_success()
        if response.status_code >= HTTP_BAD_REQUEST and response.status_code not in allow_status:
            raise RelayUnavailableError(
                f"Relay rejected {method} {path} with {response.status_code}",
                status_code=response.status_code,
            )
        return response

    async def close(self) -> None:
        """Clean up underlying HTTP client resources."""
        async with self._client_lock:
            if self._client is not None:
                await self._client.aclose()
                self._client = None


def _filter_params(filters: Sequence[RelayFilter]) -> list[tuple[str, str]]:
    return [f.to_query() for f in filters]


def _parse_count(response: httpx.Response) -> int:
    """Read the exact count PostgREST returns in `Content-Range: */N`."""
    content_range = response.headers.get("content-range", "")
    _, _, total = content_range.rpartition("/")
    try:
        return int(total)
    except ValueError:
        return 0


class RestRelayClient(_HttpBackend):
    """Relay and ReceiptChannel over a PostgREST endpoint."""

    @property
    def _table_path(self) -> str:
        return f"/rest/v1/{self.config.relay_table}"

    async def insert(self, row: RelayRow) -> None:
        await self._request(
            "POST",
            self._table_path,
            json_data=row.to_wire(),
            headers={"Prefer": "resolution=ignore-duplicates,return=minimal"},
            allow_status=frozenset({HTTP_CONFLICT}),
        )

    async def update(self, row_id: str, fields: Mapping[str, Any]) -> None:
        await self._request(
            "PATCH",
            self._table_path,
            json_data=encode_timestamp_fields(dict(fields)),
            params=[("id", f"eq.{row_id}")],
            headers={"Prefer": "return=minimal"},
        )

    async def delete(self, row_id: str) -> None:
        await self._request(
            "DELETE",
            self._table_path,
            params=[("id", f"eq.{row_id}")],
            headers={"Prefer": "return=minimal"},
        )

    async def delete_where(self, filters: Sequence[RelayFilter]) -> int:
        if not filters:
            raise ValueError("delete_where requires at least one filter")
        response = await self._request(
            "DELETE",
            self._table_path,
            params=_filter_params(filters),
            headers={"Prefer": "count=exact,return=minimal"},
        )
        return _parse_count(response)

    async def select(
        self,
        filters: Sequence[RelayFilter],
        *,
        limit: int | None = None,
    ) -> list[RelayRow]:
        params = [("select", "*"), *_filter_params(filters), ("order", "created_at.asc")]
        if limit is not None:
            params.append(("limit", str(limit)))
        response = await self._request("GET", self._table_path, params=params)
        try:
            payload = response.json()
        except ValueError as exc:
            raise RelayUnavailableError(f"Relay returned invalid JSON: {exc}") from exc
        return [RelayRow.model_validate(item) for item in payload]

    async def publish(self, receipt: ReceiptPayload) -> None:
        await self._request(
            "POST",
            f"/rest/v1/{self.config.receipts_table}",
            json_data=receipt.model_dump(mode="json"),
            params=[("on_conflict", "message_id,status")],
            headers={"Prefer": "resolution=ignore-duplicates,return=minimal"},
            allow_status=frozenset({HTTP_CONFLICT}),
        )


class RestBlobStore(_HttpBackend):
    """BlobStore over a storage API bucket."""

    def _object_path(self, path: str) -> str:
        return f"/storage/v1/object/{self.config.media_bucket}/{path.lstrip('/')}"

    def public_url(self, path: str) -> str:
        base = (self.config.relay_base_url or "").rstrip("/")
        return f"{base}/storage/v1/object/public/{self.config.media_bucket}/{path.lstrip('/')}"

    async def upload(self, path: str, blob: bytes, content_type: str | None = None) -> str:
        await self._request(
            "POST",
            self._object_path(path),
            content=blob,
            headers={
                "Content-Type": content_type or "application/octet-stream",
                "x-upsert": "false",
            },
        )
        return self.public_url(path)

    async def remove(self, path: str) -> None:
        await self._request(
            "DELETE",
            f"/storage/v1/object/{self.config.media_bucket}",
            json_data={"prefixes": [path]},
        )
