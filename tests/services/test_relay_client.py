import json

import httpx
import pytest

from ourdm_sync.core.settings import Settings
from ourdm_sync.schemas.relay import ReceiptPayload, RelayRow
from ourdm_sync.services.errors import RelayDisabledError, RelayUnavailableError
from ourdm_sync.services.relay import RelayFilter
from ourdm_sync.services.relay_client import (
    CircuitBreaker,
    CircuitState,
    RestBlobStore,
    RestRelayClient,
)

from conftest import T0

RELAY_URL = "https://relay.test"


@pytest.fixture
def relay_settings():
    return Settings(
        relay_base_url=RELAY_URL,
        relay_api_key="anon-key",
        relay_access_token="user-token",
    )


class Recorder:
    """MockTransport handler that records requests and replays canned responses."""

    def __init__(self, *responses):
        self.requests = []
        self.responses = list(responses) or [httpx.Response(201)]

    def __call__(self, request):
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def _row():
    return RelayRow(
        id="m1",
        chat_id="c1",
        sender_id="u1",
        receiver_id="u2",
        content="Y2lwaGVy",
        iv="aXY=",
        created_at=T0,
        expires_at=T0 + 1000,
    )


@pytest.mark.asyncio
async def test_insert_posts_row_with_auth_and_duplicate_tolerance(relay_settings):
    recorder = Recorder(httpx.Response(201))
    client = RestRelayClient(relay_settings, transport=httpx.MockTransport(recorder))

    await client.insert(_row())

    [request] = recorder.requests
    assert request.method == "POST"
    assert request.url.path == "/rest/v1/pending_messages"
    assert request.headers["apikey"] == "anon-key"
    assert request.headers["authorization"] == "Bearer user-token"
    assert "resolution=ignore-duplicates" in request.headers["prefer"]
    body = json.loads(request.content)
    assert body["id"] == "m1"
    assert body["created_at"] == "2026-01-01T12:00:00+00:00"
    await client.close()


@pytest.mark.asyncio
async def test_insert_conflict_counts_as_accepted(relay_settings):
    client = RestRelayClient(
        relay_settings, transport=httpx.MockTransport(Recorder(httpx.Response(409)))
    )

    await client.insert(_row())
    await client.close()


@pytest.mark.asyncio
async def test_update_filters_by_id_and_encodes_timestamps(relay_settings):
    recorder = Recorder(httpx.Response(204))
    client = RestRelayClient(relay_settings, transport=httpx.MockTransport(recorder))

    await client.update("m1", {"edited_at": T0, "file_url": None})

    [request] = recorder.requests
    assert request.method == "PATCH"
    assert request.url.params["id"] == "eq.m1"
    assert json.loads(request.content) == {
        "edited_at": "2026-01-01T12:00:00+00:00",
        "file_url": None,
    }
    await client.close()


@pytest.mark.asyncio
async def test_delete_where_returns_exact_count(relay_settings):
    recorder = Recorder(httpx.Response(204, headers={"Content-Range": "*/3"}))
    client = RestRelayClient(relay_settings, transport=httpx.MockTransport(recorder))

    deleted = await client.delete_where([RelayFilter("expires_at", "lt", T0)])

    assert deleted == 3
    [request] = recorder.requests
    assert request.method == "DELETE"
    assert request.url.params["expires_at"] == "lt.2026-01-01T12:00:00+00:00"
    assert "count=exact" in request.headers["prefer"]
    await client.close()


@pytest.mark.asyncio
async def test_delete_where_requires_a_filter(relay_settings):
    client = RestRelayClient(relay_settings, transport=httpx.MockTransport(Recorder()))

    with pytest.raises(ValueError):
        await client.delete_where([])


@pytest.mark.asyncio
async def test_select_parses_rows_and_builds_query(relay_settings):
    payload = [_row().to_wire()]
    recorder = Recorder(httpx.Response(200, json=payload))
    client = RestRelayClient(relay_settings, transport=httpx.MockTransport(recorder))

    rows = await client.select(
        [RelayFilter("receiver_id", "eq", "u2"), RelayFilter("file_path", "not_null")],
        limit=10,
    )

    assert rows == [_row()]
    params = recorder.requests[0].url.params
    assert params["receiver_id"] == "eq.u2"
    assert params["file_path"] == "not.is.null"
    assert params["order"] == "created_at.asc"
    assert params["limit"] == "10"
    await client.close()


@pytest.mark.asyncio
async def test_publish_receipt(relay_settings):
    recorder = Recorder(httpx.Response(201))
    client = RestRelayClient(relay_settings, transport=httpx.MockTransport(recorder))

    await client.publish(ReceiptPayload(message_id="m1", status="read", created_at=T0))

    [request] = recorder.requests
    assert request.url.path == "/rest/v1/delivery_receipts"
    assert json.loads(request.content)["status"] == "read"
    await client.close()


@pytest.mark.asyncio
async def test_server_error_raises_relay_unavailable(relay_settings):
    client = RestRelayClient(
        relay_settings, transport=httpx.MockTransport(Recorder(httpx.Response(503)))
    )

    with pytest.raises(RelayUnavailableError) as excinfo:
        await client.delete("m1")

    assert excinfo.value.status_code == 503
    await client.close()


@pytest.mark.asyncio
async def test_client_error_carries_status(relay_settings):
    client = RestRelayClient(
        relay_settings, transport=httpx.MockTransport(Recorder(httpx.Response(401)))
    )

    with pytest.raises(RelayUnavailableError) as excinfo:
        await client.delete("m1")

    assert excinfo.value.status_code == 401
    assert client.circuit_state == CircuitState.CLOSED
    await client.close()


@pytest.mark.asyncio
async def test_transport_error_is_translated(relay_settings):
    def boom(request):
        raise httpx.ConnectError("no route", request=request)

    client = RestRelayClient(relay_settings, transport=httpx.MockTransport(boom))

    with pytest.raises(RelayUnavailableError):
        await client.delete("m1")
    await client.close()


@pytest.mark.asyncio
async def test_open_circuit_blocks_requests(relay_settings):
    recorder = Recorder(httpx.Response(500))
    breaker = CircuitBreaker(failure_threshold=2, recovery_timeout=60.0)
    client = RestRelayClient(
        relay_settings, transport=httpx.MockTransport(recorder), circuit_breaker=breaker
    )

    for _ in range(2):
        with pytest.raises(RelayUnavailableError):
            await client.delete("m1")
    with pytest.raises(RelayUnavailableError, match="circuit breaker"):
        await client.delete("m1")

    assert len(recorder.requests) == 2
    assert client.circuit_state == CircuitState.OPEN
    await client.close()


def test_circuit_half_opens_after_timeout():
    breaker = CircuitBreaker(failure_threshold=1, recovery_timeout=10.0, success_threshold=1)
    breaker.record_failure()
    assert breaker.is_open() is True

    breaker._last_failure_time -= 11.0
    assert breaker.is_open() is False
    assert breaker.state == CircuitState.HALF_OPEN

    breaker.record_success()
    assert breaker.state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_unconfigured_relay_is_disabled():
    client = RestRelayClient(Settings(relay_base_url=None))

    with pytest.raises(RelayDisabledError):
        await client.insert(_row())


@pytest.mark.asyncio
async def test_blob_upload_and_remove(relay_settings):
    recorder = Recorder(httpx.Response(200))
    store = RestBlobStore(relay_settings, transport=httpx.MockTransport(recorder))

    url = await store.upload("image/u1/m1", b"\x89PNG", "image/png")
    await store.remove("image/u1/m1")

    assert url == f"{RELAY_URL}/storage/v1/object/public/media/image/u1/m1"
    upload, remove = recorder.requests
    assert upload.method == "POST"
    assert upload.url.path == "/storage/v1/object/media/image/u1/m1"
    assert upload.headers["content-type"] == "image/png"
    assert upload.content == b"\x89PNG"
    assert remove.method == "DELETE"
    assert remove.url.path == "/storage/v1/object/media"
    assert json.loads(remove.content) == {"prefixes": ["image/u1/m1"]}
    await store.close()


def test_filter_matches_rows():
    row = {"created_at": 5, "file_path": None, "receiver_id": "u2"}

    assert RelayFilter("created_at", "lt", 10).matches(row)
    assert not RelayFilter("created_at", "gte", 10).matches(row)
    assert RelayFilter("file_path", "is_null").matches(row)
    assert not RelayFilter("file_path", "not_null").matches(row)
    assert RelayFilter("receiver_id", "neq", "u1").matches(row)
    assert not RelayFilter("expires_at", "lt", 10).matches(row)
