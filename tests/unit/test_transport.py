from __future__ import annotations

import asyncio
import gzip
import json
from collections.abc import Callable
from decimal import Decimal

import httpx
import pytest

from stockwatch.domain.models import Record
from stockwatch.services.transport import BatchTransport, is_retryable_status

ENDPOINT = "http://sync.test/api/sync/busy"


def _records(count: int) -> list[Record]:
    return [
        Record(code=i, item_name=f"Item {i}", sale_price=Decimal("2.50"), total_available_stock=Decimal(i))
        for i in range(1, count + 1)
    ]


class _Endpoint:
    """Scripted endpoint: answers with the given statuses, repeating the last one."""

    def __init__(self, *statuses: int) -> None:
        self.statuses = list(statuses)
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        return httpx.Response(status, json={"ok": status < 400})


def _transport(
    handler: Callable[[httpx.Request], httpx.Response], **kwargs
) -> tuple[BatchTransport, list[float]]:
    sleeps: list[float] = []

    async def fake_sleep(seconds: float) -> None:
        sleeps.append(seconds)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return BatchTransport(ENDPOINT, client=client, sleep=fake_sleep, **kwargs), sleeps


@pytest.mark.parametrize(
    ("status", "retryable"),
    [(500, True), (503, True), (408, True), (429, True), (400, False), (401, False), (404, False)],
)
def test_retryable_statuses(status: int, retryable: bool) -> None:
    assert is_retryable_status(status) is retryable


@pytest.mark.asyncio
async def test_send_retries_transient_errors_then_succeeds() -> None:
    endpoint = _Endpoint(503, 503, 200)
    transport, sleeps = _transport(endpoint, max_retries=3, retry_base_delay_seconds=1.0)

    assert await transport.send(_records(3)) is True

    assert len(endpoint.requests) == 3
    assert len(sleeps) == 2
    # base × 2^(n-1) plus up to one second of jitter
    assert 1.0 <= sleeps[0] <= 2.0
    assert 2.0 <= sleeps[1] <= 3.0


@pytest.mark.asyncio
async def test_send_gives_up_after_max_retries() -> None:
    endpoint = _Endpoint(502)
    transport, sleeps = _transport(endpoint, max_retries=2, retry_base_delay_seconds=0.5)

    assert await transport.send(_records(2)) is False

    assert len(endpoint.requests) == 3
    assert len(sleeps) == 2


@pytest.mark.asyncio
async def test_send_does_not_retry_client_errors() -> None:
    endpoint = _Endpoint(400)
    transport, sleeps = _transport(endpoint)

    assert await transport.send(_records(2)) is False

    assert len(endpoint.requests) == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_send_retries_network_errors() -> None:
    calls = 0

    def flaky(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise httpx.ConnectError("connection refused", request=request)
        return httpx.Response(200)

    transport, sleeps = _transport(flaky, max_retries=1)

    assert await transport.send(_records(1)) is True
    assert calls == 2
    assert len(sleeps) == 1


@pytest.mark.asyncio
async def test_empty_batch_is_a_successful_no_op() -> None:
    endpoint = _Endpoint(200)
    transport, _ = _transport(endpoint)

    assert await transport.send([]) is True
    assert endpoint.requests == []


@pytest.mark.asyncio
async def test_large_batches_are_gzip_compressed() -> None:
    endpoint = _Endpoint(200)
    transport, _ = _transport(endpoint, compression_threshold_records=50)

    assert await transport.send(_records(51)) is True

    request = endpoint.requests[0]
    assert request.headers["Content-Encoding"] == "gzip"
    payload = json.loads(gzip.decompress(request.content))
    assert len(payload) == 51
    assert payload[0]["Code"] == 1
    assert payload[0]["SalePrice"] == 2.5


@pytest.mark.asyncio
async def test_batches_at_threshold_are_sent_uncompressed() -> None:
    endpoint = _Endpoint(200)
    transport, _ = _transport(endpoint, compression_threshold_records=50)

    await transport.send(_records(50))

    request = endpoint.requests[0]
    assert "Content-Encoding" not in request.headers
    assert request.headers["Content-Type"] == "application/json"
    assert len(json.loads(request.content)) == 50


@pytest.mark.asyncio
async def test_compression_can_be_disabled() -> None:
    endpoint = _Endpoint(200)
    transport, _ = _transport(endpoint, compression_enabled=False, compression_threshold_records=1)

    await transport.send(_records(5))

    assert "Content-Encoding" not in endpoint.requests[0].headers


@pytest.mark.asyncio
async def test_configured_headers_are_sent() -> None:
    endpoint = _Endpoint(200)
    transport, _ = _transport(endpoint, headers={"X-Api-Key": "k-123"})

    await transport.send(_records(1))

    assert endpoint.requests[0].headers["X-Api-Key"] == "k-123"


@pytest.mark.asyncio
async def test_cancellation_during_backoff_propagates() -> None:
    endpoint = _Endpoint(503)

    async def cancelled_sleep(seconds: float) -> None:
        raise asyncio.CancelledError()

    client = httpx.AsyncClient(transport=httpx.MockTransport(endpoint))
    transport = BatchTransport(ENDPOINT, client=client, sleep=cancelled_sleep)

    with pytest.raises(asyncio.CancelledError):
        await transport.send(_records(1))
    assert len(endpoint.requests) == 1


@pytest.mark.asyncio
async def test_aclose_leaves_injected_client_open() -> None:
    client = httpx.AsyncClient(transport=httpx.MockTransport(_Endpoint(200)))
    async with BatchTransport(ENDPOINT, client=client):
        pass
    assert not client.is_closed
    await client.aclose()


@pytest.mark.asyncio
async def test_undecodable_response_fails_without_retry() -> None:
    calls = 0

    def corrupt(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        return httpx.Response(
            200, headers={"Content-Encoding": "gzip"}, stream=httpx.ByteStream(b"not gzip at all")
        )

    transport, sleeps = _transport(corrupt, max_retries=3)

    assert await transport.send(_records(1)) is False
    assert calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_unsupported_scheme_is_not_retried() -> None:
    calls = 0

    def bad_scheme(request: httpx.Request) -> httpx.Response:
        nonlocal calls
        calls += 1
        raise httpx.UnsupportedProtocol("Request URL has an unsupported protocol 'ftp://'.")

    transport, sleeps = _transport(bad_scheme, max_retries=3)

    assert await transport.send(_records(2)) is False
    assert calls == 1
    assert sleeps == []


@pytest.mark.asyncio
async def test_resending_a_batch_transmits_it_again() -> None:
    endpoint = _Endpoint(200)
    transport, _ = _transport(endpoint)
    batch = _records(3)

    assert await transport.send(batch) is True
    assert await transport.send(batch) is True

    assert len(endpoint.requests) == 2
    assert json.loads(endpoint.requests[0].content) == json.loads(endpoint.requests[1].content)
