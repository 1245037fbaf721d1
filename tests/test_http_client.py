import httpx
import pytest

from courierhub.core.http_client import (
    CircuitBreakerConfig,
    CircuitOpenError,
    CircuitState,
    RateLimitExceeded,
    ResilientHTTPClient,
    RetryConfig,
)


def make_client(handler, max_retries=1, failure_threshold=5) -> ResilientHTTPClient:
    client = ResilientHTTPClient(
        retry_config=RetryConfig(
            max_retries=max_retries,
            base_delay=0,
            max_delay=0,
            jitter_factor=0,
        ),
        circuit_config=CircuitBreakerConfig(failure_threshold=failure_threshold, timeout_seconds=60.0),
        timeout=5.0,
    )
    client._client = httpx.AsyncClient(
        transport=httpx.MockTransport(handler),
        timeout=client.timeout,
        headers=client.default_headers,
    )
    return client


@pytest.mark.asyncio
async def test_request_retries_after_retry_after_header():
    """
    Ensure 429 with Retry-After is retried, then recovers.
    """
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        if call_count == 1:
            # Immediate retry allowed; no real sleep expected
            return httpx.Response(429, headers={"Retry-After": "0"})
        return httpx.Response(200, json={"ok": True})

    client = make_client(handler)
    resp = await client.request("GET", "https://carrier.test/rates")
    await client.close()

    assert resp.status_code == 200
    assert call_count == 2
    state = client._get_host_state("carrier.test")
    assert state.failure_count == 0
    assert state.circuit_state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_rate_limit_exceeded_raises_fast():
    """
    Very long Retry-After should raise RateLimitExceeded without blocking for minutes.
    """

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "120"})

    client = make_client(handler, max_retries=2)

    with pytest.raises(RateLimitExceeded) as exc_info:
        await client.request("GET", "https://carrier.test/rates")
    await client.close()

    assert exc_info.value.wait_time == 120


@pytest.mark.asyncio
async def test_fatal_4xx_is_not_retried():
    """
    A 400 surfaces immediately as HTTPStatusError.
    """
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        return httpx.Response(400, json={"error": "bad pincode"})

    client = make_client(handler, max_retries=3)

    with pytest.raises(httpx.HTTPStatusError) as exc_info:
        await client.post("https://carrier.test/book", json={})
    await client.close()

    assert exc_info.value.response.status_code == 400
    assert call_count == 1


@pytest.mark.asyncio
async def test_5xx_retried_then_raised():
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        return httpx.Response(503)

    client = make_client(handler, max_retries=2)

    with pytest.raises(httpx.HTTPStatusError):
        await client.request("GET", "https://carrier.test/track")
    await client.close()

    assert call_count == 3


@pytest.mark.asyncio
async def test_circuit_opens_after_repeated_failures():
    """
    Once the failure threshold is hit, requests are rejected without a network call.
    """
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        return httpx.Response(502)

    client = make_client(handler, max_retries=0, failure_threshold=2)

    for _ in range(2):
        with pytest.raises(httpx.HTTPStatusError):
            await client.request("GET", "https://carrier.test/rates")

    with pytest.raises(CircuitOpenError):
        await client.request("GET", "https://carrier.test/rates")
    await client.close()

    assert call_count == 2
    assert client._get_host_state("carrier.test").circuit_state == CircuitState.OPEN

    # Other hosts are unaffected
    assert client._get_host_state("other.test").circuit_state == CircuitState.CLOSED


@pytest.mark.asyncio
async def test_timeout_retried_and_reraised():
    call_count = 0

    def handler(request: httpx.Request) -> httpx.Response:
        nonlocal call_count
        call_count += 1
        raise httpx.ReadTimeout("slow carrier", request=request)

    client = make_client(handler, max_retries=1)

    with pytest.raises(httpx.TimeoutException):
        await client.request("GET", "https://carrier.test/rates")
    await client.close()

    assert call_count == 2
