"""
Resilient HTTP Client for Carrier API Calls

- Exponential backoff with jitter to prevent thundering herd
- 429 detection with Retry-After header respect
- Circuit breaker pattern for repeated failures
- Transient failures (timeouts, connect errors, 429/5xx) are retried;
  every other 4xx is fatal and surfaces immediately

All carrier adapters MUST use this client for outbound calls.
"""
import asyncio
import logging
import random
import time
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import Dict, Optional
from urllib.parse import urlparse

import httpx

logger = logging.getLogger(__name__)

MAX_RATE_LIMIT_WAIT = 60.0  # Maximum seconds we'll wait on a Retry-After


class RateLimitExceeded(Exception):
    """
    Raised when a host is rate-limited for longer than MAX_RATE_LIMIT_WAIT.

    Lets callers fail fast instead of blocking a booking or quote request.
    """
    def __init__(self, host: str, wait_time: float):
        self.host = host
        self.wait_time = wait_time
        super().__init__(f"Rate limited by {host} for {wait_time:.0f}s")


class CircuitOpenError(Exception):
    """Raised when the circuit breaker for a host rejects the request."""
    def __init__(self, host: str, remaining: float):
        self.host = host
        self.remaining = remaining
        super().__init__(f"Circuit breaker OPEN for {host} ({remaining:.1f}s until retry)")


class CircuitState(Enum):
    CLOSED = "closed"      # Normal operation
    OPEN = "open"          # Failing, reject requests
    HALF_OPEN = "half_open"  # Testing if service recovered


@dataclass
class RetryConfig:
    """Configuration for retry behavior."""
    max_retries: int = 3
    base_delay: float = 0.5           # Base delay in seconds
    max_delay: float = 10.0           # Maximum delay cap
    exponential_base: float = 2.0     # Exponential backoff multiplier
    jitter_factor: float = 0.5        # Random jitter (0-1)

    # Status codes that should trigger retry
    retryable_status_codes: tuple = (429, 500, 502, 503, 504)


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker."""
    failure_threshold: int = 5        # Failures before opening circuit
    success_threshold: int = 2        # Successes to close circuit
    timeout_seconds: float = 60.0     # Time before half-open test


@dataclass
class HostState:
    """Tracks circuit breaker state for a specific host."""
    circuit_state: CircuitState = CircuitState.CLOSED
    failure_count: int = 0
    success_count: int = 0
    last_failure_time: float = 0.0


class ResilientHTTPClient:
    """
    Async HTTP client with built-in resilience patterns.

    Usage:
        async with ResilientHTTPClient(timeout=20.0) as client:
            response = await client.request("POST", url, json=payload)

    Tests may assign ``client._client`` an ``httpx.AsyncClient`` built on a
    ``MockTransport``.
    """

    def __init__(
        self,
        retry_config: Optional[RetryConfig] = None,
        circuit_config: Optional[CircuitBreakerConfig] = None,
        timeout: float = 30.0,
        default_headers: Optional[Dict[str, str]] = None,
    ):
        self.retry_config = retry_config or RetryConfig()
        self.circuit_config = circuit_config or CircuitBreakerConfig()
        self.timeout = timeout
        self.default_headers = default_headers or {}

        self._client: Optional[httpx.AsyncClient] = None
        self._host_states: Dict[str, HostState] = {}

    async def __aenter__(self):
        await self.init()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def init(self):
        """Initialize client without context manager. Must call close() when done."""
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=self.timeout,
                headers=self.default_headers,
                follow_redirects=True,
            )
        return self

    async def close(self):
        """Close the client. Use this when not using context manager."""
        if self._client:
            await self._client.aclose()
            self._client = None

    def _get_host(self, url: str) -> str:
        return urlparse(url).netloc

    def _get_host_state(self, host: str) -> HostState:
        if host not in self._host_states:
            self._host_states[host] = HostState()
        return self._host_states[host]

    def _calculate_backoff(self, attempt: int) -> float:
        """
        Calculate delay with exponential backoff and jitter.

        Formula: min(base * (exp_base ^ attempt) + jitter, max_delay)
        """
        cfg = self.retry_config
        delay = cfg.base_delay * (cfg.exponential_base ** attempt)
        jitter = delay * cfg.jitter_factor * (2 * random.random() - 1)
        delay += jitter
        return max(0.0, min(delay, cfg.max_delay))

    def _check_circuit_breaker(self, host: str) -> None:
        """Raise CircuitOpenError if the circuit for host is open."""
        state = self._get_host_state(host)
        cfg = self.circuit_config
        now = time.time()

        if state.circuit_state != CircuitState.OPEN:
            return

        if now - state.last_failure_time > cfg.timeout_seconds:
            logger.info(f"[CIRCUIT] {host}: Moving to HALF_OPEN for test request")
            state.circuit_state = CircuitState.HALF_OPEN
            state.success_count = 0
            return

        remaining = cfg.timeout_seconds - (now - state.last_failure_time)
        logger.warning(f"[CIRCUIT] {host}: OPEN, rejecting request ({remaining:.1f}s until retry)")
        raise CircuitOpenError(host, remaining)

    def _record_success(self, host: str) -> None:
        state = self._get_host_state(host)
        state.failure_count = 0

        if state.circuit_state == CircuitState.HALF_OPEN:
            state.success_count += 1
            if state.success_count >= self.circuit_config.success_threshold:
                logger.info(f"[CIRCUIT] {host}: Closing circuit after {state.success_count} successes")
                state.circuit_state = CircuitState.CLOSED

    def _record_failure(self, host: str) -> None:
        state = self._get_host_state(host)
        state.failure_count += 1
        state.last_failure_time = time.time()
        state.success_count = 0

        if state.circuit_state == CircuitState.HALF_OPEN:
            logger.warning(f"[CIRCUIT] {host}: Test request failed, reopening circuit")
            state.circuit_state = CircuitState.OPEN
        elif state.failure_count >= self.circuit_config.failure_threshold:
            logger.error(f"[CIRCUIT] {host}: Opening circuit after {state.failure_count} failures")
            state.circuit_state = CircuitState.OPEN

    def _parse_retry_after(self, response: httpx.Response) -> Optional[float]:
        """Parse Retry-After header, returns seconds to wait."""
        retry_after = response.headers.get("Retry-After")
        if not retry_after:
            return None

        try:
            return float(int(retry_after))
        except ValueError:
            pass

        try:
            return parsedate_to_datetime(retry_after).timestamp() - time.time()
        except (ValueError, TypeError):
            return None

    async def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """
        Make an HTTP request with full resilience.

        Returns:
            httpx.Response on 2xx/3xx

        Raises:
            httpx.HTTPStatusError: On a fatal 4xx, or a retryable status after retries
            httpx.TimeoutException / httpx.ConnectError: After retries are exhausted
            RateLimitExceeded: On a Retry-After exceeding MAX_RATE_LIMIT_WAIT
            CircuitOpenError: When the host's circuit is open
        """
        if not self._client:
            await self.init()

        host = self._get_host(url)
        self._check_circuit_breaker(host)
        return await self._do_request_with_retry(method, url, host, **kwargs)

    async def _do_request_with_retry(self, method: str, url: str, host: str, **kwargs) -> httpx.Response:
        cfg = self.retry_config
        last_exception: Optional[Exception] = None

        for attempt in range(cfg.max_retries + 1):
            try:
                logger.debug(f"[HTTP] {method} {url} (attempt {attempt + 1}/{cfg.max_retries + 1})")
                response = await self._client.request(method, url, **kwargs)

                if response.status_code in cfg.retryable_status_codes:
                    self._record_failure(host)

                    if response.status_code == 429:
                        wait_time = self._parse_retry_after(response)
                        if wait_time is not None and wait_time > MAX_RATE_LIMIT_WAIT:
                            logger.error(f"[429] {host}: Wait time {wait_time:.0f}s exceeds max, failing fast")
                            raise RateLimitExceeded(host, wait_time)
                    else:
                        wait_time = None

                    if attempt < cfg.max_retries:
                        delay = wait_time if wait_time is not None else self._calculate_backoff(attempt)
                        logger.warning(
                            f"[HTTP] {host}: Status {response.status_code}, "
                            f"retrying in {delay:.1f}s (attempt {attempt + 1})"
                        )
                        await asyncio.sleep(delay)
                        continue

                    response.raise_for_status()

                if 400 <= response.status_code < 500:
                    logger.error(f"[HTTP] {host}: Fatal status {response.status_code}, not retrying")
                    response.raise_for_status()

                if response.status_code >= 500:
                    self._record_failure(host)
                    response.raise_for_status()

                self._record_success(host)
                return response

            except httpx.TimeoutException as e:
                self._record_failure(host)
                last_exception = e
                if attempt < cfg.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(f"[HTTP] {host}: Timeout, retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue

            except httpx.ConnectError as e:
                self._record_failure(host)
                last_exception = e
                if attempt < cfg.max_retries:
                    delay = self._calculate_backoff(attempt)
                    logger.warning(f"[HTTP] {host}: Connection error, retrying in {delay:.1f}s")
                    await asyncio.sleep(delay)
                    continue

        logger.error(f"[HTTP] {host}: All {cfg.max_retries + 1} attempts failed")
        raise last_exception


def get_carrier_client(timeout: float, retry_config: Optional[RetryConfig] = None) -> ResilientHTTPClient:
    """
    Get a client configured for carrier APIs.

    Carriers are booking-critical: short retry budget, circuit opens after 5
    consecutive failures and re-tests after a minute.
    """
    return ResilientHTTPClient(
        retry_config=retry_config or RetryConfig(
            max_retries=2,
            base_delay=0.5,
            max_delay=5.0,
        ),
        circuit_config=CircuitBreakerConfig(
            failure_threshold=5,
            success_threshold=2,
            timeout_seconds=60.0,
        ),
        timeout=timeout,
        default_headers={"Accept": "application/json"},
    )
