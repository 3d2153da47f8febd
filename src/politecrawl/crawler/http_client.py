"""
aiohttp request executor with retries, timeouts and observability.
"""

from __future__ import annotations

import asyncio
import time
from typing import Any, Dict, Mapping, Optional

import aiohttp
import structlog
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, wait_exponential

from politecrawl.concurrency.cancellation import CancellationToken
from politecrawl.config.config import HttpClientConfig
from politecrawl.exceptions import FetchError, FetchTimeoutError
from politecrawl.observability.metrics import METRICS
from politecrawl.protocols import FetchResponse

logger = structlog.get_logger(__name__)

_CHUNK_SIZE = 64 * 1024


class _RetryableStatusError(Exception):
    """Carries a response whose status should be retried."""

    def __init__(self, response: FetchResponse) -> None:
        super().__init__(f"HTTP {response.status}")
        self.response = response


class HttpClient:
    """
    Default ``RequestExecutor`` backed by a pooled ``aiohttp.ClientSession``.

    Transport errors, timeouts and the configured retryable statuses are
    retried with exponential backoff. A retryable status that persists after
    the last attempt is returned as a normal response so callers can react to
    it (for example by honouring Retry-After). A cancellation token only stops
    further attempts; it never interrupts a request already on the wire.
    """

    def __init__(self, config: Optional[HttpClientConfig] = None) -> None:
        self.config = config or HttpClientConfig()
        self.session: Optional[aiohttp.ClientSession] = None
        self._in_flight_requests = 0
        self.requests_sent = 0
        self.retries = 0

    async def initialize(self) -> None:
        """Open the HTTP session."""
        if self.session is not None:
            return
        connector = aiohttp.TCPConnector(
            limit=self.config.max_connections,
            ttl_dns_cache=30,
            enable_cleanup_closed=True,
        )
        self.session = aiohttp.ClientSession(
            connector=connector,
            timeout=aiohttp.ClientTimeout(total=None),
            headers={"User-Agent": self.config.user_agent},
        )
        logger.info(
            "HTTP client session initialized",
            max_connections=self.config.max_connections,
            max_retries=self.config.max_retries,
        )

    async def close(self) -> None:
        if self.session is not None:
            await self.session.close()
            self.session = None
            logger.info("HTTP client closed")

    async def __aenter__(self) -> "HttpClient":
        await self.initialize()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    def _stop(self, cancellation: Optional[CancellationToken]):
        attempts = self.config.max_retries + 1

        def should_stop(retry_state: RetryCallState) -> bool:
            if cancellation is not None and cancellation.cancelled:
                return True
            return retry_state.attempt_number >= attempts

        return should_stop

    def _before_sleep(self, url: str):
        def log_retry(retry_state: RetryCallState) -> None:
            self.retries += 1
            outcome = retry_state.outcome
            error = outcome.exception() if outcome is not None else None
            logger.info(
                "Retrying request",
                url=url,
                attempt=retry_state.attempt_number,
                max_retries=self.config.max_retries,
                error=str(error) if error else None,
            )

        return log_retry

    async def send(
        self,
        url: str,
        *,
        method: str = "GET",
        headers: Optional[Mapping[str, str]] = None,
        timeout: float = 30.0,
        cancellation: Optional[CancellationToken] = None,
    ) -> FetchResponse:
        """
        Perform one logical request, retrying as configured.

        Raises:
            FetchTimeoutError: Every attempt timed out
            FetchError: The transport failed on every attempt
        """
        if self.session is None:
            raise RuntimeError("HTTP client not initialized. Call initialize() first.")

        started = time.perf_counter()
        attempts = 0
        retrying = AsyncRetrying(
            stop=self._stop(cancellation),
            wait=wait_exponential(multiplier=self.config.backoff_base, max=self.config.backoff_max),
            retry=retry_if_exception_type((aiohttp.ClientError, asyncio.TimeoutError, _RetryableStatusError)),
            before_sleep=self._before_sleep(url),
            reraise=True,
        )

        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    response = await self._attempt(url, method, headers, timeout, attempts, started)
                    if response.status in self.config.retry_statuses:
                        raise _RetryableStatusError(response)
                    return response
        except _RetryableStatusError as e:
            logger.warning("Retryable status persisted after retries", url=url, status=e.response.status)
            return e.response
        except asyncio.TimeoutError as e:
            logger.warning("Request timed out", url=url, attempts=attempts, timeout=timeout)
            raise FetchTimeoutError(f"Request timed out after {timeout}s", url=url) from e
        except aiohttp.ClientError as e:
            logger.warning("Request failed", url=url, attempts=attempts, error=str(e))
            raise FetchError(f"{type(e).__name__}: {e}", url=url) from e

        # AsyncRetrying always returns or raises above.
        raise FetchError("Request was not attempted", url=url)

    async def _attempt(
        self,
        url: str,
        method: str,
        headers: Optional[Mapping[str, str]],
        timeout: float,
        attempt: int,
        started: float,
    ) -> FetchResponse:
        if self.session is None:
            raise RuntimeError("HTTP client not initialized. Call initialize() first.")
        self.requests_sent += 1
        self._in_flight_requests += 1
        METRICS["crawler_in_flight_requests"].set(self._in_flight_requests)
        attempt_started = time.perf_counter()
        try:
            async with asyncio.timeout(timeout):
                async with self.session.request(method, url, headers=dict(headers or {})) as response:
                    body = await self._read_body(response, url)
                    status = response.status
                    response_headers: Dict[str, str] = dict(response.headers)
                    final_url = str(response.url)
        finally:
            self._in_flight_requests -= 1
            METRICS["crawler_in_flight_requests"].set(self._in_flight_requests)
            METRICS["crawler_fetch_latency_seconds"].observe(time.perf_counter() - attempt_started)

        METRICS["crawler_responses_total"].labels(status_class=f"{status // 100}xx").inc()
        return FetchResponse(
            url=url,
            status=status,
            body=body,
            headers=response_headers,
            elapsed=time.perf_counter() - started,
            final_url=final_url,
            attempts=attempt,
        )

    async def _read_body(self, response: aiohttp.ClientResponse, url: str) -> bytes:
        limit = self.config.max_body_bytes
        chunks = []
        size = 0
        async for chunk in response.content.iter_chunked(_CHUNK_SIZE):
            chunks.append(chunk)
            size += len(chunk)
            if size > limit:
                logger.warning("Response body truncated", url=url, limit=limit)
                break
        return b"".join(chunks)[:limit]

    def get_stats(self) -> Dict[str, Any]:
        return {
            "in_flight_requests": self._in_flight_requests,
            "requests_sent": self.requests_sent,
            "retries": self.retries,
        }
