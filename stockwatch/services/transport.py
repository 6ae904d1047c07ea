"""
HTTP delivery of record batches to the downstream sync endpoint.

A batch is posted as a JSON array of wire records, gzip-compressed once it is
large enough. Transient failures (5xx, 408, 429, network errors, client-side
timeouts) are retried with exponential backoff plus jitter; everything else is
reported to the caller as `False`.
"""

from __future__ import annotations

import asyncio
import gzip
import json
from typing import Any, Awaitable, Callable, Dict, Optional, Sequence

import httpx
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_exponential,
    wait_random,
)

from stockwatch.domain.models import Record
from stockwatch.utils.logging import get_logger

log = get_logger(__name__)

RETRYABLE_STATUS_CODES = frozenset({408, 429})
DIAGNOSTIC_SAMPLE_SIZE = 3
MAX_JITTER_SECONDS = 1.0

Sleep = Callable[[float], Awaitable[Any]]


class RetryableSendError(Exception):
    """A delivery attempt failed in a way worth retrying."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


def is_retryable_status(status_code: int) -> bool:
    return status_code >= 500 or status_code in RETRYABLE_STATUS_CODES


def backoff_wait(base_delay_seconds: float) -> Any:
    """
    Wait strategy: base × 2^(n-1) before retry n, plus uniform jitter in [0, 1s).
    """
    return wait_exponential(multiplier=base_delay_seconds, exp_base=2, min=0) + wait_random(
        0, MAX_JITTER_SECONDS
    )


class BatchTransport:
    """
    Posts record batches to the configured endpoint.

    Parameters
    ----------
    endpoint : str
        Absolute URL receiving the POST.
    max_retries : int
        Additional attempts after the first one for retryable failures.
    retry_base_delay_seconds : float
        Base of the exponential backoff.
    compression_enabled : bool
        Whether large batches are gzip-compressed.
    compression_threshold_records : int
        Batches with more records than this are compressed.
    client : httpx.AsyncClient, optional
        Shared client; created lazily when omitted.
    sleep : callable
        Coroutine used for backoff waits (cancellable).
    """

    def __init__(
        self,
        endpoint: str,
        max_retries: int = 3,
        retry_base_delay_seconds: float = 1.0,
        compression_enabled: bool = True,
        compression_threshold_records: int = 50,
        timeout_seconds: float = 30.0,
        headers: Optional[Dict[str, str]] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.endpoint = endpoint
        self.max_retries = max_retries
        self.retry_base_delay_seconds = retry_base_delay_seconds
        self.compression_enabled = compression_enabled
        self.compression_threshold_records = compression_threshold_records
        self.timeout_seconds = timeout_seconds
        self._extra_headers = dict(headers or {})
        self._client = client
        self._owns_client = client is None
        self._sleep = sleep

    async def __aenter__(self) -> "BatchTransport":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout_seconds)
        return self._client

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def build_request_body(self, records: Sequence[Record]) -> tuple[bytes, Dict[str, str]]:
        """Serialize a batch and pick the matching headers."""
        body = json.dumps([record.to_wire() for record in records]).encode("utf-8")
        headers = {"Content-Type": "application/json", "Accept": "application/json"}
        headers.update(self._extra_headers)
        if self.compression_enabled and len(records) > self.compression_threshold_records:
            body = gzip.compress(body)
            headers["Content-Encoding"] = "gzip"
        return body, headers

    async def _attempt(self, body: bytes, headers: Dict[str, str], record_count: int) -> bool:
        try:
            response = await self._get_client().post(self.endpoint, content=body, headers=headers)
        except httpx.TimeoutException as exc:
            raise RetryableSendError(f"Request timed out: {exc}") from exc
        except httpx.UnsupportedProtocol as exc:
            # A bad endpoint scheme will not fix itself between attempts.
            log.error(f"Cannot reach endpoint: {exc}", extra={"endpoint": self.endpoint})
            return False
        except httpx.TransportError as exc:
            raise RetryableSendError(f"Network error: {exc}") from exc
        except httpx.HTTPError as exc:
            log.warning(
                f"Unusable response from endpoint: {exc}",
                extra={"error_type": type(exc).__name__, "request_bytes": len(body)},
            )
            return False

        if response.is_success:
            log.info(f"Successfully sent {record_count} records", extra={"records": record_count})
            return True

        if is_retryable_status(response.status_code):
            raise RetryableSendError(
                f"Endpoint returned {response.status_code}", status_code=response.status_code
            )

        log.warning(
            f"API error: {response.status_code}",
            extra={
                "status_code": response.status_code,
                "response_body": response.text[:500],
                "request_bytes": len(body),
            },
        )
        return False

    def _log_retry(self, retry_state: RetryCallState) -> None:
        exc = retry_state.outcome.exception() if retry_state.outcome else None
        wait = retry_state.next_action.sleep if retry_state.next_action else 0.0
        log.warning(
            f"Send attempt {retry_state.attempt_number} failed, retrying in {wait:.2f}s",
            extra={"attempt": retry_state.attempt_number, "error": str(exc)},
        )

    async def send(self, records: Sequence[Record]) -> bool:
        """
        Deliver one batch.

        Returns True on a 2xx response, False on a non-retryable response or
        once retries are exhausted. Cancellation propagates and is never
        retried.
        """
        if not records:
            return True

        body, headers = self.build_request_body(records)
        log.debug(
            f"Attempting to send {len(records)} records to {self.endpoint}",
            extra={"records": len(records), "bytes": len(body), "gzip": "Content-Encoding" in headers},
        )

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.max_retries + 1),
            wait=backoff_wait(self.retry_base_delay_seconds),
            retry=retry_if_exception_type(RetryableSendError),
            before_sleep=self._log_retry,
            sleep=self._sleep,
            reraise=True,
        )
        try:
            return await retrying(self._attempt, body, headers, len(records))
        except RetryableSendError as exc:
            sample = [record.to_wire() for record in records[:DIAGNOSTIC_SAMPLE_SIZE]]
            log.error(
                f"Giving up on batch of {len(records)} records after {self.max_retries + 1} attempts",
                extra={
                    "records": len(records),
                    "status_code": exc.status_code,
                    "error": str(exc),
                    "sample": sample,
                },
            )
            return False


__all__ = [
    "BatchTransport",
    "RetryableSendError",
    "backoff_wait",
    "is_retryable_status",
]
