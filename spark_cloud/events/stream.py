"""
Persistent streaming connection to one cloud event endpoint.
"""

import asyncio
from typing import AsyncIterator, Awaitable, Callable, Optional, Union

import httpx

from ..auth.session import TokenStore
from ..shared.config import SparkCloudConfig
from ..shared.errors import (
    AuthenticationError,
    SparkCloudException,
    TransportError,
    error_for_status,
)
from ..shared.http import bearer_headers
from ..shared.logging import get_logger
from ..shared.metrics import SparkCloudMetrics
from ..shared.retry import RetryConfig, calculate_delay
from .models import ConnectionState, EventRecord, Scope, ScopeKind
from .parser import SSEFrameParser

StreamItem = Union[EventRecord, SparkCloudException]


def stream_path(scope: Scope) -> str:
    """Cloud endpoint serving a scope."""
    if scope.kind == ScopeKind.ALL_PUBLIC_AND_OWNED:
        return "/v1/events"
    if scope.kind == ScopeKind.OWNED_DEVICES:
        return "/v1/devices/events"
    return f"/v1/devices/{scope.device_id}/events"


class StreamConnection:
    """One logical event stream for a scope.

    ``events()`` is a lazy, restartable sequence: transport failures are
    retried with exponential backoff and the sequence resumes without the
    caller doing anything; a terminal error is yielded once and ends it.
    A frame that was still incomplete when the transport dropped is
    discarded, completed frames are never repeated.
    """

    def __init__(
        self,
        scope: Scope,
        url: str,
        token_store: TokenStore,
        http_client: httpx.AsyncClient,
        config: SparkCloudConfig,
        metrics: Optional[SparkCloudMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.scope = scope
        self.url = url
        self.token_store = token_store
        self.http_client = http_client
        self.config = config
        self.metrics = metrics
        self.logger = get_logger("spark_cloud.events.stream")
        self.state = ConnectionState.CLOSED
        self.retry_config = RetryConfig(
            max_attempts=config.max_reconnect_attempts,
            base_delay=config.reconnect_base_delay,
            max_delay=config.reconnect_max_delay,
            jitter=config.reconnect_jitter,
            backoff_strategy="exponential"
        )
        self.reconnect_count = 0
        self._parser = SSEFrameParser()
        self._sleep = sleep
        self._closed = False

    @property
    def is_closed(self) -> bool:
        return self._closed

    def close(self):
        """Stop after the current read; the owner cancels a blocked reader."""
        self._closed = True
        self.state = ConnectionState.CLOSED

    def _request_headers(self) -> Optional[dict]:
        headers = {"Accept": "text/event-stream", "Cache-Control": "no-cache"}
        token = self.token_store.access_token
        if self.scope.requires_session and not token:
            return None
        headers.update(bearer_headers(token))
        return headers

    async def events(self) -> AsyncIterator[StreamItem]:
        """Yield parsed events and per-frame errors until closed or a terminal error."""
        failures = 0
        scope_label = str(self.scope)
        timeout = httpx.Timeout(self.config.request_timeout, read=self.config.stream_read_timeout)

        try:
            while not self._closed:
                self.state = ConnectionState.CONNECTING if failures == 0 else ConnectionState.RECONNECTING
                self._parser.reset()

                headers = self._request_headers()
                if headers is None:
                    self.logger.warning("No active session for private stream", scope=scope_label)
                    yield AuthenticationError(
                        "An active session is required for this stream",
                        {"scope": scope_label}
                    )
                    return

                failure: SparkCloudException
                try:
                    async with self.http_client.stream(
                        "GET", self.url, headers=headers, timeout=timeout
                    ) as response:
                        if response.status_code >= 400:
                            await response.aread()
                            error = error_for_status(response.status_code, response.text, f"stream {scope_label}")
                            if error.is_terminal:
                                self.logger.error(
                                    "Stream rejected",
                                    scope=scope_label,
                                    status_code=response.status_code
                                )
                                yield error
                                return
                            raise error

                        self.state = ConnectionState.OPEN
                        failures = 0
                        self.logger.info("Stream connected", scope=scope_label)

                        async for chunk in response.aiter_bytes():
                            for item in self._parser.feed(chunk):
                                if self.metrics:
                                    if isinstance(item, EventRecord):
                                        self.metrics.record_event(scope_label)
                                    else:
                                        self.metrics.record_parse_error(scope_label)
                                yield item

                        failure = TransportError("Stream ended by server", {"scope": scope_label})

                except httpx.TransportError as e:
                    failure = TransportError(f"Stream transport failure: {e}", {"scope": scope_label})
                except SparkCloudException as e:
                    failure = e

                if self._closed:
                    break

                if self._parser.has_partial_frame:
                    self.logger.debug("Discarding partial frame after drop", scope=scope_label)

                failures += 1
                if self.retry_config.exhausted(failures):
                    self.logger.error(
                        "Stream reconnect attempts exhausted",
                        scope=scope_label,
                        attempts=failures,
                        error=failure.message
                    )
                    yield TransportError(
                        f"Gave up reconnecting after {failures} attempts: {failure.message}",
                        {"scope": scope_label, "attempts": failures},
                        terminal=True
                    )
                    return

                delay = calculate_delay(failures, self.retry_config)
                self.reconnect_count += 1
                if self.metrics:
                    self.metrics.record_reconnect(scope_label)
                self.logger.warning(
                    "Stream dropped, reconnecting",
                    scope=scope_label,
                    attempt=failures,
                    delay=delay,
                    error=failure.message
                )
                self.state = ConnectionState.RECONNECTING
                await self._sleep(delay)
        finally:
            self._closed = True
            self.state = ConnectionState.CLOSED
            self._parser.reset()
