"""
Publisher for outbound cloud events.
"""

from typing import Optional

import httpx

from ..auth.session import TokenStore
from ..shared.config import SparkCloudConfig
from ..shared.errors import PreconditionError, ServiceError, SparkCloudException
from ..shared.http import bearer_headers, send_request
from ..shared.logging import get_logger
from ..shared.metrics import SparkCloudMetrics


class EventPublisher:
    """Emits named events. Independent of the streaming path: a firehose
    subscriber may see a published event before ``publish`` returns.
    """

    def __init__(
        self,
        config: SparkCloudConfig,
        http_client: httpx.AsyncClient,
        token_store: TokenStore,
        metrics: Optional[SparkCloudMetrics] = None
    ):
        self.config = config
        self.http_client = http_client
        self.token_store = token_store
        self.metrics = metrics
        self.logger = get_logger("spark_cloud.events.publisher")

    async def publish(
        self,
        name: str,
        data: Optional[str] = None,
        private: bool = False,
        ttl: Optional[int] = None
    ):
        """Publish an event.

        Args:
            name: Event name.
            data: Payload string; callers pick the encoding.
            private: Only the publisher's claimed devices may receive it.
                Requires an active session; without one nothing is sent.
            ttl: Time to live in seconds, defaults to ``config.default_ttl``.
        """
        if not name:
            raise PreconditionError("Event name is required")

        if ttl is None:
            ttl = self.config.default_ttl
        if ttl < 0:
            raise PreconditionError("ttl must not be negative", {"ttl": ttl})

        token = self.token_store.access_token
        if private and not token:
            self._record("rejected")
            raise PreconditionError("Publishing a private event requires an active session", {"event": name})

        form = {
            "name": name,
            "private": "true" if private else "false",
            "ttl": str(ttl),
        }
        if data is not None:
            form["data"] = data

        try:
            if self.metrics:
                with self.metrics.time_publish():
                    body = await self._send(form, token)
            else:
                body = await self._send(form, token)
        except SparkCloudException:
            self._record("error")
            raise

        if isinstance(body, dict) and body.get("ok") is False:
            self._record("error")
            raise ServiceError("Publish rejected by cloud", details={"event": name, "error": body.get("error")})

        self._record("ok")
        self.logger.debug("Event published", event_name=name, private=private, ttl=ttl)

    async def _send(self, form: dict, token: Optional[str]):
        return await send_request(
            self.http_client,
            "POST",
            self.config.url("/v1/devices/events"),
            context="publish event",
            logger=self.logger,
            headers=bearer_headers(token),
            data=form,
        )

    def _record(self, status: str):
        if self.metrics:
            self.metrics.record_publish(status)
