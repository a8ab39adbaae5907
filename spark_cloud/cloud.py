"""
Client facade for the Spark cloud.
"""

import asyncio
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import httpx
from prometheus_client import CollectorRegistry

from .auth.client import AuthClient
from .auth.session import Session, TokenStore
from .devices.client import Device, DevicesClient
from .devices.snapshot import OwnedDevicesCache
from .events.models import Scope
from .events.publisher import EventPublisher
from .events.router import EventRouter, HandlerDispatcher
from .events.stream import StreamConnection, stream_path
from .shared.config import SparkCloudConfig, get_config
from .shared.errors import PreconditionError
from .shared.logging import configure_logging, get_logger
from .shared.metrics import SparkCloudMetrics
from .subscriptions.manager import EventHandler, Subscription, SubscriptionRegistry


class SubscriptionHandle:
    """Returned by the ``subscribe_*`` calls; cancels its subscription."""

    def __init__(self, cloud: "SparkCloud", subscription: Subscription):
        self._cloud = cloud
        self.subscription_id = subscription.subscription_id
        self.scope = subscription.scope
        self.name_prefix = subscription.name_prefix

    @property
    def active(self) -> bool:
        return self.subscription_id in self._cloud.registry

    def unsubscribe(self) -> bool:
        """Stop deliveries. Safe to call more than once."""
        return self._cloud.unsubscribe(self.subscription_id)

    def __enter__(self) -> "SubscriptionHandle":
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.unsubscribe()

    def __repr__(self) -> str:
        return f"SubscriptionHandle(id={self.subscription_id!r}, scope={self.scope}, prefix={self.name_prefix!r})"


class SparkCloud:
    """Caller-owned client: one session, one set of subscriptions.

    Set ``setup_logging`` (``SPARK_SETUP_LOGGING``) to have the client install
    JSON logging at ``log_level``; otherwise logging is left to the application.

    Usage:
        async with SparkCloud() as cloud:
            await cloud.login("user@example.com", "secret")

            def on_event(event, error):
                if error is not None:
                    print("stream error", error)
                else:
                    print(event.name, event.data)

            handle = await cloud.subscribe_to_my_devices_events("temp", on_event)
            ...
            handle.unsubscribe()
    """

    def __init__(
        self,
        config: Optional[SparkCloudConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        metrics_registry: Optional[CollectorRegistry] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    ):
        self.config = config or get_config()
        if self.config.setup_logging:
            configure_logging("spark_cloud", self.config.log_level)
        self.logger = get_logger("spark_cloud.cloud")

        self._owns_http_client = http_client is None
        self.http_client = http_client or httpx.AsyncClient(
            timeout=self.config.request_timeout,
            transport=transport
        )
        self._sleep = sleep

        self.token_store = TokenStore()
        self.metrics = SparkCloudMetrics(metrics_registry)
        self.auth = AuthClient(self.config, self.http_client, self.token_store)
        self.devices = DevicesClient(self.config, self.http_client, self.token_store)
        self.owned_devices = OwnedDevicesCache(
            self.token_store,
            self.devices.list_device_ids,
            ttl=self.config.device_snapshot_ttl
        )

        self.registry = SubscriptionRegistry()
        self.dispatcher = HandlerDispatcher(self.registry, self.config.dispatch_workers, self.metrics)
        self.router = EventRouter(
            self.registry,
            self.token_store,
            self.owned_devices,
            self._open_stream,
            self.dispatcher,
            self.metrics
        )
        self.publisher = EventPublisher(self.config, self.http_client, self.token_store, self.metrics)
        self._closed = False

    def _open_stream(self, scope: Scope) -> StreamConnection:
        return StreamConnection(
            scope,
            self.config.url(stream_path(scope)),
            self.token_store,
            self.http_client,
            self.config,
            metrics=self.metrics,
            sleep=self._sleep
        )

    # Session

    @property
    def logged_in_username(self) -> Optional[str]:
        """Currently logged in user name, None if no session exists."""
        return self.token_store.username

    @property
    def access_token(self) -> Optional[str]:
        return self.token_store.access_token

    @property
    def session(self) -> Optional[Session]:
        return self.token_store.current_session()

    async def login(self, user: str, password: str) -> Session:
        return await self.auth.login(user, password)

    async def signup(self, user: str, password: str) -> Session:
        return await self.auth.signup(user, password)

    async def signup_organization_user(
        self,
        email: str,
        password: str,
        org_name: str,
        invite_code: Optional[str] = None
    ) -> Session:
        return await self.auth.signup_organization_user(email, password, org_name, invite_code)

    def logout(self):
        self.auth.logout()

    async def request_password_reset(self, org_name: str, email: str):
        await self.auth.request_password_reset(org_name, email)

    # Devices

    async def get_devices(self) -> List[Device]:
        return await self.devices.get_devices()

    async def get_device(self, device_id: str) -> Device:
        return await self.devices.get_device(device_id)

    async def claim_device(self, device_id: str):
        await self.devices.claim_device(device_id)
        # The next ownership lookup has to see the new device.
        await self.owned_devices.refresh(force=True)

    async def generate_claim_code(self) -> Tuple[str, List[str]]:
        return await self.devices.generate_claim_code()

    # Events

    async def subscribe(self, scope: Scope, handler: EventHandler, name_prefix: Optional[str] = None) -> SubscriptionHandle:
        """Register ``handler`` for events on ``scope`` whose name starts with ``name_prefix``.

        Returns as soon as the subscription is registered; the stream is
        opened in the background.
        """
        if self._closed:
            raise PreconditionError("Client is closed")
        if not callable(handler):
            raise PreconditionError("handler must be callable")
        if scope.requires_session and not self.token_store.is_active:
            raise PreconditionError(
                "An active session is required to subscribe to your devices' events",
                {"scope": str(scope)}
            )

        subscription = Subscription(scope=scope, handler=handler, name_prefix=name_prefix or "")
        self.router.add_subscription(subscription)
        return SubscriptionHandle(self, subscription)

    async def subscribe_to_all_events(
        self,
        name_prefix: Optional[str],
        handler: EventHandler
    ) -> SubscriptionHandle:
        """Firehose of public events plus private events of devices one owns."""
        return await self.subscribe(Scope.all_public_and_owned(), handler, name_prefix)

    async def subscribe_to_my_devices_events(
        self,
        name_prefix: Optional[str],
        handler: EventHandler
    ) -> SubscriptionHandle:
        """All events, public and private, published by devices one owns."""
        return await self.subscribe(Scope.owned_devices(), handler, name_prefix)

    async def subscribe_to_device_events(
        self,
        name_prefix: Optional[str],
        device_id: str,
        handler: EventHandler
    ) -> SubscriptionHandle:
        """Events of one device: public and private if owned, public only otherwise."""
        if not device_id:
            raise PreconditionError("device_id is required")
        return await self.subscribe(Scope.single_device(device_id), handler, name_prefix)

    def unsubscribe(self, subscription_id: str) -> bool:
        """Effective immediately for future deliveries; idempotent."""
        return self.router.remove_subscription(subscription_id)

    async def publish_event(
        self,
        name: str,
        data: Optional[str] = None,
        private: bool = False,
        ttl: Optional[int] = None
    ):
        await self.publisher.publish(name, data, private, ttl)

    # Lifecycle

    async def close(self):
        """Close every stream, stop handler workers, drop all subscriptions."""
        if self._closed:
            return
        self._closed = True
        await self.router.close()
        await self.dispatcher.stop()
        self.registry.clear()
        await self.owned_devices.close()
        if self._owns_http_client:
            await self.http_client.aclose()
        self.logger.info("Spark cloud client closed")

    async def __aenter__(self) -> "SparkCloud":
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        await self.close()
