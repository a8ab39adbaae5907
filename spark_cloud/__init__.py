"""
Spark Cloud SDK.

Async client for the Spark (Particle) device cloud:

- auth: Session token store, login / signup / password reset
- devices: Device listing and claiming, owned-devices snapshot
- events: Event streams, routing to subscriptions, publishing
- subscriptions: Thread-safe subscription registry

Usage:
    from spark_cloud import SparkCloud

    async with SparkCloud() as cloud:
        await cloud.login("user@example.com", "secret")
        handle = await cloud.subscribe_to_all_events("temp", on_event)
"""

from .auth.session import Session, TokenStore
from .cloud import SparkCloud, SubscriptionHandle
from .devices.client import Device
from .events.models import ConnectionState, EventRecord, Scope, ScopeKind
from .shared.config import SparkCloudConfig, get_config
from .shared.errors import (
    AuthenticationError,
    NotFoundError,
    PreconditionError,
    ProtocolParseError,
    ServiceError,
    SparkCloudException,
    TransportError,
)

__version__ = "1.0.0"

__all__ = [
    "SparkCloud",
    "SubscriptionHandle",
    "Session",
    "TokenStore",
    "Device",
    "EventRecord",
    "Scope",
    "ScopeKind",
    "ConnectionState",
    "SparkCloudConfig",
    "get_config",
    "SparkCloudException",
    "TransportError",
    "ProtocolParseError",
    "AuthenticationError",
    "PreconditionError",
    "NotFoundError",
    "ServiceError",
]
