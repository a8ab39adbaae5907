"""
Event subsystem data types.
"""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional


class ScopeKind(Enum):
    """Visibility constraint a subscription is opened under."""
    ALL_PUBLIC_AND_OWNED = "all_public_and_owned"  # Firehose
    OWNED_DEVICES = "owned_devices"
    SINGLE_DEVICE = "single_device"


@dataclass(frozen=True)
class Scope:
    """Subscription scope. Hashable; one stream connection serves each distinct scope."""
    kind: ScopeKind
    device_id: Optional[str] = None

    def __post_init__(self):
        if self.kind == ScopeKind.SINGLE_DEVICE and not self.device_id:
            raise ValueError("SINGLE_DEVICE scope requires a device_id")
        if self.kind != ScopeKind.SINGLE_DEVICE and self.device_id is not None:
            raise ValueError(f"{self.kind.value} scope does not take a device_id")

    @classmethod
    def all_public_and_owned(cls) -> "Scope":
        return cls(ScopeKind.ALL_PUBLIC_AND_OWNED)

    @classmethod
    def owned_devices(cls) -> "Scope":
        return cls(ScopeKind.OWNED_DEVICES)

    @classmethod
    def single_device(cls, device_id: str) -> "Scope":
        return cls(ScopeKind.SINGLE_DEVICE, device_id)

    @property
    def requires_session(self) -> bool:
        return self.kind == ScopeKind.OWNED_DEVICES

    def __str__(self) -> str:
        if self.kind == ScopeKind.SINGLE_DEVICE:
            return f"{self.kind.value}:{self.device_id}"
        return self.kind.value


class ConnectionState(Enum):
    """Stream connection lifecycle."""
    CONNECTING = "connecting"
    OPEN = "open"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


@dataclass(frozen=True)
class EventRecord:
    """A parsed cloud event. Shared read-only by every handler of one dispatch."""
    name: str
    data: str
    ttl: int
    published_at: Optional[datetime]
    device_id: Optional[str]
    public: bool = True

    @property
    def private(self) -> bool:
        return not self.public

    def to_dict(self) -> dict:
        """Event in the cloud's own key names."""
        return {
            "event": self.name,
            "data": self.data,
            "ttl": self.ttl,
            "published_at": self.published_at.isoformat() if self.published_at else None,
            "coreid": self.device_id,
            "public": self.public,
        }
